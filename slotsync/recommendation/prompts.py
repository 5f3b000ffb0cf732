from slotsync.recommendation.ports import ScoringContext

SYSTEM_PROMPT = "You are a scheduling AI assistant. Always respond with valid JSON only."


def build_scoring_prompt(context: ScoringContext) -> str:
    """Build the ranking prompt for one provider-day."""
    available = ", ".join(t.strftime("%H:%M") for t in context.available_times)
    underutilized = ", ".join(
        f"{r.time_of_day.strftime('%H:%M')} ({r.recent_booking_rate:.1f}% booked)"
        for r in context.underutilized()[:5]
    )
    preferred = ", ".join(p.value for p in context.preferred_times_of_day) or "no preference"
    threshold = f"{context.underutilized_threshold:g}"

    return f"""\
You are an AI scheduling assistant for a clinic. Your goal is to help BALANCE the \
provider's schedule by promoting time slots that are booked LESS frequently.

## Current Situation
- Day: {context.day_name}
- Available Times: {available}
- Under-utilized Slots (need promotion): {underutilized or "None identified yet"}
- Patient Usually Prefers: {preferred}

## Your Task
Analyze the available time slots and recommend which ones to promote to the patient. Focus on:
1. **Under-utilized slots** (booking rate < {threshold}%) should be PRIORITIZED.
2. **Balance**: help distribute appointments evenly throughout the day.
3. **Patient preferences**: consider what times the patient usually prefers, \
but gently guide them toward under-utilized slots if possible.

## Rules
- Only recommend times from the Available Times list, in 24-hour HH:MM format.
- Give HIGHER scores (80-95) to under-utilized slots. Scores range from 0 to 100.
- Provide at most {context.max_recommendations} recommendations.

## Output Format (JSON only)
{{
  "recommendations": [
    {{
      "time": "10:00",
      "score": 85,
      "reasons": ["Under-utilized slot", "Helps balance schedule"],
      "aiReasoning": "This 10 AM slot is rarely booked and would help balance the schedule."
    }}
  ],
  "summary": "Morning slots are under-utilized on this day."
}}
"""
