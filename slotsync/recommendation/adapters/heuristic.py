from slotsync.domain.models import RecommendationCandidate, TimeOfDay
from slotsync.recommendation.ports import ScoringContext, ScoringResponse

_UNKNOWN_RATE_SCORE = 60
_PREFERENCE_BONUS = 10


class HeuristicScoringClient:
    """Deterministic local scorer that favours the least-booked times.

    Under-utilized times score 80-95 (lower rate, higher score), times with no
    history score 60, and busier times fall towards 0 as their rate climbs.
    A time in one of the patient's preferred buckets gets a small bonus but is
    never the only thing offered.
    """

    async def score(self, context: ScoringContext) -> ScoringResponse:
        candidates: list[RecommendationCandidate] = []
        for time in context.available_times:
            rate = context.rate_for(time)
            score, reasons = _base_score(rate, context.underutilized_threshold)
            if TimeOfDay.of(time) in context.preferred_times_of_day:
                score = min(100, score + _PREFERENCE_BONUS)
                reasons.append("Matches patient's preferred time of day")
            candidates.append(
                RecommendationCandidate(
                    time=time,
                    score=score,
                    reasons=reasons,
                    rationale=_rationale(time.strftime("%H:%M"), rate),
                )
            )

        candidates.sort(key=lambda c: (-c.score, c.time))
        return ScoringResponse(
            recommendations=candidates[: context.max_recommendations],
            summary=_summary(context),
        )

    async def close(self) -> None:
        pass


def _base_score(rate: float | None, threshold: float) -> tuple[int, list[str]]:
    if rate is None:
        return _UNKNOWN_RATE_SCORE, ["No booking history yet"]
    if rate < threshold:
        return 80 + round(15 * (1 - rate / threshold)), ["Under-utilized slot", "Helps balance schedule"]
    headroom = 100 - threshold
    score = round(79 * (100 - rate) / headroom) if headroom > 0 else 0
    return max(0, score), ["Frequently booked"]


def _rationale(label: str, rate: float | None) -> str:
    if rate is None:
        return f"{label} has no recent booking history."
    return f"{label} is booked {rate:.1f}% of the time on this weekday."


def _summary(context: ScoringContext) -> str:
    low = context.underutilized()
    if not low:
        return f"No under-utilized slots identified for {context.day_name}."
    times = ", ".join(r.time_of_day.strftime("%H:%M") for r in low[:3])
    return f"{len(low)} under-utilized slot(s) on {context.day_name}; least booked: {times}."
