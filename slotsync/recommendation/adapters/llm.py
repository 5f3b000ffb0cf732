import datetime as dt
import json
import re
from typing import Any

import httpx
from loguru import logger
from pydantic import AliasChoices, BaseModel, Field, ValidationError

from slotsync.domain.exceptions import RecommendationUnavailableError
from slotsync.domain.models import RecommendationCandidate
from slotsync.recommendation.ports import ScoringContext, ScoringResponse
from slotsync.recommendation.prompts import SYSTEM_PROMPT, build_scoring_prompt

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class _ScoredTime(BaseModel):
    time: dt.time
    score: int = Field(ge=0, le=100)
    reasons: list[str] = Field(default_factory=list)
    rationale: str = Field(default="", validation_alias=AliasChoices("aiReasoning", "rationale"))


class _ScoringReply(BaseModel):
    recommendations: list[_ScoredTime]
    summary: str = ""


class LLMScoringClient:
    """Scores candidate times with an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o",
        temperature: float = 0.7,
        timeout: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._url = f"{base_url.rstrip('/')}/chat/completions"
        self._model = model
        self._temperature = temperature
        self._client = httpx.AsyncClient(timeout=timeout)

    async def score(self, context: ScoringContext) -> ScoringResponse:
        if not self._api_key:
            raise RecommendationUnavailableError("no LLM API key configured")

        prompt = build_scoring_prompt(context)
        logger.debug("Requesting slot scores from {} (prompt length {})", self._model, len(prompt))
        try:
            resp = await self._client.post(
                self._url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={
                    "model": self._model,
                    "messages": [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    "temperature": self._temperature,
                },
            )
        except httpx.HTTPError as exc:
            raise RecommendationUnavailableError(f"scoring request failed: {exc}") from exc

        if resp.status_code == 429:
            raise RecommendationUnavailableError("scoring service rate limit exceeded")
        if resp.status_code >= 400:
            raise RecommendationUnavailableError(f"scoring service returned {resp.status_code}")

        reply = _parse_reply(_message_content(resp))
        return ScoringResponse(
            recommendations=[
                RecommendationCandidate(
                    time=item.time,
                    score=item.score,
                    reasons=item.reasons,
                    rationale=item.rationale,
                )
                for item in reply.recommendations
            ],
            summary=reply.summary,
        )

    async def close(self) -> None:
        await self._client.aclose()


def _message_content(resp: httpx.Response) -> str:
    try:
        data: Any = resp.json()
        content = data["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        raise RecommendationUnavailableError("scoring reply has no message content") from exc
    if not isinstance(content, str) or not content.strip():
        raise RecommendationUnavailableError("scoring reply has no message content")
    return content


def _parse_reply(content: str) -> _ScoringReply:
    """Pull the JSON object out of the model's reply, tolerating prose around it."""
    match = _JSON_OBJECT.search(content)
    if match is None:
        raise RecommendationUnavailableError("scoring reply contains no JSON object")
    try:
        return _ScoringReply.model_validate(json.loads(match.group(0)))
    except json.JSONDecodeError as exc:
        raise RecommendationUnavailableError(f"scoring reply is not valid JSON: {exc}") from exc
    except ValidationError as exc:
        raise RecommendationUnavailableError(
            f"scoring reply does not match schema: {exc.error_count()} error(s)"
        ) from exc
