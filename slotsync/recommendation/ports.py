import datetime as dt
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from slotsync.domain.models import RecommendationCandidate, TimeOfDay, UtilizationRecord


class ScoringContext(BaseModel):
    """Everything a scorer may look at for one provider-day."""

    model_config = ConfigDict(frozen=True)

    day_name: str
    available_times: list[dt.time]
    utilization: list[UtilizationRecord] = Field(default_factory=list)
    underutilized_threshold: float = 50.0
    preferred_times_of_day: list[TimeOfDay] = Field(default_factory=list)
    max_recommendations: int = 5

    def rate_for(self, time: dt.time) -> float | None:
        for record in self.utilization:
            if record.time_of_day == time:
                return record.recent_booking_rate
        return None

    def underutilized(self) -> list[UtilizationRecord]:
        """Under-utilized buckets for the day, least booked first."""
        low = [r for r in self.utilization if r.recent_booking_rate < self.underutilized_threshold]
        return sorted(low, key=lambda r: (r.recent_booking_rate, r.time_of_day))


class ScoringResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    recommendations: list[RecommendationCandidate] = Field(default_factory=list)
    summary: str = ""


class ScoringClientProtocol(Protocol):
    """Low-level interface for ranking candidate times.

    Implementations raise RecommendationUnavailableError when they cannot
    produce a usable ranking. Their output is advisory: the selector
    re-checks every returned time against live availability.
    """

    async def score(self, context: ScoringContext) -> ScoringResponse: ...

    async def close(self) -> None: ...
