import datetime as dt

from loguru import logger

from slotsync.domain.exceptions import ProviderNotFoundError, RecommendationUnavailableError
from slotsync.domain.models import Recommendation, RecommendationResult, UtilizationRecord
from slotsync.recommendation.ports import ScoringClientProtocol, ScoringContext, ScoringResponse
from slotsync.scheduling.ports import SchedulingRepository
from slotsync.scheduling.slot_grid import SlotGridStore


class SlotRecommendationSelector:
    """Ranks a day's open slots so under-used times are offered first.

    The scorer is only advisory. Availability is read fresh from the slot
    grid on every call and every scored time is checked against it before
    it is returned.
    """

    def __init__(
        self,
        scorer: ScoringClientProtocol,
        repository: SchedulingRepository,
        slot_grid: SlotGridStore,
        *,
        underutilized_threshold: float = 50.0,
        max_recommendations: int = 5,
    ) -> None:
        self._scorer = scorer
        self._repo = repository
        self._grid = slot_grid
        self._threshold = underutilized_threshold
        self._max = max_recommendations

    async def recommend(
        self, provider_id: str, patient_id: str, target_date: dt.date
    ) -> RecommendationResult:
        if await self._repo.get_provider(provider_id) is None:
            raise ProviderNotFoundError(provider_id)

        available = await self._grid.available_times(provider_id, target_date)
        if not available:
            logger.info("No open slots for provider {} on {}", provider_id, target_date)
            return RecommendationResult(
                provider_id=provider_id,
                patient_id=patient_id,
                date=target_date,
                summary="No available slots on this date.",
            )

        utilization = await self._repo.list_utilization(provider_id, target_date.weekday())
        preference = await self._repo.get_preference(patient_id)
        context = ScoringContext(
            day_name=target_date.strftime("%A"),
            available_times=available,
            utilization=utilization,
            underutilized_threshold=self._threshold,
            preferred_times_of_day=preference.preferred_times_of_day if preference else [],
            max_recommendations=self._max,
        )

        try:
            response = await self._scorer.score(context)
        except RecommendationUnavailableError as exc:
            logger.warning("Recommendations unavailable, showing plain availability: {}", exc)
            return self._degraded(provider_id, patient_id, target_date, available)
        except Exception:
            logger.exception("Scoring failed, showing plain availability")
            return self._degraded(provider_id, patient_id, target_date, available)

        recommendations = self._validated(response, available, utilization)
        logger.info(
            "Recommendations for provider={}, date={}: {} of {} scored time(s) kept",
            provider_id,
            target_date,
            len(recommendations),
            len(response.recommendations),
        )
        return RecommendationResult(
            provider_id=provider_id,
            patient_id=patient_id,
            date=target_date,
            recommendations=recommendations,
            available_times=available,
            summary=response.summary,
        )

    def _validated(
        self,
        response: ScoringResponse,
        available: list[dt.time],
        utilization: list[UtilizationRecord],
    ) -> list[Recommendation]:
        open_times = set(available)
        rates = {r.time_of_day: r.recent_booking_rate for r in utilization}
        seen: set[dt.time] = set()
        kept: list[Recommendation] = []

        for candidate in response.recommendations:
            if candidate.time not in open_times:
                logger.debug("Dropping recommended time {} that is not open", candidate.time)
                continue
            if candidate.time in seen:
                continue
            seen.add(candidate.time)
            rate = rates.get(candidate.time)
            kept.append(
                Recommendation(
                    **candidate.model_dump(),
                    is_underutilized=rate is not None and rate < self._threshold,
                    booking_rate=rate if rate is not None else 0.0,
                )
            )

        kept.sort(key=lambda r: (-r.score, r.time))
        return kept[: self._max]

    def _degraded(
        self,
        provider_id: str,
        patient_id: str,
        target_date: dt.date,
        available: list[dt.time],
    ) -> RecommendationResult:
        return RecommendationResult(
            provider_id=provider_id,
            patient_id=patient_id,
            date=target_date,
            available_times=available,
            degraded=True,
        )

    async def close(self) -> None:
        await self._scorer.close()
