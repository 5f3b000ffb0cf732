from pathlib import Path

import pytest

from slotsync.calendar.adapters.google import GoogleCalendarClient
from slotsync.calendar.factory import build_calendar_service
from slotsync.calendar.service import CalendarSyncService
from slotsync.config import AppConfig, GoogleCalendarConfig, SchedulingConfig, ScoringAdapter
from slotsync.recommendation.adapters.heuristic import HeuristicScoringClient
from slotsync.recommendation.adapters.llm import LLMScoringClient
from slotsync.recommendation.factory import build_scoring_client
from slotsync.scheduling.adapters.memory import InMemorySchedulingRepository
from slotsync.scheduling.clock import ClinicClock
from slotsync.scheduling.slot_grid import SlotGridStore


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)


def _config(adapter: ScoringAdapter) -> AppConfig:
    return AppConfig(
        scheduling=SchedulingConfig(scoring_adapter=adapter, sync_lookahead_days=14),
        google=GoogleCalendarConfig(client_id="client-id", client_secret="client-secret"),
    )


class TestBuildScoringClient:
    @pytest.mark.asyncio
    async def test_heuristic(self) -> None:
        client = build_scoring_client(_config(ScoringAdapter.HEURISTIC))

        assert isinstance(client, HeuristicScoringClient)
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("api_key", ["sk-test", ""], ids=["with-key", "without-key"])
    async def test_llm(self, monkeypatch: pytest.MonkeyPatch, api_key: str) -> None:
        if api_key:
            monkeypatch.setenv("OPENAI_API_KEY", api_key)

        client = build_scoring_client(_config(ScoringAdapter.LLM))

        assert isinstance(client, LLMScoringClient)
        await client.close()


class TestBuildCalendarService:
    @pytest.mark.asyncio
    async def test_wires_google_client(
        self,
        repository: InMemorySchedulingRepository,
        slot_grid: SlotGridStore,
        clock: ClinicClock,
    ) -> None:
        service = build_calendar_service(
            _config(ScoringAdapter.HEURISTIC), repository, slot_grid, clock
        )

        assert isinstance(service, CalendarSyncService)
        assert isinstance(service._client, GoogleCalendarClient)
        assert service._lookahead_days == 14
        await service.close()
