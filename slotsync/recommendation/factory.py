from typing import Callable

from loguru import logger

from slotsync.config import AppConfig, ScoringAdapter
from slotsync.recommendation.adapters.heuristic import HeuristicScoringClient
from slotsync.recommendation.adapters.llm import LLMScoringClient
from slotsync.recommendation.ports import ScoringClientProtocol


def _build_heuristic(config: AppConfig) -> ScoringClientProtocol:
    return HeuristicScoringClient()


def _build_llm(config: AppConfig) -> ScoringClientProtocol:
    if not config.llm.api_key:
        logger.warning("LLM scoring selected but no API key set; recommendations will degrade")
    return LLMScoringClient(
        api_key=config.llm.api_key,
        base_url=config.llm.base_url,
        model=config.llm.model,
        temperature=config.llm.temperature,
        timeout=config.llm.timeout,
    )


_BUILDERS: dict[ScoringAdapter, Callable[[AppConfig], ScoringClientProtocol]] = {
    ScoringAdapter.HEURISTIC: _build_heuristic,
    ScoringAdapter.LLM: _build_llm,
}


def build_scoring_client(config: AppConfig) -> ScoringClientProtocol:
    """Build the slot scoring client based on config."""
    adapter = config.scheduling.scoring_adapter
    logger.info("Building scoring client with adapter: {}", adapter.value)
    return _BUILDERS[adapter](config)
