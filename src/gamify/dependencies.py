"""Shared FastAPI dependencies."""

from fastapi import Request

from gamify.database import get_session as _get_session
from gamify.progression.level_table import LevelTable
from gamify.progression.orchestrator import ProgressionOrchestrator
from gamify.rankings.ranking_service import RankingAggregator

get_db = _get_session


def get_orchestrator(request: Request) -> ProgressionOrchestrator:
    return request.app.state.orchestrator


def get_aggregator(request: Request) -> RankingAggregator:
    return request.app.state.aggregator


def get_levels(request: Request) -> LevelTable:
    return request.app.state.orchestrator.levels
