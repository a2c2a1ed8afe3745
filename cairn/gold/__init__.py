"""Derived views: registry, refresh orchestration and refresh log."""

from __future__ import annotations

from .errors import RefreshFailure, ViewRegistryError
from .freshness import FreshnessConfig, RefreshFreshnessService, ViewFreshness
from .graph import AGGREGATE_SOURCES, build_default_registry
from .orchestrator import (
    NodeState,
    RefreshOrchestrator,
    RefreshRunResult,
    RunState,
    ViewRefreshResult,
)
from .registry import DerivedViewNode, RefreshMode, ViewRegistry
from .storage import (
    CopyEngagementSummary,
    CreatorBreakdown,
    CreatorEngagementMetrics,
    CreatorTopPortfolio,
    HiddenGemsPortfolio,
    PortfolioEngagementMetrics,
    RefreshLogEntry,
    RefreshStatus,
    init_gold_storage,
)
from .views import HiddenGemCriteria

__all__ = [
    "AGGREGATE_SOURCES",
    "CopyEngagementSummary",
    "CreatorBreakdown",
    "CreatorEngagementMetrics",
    "CreatorTopPortfolio",
    "DerivedViewNode",
    "FreshnessConfig",
    "HiddenGemCriteria",
    "HiddenGemsPortfolio",
    "NodeState",
    "PortfolioEngagementMetrics",
    "RefreshFailure",
    "RefreshFreshnessService",
    "RefreshLogEntry",
    "RefreshMode",
    "RefreshOrchestrator",
    "RefreshRunResult",
    "RefreshStatus",
    "RunState",
    "ViewFreshness",
    "ViewRefreshResult",
    "ViewRegistry",
    "ViewRegistryError",
    "build_default_registry",
    "init_gold_storage",
]
