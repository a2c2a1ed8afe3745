"""Dependency graph of the engagement views."""

from __future__ import annotations

from cairn.gold import views
from cairn.gold.registry import DerivedViewNode, RefreshMode, ViewRegistry
from cairn.gold.storage import (
    CopyEngagementSummary,
    CreatorBreakdown,
    CreatorEngagementMetrics,
    CreatorTopPortfolio,
    HiddenGemsPortfolio,
    PortfolioEngagementMetrics,
)
from cairn.silver.catalog import (
    CREATOR_ENGAGEMENT,
    PORTFOLIO_ENGAGEMENT,
    USER_ENGAGEMENT,
)

PORTFOLIO_ENGAGEMENT_METRICS = "portfolio_engagement_metrics"
CREATOR_ENGAGEMENT_METRICS = "creator_engagement_metrics"
COPY_ENGAGEMENT_SUMMARY = "copy_engagement_summary"
CREATOR_BREAKDOWN = "creator_breakdown"
CREATOR_TOP_PORTFOLIOS = "creator_top_portfolios"
HIDDEN_GEMS_PORTFOLIOS = "hidden_gems_portfolios"

AGGREGATE_SOURCES = (USER_ENGAGEMENT, PORTFOLIO_ENGAGEMENT, CREATOR_ENGAGEMENT)


def build_default_registry(
    hidden_gems: views.HiddenGemCriteria | None = None,
) -> ViewRegistry:
    """Return the validated registry of engagement views."""
    nodes = (
        DerivedViewNode(
            name=PORTFOLIO_ENGAGEMENT_METRICS,
            dependencies=frozenset({PORTFOLIO_ENGAGEMENT}),
            compute=views.compute_portfolio_engagement_metrics,
            table=PortfolioEngagementMetrics,
            unique_key=("portfolio_ticker", "creator_id"),
        ),
        DerivedViewNode(
            name=CREATOR_ENGAGEMENT_METRICS,
            dependencies=frozenset({CREATOR_ENGAGEMENT}),
            compute=views.compute_creator_engagement_metrics,
            table=CreatorEngagementMetrics,
            unique_key=("creator_id",),
        ),
        DerivedViewNode(
            name=COPY_ENGAGEMENT_SUMMARY,
            dependencies=frozenset(AGGREGATE_SOURCES),
            compute=views.compute_copy_engagement_summary,
            table=CopyEngagementSummary,
            unique_key=("did_copy",),
        ),
        DerivedViewNode(
            name=CREATOR_BREAKDOWN,
            dependencies=frozenset(
                {PORTFOLIO_ENGAGEMENT_METRICS, CREATOR_ENGAGEMENT_METRICS}
            ),
            compute=views.compute_creator_breakdown,
            table=CreatorBreakdown,
            unique_key=("creator_id",),
        ),
        DerivedViewNode(
            name=CREATOR_TOP_PORTFOLIOS,
            dependencies=frozenset({PORTFOLIO_ENGAGEMENT_METRICS}),
            compute=views.compute_creator_top_portfolios,
            table=CreatorTopPortfolio,
            refresh_mode=RefreshMode.EXCLUSIVE,
        ),
        DerivedViewNode(
            name=HIDDEN_GEMS_PORTFOLIOS,
            dependencies=frozenset({PORTFOLIO_ENGAGEMENT_METRICS}),
            compute=views.hidden_gems_computer(hidden_gems),
            table=HiddenGemsPortfolio,
            unique_key=("portfolio_ticker", "creator_id"),
        ),
    )
    return ViewRegistry(nodes, sources=AGGREGATE_SOURCES)
