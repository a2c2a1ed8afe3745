"""Recompute functions for the engagement views.

Each function reads its inputs inside the caller's transaction and returns
the complete row set for its view. None of them write; the orchestrator owns
how rows are applied.
"""

from __future__ import annotations

import collections
import dataclasses as dc
import typing as typ

from sqlalchemy import select

from cairn.gold.storage import CreatorEngagementMetrics, PortfolioEngagementMetrics
from cairn.silver.aggregation import AggregateRow
from cairn.silver.catalog import (
    CREATOR_ENGAGEMENT_SET,
    CREATOR_ID_ATTRIBUTE,
    PORTFOLIO_ENGAGEMENT_SET,
    PORTFOLIO_TICKER_ATTRIBUTE,
    USER_ENGAGEMENT_SET,
)
from cairn.silver.storage import EntityAggregate

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from cairn.gold.registry import ViewRow
    from cairn.silver.metrics import MetricSetSpec

TOP_PORTFOLIOS_PER_CREATOR = 5


@dc.dataclass(frozen=True, slots=True)
class HiddenGemCriteria:
    """Thresholds for portfolios that attract viewers but few copiers."""

    min_unique_viewers: int = 10
    min_unique_copiers: int = 1
    max_unique_copiers: int = 100
    min_viewers_to_copiers_ratio: float = 5.0

    def __post_init__(self) -> None:
        """Require at least one copier so the ratio is defined."""
        if self.min_unique_copiers < 1:
            msg = "min_unique_copiers must be at least 1"
            raise ValueError(msg)


def percentage(numerator: int, denominator: int) -> float:
    """Return ``numerator / denominator`` as a percentage rounded to 2dp."""
    if denominator <= 0:
        return 0.0
    return round(numerator * 100.0 / denominator, 2)


async def load_aggregates(
    session: AsyncSession, metric_set: MetricSetSpec
) -> list[AggregateRow]:
    """Return every aggregate of ``metric_set`` with normalised metrics."""
    models = await session.scalars(
        select(EntityAggregate)
        .where(EntityAggregate.metric_set == metric_set.name)
        .order_by(EntityAggregate.entity_id)
    )
    return [AggregateRow.from_model(metric_set, model) for model in models.all()]


async def compute_portfolio_engagement_metrics(session: AsyncSession) -> list[ViewRow]:
    """Roll user-by-portfolio aggregates up to one row per portfolio."""
    totals: dict[tuple[str, str], collections.Counter[str]] = {}
    for row in await load_aggregates(session, PORTFOLIO_ENGAGEMENT_SET):
        key = (
            row.dimensions[PORTFOLIO_TICKER_ATTRIBUTE],
            row.dimensions[CREATOR_ID_ATTRIBUTE],
        )
        counter = totals.setdefault(key, collections.Counter())
        pdp_views = int(row.metrics["pdp_view_count"])
        counter["unique_viewers"] += int(pdp_views > 0)
        counter["unique_copiers"] += int(bool(row.metrics["did_copy"]))
        counter["total_pdp_views"] += pdp_views
        counter["total_copies"] += int(row.metrics["copy_count"])

    return [
        {
            "portfolio_ticker": ticker,
            "creator_id": creator_id,
            "unique_viewers": counter["unique_viewers"],
            "unique_copiers": counter["unique_copiers"],
            "total_pdp_views": counter["total_pdp_views"],
            "total_copies": counter["total_copies"],
            "conversion_rate_pct": percentage(
                counter["unique_copiers"], counter["unique_viewers"]
            ),
        }
        for (ticker, creator_id), counter in sorted(totals.items())
    ]


async def compute_creator_engagement_metrics(session: AsyncSession) -> list[ViewRow]:
    """Roll user-by-creator aggregates up to one row per creator."""
    totals: dict[str, collections.Counter[str]] = {}
    for row in await load_aggregates(session, CREATOR_ENGAGEMENT_SET):
        counter = totals.setdefault(
            row.dimensions[CREATOR_ID_ATTRIBUTE], collections.Counter()
        )
        profile_views = int(row.metrics["profile_view_count"])
        counter["unique_profile_viewers"] += int(profile_views > 0)
        counter["total_profile_views"] += profile_views
        counter["total_paywall_views"] += int(row.metrics["paywall_view_count"])
        counter["unique_subscribers"] += int(bool(row.metrics["did_subscribe"]))
        counter["total_subscriptions"] += int(row.metrics["subscription_count"])
        counter["total_copies"] += int(row.metrics["copy_count"])

    return [
        {
            "creator_id": creator_id,
            "unique_profile_viewers": counter["unique_profile_viewers"],
            "total_profile_views": counter["total_profile_views"],
            "total_paywall_views": counter["total_paywall_views"],
            "unique_subscribers": counter["unique_subscribers"],
            "total_subscriptions": counter["total_subscriptions"],
            "total_copies": counter["total_copies"],
            "subscription_conversion_rate_pct": percentage(
                counter["unique_subscribers"], counter["unique_profile_viewers"]
            ),
        }
        for creator_id, counter in sorted(totals.items())
    ]


async def compute_copy_engagement_summary(session: AsyncSession) -> list[ViewRow]:
    """Compare average engagement of users who copied with those who did not."""
    creator_rows = await load_aggregates(session, CREATOR_ENGAGEMENT_SET)
    portfolio_rows = await load_aggregates(session, PORTFOLIO_ENGAGEMENT_SET)
    creators_viewed = collections.Counter(
        row.subject_id
        for row in creator_rows
        if int(row.metrics["profile_view_count"]) > 0
    )
    portfolios_viewed = collections.Counter(
        row.subject_id
        for row in portfolio_rows
        if int(row.metrics["pdp_view_count"]) > 0
    )

    groups: dict[bool, list[tuple[int, int, int, int]]] = {}
    for row in await load_aggregates(session, USER_ENGAGEMENT_SET):
        metrics = row.metrics
        groups.setdefault(bool(metrics["did_copy"]), []).append(
            (
                int(metrics["regular_creator_profile_views"])
                + int(metrics["premium_creator_profile_views"]),
                int(metrics["regular_pdp_views"]) + int(metrics["premium_pdp_views"]),
                creators_viewed[row.subject_id],
                portfolios_viewed[row.subject_id],
            )
        )

    def _avg(values: list[tuple[int, int, int, int]], index: int) -> float:
        return round(sum(value[index] for value in values) / len(values), 2)

    return [
        {
            "did_copy": did_copy,
            "total_users": len(values),
            "avg_profile_views": _avg(values, 0),
            "avg_pdp_views": _avg(values, 1),
            "avg_unique_creators": _avg(values, 2),
            "avg_unique_portfolios": _avg(values, 3),
        }
        for did_copy, values in sorted(groups.items())
    ]


async def compute_creator_breakdown(session: AsyncSession) -> list[ViewRow]:
    """Combine per-portfolio and per-creator views into one row per creator."""
    portfolios = (await session.scalars(select(PortfolioEngagementMetrics))).all()
    creators = {
        row.creator_id: row
        for row in (await session.scalars(select(CreatorEngagementMetrics))).all()
    }

    portfolio_totals: dict[str, collections.Counter[str]] = {}
    for portfolio in portfolios:
        counter = portfolio_totals.setdefault(
            portfolio.creator_id, collections.Counter()
        )
        counter["portfolio_count"] += 1
        counter["total_pdp_views"] += portfolio.total_pdp_views
        counter["total_copies"] += portfolio.total_copies
        counter["unique_viewers"] += portfolio.unique_viewers
        counter["unique_copiers"] += portfolio.unique_copiers

    rows: list[ViewRow] = []
    for creator_id in sorted(set(portfolio_totals) | set(creators)):
        counter = portfolio_totals.get(creator_id, collections.Counter())
        creator = creators.get(creator_id)
        rows.append(
            {
                "creator_id": creator_id,
                "portfolio_count": counter["portfolio_count"],
                "total_pdp_views": counter["total_pdp_views"],
                "total_copies": counter["total_copies"],
                "total_profile_views": creator.total_profile_views if creator else 0,
                "total_subscriptions": creator.total_subscriptions if creator else 0,
                "copy_conversion_rate_pct": percentage(
                    counter["unique_copiers"], counter["unique_viewers"]
                ),
            }
        )
    return rows


async def compute_creator_top_portfolios(session: AsyncSession) -> list[ViewRow]:
    """Rank each creator's portfolios by copies, then views, then ticker."""
    by_creator: dict[str, list[PortfolioEngagementMetrics]] = {}
    for portfolio in (await session.scalars(select(PortfolioEngagementMetrics))).all():
        by_creator.setdefault(portfolio.creator_id, []).append(portfolio)

    rows: list[ViewRow] = []
    for creator_id in sorted(by_creator):
        ranked = sorted(
            by_creator[creator_id],
            key=lambda p: (-p.total_copies, -p.total_pdp_views, p.portfolio_ticker),
        )
        rows.extend(
            {
                "creator_id": creator_id,
                "rank": rank,
                "portfolio_ticker": portfolio.portfolio_ticker,
                "total_copies": portfolio.total_copies,
                "total_pdp_views": portfolio.total_pdp_views,
            }
            for rank, portfolio in enumerate(
                ranked[:TOP_PORTFOLIOS_PER_CREATOR], start=1
            )
        )
    return rows


def hidden_gems_computer(
    criteria: HiddenGemCriteria | None = None,
) -> typ.Callable[[AsyncSession], typ.Awaitable[list[ViewRow]]]:
    """Return a recompute function for hidden gems under ``criteria``."""
    criteria = criteria or HiddenGemCriteria()

    async def compute_hidden_gems(session: AsyncSession) -> list[ViewRow]:
        rows: list[ViewRow] = []
        stmt = select(PortfolioEngagementMetrics).order_by(
            PortfolioEngagementMetrics.portfolio_ticker,
            PortfolioEngagementMetrics.creator_id,
        )
        for portfolio in (await session.scalars(stmt)).all():
            viewers = portfolio.unique_viewers
            copiers = portfolio.unique_copiers
            if viewers < criteria.min_unique_viewers:
                continue
            if copiers < criteria.min_unique_copiers:
                continue
            if copiers > criteria.max_unique_copiers:
                continue
            ratio = round(viewers / copiers, 2)
            if ratio < criteria.min_viewers_to_copiers_ratio:
                continue
            rows.append(
                {
                    "portfolio_ticker": portfolio.portfolio_ticker,
                    "creator_id": portfolio.creator_id,
                    "unique_viewers": viewers,
                    "unique_copiers": copiers,
                    "total_pdp_views": portfolio.total_pdp_views,
                    "viewers_to_copiers_ratio": ratio,
                    "conversion_rate_pct": portfolio.conversion_rate_pct,
                }
            )
        return rows

    return compute_hidden_gems
