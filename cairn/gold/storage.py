"""Refresh log and derived view tables."""

from __future__ import annotations

import datetime as dt  # noqa: TC003
import enum
import typing as typ

from sqlalchemy import (
    BigInteger,
    Boolean,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from cairn.bronze.storage import Base, UTCDateTime
from cairn.common.time import utcnow

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


class RefreshStatus(enum.StrEnum):
    """Terminal status of one view within a refresh run."""

    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class RefreshLogEntry(Base):
    """Append-only record of one view refresh attempt."""

    __tablename__ = "refresh_log"
    __table_args__ = (
        Index("ix_refresh_log_view_run_at", "view_name", "run_at"),
        Index("ix_refresh_log_run_id", "run_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(36))
    view_name: Mapped[str] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(String(16))
    refresh_mode: Mapped[str | None] = mapped_column(String(16), default=None)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    rows_affected: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text(), default=None)
    started_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime(), default=None)
    run_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)


class PortfolioEngagementMetrics(Base):
    """Viewer and copier totals per portfolio."""

    __tablename__ = "portfolio_engagement_metrics"
    __table_args__ = (
        UniqueConstraint(
            "portfolio_ticker", "creator_id", name="uq_portfolio_engagement_key"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    portfolio_ticker: Mapped[str] = mapped_column(String(64))
    creator_id: Mapped[str] = mapped_column(String(255))
    unique_viewers: Mapped[int] = mapped_column(Integer, default=0)
    unique_copiers: Mapped[int] = mapped_column(Integer, default=0)
    total_pdp_views: Mapped[int] = mapped_column(BigInteger, default=0)
    total_copies: Mapped[int] = mapped_column(BigInteger, default=0)
    conversion_rate_pct: Mapped[float] = mapped_column(Float, default=0.0)


class CreatorEngagementMetrics(Base):
    """Profile, paywall and subscription totals per creator."""

    __tablename__ = "creator_engagement_metrics"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    creator_id: Mapped[str] = mapped_column(String(255), unique=True)
    unique_profile_viewers: Mapped[int] = mapped_column(Integer, default=0)
    total_profile_views: Mapped[int] = mapped_column(BigInteger, default=0)
    total_paywall_views: Mapped[int] = mapped_column(BigInteger, default=0)
    unique_subscribers: Mapped[int] = mapped_column(Integer, default=0)
    total_subscriptions: Mapped[int] = mapped_column(BigInteger, default=0)
    total_copies: Mapped[int] = mapped_column(BigInteger, default=0)
    subscription_conversion_rate_pct: Mapped[float] = mapped_column(
        Float, default=0.0
    )


class CreatorBreakdown(Base):
    """Per-creator roll-up across portfolio and profile engagement."""

    __tablename__ = "creator_breakdown"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    creator_id: Mapped[str] = mapped_column(String(255), unique=True)
    portfolio_count: Mapped[int] = mapped_column(Integer, default=0)
    total_pdp_views: Mapped[int] = mapped_column(BigInteger, default=0)
    total_copies: Mapped[int] = mapped_column(BigInteger, default=0)
    total_profile_views: Mapped[int] = mapped_column(BigInteger, default=0)
    total_subscriptions: Mapped[int] = mapped_column(BigInteger, default=0)
    copy_conversion_rate_pct: Mapped[float] = mapped_column(Float, default=0.0)


class CreatorTopPortfolio(Base):
    """A creator's most copied portfolios, ranked."""

    __tablename__ = "creator_top_portfolios"
    __table_args__ = (
        UniqueConstraint("creator_id", "rank", name="uq_creator_top_portfolio_rank"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    creator_id: Mapped[str] = mapped_column(String(255))
    rank: Mapped[int] = mapped_column(Integer)
    portfolio_ticker: Mapped[str] = mapped_column(String(64))
    total_copies: Mapped[int] = mapped_column(BigInteger, default=0)
    total_pdp_views: Mapped[int] = mapped_column(BigInteger, default=0)


class CopyEngagementSummary(Base):
    """Average engagement of copiers versus non-copiers."""

    __tablename__ = "copy_engagement_summary"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    did_copy: Mapped[bool] = mapped_column(Boolean, unique=True)
    total_users: Mapped[int] = mapped_column(Integer, default=0)
    avg_profile_views: Mapped[float] = mapped_column(Float, default=0.0)
    avg_pdp_views: Mapped[float] = mapped_column(Float, default=0.0)
    avg_unique_creators: Mapped[float] = mapped_column(Float, default=0.0)
    avg_unique_portfolios: Mapped[float] = mapped_column(Float, default=0.0)


class HiddenGemsPortfolio(Base):
    """Portfolios with many viewers but few copiers."""

    __tablename__ = "hidden_gems_portfolios"
    __table_args__ = (
        UniqueConstraint("portfolio_ticker", "creator_id", name="uq_hidden_gem_key"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    portfolio_ticker: Mapped[str] = mapped_column(String(64))
    creator_id: Mapped[str] = mapped_column(String(255))
    unique_viewers: Mapped[int] = mapped_column(Integer, default=0)
    unique_copiers: Mapped[int] = mapped_column(Integer, default=0)
    total_pdp_views: Mapped[int] = mapped_column(BigInteger, default=0)
    viewers_to_copiers_ratio: Mapped[float] = mapped_column(Float, default=0.0)
    conversion_rate_pct: Mapped[float] = mapped_column(Float, default=0.0)


async def init_gold_storage(engine: AsyncEngine) -> None:
    """Create refresh log and view tables registered with the shared Base."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
