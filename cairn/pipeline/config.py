"""Configuration for the ingestion and refresh pipeline.

Usage
-----
Create a configuration with defaults:

>>> config = PipelineConfig()
>>> config.rolling_window_days
60

Or load from environment variables:

>>> import os
>>> os.environ["CAIRN_ROLLING_WINDOW_DAYS"] = "30"
>>> PipelineConfig.from_env().rolling_window_days
30

"""

from __future__ import annotations

import dataclasses as dc
import datetime as dt
import os
from pathlib import Path

from cairn.bronze.services import DEFAULT_INSERT_BATCH_SIZE
from cairn.bronze.watermarks import FetchWindowPolicy
from cairn.silver.merger import DEFAULT_CHUNK_SIZE


@dc.dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Settings for one event source's pipeline.

    Attributes
    ----------
    source_name
        Name under which raw events and the watermark are stored.
    rolling_window_days
        Length of the aggregate window. Default 60.
    overlap_hours
        Span re-fetched before the watermark. Default 2.
    safety_lag_hours
        Most recent span never fetched. Default 24.
    backfill_days
        Reach of the first pass for a source; defaults to the window length.
    chunk_size
        Subjects per aggregation transaction. Default 10,000.
    insert_batch_size
        Raw events per insert transaction. Default 500.
    view_timeout_seconds
        Optional time budget per derived view refresh.
    divergence_runs
        Consecutive incremental runs without new events that indicate
        watermark divergence. Default 3.
    discriminator_attribute
        Event attribute that distinguishes otherwise identical events.
    events_path
        Newline-delimited export read by the file source, when set.

    """

    source_name: str = "mixpanel"
    rolling_window_days: int = 60
    overlap_hours: int = 2
    safety_lag_hours: int = 24
    backfill_days: int | None = None
    chunk_size: int = DEFAULT_CHUNK_SIZE
    insert_batch_size: int = DEFAULT_INSERT_BATCH_SIZE
    view_timeout_seconds: int | None = None
    divergence_runs: int = 3
    discriminator_attribute: str = "$insert_id"
    events_path: Path | None = None

    @property
    def rolling_window(self) -> dt.timedelta:
        """Return the aggregate window as a timedelta."""
        return dt.timedelta(days=self.rolling_window_days)

    @property
    def view_timeout(self) -> dt.timedelta | None:
        """Return the per-view time budget, if any."""
        if self.view_timeout_seconds is None:
            return None
        return dt.timedelta(seconds=self.view_timeout_seconds)

    def fetch_policy(self) -> FetchWindowPolicy:
        """Return the fetch window policy these settings describe."""
        backfill_days = self.backfill_days or self.rolling_window_days
        return FetchWindowPolicy(
            overlap=dt.timedelta(hours=self.overlap_hours),
            safety_lag=dt.timedelta(hours=self.safety_lag_hours),
            backfill_lookback=dt.timedelta(days=backfill_days),
        )

    @staticmethod
    def _parse_int(env_var: str, default: int, *, minimum: int = 1) -> int:
        """Read an integer env var no smaller than ``minimum``."""
        raw = os.environ.get(env_var, "")
        if not raw.strip():
            return default
        try:
            value = int(raw)
        except ValueError as exc:
            msg = f"{env_var} must be an integer, got: {raw!r}"
            raise ValueError(msg) from exc
        if value < minimum:
            msg = f"{env_var} must be at least {minimum}, got: {value}"
            raise ValueError(msg)
        return value

    @classmethod
    def _parse_optional_int(cls, env_var: str) -> int | None:
        if not os.environ.get(env_var, "").strip():
            return None
        return cls._parse_int(env_var, 0)

    @classmethod
    def from_env(cls) -> PipelineConfig:
        """Create configuration from ``CAIRN_*`` environment variables.

        Reads ``CAIRN_SOURCE_NAME``, ``CAIRN_ROLLING_WINDOW_DAYS``,
        ``CAIRN_OVERLAP_HOURS``, ``CAIRN_SAFETY_LAG_HOURS``,
        ``CAIRN_BACKFILL_DAYS``, ``CAIRN_CHUNK_SIZE``,
        ``CAIRN_INSERT_BATCH_SIZE``, ``CAIRN_VIEW_TIMEOUT_SECONDS``,
        ``CAIRN_DIVERGENCE_RUNS``, ``CAIRN_DISCRIMINATOR_ATTRIBUTE`` and
        ``CAIRN_EVENTS_PATH``.

        Raises
        ------
        ValueError
            If a numeric variable is not an integer or is out of range.

        """
        defaults = cls()
        source_name = os.environ.get("CAIRN_SOURCE_NAME", "").strip()
        discriminator = os.environ.get("CAIRN_DISCRIMINATOR_ATTRIBUTE", "").strip()
        raw_path = os.environ.get("CAIRN_EVENTS_PATH", "").strip()

        return cls(
            source_name=source_name or defaults.source_name,
            rolling_window_days=cls._parse_int(
                "CAIRN_ROLLING_WINDOW_DAYS", defaults.rolling_window_days
            ),
            overlap_hours=cls._parse_int(
                "CAIRN_OVERLAP_HOURS", defaults.overlap_hours, minimum=0
            ),
            safety_lag_hours=cls._parse_int(
                "CAIRN_SAFETY_LAG_HOURS", defaults.safety_lag_hours, minimum=0
            ),
            backfill_days=cls._parse_optional_int("CAIRN_BACKFILL_DAYS"),
            chunk_size=cls._parse_int("CAIRN_CHUNK_SIZE", defaults.chunk_size),
            insert_batch_size=cls._parse_int(
                "CAIRN_INSERT_BATCH_SIZE", defaults.insert_batch_size
            ),
            view_timeout_seconds=cls._parse_optional_int("CAIRN_VIEW_TIMEOUT_SECONDS"),
            divergence_runs=cls._parse_int(
                "CAIRN_DIVERGENCE_RUNS", defaults.divergence_runs
            ),
            discriminator_attribute=discriminator or defaults.discriminator_attribute,
            events_path=Path(raw_path) if raw_path else None,
        )
