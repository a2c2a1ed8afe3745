"""Chunked, independently committed merges over sorted entity keys."""

from __future__ import annotations

import collections.abc as cabc
import dataclasses as dc
import enum
import logging
import typing as typ

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 10_000
# Bound for IN (...) lists so statements stay under driver parameter limits.
IN_CLAUSE_BATCH = 1_000

type ChunkWork = cabc.Callable[[AsyncSession, list[str]], cabc.Awaitable[int]]


class MergeEventType(enum.StrEnum):
    """Structured log event types for chunked merges."""

    MERGE_STARTED = "aggregation.merge.started"
    CHUNK_COMMITTED = "aggregation.chunk.committed"
    CHUNK_FAILED = "aggregation.chunk.failed"
    MERGE_COMPLETED = "aggregation.merge.completed"
    CONTRIBUTION_REJECTED = "aggregation.contribution.rejected"


@dc.dataclass(slots=True)
class MergeProgress:
    """Running totals for a merge, updated as each chunk commits."""

    chunks_total: int = 0
    chunks_committed: int = 0
    keys_processed: int = 0
    rows_written: int = 0


def in_batches[T](
    items: cabc.Sequence[T], size: int = IN_CLAUSE_BATCH
) -> cabc.Iterator[list[T]]:
    """Yield consecutive slices of ``items`` no longer than ``size``."""
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


class ChunkedUpsertMerger:
    """Apply work to sorted keys in fixed-size chunks, one transaction each.

    A failing chunk rolls back alone: chunks before it stay committed and the
    error propagates to the caller.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        """Bind the merger to a session factory and chunk size."""
        if chunk_size < 1:
            msg = f"chunk_size must be positive, got: {chunk_size}"
            raise ValueError(msg)
        self._session_factory = session_factory
        self._chunk_size = chunk_size

    @property
    def chunk_size(self) -> int:
        """Return the number of keys per chunk."""
        return self._chunk_size

    def plan(self, keys: cabc.Iterable[str]) -> list[list[str]]:
        """Return de-duplicated, sorted keys split into chunks."""
        ordered = sorted(set(keys))
        return list(in_batches(ordered, self._chunk_size))

    async def run(
        self,
        keys: cabc.Iterable[str],
        work: ChunkWork,
        *,
        label: str,
        progress: MergeProgress | None = None,
    ) -> MergeProgress:
        """Run ``work`` for every chunk of ``keys`` and return the totals.

        ``work`` receives an open transaction and the chunk's keys and returns
        the number of rows it wrote. ``progress`` is updated in place so the
        caller can still read the committed totals when a chunk raises.
        """
        chunks = self.plan(keys)
        progress = progress if progress is not None else MergeProgress()
        progress.chunks_total = len(chunks)
        logger.info(
            "[%s] label=%s keys=%d chunks=%d chunk_size=%d",
            MergeEventType.MERGE_STARTED,
            label,
            sum(len(chunk) for chunk in chunks),
            len(chunks),
            self._chunk_size,
        )

        for index, chunk in enumerate(chunks, start=1):
            try:
                async with self._session_factory() as session, session.begin():
                    written = await work(session, chunk)
            except Exception as exc:
                logger.exception(
                    "[%s] label=%s chunk=%d/%d first_key=%s error_type=%s",
                    MergeEventType.CHUNK_FAILED,
                    label,
                    index,
                    len(chunks),
                    chunk[0],
                    type(exc).__name__,
                )
                raise
            progress.chunks_committed += 1
            progress.keys_processed += len(chunk)
            progress.rows_written += written
            logger.info(
                "[%s] label=%s chunk=%d/%d keys=%d rows_written=%d total_rows=%d",
                MergeEventType.CHUNK_COMMITTED,
                label,
                index,
                len(chunks),
                len(chunk),
                written,
                progress.rows_written,
            )

        logger.info(
            "[%s] label=%s chunks_committed=%d rows_written=%d",
            MergeEventType.MERGE_COMPLETED,
            label,
            progress.chunks_committed,
            progress.rows_written,
        )
        return progress
