"""
BatchTransferExecutor - Streams rows from a source table into a target table.

The executor opens a cursor over the source table, maps every row through a
CompiledMapping and writes the results to the target table in batches, one
upsert per batch.

Responsibilities:
    - Map rows and record per-row failures without stopping the transfer
    - Flush batches, optionally several at a time
    - Retry transient flush failures with exponential backoff
    - Enforce a rows-per-second ceiling
    - Observe cancellation between batches
    - Report progress after every batch

A failed flush is never undone here. Earlier batches stay written and the
partial result travels with the raised error; restoring the target table
is the rollback manager's job.

Usage:
    >>> executor = BatchTransferExecutor(store, EngineConfig(batch_size=500))
    >>> job = TransferJob("customers", "customers_v2", mapping)
    >>> result = await executor.execute(job)
    >>> print(result.copied, result.skipped)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any

from tablemigrate.config import EngineConfig, RowErrorPolicy
from tablemigrate.exceptions import (
    BatchWriteError,
    MigrationError,
    RowErrorAbort,
    RowTransformError,
)
from tablemigrate.mapping.models import CompiledMapping
from tablemigrate.observability import Tracer, create_tracer
from tablemigrate.observability.attributes import (
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_SIZE,
    ATTR_RETRY_COUNT,
    ATTR_ROW_COUNT,
    ATTR_ROWS_COPIED,
    ATTR_ROWS_SKIPPED,
    ATTR_SOURCE_TABLE,
    ATTR_TARGET_TABLE,
)
from tablemigrate.rows.interface import TableStore
from tablemigrate.rows.query import MATCH_ALL, RowFilter
from tablemigrate.rows.row import Row
from tablemigrate.rows.schema import RowKey

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], bool]


@dataclass(frozen=True)
class RowError:
    """
    A source row that could not be mapped.

    Attributes:
        source_key: Key of the source row (None if it could not be read)
        message: What went wrong
        error_type: Exception class name
    """

    source_key: RowKey | None
    message: str
    error_type: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_key": list(self.source_key) if self.source_key is not None else None,
            "message": self.message,
            "error_type": self.error_type,
        }


@dataclass(frozen=True)
class TransferJob:
    """
    A compiled unit of transfer work, owned by one phase execution.

    Attributes:
        source_table: Table rows are read from
        target_table: Table rows are upserted into
        mapping: Compiled source-to-target mapping
        filter: Restricts which source rows are read
        batch_size: Rows per upsert
    """

    source_table: str
    target_table: str
    mapping: CompiledMapping
    filter: RowFilter = MATCH_ALL
    batch_size: int = 1000

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.mapping.source_shape.name != self.source_table:
            raise ValueError(
                f"Mapping reads {self.mapping.source_shape.name}, job reads {self.source_table}"
            )
        if self.mapping.target_shape.name != self.target_table:
            raise ValueError(
                f"Mapping writes {self.mapping.target_shape.name}, job writes {self.target_table}"
            )


@dataclass(frozen=True)
class TransferProgress:
    """
    Progress of a running transfer, emitted after every batch.

    Attributes:
        source_table: Table being read
        target_table: Table being written
        rows_read: Source rows read so far
        rows_copied: Rows written to the target so far
        rows_skipped: Rows skipped because of row errors
        batches_written: Batches flushed so far
        rows_per_second: Current copy rate
        is_complete: Whether the transfer has finished
    """

    source_table: str
    target_table: str
    rows_read: int
    rows_copied: int
    rows_skipped: int
    batches_written: int
    rows_per_second: float
    is_complete: bool


@dataclass
class TransferResult:
    """
    Outcome of a transfer.

    Attributes:
        copied: Rows written to the target table
        skipped: Source rows skipped because of row errors
        errors: One record per skipped row
        batches_written: Batches flushed successfully
        cancelled: Whether the transfer stopped because of cancellation
        duration_ms: Wall-clock duration
    """

    copied: int = 0
    skipped: int = 0
    errors: list[RowError] = field(default_factory=list)
    batches_written: int = 0
    cancelled: bool = False
    duration_ms: float = 0.0

    @property
    def rows_read(self) -> int:
        return self.copied + self.skipped

    def to_dict(self) -> dict[str, Any]:
        return {
            "copied": self.copied,
            "skipped": self.skipped,
            "errors": [error.to_dict() for error in self.errors],
            "batches_written": self.batches_written,
            "cancelled": self.cancelled,
            "duration_ms": self.duration_ms,
        }


class RateLimiter:
    """
    Token bucket rate limiter for rows per second.

    Tokens refill continuously based on elapsed time, up to one second's
    worth. A rate of 0 disables limiting.
    """

    def __init__(self, max_rate: int) -> None:
        """
        Initialize rate limiter.

        Args:
            max_rate: Maximum rows per second (0 for unlimited).
        """
        self._max_rate = max_rate
        self._tokens = float(max_rate)
        self._last_update = time.monotonic()
        self._lock = asyncio.Lock()

    @property
    def max_rate(self) -> int:
        return self._max_rate

    async def wait(self, count: int) -> None:
        """Wait until ``count`` rows may be processed."""
        if self._max_rate <= 0:
            return

        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_update
            self._last_update = now

            self._tokens = min(self._max_rate, self._tokens + elapsed * self._max_rate)

            if count > self._tokens:
                wait_time = (count - self._tokens) / self._max_rate
                await asyncio.sleep(wait_time)
                self._tokens = 0
                self._last_update = time.monotonic()
            else:
                self._tokens -= count


class _BatchWriter:
    """
    Flushes batches for one transfer, sequentially or through a semaphore.

    Failures of concurrent flushes are surfaced on the next submit or on
    drain, lowest batch number first, once every in-flight flush has finished.
    """

    def __init__(
        self,
        executor: BatchTransferExecutor,
        job: TransferJob,
        result: TransferResult,
        on_written: Callable[[], None],
    ) -> None:
        self._executor = executor
        self._job = job
        self._result = result
        self._on_written = on_written
        self._limit = executor.config.max_concurrent_batches
        self._semaphore = asyncio.Semaphore(self._limit)
        self._tasks: set[asyncio.Task[None]] = set()
        self._failures: list[BatchWriteError] = []
        self._batch_number = 0

    async def submit(self, rows: list[Row]) -> None:
        self._batch_number += 1
        if self._limit == 1:
            await self._write(self._batch_number, rows)
            return

        if self._failures:
            await self.drain()
        await self._semaphore.acquire()
        if self._failures:
            self._semaphore.release()
            await self.drain()
        task = asyncio.create_task(self._write_and_release(self._batch_number, rows))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for in-flight flushes, then raise the first failure if any."""
        await self.settle()
        self._raise_failure()

    async def settle(self) -> None:
        """Wait for in-flight flushes without raising their failures."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _write_and_release(self, batch_number: int, rows: list[Row]) -> None:
        try:
            await self._write(batch_number, rows)
        except BatchWriteError as e:
            self._failures.append(e)
        finally:
            self._semaphore.release()

    async def _write(self, batch_number: int, rows: list[Row]) -> None:
        try:
            await self._executor._flush(self._job, batch_number, rows)
        except Exception as e:
            logger.error(
                "Batch %d (%d rows) to %s failed: %s",
                batch_number,
                len(rows),
                self._job.target_table,
                e,
            )
            raise BatchWriteError(batch_number, str(e), partial_result=self._result) from e
        self._result.copied += len(rows)
        self._result.batches_written += 1
        self._on_written()

    def _raise_failure(self) -> None:
        if self._failures:
            raise min(self._failures, key=lambda failure: failure.batch_number)


class BatchTransferExecutor:
    """
    Applies a TransferJob to a TableStore in batches.

    Example:
        >>> executor = BatchTransferExecutor(store)
        >>> result = await executor.execute(
        ...     job,
        ...     row_error_policy=RowErrorPolicy.ABORT,
        ...     cancel_check=ctx.is_cancelled,
        ...     progress_callback=lambda p: print(p.rows_copied),
        ... )
    """

    def __init__(
        self,
        store: TableStore,
        config: EngineConfig | None = None,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the executor.

        Args:
            store: Store holding both the source and the target table
            config: Engine configuration (defaults to EngineConfig())
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing.
                          Ignored if tracer is explicitly provided.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._store = store
        self._config = config or EngineConfig()

    @property
    def config(self) -> EngineConfig:
        return self._config

    async def execute(
        self,
        job: TransferJob,
        *,
        row_error_policy: RowErrorPolicy | None = None,
        cancel_check: CancelCheck | None = None,
        progress_callback: Callable[[TransferProgress], None] | None = None,
    ) -> TransferResult:
        """
        Run a transfer job.

        Args:
            job: The job to run
            row_error_policy: Overrides the configured row error policy
            cancel_check: Polled between batches; returning True stops the transfer
            progress_callback: Called with a TransferProgress after every batch

        Returns:
            Counts of copied and skipped rows, with one RowError per skipped row

        Raises:
            RowErrorAbort: A row failed under the ABORT policy, or the row
                error limit was exceeded
            BatchWriteError: A batch could not be flushed
        """
        policy = row_error_policy or self._config.row_error_policy
        max_row_errors = self._config.max_row_errors

        with self._tracer.span(
            "tablemigrate.transfer.execute",
            {
                ATTR_SOURCE_TABLE: job.source_table,
                ATTR_TARGET_TABLE: job.target_table,
                ATTR_BATCH_SIZE: job.batch_size,
            },
        ) as span:
            start_time = time.monotonic()
            result = TransferResult()
            rate_limiter = RateLimiter(self._config.max_rows_per_second)
            rows_read = 0

            def report(is_complete: bool = False) -> None:
                if progress_callback is None:
                    return
                elapsed = time.monotonic() - start_time
                progress_callback(
                    TransferProgress(
                        source_table=job.source_table,
                        target_table=job.target_table,
                        rows_read=rows_read,
                        rows_copied=result.copied,
                        rows_skipped=result.skipped,
                        batches_written=result.batches_written,
                        rows_per_second=result.copied / elapsed if elapsed > 0 else 0.0,
                        is_complete=is_complete,
                    )
                )

            writer = _BatchWriter(self, job, result, report)
            batch: list[Row] = []

            logger.info(
                "Starting transfer %s -> %s (batch size %d, filter: %s)",
                job.source_table,
                job.target_table,
                job.batch_size,
                job.filter,
            )

            # No flush may still be running once execute returns or raises.
            try:
                async with aclosing(
                    self._store.find(job.source_table, job.filter)
                ) as source_rows:
                    async for source_row in source_rows:
                        rows_read += 1
                        try:
                            batch.append(job.mapping.apply(source_row))
                        except RowTransformError as e:
                            error = self._record_row_error(job, source_row, e, result)
                            if policy is RowErrorPolicy.ABORT:
                                await writer.drain()
                                raise RowErrorAbort(
                                    f"Row {error.source_key!r} failed under ABORT policy: {e}",
                                    partial_result=result,
                                ) from e
                            if max_row_errors and len(result.errors) > max_row_errors:
                                await writer.drain()
                                raise RowErrorAbort(
                                    f"Row error limit of {max_row_errors} exceeded",
                                    partial_result=result,
                                ) from e
                            continue

                        if len(batch) >= job.batch_size:
                            await rate_limiter.wait(len(batch))
                            await writer.submit(batch)
                            batch = []
                            if cancel_check is not None and cancel_check():
                                result.cancelled = True
                                break

                if batch and not result.cancelled:
                    await rate_limiter.wait(len(batch))
                    await writer.submit(batch)
                await writer.drain()
            finally:
                await writer.settle()

            result.duration_ms = (time.monotonic() - start_time) * 1000
            report(is_complete=not result.cancelled)

            if span is not None:
                span.set_attribute(ATTR_ROWS_COPIED, result.copied)
                span.set_attribute(ATTR_ROWS_SKIPPED, result.skipped)

            if result.cancelled:
                logger.info(
                    "Transfer %s -> %s cancelled after %d batch(es), %d row(s) copied",
                    job.source_table,
                    job.target_table,
                    result.batches_written,
                    result.copied,
                )
            else:
                logger.info(
                    "Transfer %s -> %s completed: %d copied, %d skipped in %.1fms",
                    job.source_table,
                    job.target_table,
                    result.copied,
                    result.skipped,
                    result.duration_ms,
                )
            return result

    async def _flush(self, job: TransferJob, batch_number: int, rows: list[Row]) -> None:
        """Upsert one batch, retrying transient store errors."""
        retry = self._config.flush_retry
        attempt = 0
        while True:
            try:
                with self._tracer.span(
                    "tablemigrate.transfer.flush",
                    {
                        ATTR_TARGET_TABLE: job.target_table,
                        ATTR_BATCH_NUMBER: batch_number,
                        ATTR_ROW_COUNT: len(rows),
                        ATTR_RETRY_COUNT: attempt,
                    },
                ):
                    await self._store.upsert(job.target_table, rows)
                logger.debug(
                    "Flushed batch %d (%d rows) to %s",
                    batch_number,
                    len(rows),
                    job.target_table,
                )
                return
            except MigrationError as e:
                attempt += 1
                if not e.recoverability.should_retry or attempt >= retry.max_attempts:
                    raise
                delay_ms = retry.get_delay_ms(attempt - 1)
                logger.warning(
                    "Batch %d flush failed (attempt %d/%d), retrying in %.0fms: %s",
                    batch_number,
                    attempt,
                    retry.max_attempts,
                    delay_ms,
                    e,
                )
                await asyncio.sleep(delay_ms / 1000)

    @staticmethod
    def _record_row_error(
        job: TransferJob,
        source_row: Row,
        error: RowTransformError,
        result: TransferResult,
    ) -> RowError:
        try:
            source_key: RowKey | None = job.mapping.source_shape.key_of(source_row)
        except KeyError:
            source_key = None
        row_error = RowError(
            source_key=source_key,
            message=str(error),
            error_type=type(error).__name__,
        )
        result.errors.append(row_error)
        result.skipped += 1
        logger.warning(
            "Skipping row %r of %s: %s",
            source_key,
            job.source_table,
            error,
        )
        return row_error


__all__ = [
    "RowError",
    "TransferJob",
    "TransferProgress",
    "TransferResult",
    "RateLimiter",
    "BatchTransferExecutor",
]
