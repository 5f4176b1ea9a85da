"""Helpers for fixed-size batch writes."""

from typing import Callable, Iterator, Sequence, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most ``size`` items."""
    if size < 1:
        raise ValueError("batch size must be at least 1")
    for start in range(0, len(items), size):
        yield items[start:start + size]


def upsert_in_batches(
    rows: Sequence[T],
    write: Callable[[list[T]], int],
    batch_size: int,
    label: str,
    key: Callable[[T], object] = repr,
) -> tuple[int, int]:
    """
    Write rows through ``write`` in fixed-size batches.

    A batch that raises is retried row by row once, so one bad row only
    costs itself. Errors are logged, never raised.

    Args:
        rows: Rows to persist
        write: Storage callable accepting a list of rows, returning rows written
        batch_size: Maximum rows per call
        label: Name used in log events (e.g. "daily_deltas")
        key: Extracts an identifier from a row for error logs

    Returns:
        Tuple of (rows written, rows errored)
    """
    written = 0
    errored = 0

    for batch in chunked(rows, batch_size):
        try:
            written += write(list(batch))
            continue
        except Exception as e:
            logger.warning(
                "batch_upsert_failed",
                table=label,
                batch_size=len(batch),
                error=str(e),
            )

        for row in batch:
            try:
                written += write([row])
            except Exception as e:
                errored += 1
                logger.error(
                    "row_upsert_failed",
                    table=label,
                    row=str(key(row)),
                    error=str(e),
                )

    return written, errored
