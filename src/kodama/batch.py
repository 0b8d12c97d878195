"""Batch operations over many snapshot ids.

Ids are processed in fixed-size groups of cooperative asyncio tasks. Each
task runs the blocking filesystem call in a worker thread; the next group
starts only after the current one has finished, which bounds how many lock
files are contended at once. One bad id never aborts the batch.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable

from .errors import KodamaError, TrashItemNotFoundError

logger = logging.getLogger(__name__)

BATCH_SIZE = 5


@dataclass
class BatchResult:
    """Aggregate outcome of a batch operation."""

    succeeded: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)
    not_found: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.succeeded)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.not_found

    def to_dict(self) -> dict:
        return {
            "succeeded": list(self.succeeded),
            "failed": [{"id": item_id, "error": message} for item_id, message in self.failed],
            "not_found": list(self.not_found),
        }


def chunked(items: list[str], size: int) -> Iterable[list[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


async def run_batch(
    ids: list[str],
    operation: Callable[[str], str],
    batch_size: int = BATCH_SIZE,
) -> BatchResult:
    """Apply ``operation`` to every id, ``batch_size`` at a time.

    ``operation`` returns the resolved id on success. TrashItemNotFoundError
    is recorded as not found; any other KodamaError or OSError as a failure.
    """
    result = BatchResult()

    async def _one(item_id: str) -> None:
        try:
            resolved = await asyncio.to_thread(operation, item_id)
        except TrashItemNotFoundError:
            result.not_found.append(item_id)
        except (KodamaError, OSError) as e:
            logger.debug(f"Batch item {item_id} failed: {e}")
            result.failed.append((item_id, str(e)))
        else:
            result.succeeded.append(resolved)

    for group in chunked(list(ids), max(1, batch_size)):
        await asyncio.gather(*(_one(item_id) for item_id in group))

    return result


def run_batch_sync(
    ids: list[str],
    operation: Callable[[str], str],
    batch_size: int = BATCH_SIZE,
) -> BatchResult:
    """Entry point for synchronous callers such as the CLI."""
    return asyncio.run(run_batch(ids, operation, batch_size))
