"""
Working table and execution budget shared by the engine and join executor.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from govquery.analytics.errors import ExecutionCancelled
from govquery.analytics.tabular import ColumnSchema, TabularType


@dataclass
class Frame:
    """Intermediate result flowing between pipeline steps."""

    columns: list[ColumnSchema]
    rows: list[tuple] = field(default_factory=list)

    def index(self, name: str) -> Optional[int]:
        lowered = name.lower()
        for i, c in enumerate(self.columns):
            if c.name.lower() == lowered:
                return i
        return None

    @property
    def schema(self) -> dict[str, TabularType]:
        return {c.name: c.tabular_type for c in self.columns}


class ExecutionBudget:
    """
    Time and cancellation budget checked periodically during scans.

    ``tick`` is cheap; the clock and cancel flag are only consulted every
    ``check_every`` rows.
    """

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        check_every: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.clock = clock
        self.timeout_seconds = timeout_seconds
        self.deadline = clock() + timeout_seconds if timeout_seconds else None
        self.check_every = max(1, check_every)
        self._cancelled = threading.Event()
        self._count = 0

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def tick(self, rows: int = 1):
        self._count += rows
        if self._count >= self.check_every:
            self._count = 0
            self.check()

    def check(self):
        if self._cancelled.is_set():
            raise ExecutionCancelled("Pipeline execution was cancelled.")
        if self.deadline is not None and self.clock() > self.deadline:
            raise ExecutionCancelled(
                f"Pipeline execution exceeded its time budget of "
                f"{self.timeout_seconds}s.",
                {"timeoutSeconds": self.timeout_seconds},
            )
