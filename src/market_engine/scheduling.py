"""Clock-driven periodic task runner with injectable time and sleep."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from .exceptions import EngineError
from .redaction import sanitize_text


@dataclass
class PeriodicTask:
    """A callable that should run every ``interval_seconds``."""

    name: str
    interval_seconds: float
    fn: Callable[[], Any]
    next_run_at: datetime | None = None
    runs: int = 0
    failures: int = 0
    last_result: Any = field(default=None, repr=False)

    def is_due(self, now: datetime) -> bool:
        return self.next_run_at is None or now >= self.next_run_at


class Scheduler:
    """Run due tasks on each ``tick``; no threads or global timers."""

    def __init__(
        self,
        tasks: list[PeriodicTask],
        logger: logging.Logger,
        now_provider: Callable[[], datetime] | None = None,
        sleep_fn: Callable[[float], None] | None = None,
        on_tick: Callable[[list[str]], None] | None = None,
    ) -> None:
        if not tasks:
            raise ValueError("Scheduler requires at least one task.")
        for task in tasks:
            if task.interval_seconds <= 0:
                raise ValueError(f"Task {task.name} interval must be > 0.")
        self.tasks = tasks
        self.logger = logger
        self._now_provider = now_provider or (lambda: datetime.now(UTC))
        self._sleep = sleep_fn or time.sleep
        self._on_tick = on_tick

    def tick(self) -> list[str]:
        """Run every due task once and return the names that ran."""
        ran: list[str] = []
        for task in self.tasks:
            now = self._now()
            if not task.is_due(now):
                continue
            task.next_run_at = now + timedelta(seconds=task.interval_seconds)
            task.runs += 1
            ran.append(task.name)
            try:
                task.last_result = task.fn()
            except EngineError as exc:
                task.failures += 1
                self.logger.error(
                    "Scheduled task failed task=%s error=%s",
                    task.name,
                    sanitize_text(str(exc)),
                )
        if ran and self._on_tick is not None:
            try:
                self._on_tick(ran)
            except EngineError as exc:
                self.logger.error(
                    "Post-tick hook failed tasks=%s error=%s",
                    ",".join(ran),
                    sanitize_text(str(exc)),
                )
        return ran

    def seconds_until_next(self) -> float:
        now = self._now()
        waits = [
            0.0 if task.next_run_at is None else (task.next_run_at - now).total_seconds()
            for task in self.tasks
        ]
        return max(0.0, min(waits))

    def run_forever(self, max_ticks: int | None = None) -> int:
        """Tick until ``max_ticks`` (if given) and return the number of ticks."""
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            self.tick()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            delay = self.seconds_until_next()
            if delay > 0:
                self._sleep(delay)
        return ticks

    def _now(self) -> datetime:
        current = self._now_provider()
        return current.astimezone(UTC) if current.tzinfo else current.replace(tzinfo=UTC)
