from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import logging
import math
import random
import threading
import time
from typing import Any, Callable

from rho_bot.models import FutureInfo, MarketInfo
from rho_bot.risk import PolicyAbort

LOGGER = logging.getLogger("rho_bot")

Cycle = Callable[[MarketInfo, FutureInfo], Any]
TimerFactory = Callable[..., Any]


class TaskState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SCHEDULED = "scheduled"


@dataclass
class ScheduledTask:
    future_id: str
    market: MarketInfo
    future: FutureInfo
    state: TaskState = TaskState.IDLE
    timer: Any = None
    generation: int = 0
    next_fire_ts: float = 0.0
    cycles: int = 0


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def delay_bounds(avg_interval_seconds: float) -> tuple[int, int]:
    return round_half_up(avg_interval_seconds / 2), round_half_up(avg_interval_seconds * 2)


class InstrumentScheduler:
    """One self-rescheduling timer per future id.

    A firing runs the cycle, then installs its successor; the table is only
    touched under the lock, so cancel-and-replace is atomic per future id.
    """

    def __init__(
        self,
        cycle: Cycle,
        avg_interval_seconds: float,
        rng: random.Random | None = None,
        timer_factory: TimerFactory = threading.Timer,
        clock: Callable[[], float] = time.time,
        name: str = "",
    ) -> None:
        self.cycle = cycle
        self.avg_interval_seconds = float(avg_interval_seconds)
        self.rng = rng or random.Random()
        self.timer_factory = timer_factory
        self.clock = clock
        self.name = name
        self._tasks: dict[str, ScheduledTask] = {}
        self._lock = threading.Lock()
        self._generation = 0
        self._closed = False

    def next_delay(self) -> float:
        low, high = delay_bounds(self.avg_interval_seconds)
        return self.rng.uniform(low, high)

    def is_tracked(self, future_id: str) -> bool:
        with self._lock:
            return future_id in self._tasks

    def tasks(self) -> dict[str, ScheduledTask]:
        with self._lock:
            return dict(self._tasks)

    def live_timer_count(self) -> int:
        with self._lock:
            return sum(1 for task in self._tasks.values() if task.timer is not None)

    def schedule(self, market: MarketInfo, future: FutureInfo, delay: float = 0.0) -> ScheduledTask | None:
        with self._lock:
            if self._closed:
                return None
            task = self._tasks.get(future.id)
            if task is not None and task.state == TaskState.RUNNING:
                # The running cycle installs its own successor when it finishes.
                task.market, task.future = market, future
                return task
            return self._install(market, future, delay)

    def _install(self, market: MarketInfo, future: FutureInfo, delay: float) -> ScheduledTask:
        previous = self._tasks.get(future.id)
        if previous is not None and previous.timer is not None:
            previous.timer.cancel()

        self._generation += 1
        generation = self._generation
        timer = self.timer_factory(delay, self._fire, args=(future.id, generation))
        timer.daemon = True
        task = ScheduledTask(
            future_id=future.id,
            market=market,
            future=future,
            state=TaskState.SCHEDULED,
            timer=timer,
            generation=generation,
            next_fire_ts=self.clock() + delay,
            cycles=previous.cycles if previous is not None else 0,
        )
        self._tasks[future.id] = task
        timer.start()
        return task

    def _fire(self, future_id: str, generation: int) -> None:
        with self._lock:
            task = self._tasks.get(future_id)
            if self._closed or task is None or task.generation != generation:
                return
            task.state = TaskState.RUNNING
            task.timer = None
            market, future = task.market, task.future

        try:
            self.cycle(market, future)
        except PolicyAbort as exc:
            LOGGER.warning("trade_aborted account=%s future=%s reason=%s", self.name, future_id, exc)
        except Exception:
            LOGGER.exception("Trade failed! account=%s future=%s", self.name, future_id)

        delay = self.next_delay()
        with self._lock:
            if self._closed or self._tasks.get(future_id) is not task:
                task.state = TaskState.IDLE
                return
            task.cycles += 1
            installed = self._install(task.market, task.future, delay)
        LOGGER.info(
            "next_trade account=%s future=%s at=%s in=%.0fs",
            self.name,
            future_id,
            datetime.fromtimestamp(installed.next_fire_ts).strftime("%H:%M:%S"),
            installed.next_fire_ts - self.clock(),
        )

    def cancel(self, future_id: str) -> bool:
        """Stop tracking a future; a cycle already running finishes without a successor."""
        with self._lock:
            task = self._tasks.pop(future_id, None)
            if task is None:
                return False
            if task.timer is not None:
                task.timer.cancel()
                task.timer = None
            if task.state != TaskState.RUNNING:
                task.state = TaskState.IDLE
        LOGGER.info("task_cancelled account=%s future=%s", self.name, future_id)
        return True

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            for task in self._tasks.values():
                if task.timer is not None:
                    task.timer.cancel()
                    task.timer = None
                task.state = TaskState.IDLE
