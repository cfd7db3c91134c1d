"""Admission-controlled replicator for robot scripts."""

from __future__ import annotations

import asyncio
import functools
import inspect
import itertools
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Union

from .reporter import InstanceReporter, LeveledLog, LogSettings
from .script import Script

logger = logging.getLogger(__name__)

TaskFactory = Callable[[int, "Scheduler"], Optional[Awaitable[Any]]]


def default_prefix() -> str:
    return f"_{int(time.time() * 1000)}_robot_"


@dataclass
class SchedulerConfig:
    interval: float = 0.25
    concurrency: int = 100
    prefix: str = field(default_factory=default_prefix)
    sustain: bool = False


class Scheduler:
    """Admit one instance per tick until ``concurrency`` instances are live.

    Instances leave through :meth:`dispose`.  Once the live set drains the
    completion event fires; with ``sustain`` set the scheduler instead keeps
    topping the population back up.
    """

    def __init__(
        self,
        tasks: Sequence[TaskFactory],
        config: Optional[SchedulerConfig] = None,
        log: Union[LeveledLog, LogSettings, None] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        if not tasks:
            raise ValueError("scheduler needs at least one task")
        self.tasks = list(tasks)
        self.config = config or SchedulerConfig()
        if self.config.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.log = log if isinstance(log, LeveledLog) else LeveledLog(log)
        self.rng = rng or random.Random()
        self.instances: Dict[int, Optional[asyncio.Task]] = {}
        self.max_concurrency = 0
        self.admitted = 0
        self._ids = itertools.count(1)
        self._tick_task: Optional[asyncio.Task] = None
        self._done = asyncio.Event()

    @property
    def concurrency(self) -> int:
        return len(self.instances)

    @property
    def running(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    @property
    def completed(self) -> bool:
        return self._done.is_set()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Begin ticking; requires a running event loop."""
        if self.running:
            return
        self._tick_task = asyncio.get_running_loop().create_task(self._tick_loop())

    async def _tick_loop(self) -> None:
        current = asyncio.current_task()
        # a cancel() issued from inside tick() clears the handle instead
        while self._tick_task is current and self.tick():
            if self._tick_task is not current:
                break
            await asyncio.sleep(self.config.interval)

    def tick(self) -> bool:
        """Admit one instance, or stop ticking when saturated."""
        if self.concurrency >= self.config.concurrency:
            self.cancel()
            return False
        self.populate()
        return True

    def populate(self) -> int:
        instance_id = next(self._ids)
        factory = self.rng.choice(self.tasks)
        self.instances[instance_id] = None
        self.admitted += 1
        self.max_concurrency = max(self.max_concurrency, self.concurrency)
        self._done.clear()
        try:
            result = factory(instance_id, self)
        except Exception as exc:
            logger.debug("task factory failed for instance %s", instance_id, exc_info=True)
            self.error(f"instance {instance_id} failed to start:", exc)
            self.dispose(instance_id)
            return instance_id
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            if instance_id in self.instances:
                self.instances[instance_id] = task
            task.add_done_callback(functools.partial(self._on_instance_done, instance_id))
        return instance_id

    def _on_instance_done(self, instance_id: int, task: asyncio.Future) -> None:
        if not task.cancelled() and task.exception() is not None:
            exc = task.exception()
            self.error(f"instance {instance_id} crashed:", f"{type(exc).__name__}: {exc}")
        self.dispose(instance_id)

    def cancel(self) -> None:
        """Stop ticking; live instances keep running."""
        task = self._tick_task
        self._tick_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def dispose(self, instance_id: int) -> bool:
        if instance_id not in self.instances:
            return False
        del self.instances[instance_id]
        if self.config.sustain:
            self.start()
        elif not self.instances:
            self.cancel()
            self._done.set()
        return True

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    async def wait(self) -> None:
        await self._done.wait()

    async def run(self) -> None:
        self.start()
        try:
            await self.wait()
        finally:
            self.cancel()

    async def shutdown(self) -> None:
        """Stop admission and cancel every live instance."""
        self.config.sustain = False
        self.cancel()
        tasks = [task for task in self.instances.values() if task is not None and not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.instances.clear()
        self._done.set()

    # ------------------------------------------------------------------
    # Leveled log
    # ------------------------------------------------------------------

    def verbose(self, *args: Any) -> None:
        self.log.verbose(*args)

    def info(self, *args: Any) -> None:
        self.log.info(*args)

    def warn(self, *args: Any) -> None:
        self.log.warn(*args)

    def error(self, *args: Any) -> None:
        self.log.error(*args)


def script_task(script: Script, prefix: Optional[str] = None) -> TaskFactory:
    """Task factory running ``script`` once per admitted instance."""

    def factory(instance_id: int, scheduler: Scheduler) -> Awaitable[Any]:
        name = f"{scheduler.config.prefix if prefix is None else prefix}{instance_id}"
        domain = f"<{name}>"
        scheduler.info(domain, "started")
        scheduler.warn("ccu:", f"{scheduler.concurrency}/{scheduler.max_concurrency}")
        reporter = InstanceReporter(scheduler, instance_id, domain)
        return script.run(reporter, {"id": instance_id, "name": name, "domain": domain})

    return factory


__all__ = ["Scheduler", "SchedulerConfig", "TaskFactory", "default_prefix", "script_task"]
