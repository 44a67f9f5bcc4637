"""
Auto-continuation scheduler: keeps submitting one spin per tick while the
counter reported by the authority is positive and auto mode stays engaged.

`submit` is an async callable that places one spin and returns only once that
spin is terminal and the authoritative counter has been refreshed through
`update_counter`. The scheduler never overlaps two submissions.
"""
import asyncio
from typing import Any, Awaitable, Callable, Optional

from spin_bridge.errors import SpinBridgeError
from spin_bridge.logging_config import get_logger

logger = get_logger(__name__)


class AutoSpinScheduler:
    def __init__(
        self,
        submit: Callable[[], Awaitable[Any]],
        interval: float,
        on_stop: Optional[Callable[[str], None]] = None,
        name: str = "auto-spin",
    ):
        self._submit = submit
        self.interval = interval
        self.on_stop = on_stop
        self.name = name
        self.counter = 0
        self.optimistic_counter = 0
        self.auto_mode = False
        self.busy = False
        self.submitted = 0
        self.stop_reason: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def precondition(self) -> bool:
        return self.auto_mode and self.counter > 0

    def update_counter(self, value: int) -> None:
        """Apply the authoritative counter; it replaces the optimistic copy."""
        if value != self.optimistic_counter:
            logger.debug(
                "Counter corrected: scheduler=%s authoritative=%s optimistic=%s",
                self.name,
                value,
                self.optimistic_counter,
            )
        self.counter = max(0, value)
        self.optimistic_counter = self.counter

    def start(self, counter: Optional[int] = None) -> bool:
        if counter is not None:
            self.update_counter(counter)
        if self.running:
            return False
        self.auto_mode = True
        self.stop_reason = None
        self._task = asyncio.create_task(self._run())
        logger.info("Scheduler started: scheduler=%s counter=%s", self.name, self.counter)
        return True

    def stop(self, reason: str = "stopped") -> None:
        was_engaged = self.auto_mode or self.running
        self.auto_mode = False
        task = self._task
        # an in-flight submission is never cancelled; the loop exits once it resolves
        if task is not None and not task.done() and not self.busy and task is not asyncio.current_task():
            task.cancel()
        if not was_engaged:
            return
        self.stop_reason = reason
        logger.info("Scheduler stopped: scheduler=%s reason=%s submitted=%s", self.name, reason, self.submitted)
        if self.on_stop is not None:
            self.on_stop(reason)

    async def tick(self) -> bool:
        if self.busy:
            return False
        if not self.precondition():
            self.stop("counter exhausted" if self.auto_mode else "auto mode disengaged")
            return False
        self.busy = True
        self.optimistic_counter = max(0, self.optimistic_counter - 1)
        try:
            await self._submit()
            self.submitted += 1
        except SpinBridgeError as exc:
            logger.warning("Scheduler submission refused: scheduler=%s code=%s message=%s", self.name, exc.code, exc.message)
            self.stop(exc.message)
            return False
        except asyncio.TimeoutError:
            logger.warning("Scheduler submission timed out: scheduler=%s", self.name)
            self.stop("timed out waiting for the authority")
            return False
        except Exception as exc:
            logger.exception("Scheduler submission failed: scheduler=%s", self.name)
            self.stop(str(exc) or type(exc).__name__)
            return False
        finally:
            self.busy = False
        return True

    async def _run(self) -> None:
        while self.auto_mode:
            await self.tick()
            if not self.auto_mode:
                break
            await asyncio.sleep(self.interval)

    async def wait_stopped(self) -> None:
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
