"""
Scheduled step runner.

Executes dunning steps that have come due. The runner owns no timer: a cron
job, task queue or serverless trigger calls ``process_scheduled_steps`` (or
the handler returned by ``create_cron_handler``) on whatever cadence suits it.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from dunning.events import maybe_await
from dunning.manager import DunningManager
from dunning.models import ScheduledStep
from dunning.settings import get_settings

logger = structlog.get_logger(__name__)

StepHook = Callable[[str, str], Awaitable[None] | None]
AfterStepHook = Callable[[str, str, bool], Awaitable[None] | None]
ErrorHook = Callable[[Exception, str], Awaitable[None] | None]


class DunningScheduler:
    """Runs due dunning steps with bounded concurrency."""

    def __init__(
        self,
        manager: DunningManager,
        batch_size: int | None = None,
        max_concurrent: int | None = None,
        before_step: StepHook | None = None,
        after_step: AfterStepHook | None = None,
        on_error: ErrorHook | None = None,
    ):
        settings = get_settings().scheduler
        self.manager = manager
        self.batch_size = batch_size or settings.batch_size
        self.max_concurrent = max_concurrent or settings.max_concurrent
        self.before_step = before_step
        self.after_step = after_step
        self.on_error = on_error
        self._in_flight: set[str] = set()
        self.error_count = 0

    @property
    def processing_count(self) -> int:
        return len(self._in_flight)

    async def process_scheduled_steps(self) -> int:
        """
        Execute every step due now, up to ``batch_size``.

        States already being processed are skipped. Returns the number of
        steps that ran without raising.
        """
        now = self.manager.config.clock()
        scheduled = await self.manager.get_scheduled_steps(now)
        if not scheduled:
            return 0

        to_process: list[ScheduledStep] = []
        seen: set[str] = set()
        for item in scheduled:
            if item.state_id in self._in_flight or item.state_id in seen:
                continue
            seen.add(item.state_id)
            to_process.append(item)
            if len(to_process) >= self.batch_size:
                break

        if not to_process:
            return 0

        logger.debug(
            "dunning.scheduler.batch",
            due=len(scheduled),
            processing=len(to_process),
            before=now.isoformat(),
        )

        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def run(item: ScheduledStep) -> bool:
            async with semaphore:
                return await self._execute_scheduled_step(item.state_id, item.step_id)

        results = await asyncio.gather(*(run(item) for item in to_process))
        processed = sum(1 for ok in results if ok)

        logger.info(
            "dunning.scheduler.processed",
            processed=processed,
            errors=len(results) - processed,
        )
        return processed

    async def process_now(self, state_id: str) -> bool:
        """Execute the current step of one dunning process immediately."""
        state = await self.manager.get_dunning_state_by_id(state_id)
        if state is None:
            logger.warning("dunning.scheduler.state_not_found", dunning_id=state_id)
            return False
        return await self._execute_scheduled_step(state.id, state.current_step_id)

    async def _execute_scheduled_step(self, state_id: str, step_id: str) -> bool:
        self._in_flight.add(state_id)
        try:
            if self.before_step is not None:
                await maybe_await(self.before_step(state_id, step_id))

            result = await self.manager.execute_step(state_id)
            success = result is not None

            logger.info(
                "dunning.scheduler.step_executed",
                dunning_id=state_id,
                step_id=step_id,
                success=success,
                actions_taken=[a.value for a in result.actions_taken] if result else None,
            )

            if self.after_step is not None:
                await maybe_await(self.after_step(state_id, step_id, success))
            return True
        except Exception as e:
            self.error_count += 1
            logger.exception(
                "dunning.scheduler.step_failed", dunning_id=state_id, step_id=step_id
            )
            if self.on_error is not None:
                await maybe_await(self.on_error(e, state_id))
            return False
        finally:
            self._in_flight.discard(state_id)


def create_cron_handler(
    manager: DunningManager,
    batch_size: int = 100,
    max_concurrent: int = 10,
    on_error: ErrorHook | None = None,
) -> Callable[[], Awaitable[dict[str, Any]]]:
    """
    Build a zero-argument coroutine function for cron-style invocation.

    Each call runs one pass and reports ``{"processed": n, "errors": m}``.
    """

    async def handler() -> dict[str, Any]:
        scheduler = DunningScheduler(
            manager,
            batch_size=batch_size,
            max_concurrent=max_concurrent,
            on_error=on_error,
        )
        processed = await scheduler.process_scheduled_steps()
        return {"processed": processed, "errors": scheduler.error_count}

    return handler
