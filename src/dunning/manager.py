"""
Dunning manager.

Drives a customer through a dunning sequence: starts a process on a payment
failure, executes due steps, and ends the process by recovery, exhaustion or
cancellation. State is only ever changed through the storage backend and the
outside world is only reached through the configured callbacks.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from dunning.config import DunningManagerConfig
from dunning.events import DunningEventBus, EventHandler, maybe_await
from dunning.exceptions import DunningConfigurationError, SequenceNotFoundError
from dunning.executor import StepExecutor
from dunning.models import (
    AccessLevel,
    CustomerSnapshot,
    DunningContext,
    DunningEndReason,
    DunningEventType,
    DunningSequence,
    DunningState,
    DunningStatus,
    DunningStep,
    ExecutedStep,
    PaymentFailure,
    ScheduledStep,
    SubscriptionSnapshot,
)
from dunning.storage import DunningStorage, InMemoryDunningStorage

logger = structlog.get_logger(__name__)


class DunningManager:
    """Orchestrates dunning processes for failed subscription payments."""

    def __init__(
        self,
        config: DunningManagerConfig,
        storage: DunningStorage,
        event_bus: DunningEventBus | None = None,
    ):
        self.config = config
        self.storage = storage
        self.event_bus = event_bus or DunningEventBus()
        if config.on_event is not None:
            self.event_bus.subscribe(config.on_event)
        self.executor = StepExecutor(config, self.event_bus)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start_dunning(self, failure: PaymentFailure) -> DunningState:
        """
        Start dunning for a payment failure.

        If the customer already has an active process, the failure is added to
        it and that state is returned; the current step is left untouched.

        Raises:
            DunningConfigurationError: The selected sequence has no steps
        """
        existing = await self.storage.get_dunning_state(failure.customer_id)
        if existing is not None and existing.status == DunningStatus.ACTIVE:
            existing.failures.append(failure)
            await self.storage.update_dunning_state(existing.id, {"failures": existing.failures})
            await self.storage.record_payment_failure(failure)

            logger.info(
                "dunning.failure_added",
                dunning_id=existing.id,
                customer_id=failure.customer_id,
                failure_count=len(existing.failures),
            )
            return existing

        sequence = await self._sequence_for_customer(failure.customer_id)
        first_step = sequence.step_at(0)
        if first_step is None:
            raise DunningConfigurationError(
                f"Dunning sequence {sequence.id} has no steps", sequence_id=sequence.id
            )

        next_step_at = self.calculate_step_time(first_step, failure.failed_at)
        state = DunningState(
            customer_id=failure.customer_id,
            subscription_id=failure.subscription_id,
            sequence_id=sequence.id,
            current_step_index=0,
            current_step_id=first_step.id,
            status=DunningStatus.ACTIVE,
            initial_failure=failure,
            failures=[failure],
            started_at=self.config.clock(),
            next_step_at=next_step_at,
        )

        await self.storage.save_dunning_state(state)
        await self.storage.record_payment_failure(failure)
        await self.storage.schedule_step(state.id, first_step.id, next_step_at)

        await self._emit(
            state,
            DunningEventType.STARTED,
            sequence_id=sequence.id,
            initial_failure=failure.model_dump(mode="json"),
        )

        logger.info(
            "dunning.started",
            dunning_id=state.id,
            customer_id=state.customer_id,
            sequence_id=sequence.id,
            next_step_at=next_step_at.isoformat(),
        )
        return state

    async def execute_step(self, state_id: str) -> ExecutedStep | None:
        """
        Execute the current step of a dunning process.

        Returns None when the process is missing or not active, or when the
        step's condition was not met and the step was skipped.
        """
        state = await self.storage.get_dunning_state_by_id(state_id)
        if state is None or state.status != DunningStatus.ACTIVE:
            logger.warning(
                "dunning.execute_step.invalid_state",
                dunning_id=state_id,
                status=state.status.value if state else None,
            )
            return None

        sequence = self.get_sequence(state.sequence_id)
        step = sequence.step_at(state.current_step_index)
        if step is None:
            logger.warning(
                "dunning.execute_step.no_step",
                dunning_id=state_id,
                step_index=state.current_step_index,
            )
            return None

        context = self.build_context(state, step)

        if step.condition is not None:
            should_execute = await maybe_await(step.condition(context))
            if not should_execute:
                logger.info("dunning.step.skipped", dunning_id=state.id, step_id=step.id)
                await self.storage.remove_scheduled_step(state.id, step.id)
                await self._advance(state, sequence)
                return None

        executed = await self.executor.execute(context)

        state.executed_steps.append(executed)
        state.last_step_at = executed.executed_at
        if executed.payment_retried:
            state.total_retry_attempts += 1
        await self.storage.update_dunning_state(
            state.id,
            {
                "executed_steps": state.executed_steps,
                "last_step_at": state.last_step_at,
                "total_retry_attempts": state.total_retry_attempts,
            },
        )
        await self.storage.remove_scheduled_step(state.id, step.id)

        if executed.payment_succeeded:
            await self.recover_dunning(state)
        elif step.is_final:
            await self._exhaust(state)
        else:
            await self._advance(state, sequence)

        return executed

    async def recover_dunning(
        self,
        state_or_id: DunningState | str,
        reason: DunningEndReason = DunningEndReason.PAYMENT_RECOVERED,
    ) -> None:
        """Mark a dunning process recovered and restore full access."""
        state = await self._resolve_state(state_or_id)
        if state is None or state.status.is_terminal:
            return

        state.status = DunningStatus.RECOVERED
        state.ended_at = self.config.clock()
        state.end_reason = reason

        await self.storage.update_dunning_state(
            state.id,
            {"status": state.status, "ended_at": state.ended_at, "end_reason": state.end_reason},
        )
        await self.storage.remove_scheduled_step(state.id, state.current_step_id)

        if self.config.on_access_update is not None:
            await maybe_await(self.config.on_access_update(state.customer_id, AccessLevel.FULL))

        await self._emit(state, DunningEventType.PAYMENT_RECOVERED, reason=reason.value)

        logger.info("dunning.recovered", dunning_id=state.id, customer_id=state.customer_id)

    async def pause_dunning(self, state_id: str) -> None:
        """Pause an active dunning process. Progress is kept."""
        state = await self.storage.get_dunning_state_by_id(state_id)
        if state is None or state.status != DunningStatus.ACTIVE:
            return

        await self.storage.update_dunning_state(state_id, {"status": DunningStatus.PAUSED})
        await self.storage.remove_scheduled_step(state_id, state.current_step_id)

        await self._emit(state, DunningEventType.PAUSED)
        logger.info("dunning.paused", dunning_id=state_id, customer_id=state.customer_id)

    async def resume_dunning(self, state_id: str) -> None:
        """
        Resume a paused dunning process.

        The current step is rescheduled relative to now, not to the original
        failure, so a long pause does not fire overdue steps all at once.
        """
        state = await self.storage.get_dunning_state_by_id(state_id)
        if state is None or state.status != DunningStatus.PAUSED:
            return

        sequence = self.get_sequence(state.sequence_id)
        step = sequence.step_at(state.current_step_index)

        updates: dict[str, Any] = {"status": DunningStatus.ACTIVE}
        next_step_at = None
        if step is not None:
            next_step_at = self.calculate_step_time(step, self.config.clock())
            updates["next_step_at"] = next_step_at
        await self.storage.update_dunning_state(state_id, updates)
        if step is not None and next_step_at is not None:
            await self.storage.schedule_step(state_id, step.id, next_step_at)

        await self._emit(state, DunningEventType.RESUMED)
        logger.info(
            "dunning.resumed",
            dunning_id=state_id,
            customer_id=state.customer_id,
            next_step_at=next_step_at.isoformat() if next_step_at else None,
        )

    async def cancel_dunning(
        self,
        state_id: str,
        reason: str | None = None,
        end_reason: DunningEndReason = DunningEndReason.MANUALLY_CANCELED,
    ) -> None:
        """
        Cancel a dunning process at any step.

        Pass ``end_reason=DunningEndReason.SUBSCRIPTION_CANCELED`` when the
        subscription was canceled outside dunning, e.g. from a billing
        provider webhook.
        """
        state = await self.storage.get_dunning_state_by_id(state_id)
        if state is None or state.status.is_terminal:
            return

        ended_at = self.config.clock()
        await self.storage.update_dunning_state(
            state_id,
            {
                "status": DunningStatus.CANCELED,
                "ended_at": ended_at,
                "end_reason": end_reason,
                "metadata": {**state.metadata, "cancel_reason": reason},
            },
        )
        await self.storage.remove_scheduled_step(state_id, state.current_step_id)

        await self._emit(state, DunningEventType.CANCELED, reason=reason)
        logger.info(
            "dunning.canceled", dunning_id=state_id, customer_id=state.customer_id, reason=reason
        )

    # ========================================================================
    # State queries
    # ========================================================================

    async def get_dunning_state(self, customer_id: str) -> DunningState | None:
        return await self.storage.get_dunning_state(customer_id)

    async def get_dunning_state_by_id(self, state_id: str) -> DunningState | None:
        return await self.storage.get_dunning_state_by_id(state_id)

    async def get_active_dunning_states(self) -> list[DunningState]:
        return await self.storage.get_active_dunning_states()

    async def get_dunning_states_by_status(self, status: DunningStatus) -> list[DunningState]:
        return await self.storage.get_dunning_states_by_status(status)

    async def get_scheduled_steps(self, before: datetime) -> list[ScheduledStep]:
        return await self.storage.get_scheduled_steps(before)

    async def get_payment_failures(
        self, customer_id: str, limit: int | None = None
    ) -> list[PaymentFailure]:
        return await self.storage.get_payment_failures(customer_id, limit)

    # ========================================================================
    # Events
    # ========================================================================

    def on_event(
        self,
        handler: EventHandler,
        event_types: list[DunningEventType] | None = None,
    ) -> "DunningManager":
        """Register an event handler. Returns the manager for chaining."""
        self.event_bus.subscribe(handler, event_types)
        return self

    # ========================================================================
    # Sequences, timing and context
    # ========================================================================

    def get_sequence(self, sequence_id: str) -> DunningSequence:
        """
        Raises:
            SequenceNotFoundError: The sequence is not registered
        """
        return self.config.sequences.require(sequence_id)

    def calculate_step_time(self, step: DunningStep, base: datetime) -> datetime:
        """
        When ``step`` fires, relative to ``base``.

        Adds ``days_after_failure`` days; when ``hours_offset`` is set the hour
        of day in the configured timezone is replaced and minutes zeroed.
        """
        if base.tzinfo is None:
            base = base.replace(tzinfo=UTC)

        local = base.astimezone(self.config.tzinfo) + timedelta(days=step.days_after_failure)
        if step.hours_offset is not None:
            local = local.replace(hour=step.hours_offset, minute=0, second=0, microsecond=0)

        return local.astimezone(UTC)

    def build_context(self, state: DunningState, step: DunningStep) -> DunningContext:
        """Context passed to conditions, actions and callbacks."""
        latest_failure = state.latest_failure
        elapsed = self.config.clock() - state.initial_failure.failed_at
        return DunningContext(
            state=state,
            step=step,
            latest_failure=latest_failure,
            customer=CustomerSnapshot.from_state(state),
            subscription=SubscriptionSnapshot.from_state(state),
            days_since_failure=elapsed // timedelta(days=1),
            amount_owed=state.amount_owed,
            currency=latest_failure.currency,
        )

    async def _sequence_for_customer(self, customer_id: str) -> DunningSequence:
        default = self.get_sequence(self.config.default_sequence_id)
        if self.config.tier_resolver is None:
            return default

        tier = await maybe_await(self.config.tier_resolver(customer_id))
        if tier is None:
            return default

        try:
            return self.config.sequences.for_tier(tier)
        except SequenceNotFoundError:
            logger.warning(
                "dunning.tier_sequence_missing",
                customer_id=customer_id,
                tier=tier,
                fallback=default.id,
            )
            return default

    # ========================================================================
    # Internal transitions
    # ========================================================================

    async def _advance(self, state: DunningState, sequence: DunningSequence) -> None:
        next_index = state.current_step_index + 1
        next_step = sequence.step_at(next_index)
        if next_step is None:
            await self._exhaust(state)
            return

        next_step_at = self.calculate_step_time(next_step, state.started_at)
        await self.storage.update_dunning_state(
            state.id,
            {
                "current_step_index": next_index,
                "current_step_id": next_step.id,
                "next_step_at": next_step_at,
            },
        )
        await self.storage.schedule_step(state.id, next_step.id, next_step_at)

        logger.debug(
            "dunning.advanced",
            dunning_id=state.id,
            step_id=next_step.id,
            next_step_at=next_step_at.isoformat(),
        )

    async def _exhaust(self, state: DunningState) -> None:
        state.status = DunningStatus.EXHAUSTED
        state.ended_at = self.config.clock()
        state.end_reason = DunningEndReason.MAX_RETRIES

        await self.storage.update_dunning_state(
            state.id,
            {"status": state.status, "ended_at": state.ended_at, "end_reason": state.end_reason},
        )
        await self.storage.remove_scheduled_step(state.id, state.current_step_id)

        await self._emit(
            state,
            DunningEventType.EXHAUSTED,
            total_retries=state.total_retry_attempts,
            steps_executed=len(state.executed_steps),
        )
        logger.info("dunning.exhausted", dunning_id=state.id, customer_id=state.customer_id)

    async def _resolve_state(self, state_or_id: DunningState | str) -> DunningState | None:
        if isinstance(state_or_id, str):
            return await self.storage.get_dunning_state_by_id(state_or_id)
        return state_or_id

    async def _emit(self, state: DunningState, event_type: DunningEventType, **data: Any) -> None:
        await self.event_bus.emit(
            event_type,
            customer_id=state.customer_id,
            subscription_id=state.subscription_id,
            dunning_state_id=state.id,
            timestamp=self.config.clock(),
            **data,
        )


def create_dunning_manager(
    config: DunningManagerConfig | None = None,
    storage: DunningStorage | None = None,
    **callbacks: Any,
) -> DunningManager:
    """
    Create a dunning manager.

    Without an explicit config one is built from environment settings, with
    ``callbacks`` (``on_retry_payment``, ``on_notification`` ...) applied on top.
    Storage defaults to the in-memory backend.
    """
    if config is None:
        config = DunningManagerConfig.from_settings(**callbacks)
    elif callbacks:
        config = config.model_copy(update=callbacks)
    return DunningManager(config, storage or InMemoryDunningStorage())
