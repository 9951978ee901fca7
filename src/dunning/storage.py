"""Dunning storage interface and in-memory backend."""

import copy
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

import structlog

from dunning.exceptions import DuplicateActiveDunningError
from dunning.models import (
    DunningState,
    DunningStatus,
    PaymentFailure,
    ScheduledStep,
    as_utc,
)

logger = structlog.get_logger(__name__)


class DunningStorage(ABC):
    """Persistence contract for dunning state, failures and scheduled steps.

    Implementations must guarantee at most one ``active`` state per customer.
    """

    @abstractmethod
    async def get_dunning_state(self, customer_id: str) -> DunningState | None:
        """Get the customer's dunning state, preferring the active one."""
        pass

    @abstractmethod
    async def get_dunning_state_by_id(self, state_id: str) -> DunningState | None:
        """Get a dunning state by ID."""
        pass

    @abstractmethod
    async def get_active_dunning_states(self) -> list[DunningState]:
        """List all active dunning states."""
        pass

    @abstractmethod
    async def get_dunning_states_by_status(self, status: DunningStatus) -> list[DunningState]:
        """List dunning states with the given status."""
        pass

    @abstractmethod
    async def save_dunning_state(self, state: DunningState) -> None:
        """Insert or replace a dunning state."""
        pass

    @abstractmethod
    async def update_dunning_state(self, state_id: str, updates: dict[str, Any]) -> None:
        """Apply a partial update to a dunning state."""
        pass

    @abstractmethod
    async def record_payment_failure(self, failure: PaymentFailure) -> None:
        """Record a payment failure."""
        pass

    @abstractmethod
    async def get_payment_failures(
        self, customer_id: str, limit: int | None = None
    ) -> list[PaymentFailure]:
        """List a customer's payment failures, newest first."""
        pass

    @abstractmethod
    async def schedule_step(self, state_id: str, step_id: str, scheduled_at: datetime) -> None:
        """Schedule a step for execution."""
        pass

    @abstractmethod
    async def remove_scheduled_step(self, state_id: str, step_id: str) -> None:
        """Remove a scheduled step."""
        pass

    @abstractmethod
    async def get_scheduled_steps(self, before: datetime) -> list[ScheduledStep]:
        """List steps scheduled at or before ``before``, earliest first."""
        pass


class InMemoryDunningStorage(DunningStorage):
    """Process-local storage for development and tests.

    States are copied on the way in and out so callers never share a
    reference with the store.
    """

    def __init__(self) -> None:
        self._states: dict[str, DunningState] = {}
        self._failures: dict[str, list[PaymentFailure]] = {}
        self._scheduled: dict[tuple[str, str], ScheduledStep] = {}

    def _active_state_id(self, customer_id: str, exclude: str | None = None) -> str | None:
        for state in self._states.values():
            if (
                state.customer_id == customer_id
                and state.status == DunningStatus.ACTIVE
                and state.id != exclude
            ):
                return state.id
        return None

    def _guard_single_active(self, state: DunningState) -> None:
        if state.status != DunningStatus.ACTIVE:
            return
        existing = self._active_state_id(state.customer_id, exclude=state.id)
        if existing is not None:
            raise DuplicateActiveDunningError(
                f"Customer {state.customer_id} already has an active dunning process",
                customer_id=state.customer_id,
                existing_state_id=existing,
            )

    async def get_dunning_state(self, customer_id: str) -> DunningState | None:
        candidates = [s for s in self._states.values() if s.customer_id == customer_id]
        if not candidates:
            return None
        for status in (DunningStatus.ACTIVE, DunningStatus.PAUSED):
            for state in candidates:
                if state.status == status:
                    return state.model_copy(deep=True)
        latest = max(candidates, key=lambda s: s.started_at)
        return latest.model_copy(deep=True)

    async def get_dunning_state_by_id(self, state_id: str) -> DunningState | None:
        state = self._states.get(state_id)
        return state.model_copy(deep=True) if state else None

    async def get_active_dunning_states(self) -> list[DunningState]:
        return await self.get_dunning_states_by_status(DunningStatus.ACTIVE)

    async def get_dunning_states_by_status(self, status: DunningStatus) -> list[DunningState]:
        return [s.model_copy(deep=True) for s in self._states.values() if s.status == status]

    async def save_dunning_state(self, state: DunningState) -> None:
        self._guard_single_active(state)
        self._states[state.id] = state.model_copy(deep=True)

    async def update_dunning_state(self, state_id: str, updates: dict[str, Any]) -> None:
        state = self._states.get(state_id)
        if state is None:
            logger.warning("dunning.storage.update_missing", dunning_id=state_id)
            return
        updated = state.model_copy(update=copy.deepcopy(updates), deep=True)
        self._guard_single_active(updated)
        self._states[state_id] = updated

    async def record_payment_failure(self, failure: PaymentFailure) -> None:
        self._failures.setdefault(failure.customer_id, []).append(failure)

    async def get_payment_failures(
        self, customer_id: str, limit: int | None = None
    ) -> list[PaymentFailure]:
        failures = sorted(
            self._failures.get(customer_id, []), key=lambda f: f.failed_at, reverse=True
        )
        return failures[:limit] if limit is not None else failures

    async def schedule_step(self, state_id: str, step_id: str, scheduled_at: datetime) -> None:
        self._scheduled[(state_id, step_id)] = ScheduledStep(
            state_id=state_id, step_id=step_id, scheduled_at=scheduled_at
        )

    async def remove_scheduled_step(self, state_id: str, step_id: str) -> None:
        self._scheduled.pop((state_id, step_id), None)

    async def get_scheduled_steps(self, before: datetime) -> list[ScheduledStep]:
        before = as_utc(before)
        due = [s for s in self._scheduled.values() if s.scheduled_at <= before]
        return sorted(due, key=lambda s: s.scheduled_at)

    def clear(self) -> None:
        """Drop all stored data."""
        self._states.clear()
        self._failures.clear()
        self._scheduled.clear()
