"""
SQL storage backend.

Dunning states, payment failures and scheduled steps in three tables.
Failures and executed steps travel with the state row as JSON, the way the
state is always loaded. A partial unique index on ``customer_id`` for active
rows keeps a customer to one active process even with several workers.
"""

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Index,
    Integer,
    String,
    Text,
    case,
    delete,
    select,
    text,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from dunning.db import Base, TimestampMixin, UTCDateTime, get_session_maker
from dunning.exceptions import DuplicateActiveDunningError
from dunning.models import (
    DunningEndReason,
    DunningState,
    DunningStatus,
    ExecutedStep,
    PaymentFailure,
    PaymentFailureCategory,
    ScheduledStep,
)
from dunning.storage import DunningStorage

logger = structlog.get_logger(__name__)

ACTIVE_ONLY = text("status = 'active'")


class DunningStateRow(Base, TimestampMixin):
    """One dunning process."""

    __tablename__ = "dunning_states"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    subscription_id: Mapped[str] = mapped_column(String(255), nullable=False)
    sequence_id: Mapped[str] = mapped_column(String(100), nullable=False)
    current_step_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    current_step_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    initial_failure: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    failures: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    executed_steps: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    last_step_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    next_step_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    end_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    total_retry_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # "metadata" is reserved on declarative classes
    state_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    __table_args__ = (
        Index(
            "uq_dunning_states_active_customer",
            "customer_id",
            unique=True,
            sqlite_where=ACTIVE_ONLY,
            postgresql_where=ACTIVE_ONLY,
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<DunningStateRow(id={self.id}, customer_id={self.customer_id}, "
            f"status={self.status})>"
        )


class PaymentFailureRow(Base, TimestampMixin):
    """One failed charge."""

    __tablename__ = "dunning_payment_failures"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    subscription_id: Mapped[str] = mapped_column(String(255), nullable=False)
    invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    error_code: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    error_message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    failed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    is_recoverable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    failure_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )


class ScheduledStepRow(Base):
    """A step waiting to be executed."""

    __tablename__ = "dunning_scheduled_steps"

    state_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    step_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)


# ============================================================================
# Row conversion
# ============================================================================


def _dump_models(items: list[Any]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]


def _column_values(updates: dict[str, Any]) -> dict[str, Any]:
    """Translate DunningState field updates into row attribute values."""
    values: dict[str, Any] = {}
    for field_name, value in updates.items():
        if field_name == "metadata":
            values["state_metadata"] = dict(value)
        elif field_name in ("failures", "executed_steps"):
            values[field_name] = _dump_models(value)
        elif field_name == "initial_failure":
            values[field_name] = value.model_dump(mode="json")
        elif field_name in ("status", "end_reason"):
            values[field_name] = value.value if value is not None else None
        else:
            values[field_name] = value
    return values


def _state_to_row_values(state: DunningState) -> dict[str, Any]:
    nested = {"initial_failure", "failures", "executed_steps"}
    values = _column_values(state.model_dump(exclude=nested))
    values.update(
        _column_values(
            {
                "initial_failure": state.initial_failure,
                "failures": state.failures,
                "executed_steps": state.executed_steps,
            }
        )
    )
    return values


def _row_to_state(row: DunningStateRow) -> DunningState:
    return DunningState(
        id=row.id,
        customer_id=row.customer_id,
        subscription_id=row.subscription_id,
        sequence_id=row.sequence_id,
        current_step_index=row.current_step_index,
        current_step_id=row.current_step_id,
        status=DunningStatus(row.status),
        initial_failure=PaymentFailure.model_validate(row.initial_failure),
        failures=[PaymentFailure.model_validate(f) for f in row.failures],
        executed_steps=[ExecutedStep.model_validate(s) for s in row.executed_steps],
        started_at=row.started_at,
        last_step_at=row.last_step_at,
        next_step_at=row.next_step_at,
        ended_at=row.ended_at,
        end_reason=DunningEndReason(row.end_reason) if row.end_reason else None,
        total_retry_attempts=row.total_retry_attempts,
        metadata=dict(row.state_metadata or {}),
    )


def _row_to_failure(row: PaymentFailureRow) -> PaymentFailure:
    return PaymentFailure(
        id=row.id,
        customer_id=row.customer_id,
        subscription_id=row.subscription_id,
        invoice_id=row.invoice_id,
        amount=row.amount,
        currency=row.currency,
        category=PaymentFailureCategory(row.category),
        error_code=row.error_code,
        error_message=row.error_message,
        provider=row.provider,
        failed_at=row.failed_at,
        retry_count=row.retry_count,
        next_retry_at=row.next_retry_at,
        is_recoverable=row.is_recoverable,
        metadata=dict(row.failure_metadata or {}),
    )


# ============================================================================
# Storage
# ============================================================================


class SQLAlchemyDunningStorage(DunningStorage):
    """Dunning storage over an async SQLAlchemy session factory."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] | None = None):
        self._session_maker = session_maker or get_session_maker()

    async def get_dunning_state(self, customer_id: str) -> DunningState | None:
        preference = case(
            (DunningStateRow.status == DunningStatus.ACTIVE.value, 0),
            (DunningStateRow.status == DunningStatus.PAUSED.value, 1),
            else_=2,
        )
        stmt = (
            select(DunningStateRow)
            .where(DunningStateRow.customer_id == customer_id)
            .order_by(preference, DunningStateRow.started_at.desc())
            .limit(1)
        )
        async with self._session_maker() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _row_to_state(row) if row else None

    async def get_dunning_state_by_id(self, state_id: str) -> DunningState | None:
        async with self._session_maker() as session:
            row = await session.get(DunningStateRow, state_id)
            return _row_to_state(row) if row else None

    async def get_active_dunning_states(self) -> list[DunningState]:
        return await self.get_dunning_states_by_status(DunningStatus.ACTIVE)

    async def get_dunning_states_by_status(self, status: DunningStatus) -> list[DunningState]:
        stmt = (
            select(DunningStateRow)
            .where(DunningStateRow.status == status.value)
            .order_by(DunningStateRow.started_at)
        )
        async with self._session_maker() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_state(row) for row in rows]

    async def save_dunning_state(self, state: DunningState) -> None:
        values = _state_to_row_values(state)
        try:
            async with self._session_maker() as session, session.begin():
                row = await session.get(DunningStateRow, state.id)
                if row is None:
                    session.add(DunningStateRow(**values))
                else:
                    for key, value in values.items():
                        setattr(row, key, value)
        except IntegrityError as e:
            raise await self._duplicate_active_error(state.customer_id, state.id) from e

    async def update_dunning_state(self, state_id: str, updates: dict[str, Any]) -> None:
        values = _column_values(updates)
        customer_id: str | None = None
        try:
            async with self._session_maker() as session, session.begin():
                row = await session.get(DunningStateRow, state_id)
                if row is None:
                    logger.warning("dunning.storage.update_missing", dunning_id=state_id)
                    return
                customer_id = row.customer_id
                for key, value in values.items():
                    setattr(row, key, value)
        except IntegrityError as e:
            if customer_id is None:
                raise
            raise await self._duplicate_active_error(customer_id, state_id) from e

    async def record_payment_failure(self, failure: PaymentFailure) -> None:
        async with self._session_maker() as session, session.begin():
            await session.merge(
                PaymentFailureRow(
                    id=failure.id,
                    customer_id=failure.customer_id,
                    subscription_id=failure.subscription_id,
                    invoice_id=failure.invoice_id,
                    amount=failure.amount,
                    currency=failure.currency,
                    category=failure.category.value,
                    error_code=failure.error_code,
                    error_message=failure.error_message,
                    provider=failure.provider,
                    failed_at=failure.failed_at,
                    retry_count=failure.retry_count,
                    next_retry_at=failure.next_retry_at,
                    is_recoverable=failure.is_recoverable,
                    failure_metadata=dict(failure.metadata),
                )
            )

    async def get_payment_failures(
        self, customer_id: str, limit: int | None = None
    ) -> list[PaymentFailure]:
        stmt = (
            select(PaymentFailureRow)
            .where(PaymentFailureRow.customer_id == customer_id)
            .order_by(PaymentFailureRow.failed_at.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_maker() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_failure(row) for row in rows]

    async def schedule_step(self, state_id: str, step_id: str, scheduled_at: datetime) -> None:
        async with self._session_maker() as session, session.begin():
            await session.merge(
                ScheduledStepRow(state_id=state_id, step_id=step_id, scheduled_at=scheduled_at)
            )

    async def remove_scheduled_step(self, state_id: str, step_id: str) -> None:
        async with self._session_maker() as session, session.begin():
            await session.execute(
                delete(ScheduledStepRow).where(
                    ScheduledStepRow.state_id == state_id,
                    ScheduledStepRow.step_id == step_id,
                )
            )

    async def get_scheduled_steps(self, before: datetime) -> list[ScheduledStep]:
        stmt = (
            select(ScheduledStepRow)
            .where(ScheduledStepRow.scheduled_at <= before)
            .order_by(ScheduledStepRow.scheduled_at)
        )
        async with self._session_maker() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [
                ScheduledStep(state_id=r.state_id, step_id=r.step_id, scheduled_at=r.scheduled_at)
                for r in rows
            ]

    async def _duplicate_active_error(
        self, customer_id: str, state_id: str
    ) -> DuplicateActiveDunningError:
        stmt = select(DunningStateRow.id).where(
            DunningStateRow.customer_id == customer_id,
            DunningStateRow.status == DunningStatus.ACTIVE.value,
            DunningStateRow.id != state_id,
        )
        async with self._session_maker() as session:
            existing = (await session.execute(stmt)).scalars().first()
        return DuplicateActiveDunningError(
            f"Customer {customer_id} already has an active dunning process",
            customer_id=customer_id,
            existing_state_id=existing or "",
        )
