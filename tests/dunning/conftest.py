"""Test fixtures for the dunning package."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from dunning.config import DunningManagerConfig, DunningUrls
from dunning.db import create_all_tables_async
from dunning.manager import DunningManager
from dunning.models import (
    DunningAction,
    DunningEvent,
    DunningNotification,
    DunningSequence,
    DunningStep,
    NotificationResult,
    PaymentFailure,
    PaymentFailureCategory,
    RetryResult,
)
from dunning.storage import InMemoryDunningStorage

# Monday 2024-03-04 08:00 UTC
T0 = datetime(2024, 3, 4, 8, 0, tzinfo=UTC)


class FakeClock:
    """Controllable time source for the manager config."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def storage():
    return InMemoryDunningStorage()


@pytest.fixture
def two_step_sequence():
    """s0 notifies on day 0, s1 retries on day 3 and is final."""
    return DunningSequence(
        id="two-step",
        name="Two Step",
        steps=[
            DunningStep(
                id="s0", name="Notify", days_after_failure=0, actions=[DunningAction.NOTIFY]
            ),
            DunningStep(
                id="s1",
                name="Retry",
                days_after_failure=3,
                actions=[DunningAction.RETRY_PAYMENT],
                is_final=True,
            ),
        ],
        max_duration_days=3,
    )


def _notification_sent(notification: DunningNotification) -> NotificationResult:
    return NotificationResult(
        success=True, channel=notification.channel, external_id=f"msg_{notification.channel.value}"
    )


@pytest.fixture
def callbacks():
    """Async mocks for every manager callback. Payment retries fail by default."""
    return {
        "on_retry_payment": AsyncMock(return_value=RetryResult(success=False)),
        "on_access_update": AsyncMock(return_value=None),
        "on_cancel_subscription": AsyncMock(return_value=None),
        "on_notification": AsyncMock(side_effect=_notification_sent),
    }


@pytest.fixture
def make_config(clock, callbacks, two_step_sequence):
    """Build a manager config; keyword arguments override the defaults."""

    def _make(**overrides) -> DunningManagerConfig:
        values = {
            "sequences": [two_step_sequence],
            "default_sequence_id": two_step_sequence.id,
            "clock": clock,
            "urls": DunningUrls(
                update_payment="https://billing.example.com/update",
                view_invoice="https://billing.example.com/invoice",
                support="https://example.com/support",
            ),
            **callbacks,
        }
        values.update(overrides)
        return DunningManagerConfig(**values)

    return _make


@pytest.fixture
def events():
    return []


@pytest.fixture
def make_manager(make_config, storage, events):
    """Build a manager that records every emitted event into ``events``."""

    def _make(**overrides) -> DunningManager:
        manager = DunningManager(make_config(**overrides), storage)

        def record(event: DunningEvent) -> None:
            events.append(event)

        return manager.on_event(record)

    return _make


@pytest.fixture
def manager(make_manager):
    return make_manager()


@pytest.fixture
def make_failure():
    """Build a payment failure; keyword arguments override the defaults."""

    def _make(**overrides) -> PaymentFailure:
        values = {
            "customer_id": "cus_123",
            "subscription_id": "sub_123",
            "invoice_id": "in_123",
            "amount": 2000,
            "currency": "usd",
            "category": PaymentFailureCategory.CARD_DECLINED,
            "error_code": "card_declined",
            "error_message": "Your card was declined.",
            "provider": "stripe",
            "failed_at": T0,
        }
        values.update(overrides)
        return PaymentFailure(**values)

    return _make


@pytest_asyncio.fixture
async def sql_session_maker():
    """In-memory SQLite database with the dunning tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_all_tables_async(engine)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
