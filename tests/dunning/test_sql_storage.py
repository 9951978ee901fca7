"""Tests for the SQLAlchemy dunning storage backend on SQLite."""

from datetime import UTC, timedelta
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio

from dunning.db import (
    create_all_tables_async,
    dispose_engine,
    get_async_database_url,
    get_async_engine,
    get_session_maker,
)
from dunning.exceptions import DuplicateActiveDunningError
from dunning.manager import DunningManager
from dunning.models import (
    DunningAction,
    DunningEndReason,
    DunningState,
    DunningStatus,
    ExecutedStep,
    NotificationChannel,
    RetryResult,
)
from dunning.settings import reset_settings
from dunning.sql_storage import SQLAlchemyDunningStorage

pytestmark = pytest.mark.integration


@pytest_asyncio.fixture
async def sql_storage(sql_session_maker):
    return SQLAlchemyDunningStorage(sql_session_maker)


@pytest.fixture
def make_state(make_failure, t0):
    def _make(**overrides) -> DunningState:
        failure = make_failure(customer_id=overrides.get("customer_id", "cus_123"))
        values = {
            "customer_id": "cus_123",
            "subscription_id": "sub_123",
            "sequence_id": "two-step",
            "current_step_id": "s0",
            "initial_failure": failure,
            "failures": [failure],
            "started_at": t0,
            "next_step_at": t0,
        }
        values.update(overrides)
        return DunningState(**values)

    return _make


@pytest.mark.asyncio
class TestSQLStates:
    """Test dunning state rows."""

    async def test_round_trip(self, sql_storage, make_state, t0):
        state = make_state(
            metadata={"plan_id": "pro", "customer": {"segment": "smb"}},
            executed_steps=[
                ExecutedStep(
                    step_id="s0",
                    executed_at=t0,
                    actions_taken=(DunningAction.NOTIFY,),
                    notifications_sent=(NotificationChannel.EMAIL,),
                )
            ],
            last_step_at=t0,
        )

        await sql_storage.save_dunning_state(state)
        loaded = await sql_storage.get_dunning_state_by_id(state.id)

        assert loaded.model_dump() == state.model_dump()
        assert loaded.started_at.tzinfo is not None
        assert loaded.executed_steps[0].actions_taken == (DunningAction.NOTIFY,)

    async def test_missing_state(self, sql_storage):
        assert await sql_storage.get_dunning_state_by_id("dun_missing") is None
        assert await sql_storage.get_dunning_state("cus_missing") is None

    async def test_second_active_state_rejected(self, sql_storage, make_state):
        first = make_state()
        await sql_storage.save_dunning_state(first)

        with pytest.raises(DuplicateActiveDunningError) as exc_info:
            await sql_storage.save_dunning_state(make_state())

        assert exc_info.value.context["existing_state_id"] == first.id

    async def test_terminal_states_do_not_block(self, sql_storage, make_state):
        await sql_storage.save_dunning_state(make_state(status=DunningStatus.CANCELED))
        await sql_storage.save_dunning_state(make_state(status=DunningStatus.EXHAUSTED))
        active = make_state()

        await sql_storage.save_dunning_state(active)

        assert (await sql_storage.get_dunning_state("cus_123")).id == active.id

    async def test_reactivation_rejected_on_update(self, sql_storage, make_state):
        paused = make_state(status=DunningStatus.PAUSED)
        await sql_storage.save_dunning_state(paused)
        await sql_storage.save_dunning_state(make_state())

        with pytest.raises(DuplicateActiveDunningError):
            await sql_storage.update_dunning_state(paused.id, {"status": DunningStatus.ACTIVE})

        stored = await sql_storage.get_dunning_state_by_id(paused.id)
        assert stored.status == DunningStatus.PAUSED

    async def test_get_prefers_paused_over_terminal(self, sql_storage, make_state, t0):
        await sql_storage.save_dunning_state(
            make_state(status=DunningStatus.RECOVERED, started_at=t0 + timedelta(days=1))
        )
        paused = make_state(status=DunningStatus.PAUSED, started_at=t0)
        await sql_storage.save_dunning_state(paused)

        assert (await sql_storage.get_dunning_state("cus_123")).id == paused.id

    async def test_update_fields(self, sql_storage, make_state, make_failure, t0):
        state = make_state()
        await sql_storage.save_dunning_state(state)
        extra = make_failure(amount=750, failed_at=t0 + timedelta(days=1))

        await sql_storage.update_dunning_state(
            state.id,
            {
                "status": DunningStatus.CANCELED,
                "end_reason": DunningEndReason.MANUALLY_CANCELED,
                "ended_at": t0 + timedelta(days=2),
                "failures": [*state.failures, extra],
                "metadata": {"cancel_reason": None},
            },
        )

        loaded = await sql_storage.get_dunning_state_by_id(state.id)
        assert loaded.status == DunningStatus.CANCELED
        assert loaded.end_reason == DunningEndReason.MANUALLY_CANCELED
        assert loaded.ended_at == t0 + timedelta(days=2)
        assert loaded.amount_owed == 2750
        assert loaded.metadata == {"cancel_reason": None}

    async def test_update_missing_state_is_ignored(self, sql_storage):
        await sql_storage.update_dunning_state("dun_missing", {"current_step_index": 3})

        assert await sql_storage.get_active_dunning_states() == []

    async def test_states_by_status(self, sql_storage, make_state):
        active = make_state(customer_id="cus_a")
        paused = make_state(customer_id="cus_b", status=DunningStatus.PAUSED)
        await sql_storage.save_dunning_state(active)
        await sql_storage.save_dunning_state(paused)

        assert [s.id for s in await sql_storage.get_active_dunning_states()] == [active.id]
        by_status = await sql_storage.get_dunning_states_by_status(DunningStatus.PAUSED)
        assert [s.id for s in by_status] == [paused.id]


@pytest.mark.asyncio
class TestSQLFailuresAndSchedule:
    """Test payment failure and scheduled step rows."""

    async def test_failures_newest_first(self, sql_storage, make_failure, t0):
        for day in (0, 2, 1):
            await sql_storage.record_payment_failure(
                make_failure(failed_at=t0 + timedelta(days=day), metadata={"day": day})
            )

        failures = await sql_storage.get_payment_failures("cus_123")

        assert [f.metadata["day"] for f in failures] == [2, 1, 0]
        assert failures[0].failed_at == t0 + timedelta(days=2)
        assert failures[0].failed_at.tzinfo is not None
        assert len(await sql_storage.get_payment_failures("cus_123", limit=2)) == 2

    async def test_recording_same_failure_twice_keeps_one_row(self, sql_storage, make_failure):
        failure = make_failure()

        await sql_storage.record_payment_failure(failure)
        await sql_storage.record_payment_failure(failure)

        assert [f.id for f in await sql_storage.get_payment_failures("cus_123")] == [failure.id]

    async def test_scheduled_steps(self, sql_storage, t0):
        await sql_storage.schedule_step("dun_b", "s1", t0 + timedelta(hours=2))
        await sql_storage.schedule_step("dun_a", "s0", t0)
        await sql_storage.schedule_step("dun_c", "s0", t0 + timedelta(days=1))

        due = await sql_storage.get_scheduled_steps(t0 + timedelta(hours=2))

        assert [(s.state_id, s.step_id) for s in due] == [("dun_a", "s0"), ("dun_b", "s1")]
        assert due[0].scheduled_at == t0

    async def test_reschedule_and_remove(self, sql_storage, t0):
        await sql_storage.schedule_step("dun_a", "s0", t0)
        await sql_storage.schedule_step("dun_a", "s0", t0 + timedelta(days=3))

        assert await sql_storage.get_scheduled_steps(t0) == []

        await sql_storage.remove_scheduled_step("dun_a", "s0")

        assert await sql_storage.get_scheduled_steps(t0 + timedelta(days=30)) == []

    async def test_non_utc_timestamps_normalized(self, sql_storage, t0):
        local = t0.astimezone(ZoneInfo("America/New_York"))

        await sql_storage.schedule_step("dun_a", "s0", local)
        due = await sql_storage.get_scheduled_steps(t0)

        assert due[0].scheduled_at == t0
        assert due[0].scheduled_at.tzinfo == UTC


@pytest.mark.asyncio
class TestManagerOnSQL:
    """Run a full dunning process against the SQL backend."""

    async def test_notify_retry_recover(
        self, make_config, sql_storage, make_failure, callbacks, t0
    ):
        manager = DunningManager(make_config(), sql_storage)

        state = await manager.start_dunning(make_failure())
        assert [s.step_id for s in await sql_storage.get_scheduled_steps(t0)] == ["s0"]

        await manager.execute_step(state.id)
        stored = await sql_storage.get_dunning_state_by_id(state.id)
        assert stored.current_step_id == "s1"
        assert stored.next_step_at == t0 + timedelta(days=3)

        callbacks["on_retry_payment"].return_value = RetryResult(
            success=True, transaction_id="txn_9"
        )
        executed = await manager.execute_step(state.id)

        assert executed.payment_succeeded is True
        stored = await sql_storage.get_dunning_state_by_id(state.id)
        assert stored.status == DunningStatus.RECOVERED
        assert stored.total_retry_attempts == 1
        assert [s.step_id for s in stored.executed_steps] == ["s0", "s1"]
        assert await sql_storage.get_scheduled_steps(t0 + timedelta(days=30)) == []

    async def test_new_failure_joins_active_process(
        self, make_config, sql_storage, make_failure, t0
    ):
        manager = DunningManager(make_config(), sql_storage)

        first = await manager.start_dunning(make_failure())
        again = await manager.start_dunning(make_failure(failed_at=t0 + timedelta(hours=1)))

        assert again.id == first.id
        stored = await sql_storage.get_dunning_state_by_id(first.id)
        assert len(stored.failures) == 2
        assert len(await sql_storage.get_payment_failures("cus_123")) == 2


@pytest.mark.asyncio
class TestDefaultEngine:
    """Test the storage on the settings-configured global engine."""

    @pytest_asyncio.fixture
    async def file_database(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DUNNING_DATABASE__URL", f"sqlite:///{tmp_path}/dunning.sqlite")
        reset_settings()
        yield
        await dispose_engine()

    async def test_default_session_maker(self, file_database, make_state):
        assert get_async_database_url().startswith("sqlite+aiosqlite:///")
        await create_all_tables_async()
        storage = SQLAlchemyDunningStorage()
        state = make_state()

        await storage.save_dunning_state(state)

        assert (await storage.get_dunning_state_by_id(state.id)).customer_id == "cus_123"
        assert get_session_maker() is get_session_maker()

    async def test_dispose_resets_engine(self, file_database):
        engine = get_async_engine()

        await dispose_engine()

        assert get_async_engine() is not engine
