"""Tests for the in-memory dunning storage backend."""

from datetime import datetime, timedelta

import pytest

from dunning.exceptions import DuplicateActiveDunningError
from dunning.models import DunningState, DunningStatus

pytestmark = pytest.mark.unit


@pytest.fixture
def make_state(make_failure, t0):
    def _make(**overrides) -> DunningState:
        failure = overrides.pop("initial_failure", None) or make_failure(
            customer_id=overrides.get("customer_id", "cus_123")
        )
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
class TestInMemoryStates:
    """Test dunning state persistence."""

    async def test_save_and_get(self, storage, make_state):
        state = make_state()

        await storage.save_dunning_state(state)

        assert await storage.get_dunning_state_by_id(state.id) == state
        assert await storage.get_dunning_state("cus_123") == state
        assert await storage.get_dunning_state("cus_other") is None
        assert await storage.get_dunning_state_by_id("dun_missing") is None

    async def test_returned_states_are_copies(self, storage, make_state, make_failure):
        state = make_state()
        await storage.save_dunning_state(state)

        state.failures.append(make_failure(amount=1))
        loaded = await storage.get_dunning_state_by_id(state.id)
        loaded.metadata["touched"] = True

        reloaded = await storage.get_dunning_state_by_id(state.id)
        assert len(reloaded.failures) == 1
        assert reloaded.metadata == {}

    async def test_second_active_state_rejected(self, storage, make_state):
        first = make_state()
        await storage.save_dunning_state(first)

        with pytest.raises(DuplicateActiveDunningError) as exc_info:
            await storage.save_dunning_state(make_state())

        assert exc_info.value.context == {
            "customer_id": "cus_123",
            "existing_state_id": first.id,
        }

    async def test_resaving_active_state_allowed(self, storage, make_state):
        state = make_state()
        await storage.save_dunning_state(state)

        state.current_step_index = 1
        await storage.save_dunning_state(state)

        assert (await storage.get_dunning_state_by_id(state.id)).current_step_index == 1

    async def test_reactivating_rejected_when_another_is_active(self, storage, make_state):
        paused = make_state(status=DunningStatus.PAUSED)
        active = make_state()
        await storage.save_dunning_state(paused)
        await storage.save_dunning_state(active)

        with pytest.raises(DuplicateActiveDunningError):
            await storage.update_dunning_state(paused.id, {"status": DunningStatus.ACTIVE})

        assert (await storage.get_dunning_state_by_id(paused.id)).status == DunningStatus.PAUSED

    async def test_get_prefers_active_then_paused_then_latest(self, storage, make_state, t0):
        old = make_state(status=DunningStatus.CANCELED, started_at=t0 - timedelta(days=60))
        recent = make_state(status=DunningStatus.RECOVERED, started_at=t0 - timedelta(days=20))
        await storage.save_dunning_state(old)
        await storage.save_dunning_state(recent)

        assert (await storage.get_dunning_state("cus_123")).id == recent.id

        paused = make_state(status=DunningStatus.PAUSED, started_at=t0 - timedelta(days=5))
        await storage.save_dunning_state(paused)
        assert (await storage.get_dunning_state("cus_123")).id == paused.id

        active = make_state(started_at=t0)
        await storage.save_dunning_state(active)
        assert (await storage.get_dunning_state("cus_123")).id == active.id

    async def test_update_applies_partial_changes(self, storage, make_state, t0):
        state = make_state(metadata={"plan_id": "pro"})
        await storage.save_dunning_state(state)

        await storage.update_dunning_state(
            state.id,
            {"current_step_index": 1, "current_step_id": "s1", "next_step_at": t0},
        )

        updated = await storage.get_dunning_state_by_id(state.id)
        assert updated.current_step_index == 1
        assert updated.current_step_id == "s1"
        assert updated.metadata == {"plan_id": "pro"}
        assert updated.failures == state.failures

    async def test_update_missing_state_is_ignored(self, storage):
        await storage.update_dunning_state("dun_missing", {"status": DunningStatus.CANCELED})

        assert await storage.get_dunning_states_by_status(DunningStatus.CANCELED) == []

    async def test_states_by_status(self, storage, make_state):
        active = make_state(customer_id="cus_a")
        paused = make_state(customer_id="cus_b", status=DunningStatus.PAUSED)
        await storage.save_dunning_state(active)
        await storage.save_dunning_state(paused)

        assert [s.id for s in await storage.get_active_dunning_states()] == [active.id]
        by_status = await storage.get_dunning_states_by_status(DunningStatus.PAUSED)
        assert [s.id for s in by_status] == [paused.id]

    async def test_clear(self, storage, make_state, make_failure, t0):
        state = make_state()
        await storage.save_dunning_state(state)
        await storage.record_payment_failure(make_failure())
        await storage.schedule_step(state.id, "s0", t0)

        storage.clear()

        assert await storage.get_dunning_state_by_id(state.id) is None
        assert await storage.get_payment_failures("cus_123") == []
        assert await storage.get_scheduled_steps(t0) == []


@pytest.mark.asyncio
class TestInMemoryFailures:
    """Test payment failure records."""

    async def test_newest_first_with_limit(self, storage, make_failure, t0):
        failures = [make_failure(failed_at=t0 + timedelta(days=day)) for day in (0, 2, 1)]
        for failure in failures:
            await storage.record_payment_failure(failure)

        newest = await storage.get_payment_failures("cus_123")
        assert [f.failed_at for f in newest] == [
            t0 + timedelta(days=2),
            t0 + timedelta(days=1),
            t0,
        ]

        limited = await storage.get_payment_failures("cus_123", limit=1)
        assert [f.id for f in limited] == [failures[1].id]

    async def test_failures_scoped_to_customer(self, storage, make_failure):
        await storage.record_payment_failure(make_failure(customer_id="cus_a"))

        assert await storage.get_payment_failures("cus_b") == []


@pytest.mark.asyncio
class TestInMemoryScheduledSteps:
    """Test scheduled step bookkeeping."""

    async def test_due_steps_earliest_first(self, storage, t0):
        await storage.schedule_step("dun_b", "s1", t0 + timedelta(hours=2))
        await storage.schedule_step("dun_a", "s0", t0)
        await storage.schedule_step("dun_c", "s0", t0 + timedelta(days=1))

        due = await storage.get_scheduled_steps(t0 + timedelta(hours=2))

        assert [(s.state_id, s.step_id) for s in due] == [("dun_a", "s0"), ("dun_b", "s1")]

    async def test_reschedule_replaces_entry(self, storage, t0):
        await storage.schedule_step("dun_a", "s0", t0)
        await storage.schedule_step("dun_a", "s0", t0 + timedelta(days=3))

        assert await storage.get_scheduled_steps(t0) == []
        due = await storage.get_scheduled_steps(t0 + timedelta(days=3))
        assert [s.scheduled_at for s in due] == [t0 + timedelta(days=3)]

    async def test_remove(self, storage, t0):
        await storage.schedule_step("dun_a", "s0", t0)

        await storage.remove_scheduled_step("dun_a", "s0")
        await storage.remove_scheduled_step("dun_a", "missing")

        assert await storage.get_scheduled_steps(t0) == []

    async def test_naive_datetimes_treated_as_utc(self, storage, t0):
        await storage.schedule_step("dun_a", "s0", datetime(2024, 3, 4, 8, 0))
        await storage.schedule_step("dun_b", "s0", t0 + timedelta(days=1))

        due = await storage.get_scheduled_steps(datetime(2024, 3, 4, 12, 0))

        assert [s.state_id for s in due] == ["dun_a"]
        assert due[0].scheduled_at == t0
        assert due[0].scheduled_at.tzinfo is not None
