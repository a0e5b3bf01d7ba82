"""Tests for the event-sourced position ledger."""

from __future__ import annotations

import threading
from decimal import Decimal

import pytest

from conftest import FakeClock, create_position
from lpengine.errors import ConcurrentModification, InvalidRange, InvalidTransition, PositionNotFound
from lpengine.ledger.events import (
    Closed,
    Created,
    EventRecord,
    Failed,
    FeesAccrued,
    FeesHarvested,
    RangeAdjusted,
    RebalanceStarted,
)
from lpengine.ledger.ledger import PositionLedger
from lpengine.storage.memory import InMemoryEventStore
from lpengine.types import PositionState


class TestAppend:
    """Tests for appending events."""

    def test_create_position(self, ledger: PositionLedger, clock: FakeClock) -> None:
        position = create_position(ledger)

        assert position.version == 1
        assert position.state is PositionState.ACTIVE
        assert position.liquidity == Decimal("10000")
        assert position.opened_at == clock()

    def test_version_increments_per_event(self, ledger: PositionLedger) -> None:
        create_position(ledger)
        position = ledger.append("pos-1", FeesAccrued(amount=Decimal("5")), expected_version=1)

        assert position.version == 2
        assert position.accrued_fees == Decimal("5")

    def test_wrong_expected_version_raises(self, ledger: PositionLedger) -> None:
        create_position(ledger)
        ledger.append("pos-1", FeesAccrued(amount=Decimal("5")), expected_version=1)

        with pytest.raises(ConcurrentModification) as exc_info:
            ledger.append("pos-1", FeesAccrued(amount=Decimal("1")), expected_version=1)
        assert exc_info.value.actual_version == 2
        assert ledger.snapshot("pos-1").accrued_fees == Decimal("5")

    def test_duplicate_create_rejected(self, ledger: PositionLedger) -> None:
        create_position(ledger)
        with pytest.raises(ConcurrentModification):
            create_position(ledger)

    def test_event_for_unknown_position(self, ledger: PositionLedger) -> None:
        with pytest.raises(PositionNotFound):
            ledger.append("missing", FeesAccrued(amount=Decimal("1")), expected_version=0)
        with pytest.raises(PositionNotFound):
            ledger.snapshot("missing")

    def test_inverted_range_rejected(self, ledger: PositionLedger, store: InMemoryEventStore) -> None:
        with pytest.raises(InvalidRange):
            create_position(ledger, lower="110", upper="90")
        assert len(store) == 0
        assert not ledger.exists("pos-1")

    def test_only_one_concurrent_writer_wins(self, ledger: PositionLedger) -> None:
        create_position(ledger)
        results: list[str] = []
        lock = threading.Lock()

        def writer() -> None:
            try:
                ledger.append("pos-1", FeesAccrued(amount=Decimal("1")), expected_version=1)
                outcome = "ok"
            except ConcurrentModification:
                outcome = "conflict"
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=writer) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count("ok") == 1
        assert results.count("conflict") == 9
        assert ledger.snapshot("pos-1").version == 2


class TestTransitions:
    """Tests for the position state machine."""

    def test_rebalance_cycle(self, ledger: PositionLedger) -> None:
        create_position(ledger)
        started = ledger.append("pos-1", RebalanceStarted(withdrawn=Decimal("10000")), expected_version=1)

        assert started.state is PositionState.REBALANCING
        assert started.liquidity == Decimal("0")
        assert started.in_transit == Decimal("10000")

        adjusted = ledger.append(
            "pos-1",
            RangeAdjusted(range_lower=Decimal("109"), range_upper=Decimal("121"), deposited=Decimal("9990")),
            expected_version=2,
        )

        assert adjusted.state is PositionState.ACTIVE
        assert (adjusted.range_lower, adjusted.range_upper) == (Decimal("109"), Decimal("121"))
        assert adjusted.liquidity == Decimal("9990")
        assert adjusted.in_transit == Decimal("0")

    def test_range_adjusted_requires_rebalancing(self, ledger: PositionLedger) -> None:
        create_position(ledger)
        with pytest.raises(InvalidTransition):
            ledger.append(
                "pos-1",
                RangeAdjusted(range_lower=Decimal("1"), range_upper=Decimal("2"), deposited=Decimal("1")),
                expected_version=1,
            )

    def test_harvest_resets_fees(self, ledger: PositionLedger, clock: FakeClock) -> None:
        create_position(ledger)
        ledger.append("pos-1", FeesAccrued(amount=Decimal("60")), expected_version=1)
        clock.advance(hours=1)
        position = ledger.append("pos-1", FeesHarvested(amount=Decimal("60")), expected_version=2)

        assert position.accrued_fees == Decimal("0")
        assert position.last_harvested_at == clock()

    def test_closed_position_accepts_nothing(self, ledger: PositionLedger) -> None:
        create_position(ledger)
        closed = ledger.append("pos-1", Closed(withdrawn=Decimal("10000")), expected_version=1)
        assert closed.state is PositionState.CLOSED
        assert closed.liquidity == Decimal("0")

        with pytest.raises(InvalidTransition):
            ledger.append("pos-1", FeesAccrued(amount=Decimal("1")), expected_version=2)

    def test_failed_bumps_version_only(self, ledger: PositionLedger) -> None:
        before = create_position(ledger)
        after = ledger.append("pos-1", Failed(reason="boom", plan_id="p", step=0), expected_version=1)

        assert after.version == before.version + 1
        assert after.liquidity == before.liquidity
        assert after.state is before.state


class TestReplay:
    """Replaying the history reproduces the live state."""

    def test_replay_matches_snapshot(self, ledger: PositionLedger) -> None:
        create_position(ledger, "pos-1")
        create_position(ledger, "pos-2", lower="1800", upper="2200", liquidity="5000")
        ledger.append("pos-1", FeesAccrued(amount=Decimal("3")), expected_version=1)
        ledger.append("pos-1", RebalanceStarted(withdrawn=Decimal("10000")), expected_version=2)
        ledger.append(
            "pos-1",
            RangeAdjusted(range_lower=Decimal("100"), range_upper=Decimal("120"), deposited=Decimal("9950")),
            expected_version=3,
        )
        ledger.append("pos-2", Closed(withdrawn=Decimal("5000")), expected_version=1)

        records = ledger.events("pos-1") + ledger.events("pos-2")
        rebuilt = PositionLedger.replay(records)

        assert rebuilt == {p.id: p for p in ledger.positions()}

    def test_recover_from_store(self, store: InMemoryEventStore, clock: FakeClock) -> None:
        ledger = PositionLedger(store, clock=clock)
        create_position(ledger)
        ledger.append("pos-1", FeesAccrued(amount=Decimal("7")), expected_version=1)

        recovered = PositionLedger(store, clock=clock)
        assert recovered.recover() == 2
        assert recovered.snapshot("pos-1") == ledger.snapshot("pos-1")

        # Sequence numbering continues after recovery.
        recovered.append("pos-1", FeesAccrued(amount=Decimal("1")), expected_version=2)
        assert [r.sequence for r in recovered.events("pos-1")] == [1, 2, 3]

    def test_replay_rejects_gaps(self, ledger: PositionLedger) -> None:
        create_position(ledger)
        ledger.append("pos-1", FeesAccrued(amount=Decimal("1")), expected_version=1)
        _, second = ledger.events("pos-1")

        with pytest.raises(InvalidTransition):
            PositionLedger.replay([second])

    def test_record_round_trips_through_dict(self, ledger: PositionLedger) -> None:
        create_position(ledger)
        (record,) = ledger.events("pos-1")

        restored = EventRecord.from_dict(record.to_dict())

        assert restored == record
        assert isinstance(restored.event, Created)
        assert restored.event.liquidity == Decimal("10000")
