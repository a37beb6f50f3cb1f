from __future__ import annotations

import sqlite3
from dataclasses import replace
from decimal import Decimal

import pytest
from conftest import GENESIS, PAIR, make_block

from dcabot.domain.events import EventDraft, EventType
from dcabot.domain.models import (
    Coin,
    DcaPlusConfig,
    Destination,
    DisburseEscrowTask,
    ExecutionOutcome,
    PositionType,
    SagaState,
    Trigger,
    Vault,
    VaultStatus,
)
from dcabot.domain.time_intervals import TimeInterval
from dcabot.persistence.uow import UnitOfWorkFactory


def _vault(vault_id: int, **overrides) -> Vault:
    base = Vault(
        id=vault_id,
        owner="alice",
        pair=PAIR,
        position_type=PositionType.ENTER,
        balance=Coin("uusd", 1000),
        swap_amount=100,
        time_interval=TimeInterval.DAILY,
        status=VaultStatus.ACTIVE,
        created_at=GENESIS,
        swapped_amount=Coin("uusd", 0),
        received_amount=Coin("uatom", 0),
    )
    return replace(base, **overrides)


def test_uow_commit_and_rollback(tmp_path) -> None:
    db = tmp_path / "state.sqlite"
    factory = UnitOfWorkFactory(str(db))

    with factory() as uow:
        uow.pairs.save_pair(PAIR)
        uow.events.append(EventDraft.at(1, make_block(), EventType.VAULT_CREATED))

    with pytest.raises(RuntimeError):
        with factory() as uow:
            uow.events.append(EventDraft.at(1, make_block(), EventType.FUNDS_DEPOSITED))
            raise RuntimeError("boom")

    with sqlite3.connect(db) as conn:
        events = conn.execute("SELECT COUNT(*) FROM events WHERE resource_id = 1").fetchone()[0]
        pairs = conn.execute("SELECT COUNT(*) FROM pairs").fetchone()[0]
    assert events == 1
    assert pairs == 1

    with factory() as uow:
        # The rolled-back append must not have consumed a sequence number.
        event = uow.events.append(EventDraft.at(1, make_block(), EventType.FUNDS_DEPOSITED))
    assert event.sequence == 2


def test_read_only_uow_blocks_writes(tmp_path) -> None:
    factory = UnitOfWorkFactory(str(tmp_path / "state.sqlite"))
    read_only = replace(factory, read_only=True)

    with read_only() as uow:
        with pytest.raises(PermissionError):
            uow.pairs.save_pair(PAIR)
        with pytest.raises(PermissionError):
            uow.events.append(EventDraft.at(1, make_block(), EventType.VAULT_CREATED))
        with pytest.raises(PermissionError):
            uow.triggers.next_request_id(1, "swap")
        with pytest.raises(PermissionError):
            uow.escrow.save_task(DisburseEscrowTask(vault_id=1, due_time=GENESIS))
        assert uow.pairs.get_pair(PAIR.address) is None


def test_vault_round_trip_keeps_dca_plus_state(tmp_path) -> None:
    factory = UnitOfWorkFactory(str(tmp_path / "state.sqlite"))
    vault = _vault(
        1,
        label="weekly atom",
        destinations=(
            Destination("alice", Decimal("0.25")),
            Destination("savings", Decimal("0.75")),
        ),
        slippage_tolerance=Decimal("0.01"),
        price_threshold=Decimal("1.25"),
        dca_plus_config=DcaPlusConfig(
            escrow_level=Decimal("0.05"),
            model_id=30,
            total_deposit=1000,
            standard_dca_swapped_amount=200,
            standard_dca_received_amount=190,
            escrowed_balance=9,
        ),
    )

    with factory() as uow:
        assert uow.vaults.next_vault_id() == 1
        uow.vaults.insert_vault(vault)
    with factory() as uow:
        loaded = uow.vaults.get_vault(1)
        assert uow.vaults.next_vault_id() == 2

    assert loaded == vault


def test_schema_upgrade_adds_destinations_column(tmp_path) -> None:
    db = tmp_path / "state.sqlite"
    with sqlite3.connect(db) as conn:
        conn.execute(
            "CREATE TABLE vaults ("
            "id INTEGER PRIMARY KEY, owner TEXT NOT NULL, status TEXT NOT NULL)"
        )

    with UnitOfWorkFactory(str(db))():
        pass

    with sqlite3.connect(db) as conn:
        columns = {row[1] for row in conn.execute("PRAGMA table_info(vaults)")}
    assert "destinations_json" in columns


def test_event_and_execution_sequences_are_per_resource(tmp_path) -> None:
    factory = UnitOfWorkFactory(str(tmp_path / "state.sqlite"))
    block = make_block()

    with factory() as uow:
        first = uow.events.append(EventDraft.at(1, block, EventType.VAULT_CREATED))
        other = uow.events.append(EventDraft.at(2, block, EventType.VAULT_CREATED))
        second = uow.events.append(
            EventDraft.at(1, block, EventType.FUNDS_DEPOSITED, amount={"denom": "uusd"})
        )
        run_one = uow.executions.record(
            vault_id=1, block=block, outcome=ExecutionOutcome.SKIPPED_SLIPPAGE, reason="spread"
        )
        run_two = uow.executions.record(
            vault_id=1,
            block=block,
            outcome=ExecutionOutcome.SUCCESS,
            sent=Coin("uusd", 100),
            received=Coin("uatom", 99),
            fee=Coin("uatom", 1),
        )

    assert (first.sequence, second.sequence, other.sequence) == (1, 2, 1)
    assert (run_one.sequence, run_two.sequence) == (1, 2)

    with factory() as uow:
        events = uow.events.list_events(1, start_after=1, limit=10)
        executions = uow.executions.list_executions(1, start_after=None, limit=10)
        assert uow.events.count_events(1) == 2
        assert uow.events.count_events(1, EventType.VAULT_CREATED) == 1

    assert [event.event_type for event in events] == [EventType.FUNDS_DEPOSITED]
    assert events[0].data == {"denom": "uusd"}
    assert executions[1].received == Coin("uatom", 99)
    assert executions[0].sent is None


def test_trigger_request_routing_and_order_index(tmp_path) -> None:
    factory = UnitOfWorkFactory(str(tmp_path / "state.sqlite"))

    with factory() as uow:
        request_id = uow.triggers.next_request_id(7, "order")
        uow.triggers.save_trigger(
            replace(
                Trigger.price(7, Decimal("2.5")),
                saga_state=SagaState.AWAITING_ORDER_SUBMISSION,
                pending_request_id=request_id,
                pending_amount=50,
            )
        )
        uow.triggers.index_order("42", 7)

    assert request_id == "7-order-1"
    with factory() as uow:
        trigger = uow.triggers.get_trigger_by_request_id(request_id)
        assert trigger is not None
        assert trigger.pending_amount == 50
        assert trigger.target_price == Decimal("2.5")
        assert [t.vault_id for t in uow.triggers.list_in_flight_triggers()] == [7]
        assert uow.triggers.vault_id_for_order("42") == 7
        assert uow.triggers.next_request_id(7, "withdraw") == "7-withdraw-2"
        assert uow.triggers.delete_trigger(7) is True
        assert uow.triggers.vault_id_for_order("42") is None


def test_due_escrow_tasks_are_ordered_by_due_time(tmp_path) -> None:
    factory = UnitOfWorkFactory(str(tmp_path / "state.sqlite"))
    later = make_block(3600).time

    with factory() as uow:
        uow.escrow.save_task(DisburseEscrowTask(vault_id=2, due_time=later))
        uow.escrow.save_task(DisburseEscrowTask(vault_id=1, due_time=later))
        uow.escrow.save_task(DisburseEscrowTask(vault_id=3, due_time=GENESIS))
        uow.escrow.save_task(DisburseEscrowTask(vault_id=3, due_time=make_block(60).time))

    with factory() as uow:
        due = uow.escrow.list_due_tasks(as_of=later, limit=10)
        assert [task.vault_id for task in due] == [3, 1, 2]
        assert uow.escrow.list_due_tasks(as_of=GENESIS, limit=10) == []
        resumed = uow.escrow.list_due_tasks(as_of=later, limit=10, after=(later, 1))
        assert [task.vault_id for task in resumed] == [2]
