from __future__ import annotations

from decimal import Decimal

import pytest
from conftest import PAIR, Harness, make_block

from dcabot.domain.errors import InvalidInputError, NotFoundError, UnauthorizedError
from dcabot.domain.models import PositionType, VaultStatus


def test_create_pair_requires_admin_and_distinct_denoms(harness: Harness) -> None:
    admin = harness.settings.admin_address

    with pytest.raises(UnauthorizedError):
        harness.admin.create_pair("mallory", "pair-x", "ux", "uy")
    with pytest.raises(InvalidInputError):
        harness.admin.create_pair(admin, "pair-x", "ux", "ux")
    with pytest.raises(InvalidInputError):
        harness.admin.create_pair(admin, PAIR.address, "uosmo", "uusd")

    # Re-registering the same pair is a no-op.
    assert harness.admin.create_pair(admin, PAIR.address, "uatom", "uusd") == PAIR


def test_delete_pair(harness: Harness) -> None:
    admin = harness.settings.admin_address

    harness.admin.delete_pair(admin, PAIR.address)

    with pytest.raises(NotFoundError):
        harness.admin.delete_pair(admin, PAIR.address)
    with pytest.raises(NotFoundError):
        harness.create_vault()


def test_update_swap_adjustments_validation(harness: Harness) -> None:
    admin = harness.settings.admin_address

    with pytest.raises(UnauthorizedError):
        harness.admin.update_swap_adjustments(
            "mallory", PAIR.address, PositionType.ENTER, [(30, Decimal("1.1"))]
        )
    with pytest.raises(InvalidInputError):
        harness.admin.update_swap_adjustments(
            admin, PAIR.address, PositionType.ENTER, [(31, Decimal("1.1"))]
        )
    with pytest.raises(InvalidInputError):
        harness.admin.update_swap_adjustments(
            admin, PAIR.address, PositionType.ENTER, [(30, Decimal("0"))]
        )
    with pytest.raises(NotFoundError):
        harness.admin.update_swap_adjustments(
            admin, "missing", PositionType.ENTER, [(30, Decimal("1.1"))]
        )

    count = harness.admin.update_swap_adjustments(
        admin,
        PAIR.address,
        PositionType.EXIT,
        [(30, Decimal("0.8")), (90, Decimal("1.2"))],
    )
    assert count == 2
    with harness.uow_factory() as uow:
        value = uow.pairs.get_swap_adjustment(
            pair_address=PAIR.address, position_type=PositionType.EXIT, model_id=90
        )
        untouched = uow.pairs.get_swap_adjustment(
            pair_address=PAIR.address, position_type=PositionType.ENTER, model_id=90
        )
    assert value == Decimal("1.2")
    assert untouched == Decimal("1")


def test_set_paused_requires_admin(harness: Harness) -> None:
    with pytest.raises(UnauthorizedError):
        harness.admin.set_paused("alice", True)


def test_vaults_by_owner_paginate_and_filter(harness: Harness) -> None:
    alice = [harness.create_vault() for _ in range(3)]
    bob = harness.create_vault(owner="bob")
    harness.vaults.cancel(alice[1], "alice", block=make_block(1))

    first = harness.queries.get_vaults_by_owner("alice", limit=2)
    second = harness.queries.get_vaults_by_owner("alice", limit=2, cursor=first.next_cursor)
    cancelled = harness.queries.get_vaults_by_owner("alice", status=VaultStatus.CANCELLED)

    assert [v.id for v in first.items] == alice[:2]
    assert first.next_cursor == str(alice[1])
    assert [v.id for v in second.items] == alice[2:]
    assert second.next_cursor is None
    assert [v.id for v in cancelled.items] == [alice[1]]
    assert [v.id for v in harness.queries.get_vaults_by_owner("bob").items] == [bob]


def test_event_pages_resume_after_cursor(harness: Harness) -> None:
    vault_id = harness.create_vault(deposit=200)
    harness.execute(vault_id, make_block(1))
    harness.deliver(make_block(2))

    first = harness.queries.get_events_by_resource_id(vault_id, limit=3)
    rest = harness.queries.get_events_by_resource_id(vault_id, cursor=first.next_cursor)

    assert [e.sequence for e in first.items] == [1, 2, 3]
    assert [e.sequence for e in rest.items] == [4]
    assert rest.next_cursor is None


def test_queries_reject_bad_input(harness: Harness) -> None:
    with pytest.raises(NotFoundError):
        harness.queries.get_vault(1)
    with pytest.raises(InvalidInputError):
        harness.queries.get_executions(1, cursor="abc")
    with pytest.raises(InvalidInputError):
        harness.queries.get_vaults_by_owner("alice", limit=0)
    with pytest.raises(NotFoundError):
        harness.queries.get_order_index_owner("7")
