from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from dcabot.domain import dca_plus
from dcabot.domain.models import (
    Coin,
    DcaPlusConfig,
    Pair,
    PositionType,
    Vault,
    VaultStatus,
)
from dcabot.domain.time_intervals import TimeInterval

NOW = datetime(2024, 3, 1, tzinfo=UTC)
FEE = Decimal("0.2")


def _vault(**overrides) -> Vault:
    base = Vault(
        id=1,
        owner="alice",
        pair=Pair(address="pair", base_denom="uatom", quote_denom="uusd"),
        position_type=PositionType.ENTER,
        balance=Coin("uusd", 1000),
        swap_amount=100,
        time_interval=TimeInterval.DAILY,
        status=VaultStatus.ACTIVE,
        created_at=NOW,
        swapped_amount=Coin("uusd", 0),
        received_amount=Coin("uatom", 0),
        dca_plus_config=DcaPlusConfig(
            escrow_level=Decimal("0.05"), model_id=30, total_deposit=1000
        ),
    )
    return replace(base, **overrides)


@pytest.mark.parametrize(
    ("deposit", "swap_amount", "model_id"),
    [
        (1000, 100, 30),
        (3200, 100, 30),
        (3201, 100, 35),
        (5000, 100, 45),
        (9400, 100, 80),
        (9401, 100, 90),
        (1_000_000, 1, 90),
    ],
)
def test_model_id_buckets_expected_executions(
    deposit: int, swap_amount: int, model_id: int
) -> None:
    assert dca_plus.model_id_for(deposit, swap_amount) == model_id


def test_model_ids_cover_every_bucket() -> None:
    assert dca_plus.MODEL_IDS == (30, 35, 40, 45, 50, 55, 60, 70, 80, 90)


def test_tranche_amount_scales_by_coefficient_and_caps_to_balance() -> None:
    vault = _vault()
    assert dca_plus.tranche_amount(vault, Decimal("1.5")) == 150
    assert dca_plus.tranche_amount(vault, Decimal("0.3")) == 30
    assert dca_plus.tranche_amount(vault, Decimal("0.001")) == 1
    assert dca_plus.tranche_amount(replace(vault, balance=Coin("uusd", 20)), Decimal("1")) == 20


def test_tranche_amount_ignores_coefficient_for_plain_vaults() -> None:
    vault = _vault(dca_plus_config=None)
    assert dca_plus.tranche_amount(vault, Decimal("3")) == 100


def test_record_tranche_tracks_standard_dca_benchmark() -> None:
    config = DcaPlusConfig(escrow_level=Decimal("0.05"), model_id=30, total_deposit=1000)

    updated = dca_plus.record_tranche(
        config,
        sent=150,
        received=300,
        coefficient=Decimal("1.5"),
        swap_fee_percent=Decimal("0.0165"),
        escrowed=10,
    )

    assert updated.standard_dca_swapped_amount == 100
    assert updated.standard_dca_received_amount == 196
    assert updated.escrowed_balance == 10
    assert updated.standard_dca_remaining == 900


def test_record_tranche_never_swaps_past_total_deposit() -> None:
    config = DcaPlusConfig(
        escrow_level=Decimal("0.05"),
        model_id=30,
        total_deposit=1000,
        standard_dca_swapped_amount=950,
    )

    updated = dca_plus.record_tranche(
        config,
        sent=100,
        received=100,
        coefficient=Decimal("1"),
        swap_fee_percent=Decimal("0"),
        escrowed=0,
    )

    assert updated.standard_dca_swapped_amount == 1000
    assert updated.standard_dca_received_amount == 50


def test_escrow_delta_floors() -> None:
    assert dca_plus.escrow_delta(99, Decimal("0.05")) == 4
    assert dca_plus.escrow_delta(0, Decimal("0.05")) == 0


def test_expected_completion_time_counts_remaining_standard_tranches() -> None:
    vault = _vault(
        dca_plus_config=DcaPlusConfig(
            escrow_level=Decimal("0.05"),
            model_id=30,
            total_deposit=1000,
            standard_dca_swapped_amount=750,
        )
    )
    assert dca_plus.expected_completion_time(vault, NOW) == NOW + timedelta(days=3)
    assert dca_plus.expected_completion_time(_vault(dca_plus_config=None), NOW) == NOW


def test_settle_escrow_charges_fee_on_outperformance() -> None:
    vault = _vault(
        balance=Coin("uusd", 0),
        swapped_amount=Coin("uusd", 500),
        received_amount=Coin("uatom", 1000),
        dca_plus_config=DcaPlusConfig(
            escrow_level=Decimal("0.05"),
            model_id=30,
            total_deposit=500,
            standard_dca_swapped_amount=500,
            standard_dca_received_amount=900,
            escrowed_balance=50,
        ),
    )

    settlement = dca_plus.settle_escrow(
        vault, coefficient=dca_plus.ONE, performance_fee_percent=FEE
    )

    assert settlement.benchmark_received == 900
    assert settlement.outperformance == 100
    assert settlement.performance_fee == 20
    assert settlement.owner_amount == 30


def test_settle_escrow_values_unswapped_benchmark_at_average_price() -> None:
    vault = _vault(
        swapped_amount=Coin("uusd", 500),
        received_amount=Coin("uatom", 1000),
        dca_plus_config=DcaPlusConfig(
            escrow_level=Decimal("0.05"),
            model_id=30,
            total_deposit=1000,
            standard_dca_swapped_amount=500,
            standard_dca_received_amount=900,
            escrowed_balance=50,
        ),
    )

    settlement = dca_plus.settle_escrow(
        vault, coefficient=dca_plus.ONE, performance_fee_percent=FEE
    )

    assert settlement.benchmark_received == 1900
    assert settlement.performance_fee == 0
    assert settlement.owner_amount == 50


@pytest.mark.parametrize(
    ("coefficient", "benchmark", "fee"),
    [(dca_plus.ONE, 2400, 0), (Decimal("0.2"), 1200, 60)],
)
def test_settle_escrow_scales_unswapped_benchmark_by_current_adjustment(
    coefficient: Decimal, benchmark: int, fee: int
) -> None:
    vault = _vault(
        balance=Coin("uusd", 0),
        swapped_amount=Coin("uusd", 500),
        received_amount=Coin("uatom", 1500),
        dca_plus_config=DcaPlusConfig(
            escrow_level=Decimal("0.05"),
            model_id=30,
            total_deposit=1000,
            standard_dca_swapped_amount=500,
            standard_dca_received_amount=900,
            escrowed_balance=100,
        ),
    )

    settlement = dca_plus.settle_escrow(
        vault, coefficient=coefficient, performance_fee_percent=FEE
    )

    assert settlement.benchmark_received == benchmark
    assert settlement.performance_fee == fee
    assert settlement.owner_amount == 100 - fee


def test_performance_fee_capped_by_escrow() -> None:
    vault = _vault(
        swapped_amount=Coin("uusd", 100),
        received_amount=Coin("uatom", 10_000),
        dca_plus_config=DcaPlusConfig(
            escrow_level=Decimal("0.05"),
            model_id=30,
            total_deposit=100,
            standard_dca_swapped_amount=100,
            standard_dca_received_amount=100,
            escrowed_balance=7,
        ),
    )

    settlement = dca_plus.settle_escrow(
        vault, coefficient=dca_plus.ONE, performance_fee_percent=FEE
    )

    assert settlement.performance_fee == 7
    assert settlement.owner_amount == 0


def test_settle_escrow_requires_dca_plus_config() -> None:
    with pytest.raises(ValueError):
        dca_plus.settle_escrow(
            _vault(dca_plus_config=None), coefficient=dca_plus.ONE, performance_fee_percent=FEE
        )
