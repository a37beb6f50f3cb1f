"""DCA+ escrow arithmetic.

A DCA+ vault swaps ``swap_amount * coefficient`` per tranche while tracking a
benchmark: what plain DCA of ``swap_amount`` per tranche would have swapped and
received at the same prices. A share of every tranche's proceeds is held in
escrow and settled against that benchmark once plain DCA would have finished.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import ROUND_DOWN, Decimal

from dcabot.domain.models import DcaPlusConfig, Vault
from dcabot.domain.time_intervals import add_interval

ONE = Decimal("1")

_MODEL_BUCKETS: tuple[tuple[int, int], ...] = (
    (32, 30),
    (38, 35),
    (44, 40),
    (50, 45),
    (55, 50),
    (62, 55),
    (73, 60),
    (83, 70),
    (94, 80),
)
MAX_MODEL_ID = 90
MODEL_IDS = tuple(model_id for _, model_id in _MODEL_BUCKETS) + (MAX_MODEL_ID,)


def floor_amount(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_DOWN))


def model_id_for(total_deposit: int, swap_amount: int) -> int:
    """Bucket the expected number of plain DCA executions into a model id."""
    if swap_amount <= 0:
        raise ValueError("swap_amount must be positive")
    executions = math.ceil(total_deposit / swap_amount)
    for upper_bound, model_id in _MODEL_BUCKETS:
        if executions <= upper_bound:
            return model_id
    return MAX_MODEL_ID


def new_config(*, escrow_level: Decimal, total_deposit: int, swap_amount: int) -> DcaPlusConfig:
    return DcaPlusConfig(
        escrow_level=escrow_level,
        model_id=model_id_for(total_deposit, swap_amount),
        total_deposit=total_deposit,
    )


def tranche_amount(vault: Vault, coefficient: Decimal) -> int:
    """Amount to send for the next tranche, capped to the remaining balance."""
    if vault.dca_plus_config is None:
        planned = vault.swap_amount
    else:
        planned = floor_amount(Decimal(vault.swap_amount) * coefficient)
    return min(vault.balance.amount, max(planned, 1))


def escrow_delta(net_received: int, escrow_level: Decimal) -> int:
    return floor_amount(Decimal(net_received) * escrow_level)


def record_tranche(
    config: DcaPlusConfig,
    *,
    sent: int,
    received: int,
    coefficient: Decimal,
    swap_fee_percent: Decimal,
    escrowed: int,
) -> DcaPlusConfig:
    """Fold one successful tranche into the benchmark and escrow totals."""
    if sent <= 0:
        return replace(config, escrowed_balance=config.escrowed_balance + escrowed)
    divisor = coefficient if coefficient > 0 else ONE
    standard_swap = min(floor_amount(Decimal(sent) / divisor), config.standard_dca_remaining)
    standard_received = floor_amount(
        Decimal(standard_swap) * Decimal(received) / Decimal(sent) * (ONE - swap_fee_percent)
    )
    return replace(
        config,
        standard_dca_swapped_amount=config.standard_dca_swapped_amount + standard_swap,
        standard_dca_received_amount=config.standard_dca_received_amount + standard_received,
        escrowed_balance=config.escrowed_balance + escrowed,
    )


def expected_completion_time(vault: Vault, now: datetime) -> datetime:
    """When plain DCA of the vault's deposits would have run its last tranche."""
    config = vault.dca_plus_config
    if config is None:
        return now
    remaining_executions = math.ceil(config.standard_dca_remaining / vault.swap_amount)
    return add_interval(
        now,
        vault.time_interval,
        interval_seconds=vault.interval_seconds,
        count=remaining_executions,
    )


@dataclass(frozen=True)
class EscrowSettlement:
    benchmark_received: int
    outperformance: int
    performance_fee: int
    owner_amount: int


def settle_escrow(
    vault: Vault,
    *,
    coefficient: Decimal,
    performance_fee_percent: Decimal,
) -> EscrowSettlement:
    """Split the escrowed balance between the owner and the fee collector.

    Standard DCA input that was never swapped is valued at the vault's own
    average execution price, which is already net of the swap fee, scaled by
    the pair's current swap adjustment: a coefficient above one marks a cheap
    market in which plain DCA would have bought more per unit.
    """

    config = vault.dca_plus_config
    if config is None:
        raise ValueError("vault has no DCA+ configuration")
    benchmark = config.standard_dca_received_amount
    average_price = vault.average_price()
    if config.standard_dca_remaining > 0 and average_price is not None:
        adjustment = coefficient if coefficient > 0 else ONE
        benchmark += floor_amount(
            Decimal(config.standard_dca_remaining) * average_price * adjustment
        )
    outperformance = max(0, vault.received_amount.amount - benchmark)
    fee = min(
        config.escrowed_balance,
        floor_amount(Decimal(outperformance) * performance_fee_percent),
    )
    return EscrowSettlement(
        benchmark_received=benchmark,
        outperformance=outperformance,
        performance_fee=fee,
        owner_amount=config.escrowed_balance - fee,
    )
