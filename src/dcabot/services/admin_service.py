from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import Decimal

from dcabot.config import Settings
from dcabot.domain.dca_plus import MODEL_IDS, ONE
from dcabot.domain.errors import InvalidInputError, NotFoundError, PausedError, UnauthorizedError
from dcabot.domain.models import Pair, PositionType, Vault
from dcabot.persistence.uow import UnitOfWork, UnitOfWorkFactory

logger = logging.getLogger(__name__)

PAUSED_FLAG = "paused"


def is_paused(uow: UnitOfWork, settings: Settings) -> bool:
    return settings.paused or uow.pairs.get_flag(PAUSED_FLAG) == "1"


def ensure_not_paused(uow: UnitOfWork, settings: Settings) -> None:
    if is_paused(uow, settings):
        raise PausedError()


def swap_adjustment_for(uow: UnitOfWork, vault: Vault) -> Decimal:
    """Current coefficient of a DCA+ vault's model on its pair; one for plain vaults."""
    config = vault.dca_plus_config
    if config is None:
        return ONE
    return uow.pairs.get_swap_adjustment(
        pair_address=vault.pair.address,
        position_type=vault.position_type,
        model_id=config.model_id,
    )


class AdminService:
    """Pair registry, swap-adjustment table and pause switch; admin only."""

    def __init__(self, uow_factory: UnitOfWorkFactory, settings: Settings) -> None:
        self._uow_factory = uow_factory
        self._settings = settings

    def _ensure_admin(self, caller: str) -> None:
        if caller != self._settings.admin_address:
            logger.warning("admin_call_rejected", extra={"extra": {"caller": caller}})
            raise UnauthorizedError()

    def create_pair(self, caller: str, address: str, base_denom: str, quote_denom: str) -> Pair:
        self._ensure_admin(caller)
        if not address or not base_denom or not quote_denom:
            raise InvalidInputError("pair address and denoms must be non-empty")
        if base_denom == quote_denom:
            raise InvalidInputError("base and quote denoms must differ")
        pair = Pair(address=address, base_denom=base_denom, quote_denom=quote_denom)
        with self._uow_factory() as uow:
            existing = uow.pairs.get_pair(address)
            if existing is not None and existing != pair:
                raise InvalidInputError(f"pair {address} already exists with different denoms")
            uow.pairs.save_pair(pair)
        logger.info(
            "pair_created",
            extra={"extra": {"pair": address, "base": base_denom, "quote": quote_denom}},
        )
        return pair

    def delete_pair(self, caller: str, address: str) -> None:
        self._ensure_admin(caller)
        with self._uow_factory() as uow:
            if not uow.pairs.delete_pair(address):
                raise NotFoundError(f"pair {address} not found")
        logger.info("pair_deleted", extra={"extra": {"pair": address}})

    def update_swap_adjustments(
        self,
        caller: str,
        pair_address: str,
        position_type: PositionType,
        adjustments: Iterable[tuple[int, Decimal]],
    ) -> int:
        self._ensure_admin(caller)
        items = [(int(model_id), Decimal(str(value))) for model_id, value in adjustments]
        for model_id, value in items:
            if model_id not in MODEL_IDS:
                raise InvalidInputError(f"unknown model id {model_id}")
            if value <= 0:
                raise InvalidInputError("swap adjustment must be > 0")
        with self._uow_factory() as uow:
            if uow.pairs.get_pair(pair_address) is None:
                raise NotFoundError(f"pair {pair_address} not found")
            for model_id, value in items:
                uow.pairs.save_swap_adjustment(
                    pair_address=pair_address,
                    position_type=position_type,
                    model_id=model_id,
                    value=value,
                )
        logger.info(
            "swap_adjustments_updated",
            extra={
                "extra": {
                    "pair": pair_address,
                    "position_type": position_type.value,
                    "count": len(items),
                }
            },
        )
        return len(items)

    def set_paused(self, caller: str, paused: bool) -> None:
        self._ensure_admin(caller)
        with self._uow_factory() as uow:
            uow.pairs.set_flag(PAUSED_FLAG, "1" if paused else "0")
        logger.warning("pause_flag_updated", extra={"extra": {"paused": paused}})
