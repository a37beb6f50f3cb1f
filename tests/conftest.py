from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from dcabot.adapters.settlement import InMemorySettlementLedger
from dcabot.adapters.simulated_venue import SimulatedVenue
from dcabot.config import Settings
from dcabot.domain.messages import ExecutionResult, Response
from dcabot.domain.models import Block, Coin, Pair
from dcabot.domain.time_intervals import TimeInterval
from dcabot.persistence.uow import UnitOfWorkFactory
from dcabot.services.admin_service import AdminService
from dcabot.services.dispatcher import MessageDispatcher
from dcabot.services.escrow_service import EscrowService
from dcabot.services.execution_service import ExecutionService
from dcabot.services.keeper import Keeper
from dcabot.services.query_service import QueryService
from dcabot.services.trigger_scheduler import TriggerScheduler
from dcabot.services.vault_service import VaultService

GENESIS = datetime(2024, 1, 1, tzinfo=UTC)
PAIR = Pair(address="pair-atom-usd", base_denom="uatom", quote_denom="uusd")


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = set()
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)

    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_default_state_db_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("STATE_DB_PATH", str(tmp_path / "state.sqlite"))


def make_block(seconds: float = 0, *, height: int | None = None) -> Block:
    return Block(
        height=height if height is not None else 100 + int(seconds),
        time=GENESIS + timedelta(seconds=seconds),
    )


@dataclass
class Harness:
    """Services wired to one sqlite file, a simulated venue and an in-memory ledger."""

    settings: Settings
    uow_factory: UnitOfWorkFactory
    venue: SimulatedVenue
    ledger: InMemorySettlementLedger
    dispatcher: MessageDispatcher
    admin: AdminService
    vaults: VaultService
    executions: ExecutionService
    escrow: EscrowService
    queries: QueryService
    scheduler: TriggerScheduler
    keeper: Keeper

    def send(self, response: Response) -> Response:
        self.dispatcher.dispatch(response)
        return response

    def deliver(self, block: Block) -> list[ExecutionResult]:
        """Feed queued venue replies back until the venue goes quiet."""
        results: list[ExecutionResult] = []
        while True:
            replies = self.venue.take_replies()
            if not replies:
                return results
            for reply in replies:
                result = self.executions.handle_reply(reply, block=block)
                self.dispatcher.dispatch(result)
                results.append(result)

    def create_vault(self, *, deposit: int = 100, swap_amount: int = 100, **kwargs) -> int:
        denom = kwargs.pop("denom", PAIR.quote_denom)
        block = kwargs.pop("block", make_block())
        response = self.vaults.create(
            kwargs.pop("owner", "alice"),
            kwargs.pop("pair_address", PAIR.address),
            swap_amount,
            kwargs.pop("time_interval", TimeInterval.DAILY),
            [Coin(denom, deposit)],
            block=block,
            **kwargs,
        )
        self.send(response)
        assert response.vault_id is not None
        return response.vault_id

    def execute(self, vault_id: int, block: Block) -> ExecutionResult:
        result = self.executions.execute_trigger(vault_id, block=block)
        self.dispatcher.dispatch(result)
        return result


def build_harness(settings: Settings, venue: SimulatedVenue) -> Harness:
    uow_factory = UnitOfWorkFactory(settings.state_db_path)
    ledger = InMemorySettlementLedger()
    dispatcher = MessageDispatcher(venue, ledger)
    executions = ExecutionService(uow_factory, venue, settings)
    escrow = EscrowService(uow_factory, settings)
    scheduler = TriggerScheduler(uow_factory, page_limit=settings.page_limit)
    admin = AdminService(uow_factory, settings)
    admin.create_pair(settings.admin_address, PAIR.address, PAIR.base_denom, PAIR.quote_denom)
    return Harness(
        settings=settings,
        uow_factory=uow_factory,
        venue=venue,
        ledger=ledger,
        dispatcher=dispatcher,
        admin=admin,
        vaults=VaultService(uow_factory, settings),
        executions=executions,
        escrow=escrow,
        queries=QueryService(uow_factory, settings),
        scheduler=scheduler,
        keeper=Keeper(
            scheduler=scheduler,
            execution_service=executions,
            escrow_service=escrow,
            venue=venue,
            dispatcher=dispatcher,
            page_limit=settings.page_limit,
        ),
    )


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def uow_factory(settings: Settings) -> UnitOfWorkFactory:
    return UnitOfWorkFactory(settings.state_db_path)


@pytest.fixture
def venue() -> SimulatedVenue:
    sim = SimulatedVenue()
    sim.list_pair(PAIR, Decimal("1"))
    return sim


@pytest.fixture
def harness(settings: Settings, venue: SimulatedVenue) -> Harness:
    return build_harness(settings, venue)
