from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest
from pydantic import ValidationError

from dcabot.config import Settings
from dcabot.domain.models import Destination


def test_defaults() -> None:
    settings = Settings()

    assert settings.admin_address == "admin"
    assert settings.swap_fee_percent == Decimal("0.0165")
    assert settings.page_limit == 30
    assert settings.paused is False
    assert settings.venue_api_key is None
    assert settings.observability_metrics_exporter == "none"
    assert settings.observability_prometheus_port == 9464


def test_values_from_aliases() -> None:
    settings = Settings(
        ADMIN_ADDRESS="ops",
        SWAP_FEE_PERCENT="0.001",
        VENUE_API_KEY="key",
        OBSERVABILITY_METRICS_EXPORTER=" OTLP ",
    )

    assert settings.admin_address == "ops"
    assert settings.swap_fee_percent == Decimal("0.001")
    assert settings.venue_api_key is not None
    assert settings.venue_api_key.get_secret_value() == "key"
    assert "key" not in repr(settings)
    assert settings.observability_metrics_exporter == "otlp"


def test_loads_values_from_env_and_env_file(monkeypatch, tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("PAGE_LIMIT=7\nPAUSED=true\n", encoding="utf-8")
    monkeypatch.setenv("FEE_COLLECTOR_ADDRESS", "treasury")

    settings = Settings(_env_file=str(env_file))

    assert settings.page_limit == 7
    assert settings.paused is True
    assert settings.fee_collector_address == "treasury"


@pytest.mark.parametrize(
    "overrides",
    [
        {"SWAP_FEE_PERCENT": "1.5"},
        {"DCA_PLUS_ESCROW_LEVEL": "-0.1"},
        {"PERFORMANCE_FEE_PERCENT": "2"},
        {"DEFAULT_SLIPPAGE_TOLERANCE": "-1"},
        {"PAGE_LIMIT": "0"},
        {"VENUE_TIMEOUT_SECONDS": "0"},
        {"KEEPER_INTERVAL_SECONDS": "-5"},
        {"OBSERVABILITY_METRICS_EXPORTER": "statsd"},
        {"OBSERVABILITY_PROMETHEUS_PORT": "0"},
    ],
)
def test_invalid_values_rejected(overrides: dict[str, str]) -> None:
    with pytest.raises(ValidationError):
        Settings(**overrides)


def test_prometheus_exporter_accepted() -> None:
    settings = Settings(
        OBSERVABILITY_METRICS_EXPORTER="Prometheus", OBSERVABILITY_PROMETHEUS_PORT="9100"
    )

    assert settings.observability_metrics_exporter == "prometheus"
    assert settings.observability_prometheus_port == 9100


def test_fee_collectors_default_to_single_collector() -> None:
    settings = Settings(FEE_COLLECTOR_ADDRESS="treasury")

    assert settings.fee_collectors == []
    assert settings.fee_shares == (Destination("treasury", Decimal(1)),)


def test_fee_collectors_parse_json_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(
        "FEE_COLLECTORS",
        '[{"address": "treasury", "allocation": "0.75"}, {"address": "ops", "allocation": "0.25"}]',
    )

    settings = Settings()

    assert settings.fee_shares == (
        Destination("treasury", Decimal("0.75")),
        Destination("ops", Decimal("0.25")),
    )


@pytest.mark.parametrize(
    "collectors",
    [
        [{"address": "treasury", "allocation": "0.5"}],
        [{"address": "treasury", "allocation": "1.5"}, {"address": "ops", "allocation": "-0.5"}],
        [{"address": "", "allocation": "1"}],
    ],
)
def test_invalid_fee_collectors_rejected(collectors: list[dict[str, str]]) -> None:
    with pytest.raises(ValidationError):
        Settings(FEE_COLLECTORS=collectors)
