from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dcabot.domain.models import Destination


class FeeCollector(BaseModel):
    address: str = Field(min_length=1)
    allocation: Decimal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    state_db_path: str = Field(default="dcabot_state.db", alias="STATE_DB_PATH")

    admin_address: str = Field(default="admin", alias="ADMIN_ADDRESS")
    fee_collector_address: str = Field(default="fee-collector", alias="FEE_COLLECTOR_ADDRESS")
    # JSON list of {"address", "allocation"}; empty sends every fee to FEE_COLLECTOR_ADDRESS.
    fee_collectors: list[FeeCollector] = Field(default_factory=list, alias="FEE_COLLECTORS")
    swap_fee_percent: Decimal = Field(default=Decimal("0.0165"), alias="SWAP_FEE_PERCENT")
    dca_plus_escrow_level: Decimal = Field(default=Decimal("0.05"), alias="DCA_PLUS_ESCROW_LEVEL")
    performance_fee_percent: Decimal = Field(
        default=Decimal("0.2"), alias="PERFORMANCE_FEE_PERCENT"
    )
    default_slippage_tolerance: Decimal = Field(
        default=Decimal("0.02"), alias="DEFAULT_SLIPPAGE_TOLERANCE"
    )
    page_limit: int = Field(default=30, alias="PAGE_LIMIT")
    paused: bool = Field(default=False, alias="PAUSED")

    venue_base_url: str = Field(default="http://127.0.0.1:8080", alias="VENUE_BASE_URL")
    venue_api_key: SecretStr | None = Field(default=None, alias="VENUE_API_KEY")
    venue_timeout_seconds: float = Field(default=10.0, alias="VENUE_TIMEOUT_SECONDS")

    keeper_interval_seconds: int = Field(default=60, alias="KEEPER_INTERVAL_SECONDS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    observability_enabled: bool = Field(default=False, alias="OBSERVABILITY_ENABLED")
    observability_metrics_exporter: str = Field(
        default="none", alias="OBSERVABILITY_METRICS_EXPORTER"
    )
    otel_exporter_otlp_endpoint: str | None = Field(
        default=None, alias="OTEL_EXPORTER_OTLP_ENDPOINT"
    )
    service_name: str = Field(default="dcabot", alias="OTEL_SERVICE_NAME")
    observability_prometheus_port: int = Field(
        default=9464, alias="OBSERVABILITY_PROMETHEUS_PORT"
    )

    @field_validator(
        "swap_fee_percent",
        "dca_plus_escrow_level",
        "performance_fee_percent",
        "default_slippage_tolerance",
    )
    @classmethod
    def validate_fraction(cls, value: Decimal) -> Decimal:
        if value < 0 or value > 1:
            raise ValueError("percentage values must be within [0, 1]")
        return value

    @field_validator("fee_collectors")
    @classmethod
    def validate_fee_collectors(cls, value: list[FeeCollector]) -> list[FeeCollector]:
        if not value:
            return value
        if any(collector.allocation <= 0 for collector in value):
            raise ValueError("FEE_COLLECTORS allocations must be > 0")
        if sum(collector.allocation for collector in value) != 1:
            raise ValueError("FEE_COLLECTORS allocations must sum to 1")
        return value

    @field_validator("page_limit")
    @classmethod
    def validate_page_limit(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("PAGE_LIMIT must be > 0")
        return value

    @field_validator("venue_timeout_seconds")
    @classmethod
    def validate_venue_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("VENUE_TIMEOUT_SECONDS must be > 0")
        return value

    @field_validator("keeper_interval_seconds")
    @classmethod
    def validate_keeper_interval(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("KEEPER_INTERVAL_SECONDS must be > 0")
        return value

    @field_validator("observability_prometheus_port")
    @classmethod
    def validate_prometheus_port(cls, value: int) -> int:
        if not 0 < value < 65536:
            raise ValueError("OBSERVABILITY_PROMETHEUS_PORT must be within 1..65535")
        return value

    @field_validator("observability_metrics_exporter")
    @classmethod
    def validate_metrics_exporter(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"none", "otlp", "prometheus"}:
            raise ValueError(
                "OBSERVABILITY_METRICS_EXPORTER must be one of: none, otlp, prometheus"
            )
        return normalized

    @property
    def fee_shares(self) -> tuple[Destination, ...]:
        if not self.fee_collectors:
            return (Destination(self.fee_collector_address, Decimal(1)),)
        return tuple(
            Destination(collector.address, collector.allocation)
            for collector in self.fee_collectors
        )
