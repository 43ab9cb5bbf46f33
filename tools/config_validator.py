"""
Configuration Validation Module

Validates app.yaml, policy.yaml and networks.yaml against Pydantic schemas.
Ensures config files are correct before the service starts.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator, ValidationError

logger = logging.getLogger(__name__)


# ===== App Schema =====
class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = Field(default="logs/rampsettle.log", description="Log file path")


class EndpointsConfig(BaseModel):
    """Collaborator base URLs (may contain ${VAR} references)"""
    rate_primary_url: Optional[str] = None
    rate_secondary_url: Optional[str] = None
    roster_url: Optional[str] = None
    aggregator_url: Optional[str] = None
    settlement_url: Optional[str] = None


class SecretsConfig(BaseModel):
    """Names of the environment variables holding secrets, never the secrets"""
    roster_token_env: str = Field(default="ROSTER_API_TOKEN", min_length=1)
    webhook_secret_env: str = Field(default="WEBHOOK_SECRET", min_length=1)
    settlement_secret_env: str = Field(default="SETTLEMENT_SECRET", min_length=1)


class PaymentGatewayConfig(BaseModel):
    base_url: Optional[str] = None
    api_key_env: str = Field(default="PAYMENT_API_KEY", min_length=1)
    secret_key_env: str = Field(default="PAYMENT_SECRET_KEY", min_length=1)
    contract_code_env: str = Field(default="PAYMENT_CONTRACT_CODE", min_length=1)
    currency: str = Field(default="NGN", min_length=3, max_length=3)
    redirect_url: Optional[str] = None
    timeout_seconds: float = Field(default=15.0, gt=0, le=60)


class WebhooksConfig(BaseModel):
    enabled: bool = True
    default_url: Optional[str] = None
    timeout_seconds: float = Field(default=10.0, gt=0, le=60)
    dedupe_seconds: float = Field(default=300.0, ge=0)
    max_workers: int = Field(default=4, gt=0, le=64)


class FeaturesConfig(BaseModel):
    enable_liquidity_check: bool = True
    enable_duplicate_guard: bool = True
    verify_payments: bool = False


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, gt=0, lt=65536)


class StorageConfig(BaseModel):
    audit_file: str = Field(default="logs/audit.jsonl", min_length=1)
    order_store_file: Optional[str] = Field(default="data/orders.json")


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    mode: str = Field(default="development", pattern="^(development|staging|production)$")
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    endpoints: EndpointsConfig = Field(default_factory=EndpointsConfig)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)
    payment_gateway: PaymentGatewayConfig = Field(default_factory=PaymentGatewayConfig)
    webhooks: WebhooksConfig = Field(default_factory=WebhooksConfig)
    features: FeaturesConfig = Field(default_factory=FeaturesConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


# ===== Policy Schema =====
class OrdersConfig(BaseModel):
    min_fiat_amount: float = Field(gt=0, description="Smallest accepted fiat amount")
    max_fiat_amount: float = Field(gt=0, description="Largest accepted fiat amount")
    min_settlement_value: float = Field(gt=0, description="Minimum value in settlement stable")
    expiry_minutes: float = Field(gt=0, le=24 * 60, description="Unpaid order lifetime")
    quote_ttl_seconds: float = Field(gt=0, le=3600, description="Quote validity")
    sweep_interval_seconds: float = Field(default=60.0, gt=0, description="Expiry sweep period")

    @model_validator(mode="after")
    def validate_range(self) -> "OrdersConfig":
        if self.max_fiat_amount <= self.min_fiat_amount:
            raise ValueError(
                f"max_fiat_amount ({self.max_fiat_amount}) must exceed min_fiat_amount ({self.min_fiat_amount})"
            )
        return self


class RateOracleConfig(BaseModel):
    primary_timeout_seconds: float = Field(default=10.0, gt=0, le=30)
    secondary_timeout_seconds: float = Field(default=5.0, gt=0, le=30)
    static_rate_env: str = Field(default="FALLBACK_USDC_NGN_RATE", min_length=1)
    emergency_rate: float = Field(gt=0, description="Last-resort stable/fiat rate")


class RoutingConfig(BaseModel):
    probe_timeout_seconds: float = Field(default=10.0, gt=0, le=30)
    probe_amount: float = Field(default=1.0, gt=0)
    max_price_impact_pct: float = Field(default=5.0, gt=0, le=100)
    aggregator_slippage_bps: int = Field(default=50, ge=0, le=10_000)


class ScoringConfig(BaseModel):
    ratio_cap: float = Field(default=5.0, gt=0)
    ratio_weight: float = Field(default=10.0, ge=0)
    verified_bonus: float = Field(default=20.0, ge=0)
    ample_multiple: float = Field(default=2.0, ge=1)
    ample_bonus: float = Field(default=10.0, ge=0)
    thin_multiple: float = Field(default=1.2, ge=1)
    thin_penalty: float = Field(default=5.0, ge=0)


class LiquidityPolicyConfig(BaseModel):
    cache_ttl_seconds: float = Field(default=60.0, gt=0, le=600)
    cacheable_ceiling: float = Field(gt=0, description="Largest stable amount written to cache")
    large_order_threshold: float = Field(gt=0, description="Stable amounts above this always re-validate")
    safety_factor: float = Field(default=0.9, gt=0, le=1)
    suggested_wait_seconds: float = Field(default=900.0, gt=0)
    roster_timeout_seconds: float = Field(default=15.0, gt=0, le=60)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)

    @model_validator(mode="after")
    def validate_ceiling(self) -> "LiquidityPolicyConfig":
        if self.cacheable_ceiling > self.large_order_threshold:
            raise ValueError(
                f"cacheable_ceiling ({self.cacheable_ceiling}) must not exceed "
                f"large_order_threshold ({self.large_order_threshold})"
            )
        return self


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    orders: OrdersConfig
    rate_oracle: RateOracleConfig
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    liquidity: LiquidityPolicyConfig


# ===== Networks Schema =====
class StableTokenConfig(BaseModel):
    symbol: str = Field(min_length=1)
    address: str = Field(min_length=1)
    decimals: int = Field(default=6, ge=0, le=36)


class TokenEntry(BaseModel):
    symbol: str = Field(min_length=1)
    contract_address: str = Field(min_length=1)
    decimals: int = Field(default=18, ge=0, le=36)
    fee_pct: float = Field(default=0.0, ge=0, lt=100)
    active: bool = True
    trading_enabled: bool = True


class NetworkEntry(BaseModel):
    kind: str = Field(pattern="^(onchain|aggregator)$")
    settlement_stable: StableTokenConfig
    base_asset: Optional[str] = None
    fee_tiers: List[int] = Field(default_factory=lambda: [100, 500, 3000, 10000])
    liquidity_constrained: bool = True
    min_pool_liquidity: float = Field(default=100.0, ge=0)
    tokens: List[TokenEntry] = Field(default_factory=list)

    @field_validator("fee_tiers")
    @classmethod
    def validate_fee_tiers(cls, v: List[int]) -> List[int]:
        """Fee tiers are positive hundredths of a basis point, no repeats"""
        if any(tier <= 0 for tier in v):
            raise ValueError(f"fee tiers must be positive, got {v}")
        if len(set(v)) != len(v):
            raise ValueError(f"duplicate fee tiers in {v}")
        return v

    @field_validator("tokens")
    @classmethod
    def validate_unique_symbols(cls, v: List[TokenEntry]) -> List[TokenEntry]:
        symbols = [t.symbol.upper() for t in v]
        dupes = sorted({s for s in symbols if symbols.count(s) > 1})
        if dupes:
            raise ValueError(f"duplicate token symbols: {dupes}")
        return v


class NetworksSchema(BaseModel):
    """Complete networks configuration schema"""
    networks: Dict[str, NetworkEntry]
    fee_overrides: Dict[str, Dict[str, Dict[str, float]]] = Field(default_factory=dict)

    @field_validator("networks")
    @classmethod
    def validate_not_empty(cls, v: Dict[str, NetworkEntry]) -> Dict[str, NetworkEntry]:
        if not v:
            raise ValueError("at least one network must be configured")
        return v


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return (
            f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: "
            f"{getattr(error, 'problem', str(error))}"
        )

    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))
    snippet = "\n".join(
        f"{'▶' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}"
        for idx in range(start, end)
    )
    problem = getattr(error, "problem", str(error))
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema: type) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema(**config)
        logger.info("✅ %s validation passed", filename)
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: top level must be a mapping - {e}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_policy(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_networks(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "networks.yaml", NetworksSchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Logical consistency checks across files.

    Detects:
    - liquidity-constrained on-chain networks without a base asset for two-hop routes
    - aggregator networks with no aggregator endpoint
    - tokens whose fee would consume the whole minimum order
    """
    errors = []
    app = load_yaml_file(config_dir / "app.yaml")
    policy = load_yaml_file(config_dir / "policy.yaml")
    networks = load_yaml_file(config_dir / "networks.yaml")

    endpoints = app.get("endpoints") or {}
    min_fiat = float((policy.get("orders") or {}).get("min_fiat_amount", 0))

    for name, net in (networks.get("networks") or {}).items():
        if net.get("kind") == "onchain" and not net.get("base_asset"):
            logger.warning("networks.yaml: %s has no base_asset; two-hop routes disabled", name)
        if net.get("kind") == "aggregator" and not endpoints.get("aggregator_url"):
            errors.append(f"networks.yaml: {name} is aggregator-routed but app.yaml endpoints.aggregator_url is unset")
        for token in net.get("tokens") or []:
            fee = float(token.get("fee_pct", 0.0))
            if min_fiat and fee >= 50:
                errors.append(
                    f"networks.yaml: {name}.{token.get('symbol')} fee_pct {fee} leaves under half of a "
                    f"{min_fiat:,.0f} order"
                )

    if errors:
        logger.warning("⚠️  %d sanity check issue(s) found", len(errors))
    else:
        logger.info("✅ Configuration sanity checks passed")
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency), only when the schemas pass

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))
    all_errors.extend(validate_networks(config_path))

    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error("❌ %d validation error(s) found", len(all_errors))

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
