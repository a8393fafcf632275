"""
============================================================================
Stable Bridge - Configuration
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: All monetary thresholds use decimal.Decimal with ROUND_HALF_EVEN
Traceability: Configuration snapshot logged on load (secrets excluded)

This module provides configuration management for the settlement bridge:
- Environment variable parsing with type safety
- Default values for optional configuration
- Validation of required configuration
- Fail-closed behavior on missing required config (CFG-001)

ENVIRONMENT VARIABLES:
    - DATABASE_URL: Ledger database URL (default: sqlite:///./settlement_bridge.db)
    - STABLE_RPC_URL: Chain node JSON-RPC endpoint
    - TOKEN_CONTRACT_ADDRESS: Stable-value token contract
    - CUSTODY_PRIVATE_KEY: Hot wallet key used for on-ramp payouts (REQUIRED)
    - STRIPE_SECRET_KEY: Payment processor API key (REQUIRED)
    - STRIPE_WEBHOOK_SECRET: Payment processor webhook secret (REQUIRED)
    - STRIPE_API_BASE: Payment processor API base URL
    - SUPPORTED_FIAT_CURRENCIES: Comma-separated list (default: usd,eur)
    - ONRAMP_MAX_TOKEN_AMOUNT: Per-transaction token cap (default: 5)
    - ONRAMP_CHECK_CUSTODY_BALANCE: Pre-check custody liquidity (default: true)
    - CHAIN_TRANSFER_MAX_ATTEMPTS: Transfer submission attempts (default: 3)
    - CHAIN_TRANSFER_BACKOFF_SECONDS: Backoff base, multiplied by attempt (default: 2)
    - CHAIN_RECEIPT_TIMEOUT_SECONDS: Receipt wait timeout (default: 120)
    - SUBACCOUNT_SETTLE_DELAY_SECONDS: Delay between sub-account transfer and payout (default: 2)
    - SETTLEMENT_AMOUNT_TOLERANCE: Absolute on-chain amount tolerance (default: 0.01)
    - EXCHANGE_RATE_CACHE_SECONDS: Rate cache freshness window (default: 600)
    - WEBHOOK_TOLERANCE_SECONDS: Webhook timestamp tolerance (default: 300)
    - OPERATOR_API_TOKEN: Enables manual reconciliation endpoints (optional)

ERROR CODES:
    - CFG-001: Required configuration missing or invalid

============================================================================
"""

from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation
from typing import Optional, List, Callable, TypeVar
from dataclasses import dataclass, field
import logging
import os
import re

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Configure module logger
logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Constants
# =============================================================================

PRECISION_TOKEN = Decimal("0.000001")

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


# =============================================================================
# Error Codes
# =============================================================================

class BridgeConfigErrorCode:
    """Configuration-specific error codes for audit logging."""
    CONFIG_MISSING = "CFG-001"


# =============================================================================
# Default Values
# =============================================================================

DEFAULT_DATABASE_URL = "sqlite:///./settlement_bridge.db"
DEFAULT_RPC_URL = "https://rpc.testnet.stable.xyz"
DEFAULT_TOKEN_CONTRACT_ADDRESS = "0x0000000000000000000000000000000000001000"
DEFAULT_PROCESSOR_API_BASE = "https://api.stripe.com"
DEFAULT_SUPPORTED_CURRENCIES = ["usd", "eur"]
DEFAULT_MAX_ONRAMP_TOKEN_AMOUNT = Decimal("5")
DEFAULT_TRANSFER_MAX_ATTEMPTS = 3
DEFAULT_TRANSFER_BACKOFF_SECONDS = 2.0
DEFAULT_RECEIPT_TIMEOUT_SECONDS = 120
DEFAULT_SUBACCOUNT_SETTLE_DELAY_SECONDS = 2.0
DEFAULT_AMOUNT_TOLERANCE = Decimal("0.01")
DEFAULT_RATE_CACHE_SECONDS = 600
DEFAULT_WEBHOOK_TOLERANCE_SECONDS = 300


# =============================================================================
# Configuration Validation Exception
# =============================================================================

class BridgeConfigurationError(Exception):
    """
    Exception raised when bridge configuration is invalid or missing.

    Raised during startup so the service never runs half-configured.

    Reliability Level: SOVEREIGN TIER
    """

    def __init__(self, message: str, error_code: str = BridgeConfigErrorCode.CONFIG_MISSING):
        """
        Initialize configuration error.

        Args:
            message: Human-readable error message
            error_code: Sovereign error code (default: CFG-001)
        """
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{error_code}] {message}")


# =============================================================================
# BridgeConfig Class
# =============================================================================

@dataclass
class BridgeConfig:
    """
    Settlement bridge configuration.

    Reliability Level: L6 Critical (Sovereign Tier)
    Input Constraints: Secrets must be present before validate() passes
    Side Effects: Logs configuration on load (secrets excluded)
    """

    database_url: str = DEFAULT_DATABASE_URL

    # Chain
    rpc_url: str = DEFAULT_RPC_URL
    token_contract_address: str = DEFAULT_TOKEN_CONTRACT_ADDRESS
    custody_private_key: str = ""

    # Payment processor
    processor_secret_key: str = ""
    processor_webhook_secret: str = ""
    processor_api_base: str = DEFAULT_PROCESSOR_API_BASE

    # Settlement policy
    supported_currencies: List[str] = field(
        default_factory=lambda: list(DEFAULT_SUPPORTED_CURRENCIES)
    )
    max_onramp_token_amount: Decimal = field(
        default_factory=lambda: DEFAULT_MAX_ONRAMP_TOKEN_AMOUNT
    )
    check_custody_balance: bool = True
    transfer_max_attempts: int = DEFAULT_TRANSFER_MAX_ATTEMPTS
    transfer_backoff_seconds: float = DEFAULT_TRANSFER_BACKOFF_SECONDS
    receipt_timeout_seconds: int = DEFAULT_RECEIPT_TIMEOUT_SECONDS
    subaccount_settle_delay_seconds: float = DEFAULT_SUBACCOUNT_SETTLE_DELAY_SECONDS
    amount_tolerance: Decimal = field(default_factory=lambda: DEFAULT_AMOUNT_TOLERANCE)
    rate_cache_seconds: int = DEFAULT_RATE_CACHE_SECONDS
    webhook_tolerance_seconds: int = DEFAULT_WEBHOOK_TOLERANCE_SECONDS

    operator_api_token: Optional[str] = None

    def __post_init__(self) -> None:
        """Normalize currencies and quantize monetary thresholds."""
        self.supported_currencies = [
            c.strip().lower() for c in self.supported_currencies if c and c.strip()
        ]
        if not isinstance(self.max_onramp_token_amount, Decimal):
            self.max_onramp_token_amount = Decimal(str(self.max_onramp_token_amount))
        self.max_onramp_token_amount = self.max_onramp_token_amount.quantize(
            PRECISION_TOKEN, rounding=ROUND_HALF_EVEN
        )
        if not isinstance(self.amount_tolerance, Decimal):
            self.amount_tolerance = Decimal(str(self.amount_tolerance))

    def is_supported_currency(self, currency: Optional[str]) -> bool:
        """Check a fiat currency code against the configured list."""
        if not currency:
            return False
        return currency.strip().lower() in self.supported_currencies

    def validate(self) -> None:
        """
        Validate configuration completeness.

        Raises:
            BridgeConfigurationError: If required configuration is missing (CFG-001)
        """
        errors: List[str] = []

        if not self.custody_private_key:
            errors.append("CUSTODY_PRIVATE_KEY must be set")
        if not self.processor_secret_key:
            errors.append("STRIPE_SECRET_KEY must be set")
        if not self.processor_webhook_secret:
            errors.append(
                "STRIPE_WEBHOOK_SECRET must be set. "
                "Unverifiable webhooks are never treated as authentic."
            )
        if not ADDRESS_PATTERN.match(self.token_contract_address or ""):
            errors.append(
                f"TOKEN_CONTRACT_ADDRESS is not a valid address: {self.token_contract_address}"
            )
        if not self.supported_currencies:
            errors.append("SUPPORTED_FIAT_CURRENCIES must list at least one currency")
        if self.max_onramp_token_amount <= Decimal("0"):
            errors.append(
                f"ONRAMP_MAX_TOKEN_AMOUNT must be positive, got: {self.max_onramp_token_amount}"
            )
        if self.transfer_max_attempts < 1:
            errors.append(
                f"CHAIN_TRANSFER_MAX_ATTEMPTS must be >= 1, got: {self.transfer_max_attempts}"
            )
        if self.amount_tolerance < Decimal("0"):
            errors.append(
                f"SETTLEMENT_AMOUNT_TOLERANCE must be non-negative, got: {self.amount_tolerance}"
            )
        if self.rate_cache_seconds <= 0:
            errors.append(
                f"EXCHANGE_RATE_CACHE_SECONDS must be positive, got: {self.rate_cache_seconds}"
            )

        if errors:
            error_msg = "Bridge configuration validation failed: " + "; ".join(errors)
            logger.error(f"[{BridgeConfigErrorCode.CONFIG_MISSING}] {error_msg}")
            raise BridgeConfigurationError(error_msg)

        logger.info(
            f"[BRIDGE-CONFIG] Configuration validated | "
            f"currencies={','.join(self.supported_currencies)} | "
            f"max_onramp_token_amount={self.max_onramp_token_amount} | "
            f"transfer_max_attempts={self.transfer_max_attempts} | "
            f"amount_tolerance={self.amount_tolerance}"
        )

    @classmethod
    def from_environment(cls, validate: bool = True) -> "BridgeConfig":
        """
        Load configuration from environment variables.

        Args:
            validate: Whether to validate configuration after loading (default: True)

        Returns:
            BridgeConfig instance with values from environment

        Raises:
            BridgeConfigurationError: If required configuration is missing (CFG-001)
        """
        currencies_str = os.environ.get(
            "SUPPORTED_FIAT_CURRENCIES", ",".join(DEFAULT_SUPPORTED_CURRENCIES)
        )

        config = cls(
            database_url=os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL).strip()
            or DEFAULT_DATABASE_URL,
            rpc_url=os.environ.get("STABLE_RPC_URL", DEFAULT_RPC_URL).strip(),
            token_contract_address=os.environ.get(
                "TOKEN_CONTRACT_ADDRESS", DEFAULT_TOKEN_CONTRACT_ADDRESS
            ).strip(),
            custody_private_key=os.environ.get("CUSTODY_PRIVATE_KEY", "").strip(),
            processor_secret_key=os.environ.get("STRIPE_SECRET_KEY", "").strip(),
            processor_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET", "").strip(),
            processor_api_base=os.environ.get(
                "STRIPE_API_BASE", DEFAULT_PROCESSOR_API_BASE
            ).strip().rstrip("/"),
            supported_currencies=currencies_str.split(","),
            max_onramp_token_amount=_read_env(
                "ONRAMP_MAX_TOKEN_AMOUNT", DEFAULT_MAX_ONRAMP_TOKEN_AMOUNT, Decimal
            ),
            check_custody_balance=os.environ.get(
                "ONRAMP_CHECK_CUSTODY_BALANCE", "true"
            ).lower().strip() in ("true", "1", "yes", "on"),
            transfer_max_attempts=_read_env(
                "CHAIN_TRANSFER_MAX_ATTEMPTS", DEFAULT_TRANSFER_MAX_ATTEMPTS, int
            ),
            transfer_backoff_seconds=_read_env(
                "CHAIN_TRANSFER_BACKOFF_SECONDS", DEFAULT_TRANSFER_BACKOFF_SECONDS, float
            ),
            receipt_timeout_seconds=_read_env(
                "CHAIN_RECEIPT_TIMEOUT_SECONDS", DEFAULT_RECEIPT_TIMEOUT_SECONDS, int
            ),
            subaccount_settle_delay_seconds=_read_env(
                "SUBACCOUNT_SETTLE_DELAY_SECONDS",
                DEFAULT_SUBACCOUNT_SETTLE_DELAY_SECONDS,
                float,
            ),
            amount_tolerance=_read_env(
                "SETTLEMENT_AMOUNT_TOLERANCE", DEFAULT_AMOUNT_TOLERANCE, Decimal
            ),
            rate_cache_seconds=_read_env(
                "EXCHANGE_RATE_CACHE_SECONDS", DEFAULT_RATE_CACHE_SECONDS, int
            ),
            webhook_tolerance_seconds=_read_env(
                "WEBHOOK_TOLERANCE_SECONDS", DEFAULT_WEBHOOK_TOLERANCE_SECONDS, int
            ),
            operator_api_token=os.environ.get("OPERATOR_API_TOKEN", "").strip() or None,
        )

        logger.info(
            f"[BRIDGE-CONFIG] Loading configuration from environment | "
            f"rpc_url={config.rpc_url} | "
            f"token={config.token_contract_address} | "
            f"currencies={','.join(config.supported_currencies)}"
        )

        if validate:
            config.validate()

        return config

    def to_dict(self) -> dict:
        """
        Convert configuration to dictionary for logging.

        Secrets are reported only as present/absent.
        """
        return {
            "database_url": self.database_url.split("@")[-1],
            "rpc_url": self.rpc_url,
            "token_contract_address": self.token_contract_address,
            "custody_key_configured": bool(self.custody_private_key),
            "processor_key_configured": bool(self.processor_secret_key),
            "webhook_secret_configured": bool(self.processor_webhook_secret),
            "processor_api_base": self.processor_api_base,
            "supported_currencies": list(self.supported_currencies),
            "max_onramp_token_amount": str(self.max_onramp_token_amount),
            "check_custody_balance": self.check_custody_balance,
            "transfer_max_attempts": self.transfer_max_attempts,
            "transfer_backoff_seconds": self.transfer_backoff_seconds,
            "receipt_timeout_seconds": self.receipt_timeout_seconds,
            "subaccount_settle_delay_seconds": self.subaccount_settle_delay_seconds,
            "amount_tolerance": str(self.amount_tolerance),
            "rate_cache_seconds": self.rate_cache_seconds,
            "webhook_tolerance_seconds": self.webhook_tolerance_seconds,
            "operator_endpoints_enabled": self.operator_api_token is not None,
        }


def _read_env(name: str, default: T, parse: Callable[[str], T]) -> T:
    """Parse an environment variable, falling back to the default on bad input."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return parse(raw.strip())
    except (ValueError, InvalidOperation):
        logger.warning(
            f"[BRIDGE-CONFIG] Invalid {name} value: {raw}, using default: {default}"
        )
        return default


# =============================================================================
# Module-Level Configuration Instance
# =============================================================================

_config_instance: Optional[BridgeConfig] = None


def get_bridge_config(validate: bool = True) -> BridgeConfig:
    """
    Get the global bridge configuration instance.

    Loads from environment variables on first access.

    Raises:
        BridgeConfigurationError: If required configuration is missing (CFG-001)
    """
    global _config_instance

    if _config_instance is None:
        _config_instance = BridgeConfig.from_environment(validate=validate)

    return _config_instance


def reset_bridge_config() -> None:
    """Reset the global configuration instance (used by tests)."""
    global _config_instance
    _config_instance = None
    logger.debug("[BRIDGE-CONFIG] Configuration instance reset")
