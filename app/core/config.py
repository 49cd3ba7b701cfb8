# app/core/config.py
import logging
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, ValidationError, field_validator  # AnyHttpUrl stays in pydantic core
from pydantic_settings import BaseSettings

from app.x402.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Load .env file if it exists
load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Multi-Facilitator Merchant"
    PORT: int = 4021
    LOG_LEVEL: str = "INFO"

    # Payee addresses, one per address family
    EVM_ADDRESS: str
    SOLANA_ADDRESS: str

    # Facilitators
    PAYAI_FACILITATOR_URL: AnyHttpUrl = "https://facilitator.payai.network"
    DEXTER_FACILITATOR_URL: AnyHttpUrl = "https://dexter.cash/facilitator"
    HEURIST_FACILITATOR_URL: AnyHttpUrl = "https://facilitator.heurist.xyz"
    DAYDREAMS_FACILITATOR_URL: AnyHttpUrl = "https://facilitator.daydreams.systems"

    X402_EVM_NETWORK: str = "base-sepolia"
    X402_SOLANA_NETWORK: str = "solana"
    X402_MAX_TIMEOUT_SECONDS: int = 60
    X402_NONCE_CLEANUP_INTERVAL_SECONDS: int = 300

    X402_AUDIT_ENABLED: bool = False
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

    @field_validator("EVM_ADDRESS", "SOLANA_ADDRESS")
    @classmethod
    def _require_address(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("payee address must not be empty")
        return value

    @field_validator("X402_MAX_TIMEOUT_SECONDS", "X402_NONCE_CLEANUP_INTERVAL_SECONDS")
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive number of seconds")
        return value


def load_settings(**overrides) -> Settings:
    """
    Build a Settings object, turning validation failures into ConfigurationError.

    Keyword overrides take precedence over the environment (useful for tests
    and embedding).

    Raises:
        ConfigurationError: if a required variable is missing or malformed.
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        problems = ", ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        logger.error(f"Invalid configuration: {problems}")
        raise ConfigurationError(f"Invalid configuration: {problems}") from e


@lru_cache()  # Cache the settings object for performance
def get_settings() -> Settings:
    return load_settings()
