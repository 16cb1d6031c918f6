"""Environment-driven settings for the escrow service.

Every integration is optional: an empty secret or URL switches the
matching component to its local fallback (stub processor, stub mints,
unverified webhooks). Secrets come only from the environment.
"""

import os
from dataclasses import dataclass

from protocol import (
    DEFAULT_CHALLENGE_TTL, DEFAULT_CURRENCY, DEFAULT_EXTERNAL_TIMEOUT,
    DEFAULT_SESSION_TTL, DEFAULT_WEBHOOK_TOLERANCE,
)


_TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(env: dict, name: str, default: bool = False) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def _env_int(env: dict, name: str, default: int) -> int:
    raw = env.get(name, "")
    if not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass
class Settings:
    db_path: str = ":memory:"
    challenge_db_path: str = ":memory:"
    reputation_db_path: str = ":memory:"

    # Payment processor
    stripe_secret: str = ""
    stripe_webhook_secret: str = ""
    stripe_api_base: str = ""  # empty: the stripe SDK default
    currency: str = DEFAULT_CURRENCY
    webhook_tolerance: int = DEFAULT_WEBHOOK_TOLERANCE

    # Chain
    aptos_node_url: str = ""
    aptos_private_key: str = ""
    aptos_deployer_address: str = ""

    external_timeout: int = DEFAULT_EXTERNAL_TIMEOUT

    # Sessions + wallet auth
    jwt_secret: str = ""
    session_ttl: int = DEFAULT_SESSION_TTL
    challenge_ttl: int = DEFAULT_CHALLENGE_TTL
    allow_unverified_wallet: bool = False

    # Operator-only endpoints are disabled while this is empty
    operator_key: str = ""

    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def chain_configured(self) -> bool:
        return bool(self.aptos_node_url and self.aptos_private_key)

    @classmethod
    def from_env(cls, env: dict | None = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            db_path=env.get("ESCROW_DB", ":memory:"),
            challenge_db_path=env.get("ESCROW_CHALLENGE_DB", ":memory:"),
            reputation_db_path=env.get("ESCROW_REPUTATION_DB", ":memory:"),
            stripe_secret=env.get("STRIPE_SECRET", ""),
            stripe_webhook_secret=env.get("STRIPE_WEBHOOK_SECRET", ""),
            stripe_api_base=env.get("STRIPE_API_BASE", ""),
            currency=env.get("PAYMENT_CURRENCY", DEFAULT_CURRENCY),
            webhook_tolerance=_env_int(env, "WEBHOOK_TOLERANCE", DEFAULT_WEBHOOK_TOLERANCE),
            aptos_node_url=env.get("APTOS_NODE_URL", ""),
            aptos_private_key=env.get("APTOS_PRIVATE_KEY", ""),
            aptos_deployer_address=env.get("APTOS_DEPLOYER_ADDRESS", ""),
            external_timeout=_env_int(env, "ESCROW_EXTERNAL_TIMEOUT", DEFAULT_EXTERNAL_TIMEOUT),
            jwt_secret=env.get("JWT_SECRET", ""),
            session_ttl=_env_int(env, "SESSION_TTL", DEFAULT_SESSION_TTL),
            challenge_ttl=_env_int(env, "CHALLENGE_TTL", DEFAULT_CHALLENGE_TTL),
            allow_unverified_wallet=_env_bool(env, "WALLET_ALLOW_UNVERIFIED"),
            operator_key=env.get("ESCROW_OPERATOR_KEY", ""),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            host=env.get("ESCROW_HOST", "0.0.0.0"),
            port=_env_int(env, "ESCROW_PORT", 8000),
        )
