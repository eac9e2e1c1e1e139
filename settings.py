"""
Gateway configuration loaded once from environment variables.

The values are frozen into a GatewaySettings instance at startup and passed
explicitly to the provider registry, the auth gate and the app factory.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


def _parse_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"{name}: invalid value '{raw}', using default {default}")
        return default


def _parse_int(env: Mapping[str, str], name: str, default: int, low: int, high: int) -> int:
    """Parse an int setting, clamping it to [low, high]."""
    raw = env.get(name, "")
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"{name}: invalid value '{raw}', using default {default}")
        return default
    if value < low:
        logger.warning(f"{name}={value} is below minimum ({low}), clamping to {low}")
        return low
    if value > high:
        logger.warning(f"{name}={value} exceeds maximum ({high}), clamping to {high}")
        return high
    return value


def _parse_origins(env: Mapping[str, str]) -> tuple[str, ...]:
    origins = [env.get("FRONTEND_URL_1", ""), env.get("FRONTEND_URL_2", "")]
    origins.extend(env.get("FRONTEND_URLS", "").split(","))
    seen = []
    for origin in origins:
        origin = origin.strip().rstrip("/")
        if origin and origin not in seen:
            seen.append(origin)
    return tuple(seen)


@dataclass(frozen=True)
class GatewaySettings:
    openai_api_key: str = ""
    openai_base_url: str = DEFAULT_OPENAI_BASE_URL
    openrouter_api_key: str = ""
    openrouter_base_url: str = DEFAULT_OPENROUTER_BASE_URL
    # Server-held secret guarding privileged models
    auth_key: str = field(default="", repr=False)
    allowed_origins: tuple[str, ...] = ()
    default_model: str = "text-davinci-002"
    temperature: float = 0.5
    timeout_s: int = 300
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"
    # TLS is optional; both files must be set for uvicorn to serve https
    ssl_keyfile: str = ""
    ssl_certfile: str = ""

    def __repr__(self) -> str:
        # Never print secrets
        return (
            f"GatewaySettings(openai_configured={bool(self.openai_api_key)}, "
            f"openrouter_configured={bool(self.openrouter_api_key)}, "
            f"auth_configured={bool(self.auth_key)}, origins={list(self.allowed_origins)}, "
            f"default_model={self.default_model!r}, timeout_s={self.timeout_s})"
        )

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "GatewaySettings":
        if env is None:
            env = os.environ
        return cls(
            openai_api_key=env.get("OPENAI_API_KEY", ""),
            openai_base_url=env.get("OPENAI_BASE_URL", DEFAULT_OPENAI_BASE_URL).rstrip("/"),
            openrouter_api_key=env.get("OPENROUTER_API_KEY", ""),
            openrouter_base_url=env.get("OPENROUTER_BASE_URL", DEFAULT_OPENROUTER_BASE_URL).rstrip("/"),
            auth_key=env.get("AUTH_KEY", ""),
            allowed_origins=_parse_origins(env),
            default_model=env.get("DEFAULT_MODEL", "") or "text-davinci-002",
            temperature=_parse_float(env, "TEMPERATURE", 0.5),
            timeout_s=_parse_int(env, "TIMEOUT_S", 300, 1, 3600),
            host=env.get("HOST", "0.0.0.0"),
            port=_parse_int(env, "PORT", 3000, 1, 65535),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            ssl_keyfile=env.get("SSL_KEYFILE", ""),
            ssl_certfile=env.get("SSL_CERTFILE", ""),
        )
