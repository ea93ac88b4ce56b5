"""Centralized configuration for the MedCore booking assistant.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/medcore/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415  (only needed on AWS)

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/medcore/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /medcore/{name} (AWS)."
    )


def _env_int(name: str, default: str) -> int:
    """Parse an integer env var, naming the variable on bad input."""
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid integer for {name}: {raw!r}") from None


def _env_float(name: str, default: str) -> float:
    """Parse a float env var, naming the variable on bad input."""
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid float for {name}: {raw!r}") from None


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")
MODEL_TEMPERATURE: float = _env_float("MODEL_TEMPERATURE", "0.1")
MODEL_MAX_TOKENS: int = _env_int("MODEL_MAX_TOKENS", "1024")
LLM_TIMEOUT_SECONDS: float = _env_float("LLM_TIMEOUT_SECONDS", "30")

# ── Dialogue loop ───────────────────────────────────────────────────
HISTORY_WINDOW: int = _env_int("HISTORY_WINDOW", "10")
MAX_TOOL_LOOPS: int = _env_int("MAX_TOOL_LOOPS", "5")

# ── Booking store ───────────────────────────────────────────────────
STORE_LATENCY_MS: int = _env_int("STORE_LATENCY_MS", "400")

# Demo verification: no SMS is ever sent.
OTP_DEMO_CODE: str = os.getenv("OTP_DEMO_CODE", "123456")
OTP_ACCEPTED_SUFFIX: str = os.getenv("OTP_ACCEPTED_SUFFIX", "6")
OTP_TTL_SECONDS: int = _env_int("OTP_TTL_SECONDS", "300")
OTP_MAX_ATTEMPTS: int = _env_int("OTP_MAX_ATTEMPTS", "5")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = _env_int("SERVER_PORT", "8000")
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
