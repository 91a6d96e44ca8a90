from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass

from render_core.errors import render_error

logger = logging.getLogger(__name__)


def redact_sensitive(value: object) -> object:
    sensitive_keys = {
        "authorization",
        "x-cron-secret",
        "secret",
        "password",
        "api_key",
        "apikey",
        "openai_key_enc",
    }
    if isinstance(value, dict):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            if str(key).lower() in sensitive_keys:
                redacted[str(key)] = "***REDACTED***"
            else:
                redacted[str(key)] = redact_sensitive(item)
        return redacted
    if isinstance(value, list):
        return [redact_sensitive(x) for x in value]
    if isinstance(value, str):
        if len(value) >= 24 and any(k in value.lower() for k in ("sk-", "bearer ")):
            return "***REDACTED***"
    return value


@dataclass(frozen=True)
class CronAuthResult:
    mode: str


def _bearer_token(authorization: str | None) -> str:
    raw = (authorization or "").strip()
    if raw[:7].lower() == "bearer ":
        return raw[7:].strip()
    return ""


def verify_cron_secret(
    *,
    configured_secret: str,
    header_secret: str | None,
    authorization: str | None,
    query_secret: str | None,
) -> CronAuthResult:
    """Shared-secret check for the sweep entry point.

    With no secret configured the endpoint is open; the mode says so.
    """
    if not configured_secret:
        return CronAuthResult(mode="no_secret_configured")
    expected = configured_secret.encode("utf-8")
    for mode, candidate in (
        ("header", (header_secret or "").strip()),
        ("header", _bearer_token(authorization)),
        ("query", (query_secret or "").strip()),
    ):
        if candidate and hmac.compare_digest(candidate.encode("utf-8"), expected):
            return CronAuthResult(mode=mode)
    logger.warning("render sweep rejected: bad or missing cron secret")
    raise render_error("AUTH_UNAUTHORIZED")
