from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _env_str(env: Mapping[str, str], name: str, default: str = "") -> str:
    return str(env.get(name, default) or default).strip()


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


@dataclass(frozen=True)
class RenderCoreConfig:
    store_backend: str = "memory"
    sqlite_path: str = ".runtime/render_jobs.sqlite3"
    postgres_dsn: str = ""
    cron_secret: str = ""
    platform_openai_key: str = ""
    openai_base_url: str = ""
    encryption_key: str = ""
    app_base_url: str = ""
    kick_timeout_ms: int = 1750
    sweep_max_cap: int = 5
    grace_eligible_tiers: tuple[str, ...] = ("tier0", "tier1", "tier2")
    platform_daily_cap: int = 0
    render_model: str = "gpt-image-1"
    render_image_size: str = "1024x1024"
    platform_config_path: str = ""
    resend_api_key: str = ""
    resend_base_url: str = "https://api.resend.com"
    render_debug: bool = False
    worker_poll_interval_ms: int = 2000

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RenderCoreConfig":
        env = os.environ if environ is None else environ
        tiers = tuple(x.lower() for x in _split_csv(_env_str(env, "RENDER_GRACE_ELIGIBLE_TIERS", "tier0,tier1,tier2")))
        return cls(
            store_backend=_env_str(env, "RENDER_STORE_BACKEND", "memory").lower() or "memory",
            sqlite_path=_env_str(env, "RENDER_SQLITE_PATH", ".runtime/render_jobs.sqlite3"),
            postgres_dsn=_env_str(env, "POSTGRES_DSN"),
            cron_secret=_env_str(env, "CRON_SECRET"),
            platform_openai_key=_env_str(env, "OPENAI_API_KEY"),
            openai_base_url=_env_str(env, "OPENAI_BASE_URL"),
            encryption_key=_env_str(env, "ENCRYPTION_KEY"),
            app_base_url=_env_str(env, "RENDER_APP_BASE_URL").rstrip("/"),
            kick_timeout_ms=_env_int(env, "RENDER_KICK_TIMEOUT_MS", default=1750, minimum=1),
            sweep_max_cap=_env_int(env, "RENDER_SWEEP_MAX_CAP", default=5, minimum=1),
            grace_eligible_tiers=tiers,
            platform_daily_cap=_env_int(env, "RENDER_PLATFORM_DAILY_CAP", default=0, minimum=0),
            render_model=_env_str(env, "RENDER_MODEL", "gpt-image-1") or "gpt-image-1",
            render_image_size=_env_str(env, "RENDER_IMAGE_SIZE", "1024x1024") or "1024x1024",
            platform_config_path=_env_str(env, "RENDER_PLATFORM_CONFIG_PATH"),
            resend_api_key=_env_str(env, "RESEND_API_KEY"),
            resend_base_url=_env_str(env, "RESEND_BASE_URL", "https://api.resend.com").rstrip("/")
            or "https://api.resend.com",
            render_debug=_env_bool(env, "RENDER_DEBUG", default=False),
            worker_poll_interval_ms=_env_int(env, "RENDER_WORKER_POLL_INTERVAL_MS", default=2000, minimum=1),
        )

    @property
    def kick_timeout_s(self) -> float:
        return max(0.001, self.kick_timeout_ms / 1000.0)
