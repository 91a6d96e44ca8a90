from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from render_core.errors import render_error
from render_core.platform_config import PlatformLlmConfig
from render_core.repositories.tenants import TenantSettings

logger = logging.getLogger(__name__)

# Always enforced for render workloads, whatever the platform config says.
PLATFORM_RENDER_DENYLIST = (
    "nudity",
    "pornographic",
    "gore",
    "firearm",
    "ammunition",
    "self-harm",
)


def dedupe_terms(*groups: Iterable[str]) -> tuple[str, ...]:
    seen: set[str] = set()
    out: list[str] = []
    for group in groups:
        for term in group:
            cleaned = str(term or "").strip()
            folded = cleaned.casefold()
            if not cleaned or folded in seen:
                continue
            seen.add(folded)
            out.append(cleaned)
    return tuple(out)


def effective_daily_cap(*caps: int | None) -> int:
    """Smallest positive cap, or 0 when no cap is set.

    A tenant cap can only tighten the platform cap.
    """
    positive = [int(c) for c in caps if c is not None and int(c) > 0]
    return min(positive) if positive else 0


def local_midnight_utc(now: datetime, timezone_name: str | None) -> datetime:
    try:
        tz = ZoneInfo(str(timezone_name or "UTC").strip() or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown reporting timezone=%s; using UTC", timezone_name)
        tz = ZoneInfo("UTC")
    local_now = now.astimezone(tz)
    midnight = datetime(local_now.year, local_now.month, local_now.day, tzinfo=tz)
    return midnight.astimezone(UTC)


@dataclass(frozen=True)
class GuardrailSet:
    denylist: tuple[str, ...]
    daily_cap: int = 0

    def find_blocked_term(self, texts: Iterable[str | None]) -> str | None:
        haystack = "\n".join(str(t or "") for t in texts).casefold()
        if not haystack.strip():
            return None
        for term in self.denylist:
            if term.casefold() in haystack:
                return term
        return None

    def check_content(self, texts: Iterable[str | None], *, tenant_id: str, job_id: str) -> None:
        term = self.find_blocked_term(texts)
        if term is None:
            return
        logger.warning("render blocked by guardrail job=%s tenant=%s term=%s", job_id, tenant_id, term)
        raise render_error(
            "CONTENT_BLOCKED",
            f"request matched a blocked topic ({term})",
            meta={"term": term},
        )

    def check_daily_cap(self, *, rendered_today: int, tenant_id: str, job_id: str) -> None:
        if self.daily_cap <= 0 or rendered_today < self.daily_cap:
            return
        logger.warning(
            "render daily cap reached job=%s tenant=%s rendered_today=%s cap=%s",
            job_id,
            tenant_id,
            rendered_today,
            self.daily_cap,
        )
        raise render_error(
            "DAILY_CAP_REACHED",
            f"daily render limit reached ({rendered_today}/{self.daily_cap})",
            meta={"rendered_today": rendered_today, "cap": self.daily_cap},
        )


def build_guardrail_set(
    *,
    platform: PlatformLlmConfig,
    settings: TenantSettings | None,
    platform_daily_cap: int = 0,
) -> GuardrailSet:
    platform_cap = platform_daily_cap if platform_daily_cap > 0 else platform.daily_render_cap
    tenant_cap = settings.rendering_max_per_day if settings is not None else 0
    return GuardrailSet(
        denylist=dedupe_terms(PLATFORM_RENDER_DENYLIST, platform.blocked_topics),
        daily_cap=effective_daily_cap(platform_cap, tenant_cap),
    )
