from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import requests

from render_core.errors import render_error
from render_core.repositories.tenants import Tenant

logger = logging.getLogger(__name__)


def _clean(value: Any) -> str:
    return str(value or "").strip()


def build_seed_prompt(quote: dict[str, Any]) -> str:
    """Placeholder prompt stored at enqueue time; replaced when the job runs."""
    quote_input = quote.get("input") or {}
    output = quote.get("output") or {}
    ctx = quote_input.get("customer_context") or {}
    category = _clean(ctx.get("category"))
    service_type = _clean(ctx.get("service_type"))
    notes = _clean(ctx.get("notes"))
    summary = _clean(output.get("summary"))

    lines = [
        "Create a realistic concept 'after' rendering of the finished service outcome.",
        "No text overlays, no labels, no watermarks.",
    ]
    if category:
        lines.append(f"Category: {category}")
    if service_type:
        lines.append(f"Service type: {service_type}")
    if notes:
        lines.append(f"Customer notes: {notes}")
    if summary:
        lines.append(f"Estimate summary: {summary}")
    return "\n".join(lines)


class WorkerKicker:
    """Opportunistic POST to the sweep endpoint.

    Never raises: every outcome is reported as a reason string. The scheduled
    sweep processes the job whether or not the kick lands.
    """

    def __init__(self, *, base_url: str, cron_secret: str, timeout_s: float = 1.75) -> None:
        self._base_url = base_url.rstrip("/")
        self._cron_secret = cron_secret
        self._timeout_s = timeout_s

    def kick(self) -> dict[str, Any]:
        if not self._base_url:
            return {"attempted": False, "ok": False, "reason": "missing_base_url"}
        if not self._cron_secret:
            return {"attempted": False, "ok": False, "reason": "missing_cron_secret"}
        url = f"{self._base_url}/api/cron/render"
        try:
            resp = requests.post(
                url,
                params={"max": 1},
                headers={"Authorization": f"Bearer {self._cron_secret}"},
                timeout=self._timeout_s,
            )
        except requests.Timeout:
            logger.info("render kick timed out url=%s timeout_s=%s", url, self._timeout_s)
            return {"attempted": True, "ok": False, "reason": "timeout"}
        except requests.RequestException as exc:
            logger.info("render kick fetch error url=%s error=%s", url, type(exc).__name__)
            return {"attempted": True, "ok": False, "reason": "fetch_error"}
        if not resp.ok:
            logger.info("render kick http error url=%s status=%s", url, resp.status_code)
            return {"attempted": True, "ok": False, "reason": "cron_http_error", "status": resp.status_code}
        return {"attempted": True, "ok": True, "reason": "ok", "status": resp.status_code}


class RenderGateway:
    def __init__(self, *, tenants: Any, quotes: Any, jobs: Any, kicker: WorkerKicker | None) -> None:
        self.tenants = tenants
        self.quotes = quotes
        self.jobs = jobs
        self.kicker = kicker

    def _resolve_tenant(self, tenant_ref: str) -> Tenant:
        tenant = self.tenants.get_by_slug_or_id(ref=tenant_ref)
        if tenant is None:
            raise render_error("TENANT_NOT_FOUND")
        return tenant

    def _resolve_quote(self, tenant: Tenant, quote_id: str) -> dict[str, Any]:
        quote = self.quotes.get(tenant_id=tenant.tenant_id, quote_id=_clean(quote_id))
        if quote is None:
            raise render_error("QUOTE_NOT_FOUND")
        return quote

    def _opted_in(self, tenant: Tenant, quote: dict[str, Any]) -> bool:
        if quote.get("render_opt_in"):
            return True
        if not (quote.get("input") or {}).get("render_opt_in"):
            return False
        try:
            self.quotes.set_render_opt_in(tenant_id=tenant.tenant_id, quote_id=quote["quote_id"], opt_in=True)
        except Exception:
            logger.exception("render opt-in self-heal failed quote=%s", quote["quote_id"])
        return True

    def request_render(self, *, tenant_ref: str, quote_id: str) -> dict[str, Any]:
        tenant = self._resolve_tenant(tenant_ref)
        quote = self._resolve_quote(tenant, quote_id)
        quote_id = str(quote["quote_id"])

        if not self._opted_in(tenant, quote):
            return {"status": "not_requested", "quote_id": quote_id, "job_id": None, "image_url": None}

        latest = self.jobs.latest_for_quote(tenant_id=tenant.tenant_id, quote_id=quote_id)
        if latest is not None and latest["status"] == "rendered" and latest.get("image_url"):
            self._realign_terminal(tenant, quote=quote, job=latest)
            return {
                "status": "rendered",
                "quote_id": quote_id,
                "job_id": latest["job_id"],
                "image_url": latest["image_url"],
            }

        job, created = self.jobs.enqueue_if_absent(
            tenant_id=tenant.tenant_id,
            quote_id=quote_id,
            seed_prompt=build_seed_prompt(quote),
        )
        if created:
            logger.info("render job enqueued job=%s tenant=%s quote=%s", job["job_id"], tenant.tenant_id, quote_id)
            self._mark_queued(tenant, quote_id=quote_id, prompt=str(job.get("prompt") or ""))
        else:
            logger.info("render job already active job=%s status=%s quote=%s", job["job_id"], job["status"], quote_id)
            self._align_status(tenant, quote_id=quote_id, status=str(job["status"]))
        job = self._recheck_job(tenant, quote_id=quote_id, job_id=str(job["job_id"])) or job

        kick = self.kicker.kick() if self.kicker is not None else {"attempted": False, "ok": False, "reason": "disabled"}
        return {
            "status": job["status"],
            "quote_id": quote_id,
            "job_id": job["job_id"],
            "image_url": job.get("image_url"),
            "created": created,
            "kick": kick,
        }

    def render_status(self, *, tenant_ref: str, quote_id: str) -> dict[str, Any]:
        tenant = self._resolve_tenant(tenant_ref)
        quote = self._resolve_quote(tenant, quote_id)
        latest = self.jobs.latest_for_quote(tenant_id=tenant.tenant_id, quote_id=str(quote["quote_id"]))
        if latest is None:
            return {"status": "not_requested", "quote_id": quote["quote_id"], "job_id": None, "image_url": None, "error": None}
        return {
            "status": latest["status"],
            "quote_id": quote["quote_id"],
            "job_id": latest["job_id"],
            "image_url": latest.get("image_url"),
            "error": latest.get("error"),
        }

    def _mark_queued(self, tenant: Tenant, *, quote_id: str, prompt: str) -> None:
        try:
            self.quotes.mark_render_pending(
                tenant_id=tenant.tenant_id,
                quote_id=quote_id,
                status="queued",
                rendering={
                    "requested": True,
                    "prompt": prompt,
                    "error": None,
                    "queued_at": datetime.now(UTC).isoformat(),
                },
                replaces_failed=True,
            )
        except Exception:
            logger.exception("quote queued mark failed quote=%s", quote_id)

    def _align_status(self, tenant: Tenant, *, quote_id: str, status: str) -> None:
        try:
            self.quotes.mark_render_pending(tenant_id=tenant.tenant_id, quote_id=quote_id, status=status)
        except Exception:
            logger.exception("quote status align failed quote=%s", quote_id)

    def _realign_terminal(self, tenant: Tenant, *, quote: dict[str, Any], job: dict[str, Any]) -> None:
        """Copy a finished job onto the quote when the mirror disagrees with it."""
        status = str(job["status"])
        if status not in ("rendered", "failed"):
            return
        if quote.get("render_status") == status and quote.get("render_image_url") == job.get("image_url"):
            return
        quote_id = str(quote["quote_id"])
        logger.info("quote render mirror realigned quote=%s job=%s status=%s", quote_id, job["job_id"], status)
        try:
            self.quotes.mirror_render_result(
                tenant_id=tenant.tenant_id,
                quote_id=quote_id,
                status=status,
                image_url=job.get("image_url"),
                error=job.get("error"),
                prompt=str(quote.get("render_prompt") or job.get("prompt") or ""),
            )
        except Exception:
            logger.exception("quote render mirror realign failed quote=%s", quote_id)

    def _recheck_job(self, tenant: Tenant, *, quote_id: str, job_id: str) -> dict[str, Any] | None:
        # A sweep may finish the job between the insert and the mirror write.
        try:
            current = self.jobs.get(tenant_id=tenant.tenant_id, job_id=job_id)
            if current is None or current["status"] not in ("rendered", "failed"):
                return current
            quote = self.quotes.get(tenant_id=tenant.tenant_id, quote_id=quote_id)
        except Exception:
            logger.exception("render job recheck failed job=%s quote=%s", job_id, quote_id)
            return None
        if quote is not None:
            self._realign_terminal(tenant, quote=quote, job=current)
        return current
