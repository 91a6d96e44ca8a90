from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from render_core.errors import RenderError, render_error
from render_core.guardrails import build_guardrail_set, local_midnight_utc
from render_core.image_generation import ImageGenerator
from render_core.key_resolver import KeyResolver, PreferredSource
from render_core.notifications import RenderNotifier
from render_core.object_storage import ObjectStorageBackend, build_render_key
from render_core.platform_config import PlatformLlmConfig
from render_core.prompt_composer import (
    ComposedPrompt,
    RenderInputs,
    TenantLayer,
    build_render_debug_payload,
    compose_render_prompt,
)
from render_core.repositories.tenants import Tenant, TenantSettings

logger = logging.getLogger(__name__)


def quote_image_urls(quote: dict[str, Any]) -> list[str]:
    images = (quote.get("input") or {}).get("images")
    if not isinstance(images, list):
        return []
    urls: list[str] = []
    for item in images:
        url = item.get("url") if isinstance(item, dict) else None
        if isinstance(url, str) and url.strip():
            urls.append(url.strip())
    return urls


@dataclass
class WorkerRunStats:
    sweeps: int = 0
    claimed: int = 0
    rendered: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "sweeps": self.sweeps,
            "claimed": self.claimed,
            "rendered": self.rendered,
            "failed": self.failed,
        }


@dataclass
class _JobContext:
    tenant: Tenant
    settings: TenantSettings | None
    quote: dict[str, Any]
    images: list[str]
    composed: ComposedPrompt | None = None


class RenderWorker:
    """Claims queued render jobs and drives each one to a terminal status.

    Every claimed job ends as ``rendered`` or ``failed``; one job's failure
    never stops the rest of the batch. Notifications run only after the
    terminal status is stored and cannot change it.
    """

    def __init__(
        self,
        *,
        jobs: Any,
        quotes: Any,
        tenants: Any,
        key_resolver: KeyResolver,
        image_generator: ImageGenerator,
        object_storage: ObjectStorageBackend,
        notifier: RenderNotifier | None,
        platform_config: PlatformLlmConfig,
        render_model: str = "gpt-image-1",
        image_size: str = "1024x1024",
        platform_daily_cap: int = 0,
        render_debug: bool = False,
        poll_interval_ms: int = 2000,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.jobs = jobs
        self.quotes = quotes
        self.tenants = tenants
        self.key_resolver = key_resolver
        self.image_generator = image_generator
        self.object_storage = object_storage
        self.notifier = notifier
        self.platform_config = platform_config
        self.render_model = render_model
        self.image_size = image_size
        self.platform_daily_cap = max(0, int(platform_daily_cap))
        self.render_debug = bool(render_debug)
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self._now = now_fn or (lambda: datetime.now(UTC))

    def run_sweep(self, *, max_jobs: int) -> dict[str, Any]:
        claimed = self.jobs.claim_up_to(n=max(0, int(max_jobs)))
        results = []
        for job in claimed:
            logger.info("render job claimed job=%s tenant=%s quote=%s", job["job_id"], job["tenant_id"], job["quote_id"])
            results.append(self.run_job(job))
        return {"claimed": len(claimed), "results": results}

    def run_job(self, job: dict[str, Any]) -> dict[str, Any]:
        t0 = time.monotonic()
        job_id = str(job["job_id"])
        tenant_id = str(job["tenant_id"])
        quote_id = str(job["quote_id"])
        ctx: _JobContext | None = None
        try:
            ctx = self._load_context(job)
            self._guard_quote_status(tenant_id=tenant_id, quote_id=quote_id, status="running")
            image_url = self._execute(job, ctx)
            completed = self.jobs.complete(job_id=job_id, status="rendered", image_url=image_url)
        except RenderError as exc:
            return self._fail(job, ctx=ctx, error=exc.as_job_error(), code=exc.code, t0=t0)
        except Exception as exc:
            logger.exception("render job crashed job=%s tenant=%s", job_id, tenant_id)
            return self._fail(job, ctx=ctx, error=f"INTERNAL_ERROR: {exc}", code="INTERNAL_ERROR", t0=t0)

        if not completed:
            # Another writer finished this job; its mirror and emails are not ours to send.
            logger.warning("render job completion affected no rows job=%s status=rendered", job_id)
            return {
                "job_id": job_id,
                "quote_id": quote_id,
                "ok": False,
                "error": render_error("JOB_NOT_RUNNING").as_job_error(),
                "image_url": image_url,
                "email": None,
                "duration_ms": int((time.monotonic() - t0) * 1000),
            }

        prompt = ctx.composed.text if ctx.composed is not None else str(job.get("prompt") or "")
        self._guard_mirror(job, status="rendered", image_url=image_url, error=None, prompt=prompt)
        logger.info("render job rendered job=%s tenant=%s quote=%s", job_id, tenant_id, quote_id)
        email = self._notify(ctx, image_url=image_url)
        return {
            "job_id": job_id,
            "quote_id": quote_id,
            "ok": True,
            "image_url": image_url,
            "email": email,
            "duration_ms": int((time.monotonic() - t0) * 1000),
        }

    def run_forever(self, *, max_jobs: int = 1, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        while True:
            current = self.run_sweep(max_jobs=max_jobs)
            aggregate.sweeps += 1
            aggregate.claimed += int(current["claimed"])
            for result in current["results"]:
                if result["ok"]:
                    aggregate.rendered += 1
                else:
                    aggregate.failed += 1
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(current["claimed"]) == 0:
                time.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()

    def _load_context(self, job: dict[str, Any]) -> _JobContext:
        tenant_id = str(job["tenant_id"])
        quote = self.quotes.get_by_id(quote_id=str(job["quote_id"]))
        if quote is None:
            raise render_error("QUOTE_NOT_FOUND")
        if str(quote["tenant_id"]) != tenant_id:
            logger.warning("render job tenant mismatch job=%s job_tenant=%s", job["job_id"], tenant_id)
            raise render_error("TENANT_MISMATCH")
        tenant = self.tenants.get_by_id(tenant_id=tenant_id)
        if tenant is None:
            raise render_error("TENANT_NOT_FOUND")
        settings = self.tenants.get_settings(tenant_id=tenant_id)
        return _JobContext(tenant=tenant, settings=settings, quote=quote, images=quote_image_urls(quote))

    def _execute(self, job: dict[str, Any], ctx: _JobContext) -> str:
        job_id = str(job["job_id"])
        tenant_id = ctx.tenant.tenant_id
        settings = ctx.settings
        if settings is not None and not settings.rendering_allowed:
            raise render_error("RENDER_SKIPPED_OPT_OUT", "rendering is disabled for this tenant")
        if settings is not None and settings.rendering_customer_opt_in_required and not _quote_opted_in(ctx.quote):
            raise render_error("RENDER_SKIPPED_OPT_OUT", "customer did not opt in to rendering")
        if not ctx.images:
            raise render_error("NO_IMAGES_ON_QUOTE")

        ctx.composed = compose_render_prompt(
            self.platform_config,
            self.platform_config.industry_pack(settings.industry_key if settings else ""),
            TenantLayer.from_settings(settings),
            RenderInputs.from_quote(ctx.quote),
        )
        guardrails = build_guardrail_set(
            platform=self.platform_config,
            settings=settings,
            platform_daily_cap=self.platform_daily_cap,
        )
        guardrails.check_content(ctx.composed.guarded_texts(), tenant_id=tenant_id, job_id=job_id)
        if self.render_debug:
            self._attach_debug(job, ctx)

        if guardrails.daily_cap > 0:
            since = local_midnight_utc(self._now(), settings.reporting_timezone if settings else "UTC")
            rendered_today = self.jobs.count_rendered_since(tenant_id=tenant_id, since=since)
            guardrails.check_daily_cap(rendered_today=rendered_today, tenant_id=tenant_id, job_id=job_id)

        resolved = self.key_resolver.resolve(tenant_id=tenant_id, consume=True, preferred=PreferredSource.AUTO)
        logger.info("render key resolved job=%s tenant=%s source=%s", job_id, tenant_id, resolved.source.value)

        image = self.image_generator.generate(
            api_key=resolved.api_key,
            prompt=ctx.composed.text,
            model=self.render_model,
            size=self.image_size,
        )
        key = build_render_key(quote_id=str(job["quote_id"]), ts_ms=int(time.time() * 1000))
        return self.object_storage.put_object(key=key, content_bytes=image.content_bytes, content_type="image/png")

    def _fail(
        self,
        job: dict[str, Any],
        *,
        ctx: _JobContext | None,
        error: str,
        code: str,
        t0: float,
    ) -> dict[str, Any]:
        job_id = str(job["job_id"])
        logger.warning("render job failed job=%s tenant=%s code=%s", job_id, job["tenant_id"], code)
        try:
            updated = self.jobs.complete(job_id=job_id, status="failed", error=error)
            if not updated:
                logger.warning("render job completion affected no rows job=%s status=failed", job_id)
        except Exception:
            logger.exception("render job failed-status write crashed job=%s", job_id)
        prompt = ctx.composed.text if ctx is not None and ctx.composed is not None else str(job.get("prompt") or "")
        self._guard_mirror(job, status="failed", image_url=None, error=error, prompt=prompt)
        return {
            "job_id": job_id,
            "quote_id": str(job["quote_id"]),
            "ok": False,
            "error": error,
            "email": None,
            "duration_ms": int((time.monotonic() - t0) * 1000),
        }

    def _guard_mirror(
        self,
        job: dict[str, Any],
        *,
        status: str,
        image_url: str | None,
        error: str | None,
        prompt: str,
    ) -> None:
        try:
            self.quotes.mirror_render_result(
                tenant_id=str(job["tenant_id"]),
                quote_id=str(job["quote_id"]),
                status=status,
                image_url=image_url,
                error=error,
                prompt=prompt,
            )
        except Exception:
            logger.exception("quote render mirror failed job=%s status=%s", job["job_id"], status)

    def _guard_quote_status(self, *, tenant_id: str, quote_id: str, status: str) -> None:
        try:
            self.quotes.mark_render_pending(
                tenant_id=tenant_id,
                quote_id=quote_id,
                status=status,
                replaces_failed=True,
            )
        except Exception:
            logger.exception("quote render status update failed quote=%s status=%s", quote_id, status)

    def _attach_debug(self, job: dict[str, Any], ctx: _JobContext) -> None:
        payload = build_render_debug_payload(
            composed=ctx.composed,
            render_model=self.render_model,
            image_urls=ctx.images,
        )
        try:
            self.quotes.set_output_path(
                tenant_id=ctx.tenant.tenant_id,
                quote_id=str(job["quote_id"]),
                key="render_debug",
                value=payload,
            )
        except Exception:
            logger.exception("render debug write failed job=%s", job["job_id"])

    def _notify(self, ctx: _JobContext, *, image_url: str) -> dict[str, Any]:
        if self.notifier is None:
            return {"configured": False, "skipped": True, "reason": "notifier disabled"}
        quote_id = str(ctx.quote["quote_id"])
        try:
            result = self.notifier.send_render_emails(
                tenant=ctx.tenant,
                settings=ctx.settings,
                quote=ctx.quote,
                render_image_url=image_url,
                original_images=ctx.images,
            )
        except Exception as exc:
            logger.exception("render notification crashed tenant=%s quote=%s", ctx.tenant.tenant_id, quote_id)
            result = {"configured": True, "ok": False, "error": str(exc)}
        try:
            self.quotes.set_output_path(
                tenant_id=ctx.tenant.tenant_id,
                quote_id=quote_id,
                key="render_email",
                value=result,
            )
        except Exception:
            logger.exception("render email result write failed quote=%s", quote_id)
        return result


def _quote_opted_in(quote: dict[str, Any]) -> bool:
    if quote.get("render_opt_in"):
        return True
    return bool((quote.get("input") or {}).get("render_opt_in"))
