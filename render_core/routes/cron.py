from __future__ import annotations

import logging
import time

from fastapi import APIRouter, Header, Query, Request

from render_core.routes._deps import services_from_request, trace_id_from_request
from render_core.schemas import SweepResult, success_envelope
from render_core.security import verify_cron_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])


def clamp_sweep_max(raw: int | None, *, cap: int) -> int:
    if raw is None:
        return 1
    return max(1, min(int(cap), int(raw)))


@router.api_route("/render", methods=["GET", "POST"])
def run_render_sweep(
    request: Request,
    max_jobs: int | None = Query(default=None, alias="max"),
    secret: str | None = Query(default=None),
    x_cron_secret: str | None = Header(default=None, alias="x-cron-secret"),
    authorization: str | None = Header(default=None),
):
    services = services_from_request(request)
    auth = verify_cron_secret(
        configured_secret=services.config.cron_secret,
        header_secret=x_cron_secret,
        authorization=authorization,
        query_secret=secret,
    )
    t0 = time.monotonic()
    limit = clamp_sweep_max(max_jobs, cap=services.config.sweep_max_cap)
    sweep = services.worker.run_sweep(max_jobs=limit)
    duration_ms = int((time.monotonic() - t0) * 1000)
    logger.info(
        "render sweep done auth_mode=%s max=%s claimed=%s duration_ms=%s",
        auth.mode,
        limit,
        sweep["claimed"],
        duration_ms,
    )
    data = SweepResult(
        ok=True,
        auth_mode=auth.mode,
        claimed=sweep["claimed"],
        results=sweep["results"],
        duration_ms=duration_ms,
    ).model_dump()
    return success_envelope(data, trace_id_from_request(request))
