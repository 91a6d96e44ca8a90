from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class RenderRequest(BaseModel):
    tenant_slug: str = Field(min_length=1)
    quote_id: str = Field(min_length=1)


class KickResult(BaseModel):
    attempted: bool
    ok: bool
    reason: str
    status: int | None = None


class RenderRequestResult(BaseModel):
    status: str
    quote_id: str
    job_id: str | None = None
    image_url: str | None = None
    created: bool = False
    kick: KickResult | None = None


class SweepJobResult(BaseModel):
    job_id: str
    quote_id: str
    ok: bool
    image_url: str | None = None
    error: str | None = None
    email: dict[str, Any] | None = None
    duration_ms: int = 0


class SweepResult(BaseModel):
    ok: bool = True
    auth_mode: str
    claimed: int
    results: list[SweepJobResult] = Field(default_factory=list)
    duration_ms: int = 0


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
