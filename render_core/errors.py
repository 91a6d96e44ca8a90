from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class RenderError(ApiError):
    """ApiError raised inside the render pipeline; carries diagnostic meta."""

    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        meta: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            http_status=http_status,
        )
        self.meta = dict(meta or {})

    def as_job_error(self) -> str:
        return f"{self.code}: {self.message}"


ERROR_MATRIX: dict[str, dict[str, Any]] = {
    # configuration
    "PLATFORM_KEY_MISSING": {
        "class": "configuration",
        "retryable": False,
        "http_status": 500,
        "message": "platform image credential is not configured",
    },
    "OBJECT_STORAGE_NOT_CONFIGURED": {
        "class": "configuration",
        "retryable": False,
        "http_status": 500,
        "message": "object storage credential is not configured",
    },
    "ENCRYPTION_KEY_MISSING": {
        "class": "configuration",
        "retryable": False,
        "http_status": 500,
        "message": "ENCRYPTION_KEY is required to read tenant credentials",
    },
    # tenant state
    "TENANT_KEY_MISSING": {
        "class": "business_rule",
        "retryable": False,
        "http_status": 400,
        "message": "tenant has no API key configured",
    },
    "PLAN_NOT_ELIGIBLE": {
        "class": "business_rule",
        "retryable": False,
        "http_status": 402,
        "message": "plan tier is not eligible for platform credits",
    },
    "CREDITS_EXHAUSTED": {
        "class": "business_rule",
        "retryable": False,
        "http_status": 402,
        "message": "platform credits exhausted; add your own API key",
    },
    "DAILY_CAP_REACHED": {
        "class": "rate_limit",
        "retryable": False,
        "http_status": 429,
        "message": "daily render limit reached",
    },
    "SETTINGS_MISSING": {
        "class": "business_rule",
        "retryable": False,
        "http_status": 400,
        "message": "tenant settings missing",
    },
    # content policy
    "CONTENT_BLOCKED": {
        "class": "content_policy",
        "retryable": False,
        "http_status": 422,
        "message": "request contains blocked content",
    },
    # upstream
    "GENERATION_FAILED": {
        "class": "upstream",
        "retryable": False,
        "http_status": 502,
        "message": "image generation failed",
    },
    "UPLOAD_FAILED": {
        "class": "upstream",
        "retryable": False,
        "http_status": 502,
        "message": "artifact upload failed",
    },
    "KEY_DECRYPT_FAILED": {
        "class": "upstream",
        "retryable": False,
        "http_status": 500,
        "message": "tenant credential could not be decrypted",
    },
    # job input
    "QUOTE_NOT_FOUND": {
        "class": "validation",
        "retryable": False,
        "http_status": 404,
        "message": "quote not found for this tenant",
    },
    "TENANT_MISMATCH": {
        "class": "security_sensitive",
        "retryable": False,
        "http_status": 409,
        "message": "job tenant does not match quote tenant",
    },
    "NO_IMAGES_ON_QUOTE": {
        "class": "validation",
        "retryable": False,
        "http_status": 400,
        "message": "quote has no images to render from",
    },
    "JOB_NOT_RUNNING": {
        "class": "conflict",
        "retryable": False,
        "http_status": 409,
        "message": "job was no longer running at completion",
    },
    "RENDER_SKIPPED_OPT_OUT": {
        "class": "business_rule",
        "retryable": False,
        "http_status": 409,
        "message": "rendering is disabled for this tenant",
    },
    # gateway / http
    "TENANT_NOT_FOUND": {
        "class": "validation",
        "retryable": False,
        "http_status": 404,
        "message": "invalid tenant link",
    },
    "AUTH_UNAUTHORIZED": {
        "class": "security_sensitive",
        "retryable": False,
        "http_status": 401,
        "message": "unauthorized",
    },
    "INTERNAL_ERROR": {
        "class": "internal",
        "retryable": False,
        "http_status": 500,
        "message": "unexpected error",
    },
}


def classify_error_code(code: str) -> dict[str, Any]:
    return ERROR_MATRIX.get(code, ERROR_MATRIX["INTERNAL_ERROR"])


def render_error(
    code: str,
    message: str | None = None,
    *,
    meta: dict[str, Any] | None = None,
) -> RenderError:
    entry = classify_error_code(code)
    return RenderError(
        code=code,
        message=message or str(entry["message"]),
        error_class=str(entry["class"]),
        retryable=bool(entry["retryable"]),
        http_status=int(entry["http_status"]),
        meta=meta,
    )
