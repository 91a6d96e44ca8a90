"""Image generation provider.

One attempt per job: no retry or fallback model here. A failed render is
retried by enqueueing a new job.
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

import requests

from render_core.errors import RenderError, render_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneratedImage:
    content_bytes: bytes
    content_type: str = "image/png"
    model: str = ""
    latency_ms: float = 0.0


class ImageGenerator(Protocol):
    def generate(self, *, api_key: str, prompt: str, model: str, size: str) -> GeneratedImage: ...


def _create_client(*, api_key: str, base_url: str = ""):
    try:
        import openai
    except ImportError:
        raise RuntimeError("openai package is required. Install with: pip install 'render-core[openai]'")

    kwargs: dict[str, Any] = {"api_key": api_key}
    if base_url:
        kwargs["base_url"] = base_url
    return openai.OpenAI(**kwargs)


class OpenAIImageGenerator:
    def __init__(self, *, base_url: str = "", fetch_timeout_s: float = 30.0) -> None:
        self._base_url = base_url
        self._fetch_timeout_s = fetch_timeout_s

    def generate(self, *, api_key: str, prompt: str, model: str, size: str) -> GeneratedImage:
        if not api_key:
            raise render_error("PLATFORM_KEY_MISSING", "no api key supplied to image generator")
        client = _create_client(api_key=api_key, base_url=self._base_url)
        t0 = time.monotonic()
        try:
            response = client.images.generate(model=model, prompt=prompt, size=size)
        except Exception as exc:
            logger.warning("image generation call failed model=%s error=%s", model, type(exc).__name__)
            raise render_error("GENERATION_FAILED", f"image generation failed: {exc}") from exc

        data = list(getattr(response, "data", None) or [])
        first = data[0] if data else None
        b64 = getattr(first, "b64_json", None) if first is not None else None
        url = getattr(first, "url", None) if first is not None else None
        if b64:
            content = self._decode_b64(b64)
        elif url:
            content = self._fetch_url(url)
        else:
            raise render_error("GENERATION_FAILED", "image generation returned neither b64_json nor url")

        elapsed_ms = round((time.monotonic() - t0) * 1000, 1)
        logger.info("image generated model=%s size=%s bytes=%s latency_ms=%s", model, size, len(content), elapsed_ms)
        return GeneratedImage(content_bytes=content, model=model, latency_ms=elapsed_ms)

    @staticmethod
    def _decode_b64(b64: str) -> bytes:
        try:
            return base64.b64decode(b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise render_error("GENERATION_FAILED", "image payload is not valid base64") from exc

    def _fetch_url(self, url: str) -> bytes:
        try:
            resp = requests.get(url, timeout=self._fetch_timeout_s)
        except requests.RequestException as exc:
            raise render_error("GENERATION_FAILED", f"failed to fetch generated image: {exc}") from exc
        if not resp.ok:
            raise render_error("GENERATION_FAILED", f"failed to fetch generated image (HTTP {resp.status_code})")
        return resp.content


class StaticImageGenerator:
    """Deterministic generator for local runs and tests."""

    def __init__(self, *, content_bytes: bytes = b"\x89PNG\r\n\x1a\n", error: RenderError | None = None) -> None:
        self.content_bytes = content_bytes
        self.error = error
        self.calls: list[dict[str, str]] = []

    def generate(self, *, api_key: str, prompt: str, model: str, size: str) -> GeneratedImage:
        self.calls.append({"api_key": api_key, "prompt": prompt, "model": model, "size": size})
        if self.error is not None:
            raise self.error
        return GeneratedImage(content_bytes=self.content_bytes, model=model)
