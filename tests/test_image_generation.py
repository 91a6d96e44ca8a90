"""Tests for OpenAIImageGenerator with a mocked client."""

import base64
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from render_core.errors import RenderError
from render_core.image_generation import OpenAIImageGenerator, StaticImageGenerator


def _client_returning(*items):
    client = MagicMock()
    client.images.generate.return_value = SimpleNamespace(data=list(items))
    return client


def test_generate_decodes_b64_payload():
    client = _client_returning(SimpleNamespace(b64_json=base64.b64encode(b"png-bytes").decode(), url=None))
    with patch("render_core.image_generation._create_client", return_value=client) as create:
        image = OpenAIImageGenerator(base_url="https://llm.test/v1").generate(
            api_key="sk-x", prompt="p", model="gpt-image-1", size="1024x1024"
        )

    assert image.content_bytes == b"png-bytes"
    assert image.model == "gpt-image-1"
    create.assert_called_once_with(api_key="sk-x", base_url="https://llm.test/v1")
    client.images.generate.assert_called_once_with(model="gpt-image-1", prompt="p", size="1024x1024")


def test_generate_fetches_url_when_no_b64():
    client = _client_returning(SimpleNamespace(b64_json=None, url="https://files.test/img.png"))
    fetched = MagicMock(ok=True, status_code=200, content=b"from-url")
    with (
        patch("render_core.image_generation._create_client", return_value=client),
        patch("render_core.image_generation.requests.get", return_value=fetched) as get,
    ):
        image = OpenAIImageGenerator(fetch_timeout_s=5).generate(api_key="sk-x", prompt="p", model="m", size="s")

    assert image.content_bytes == b"from-url"
    get.assert_called_once_with("https://files.test/img.png", timeout=5)


def test_upstream_errors_map_to_generation_failed():
    client = MagicMock()
    client.images.generate.side_effect = RuntimeError("rate limited")
    with patch("render_core.image_generation._create_client", return_value=client):
        with pytest.raises(RenderError) as exc_info:
            OpenAIImageGenerator().generate(api_key="sk-x", prompt="p", model="m", size="s")
    assert exc_info.value.code == "GENERATION_FAILED"
    assert "rate limited" in exc_info.value.message

    empty = _client_returning()
    with patch("render_core.image_generation._create_client", return_value=empty):
        with pytest.raises(RenderError, match="neither b64_json nor url"):
            OpenAIImageGenerator().generate(api_key="sk-x", prompt="p", model="m", size="s")


def test_missing_api_key_is_rejected_before_client_creation():
    with patch("render_core.image_generation._create_client") as create:
        with pytest.raises(RenderError) as exc_info:
            OpenAIImageGenerator().generate(api_key="", prompt="p", model="m", size="s")
    assert exc_info.value.code == "PLATFORM_KEY_MISSING"
    create.assert_not_called()


def test_static_generator_records_calls():
    generator = StaticImageGenerator(content_bytes=b"x")
    image = generator.generate(api_key="k", prompt="p", model="m", size="s")
    assert image.content_bytes == b"x"
    assert generator.calls == [{"api_key": "k", "prompt": "p", "model": "m", "size": "s"}]
