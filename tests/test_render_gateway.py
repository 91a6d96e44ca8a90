from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests

from render_core.errors import RenderError
from render_core.render_gateway import WorkerKicker, build_seed_prompt


def test_request_render_enqueues_once_and_kicks(services, seed_tenant, seed_quote, kicker):
    seed_tenant()
    seed_quote("q1")

    first = services.gateway.request_render(tenant_ref="tenant_a-slug", quote_id="q1")
    second = services.gateway.request_render(tenant_ref="tenant_a", quote_id="q1")

    assert first["status"] == "queued"
    assert first["created"] is True
    assert second["created"] is False
    assert second["job_id"] == first["job_id"]
    assert services.jobs.count_by_status(status="queued") == 1
    assert kicker.calls == 2

    quote = services.quotes.get(tenant_id="tenant_a", quote_id="q1")
    assert quote["render_status"] == "queued"
    assert quote["output"]["rendering"]["status"] == "queued"
    assert "Service type: boat seat reupholstery" in quote["output"]["rendering"]["prompt"]


def test_request_render_without_opt_in_writes_nothing(services, seed_tenant, seed_quote, kicker):
    seed_tenant()
    seed_quote("q1", render_opt_in=False)

    result = services.gateway.request_render(tenant_ref="tenant_a", quote_id="q1")

    assert result == {"status": "not_requested", "quote_id": "q1", "job_id": None, "image_url": None}
    assert services.jobs.latest_for_quote(tenant_id="tenant_a", quote_id="q1") is None
    assert kicker.calls == 0


def test_opt_in_flag_in_input_self_heals_column(services, seed_tenant):
    seed_tenant()
    services.quotes.add(
        quote_id="q1",
        tenant_id="tenant_a",
        input={"render_opt_in": True, "images": [{"url": "https://img/1.jpg"}]},
        render_opt_in=False,
    )

    result = services.gateway.request_render(tenant_ref="tenant_a", quote_id="q1")

    assert result["status"] == "queued"
    assert services.quotes.get(tenant_id="tenant_a", quote_id="q1")["render_opt_in"] is True


def test_rendered_job_is_returned_without_new_work(services, seed_tenant, seed_quote, kicker):
    seed_tenant(grace_credits=3)
    seed_quote("q1")
    services.gateway.request_render(tenant_ref="tenant_a", quote_id="q1")
    services.worker.run_sweep(max_jobs=1)

    for _ in range(2):
        result = services.gateway.request_render(tenant_ref="tenant_a", quote_id="q1")
        assert result["status"] == "rendered"
        assert result["image_url"].startswith("https://cdn.example.test/")
    assert kicker.calls == 1
    assert services.jobs.count_by_status(status="queued") == 0


def test_failed_job_can_be_requested_again(services, seed_tenant, seed_quote):
    seed_tenant(grace_credits=0)
    seed_quote("q1")
    first = services.gateway.request_render(tenant_ref="tenant_a", quote_id="q1")
    services.worker.run_sweep(max_jobs=1)
    assert services.gateway.render_status(tenant_ref="tenant_a", quote_id="q1")["status"] == "failed"

    retry = services.gateway.request_render(tenant_ref="tenant_a", quote_id="q1")

    assert retry["created"] is True
    assert retry["job_id"] != first["job_id"]


def test_sweep_finishing_before_mirror_write_keeps_rendered_mirror(services, seed_tenant, seed_quote, monkeypatch):
    seed_tenant(grace_credits=3)
    seed_quote("q1")
    enqueue = services.jobs.enqueue_if_absent

    def enqueue_then_sweep(**kwargs):
        job, created = enqueue(**kwargs)
        services.worker.run_sweep(max_jobs=1)
        return job, created

    monkeypatch.setattr(services.jobs, "enqueue_if_absent", enqueue_then_sweep)
    result = services.gateway.request_render(tenant_ref="tenant_a", quote_id="q1")

    assert result["status"] == "rendered"
    assert result["image_url"].startswith("https://cdn.example.test/")
    quote = services.quotes.get(tenant_id="tenant_a", quote_id="q1")
    assert quote["render_status"] == "rendered"
    assert quote["render_image_url"] == result["image_url"]
    rendering = quote["output"]["rendering"]
    assert rendering["status"] == "rendered"
    assert rendering["image_url"] == result["image_url"]
    assert rendering["prompt"] == quote["render_prompt"]

    monkeypatch.setattr(services.jobs, "enqueue_if_absent", enqueue)
    again = services.gateway.request_render(tenant_ref="tenant_a", quote_id="q1")
    assert again["status"] == "rendered"
    assert services.quotes.get(tenant_id="tenant_a", quote_id="q1")["render_status"] == "rendered"


def test_job_failing_before_mirror_write_is_realigned(services, seed_tenant, seed_quote, monkeypatch):
    seed_tenant(grace_credits=0)
    seed_quote("q1")
    enqueue = services.jobs.enqueue_if_absent

    def enqueue_then_sweep(**kwargs):
        job, created = enqueue(**kwargs)
        services.worker.run_sweep(max_jobs=1)
        return job, created

    monkeypatch.setattr(services.jobs, "enqueue_if_absent", enqueue_then_sweep)
    result = services.gateway.request_render(tenant_ref="tenant_a", quote_id="q1")

    assert result["status"] == "failed"
    quote = services.quotes.get(tenant_id="tenant_a", quote_id="q1")
    assert quote["render_status"] == "failed"
    assert quote["render_error"].startswith("CREDITS_EXHAUSTED")
    assert quote["output"]["rendering"]["status"] == "failed"


def test_rendered_short_circuit_repairs_stale_mirror(services, seed_tenant, seed_quote):
    seed_tenant(grace_credits=3)
    seed_quote("q1")
    services.gateway.request_render(tenant_ref="tenant_a", quote_id="q1")
    services.worker.run_sweep(max_jobs=1)
    services.quotes.mirror_render_result(
        tenant_id="tenant_a", quote_id="q1", status="running", image_url=None, error=None, prompt="stale"
    )

    result = services.gateway.request_render(tenant_ref="tenant_a", quote_id="q1")

    quote = services.quotes.get(tenant_id="tenant_a", quote_id="q1")
    assert quote["render_status"] == "rendered"
    assert quote["render_image_url"] == result["image_url"]
    assert quote["output"]["rendering"]["image_url"] == result["image_url"]


def test_pending_mark_never_regresses_rendered_mirror_and_merges(services, seed_tenant, seed_quote):
    seed_tenant()
    seed_quote("q1")
    quotes = services.quotes
    quotes.mirror_render_result(
        tenant_id="tenant_a", quote_id="q1", status="rendered", image_url="https://cdn/r.png", error=None, prompt="final"
    )

    assert quotes.mark_render_pending(tenant_id="tenant_a", quote_id="q1", status="queued", replaces_failed=True) is False
    assert quotes.get(tenant_id="tenant_a", quote_id="q1")["render_status"] == "rendered"

    quotes.mirror_render_result(
        tenant_id="tenant_a", quote_id="q1", status="failed", image_url=None, error="GENERATION_FAILED: x", prompt="final"
    )
    assert quotes.mark_render_pending(tenant_id="tenant_a", quote_id="q1", status="running") is False
    assert quotes.mark_render_pending(
        tenant_id="tenant_a", quote_id="q1", status="queued", rendering={"error": None}, replaces_failed=True
    )
    rendering = quotes.get(tenant_id="tenant_a", quote_id="q1")["output"]["rendering"]
    assert rendering["status"] == "queued"
    assert rendering["error"] is None
    assert rendering["prompt"] == "final"


def test_unknown_tenant_or_quote(services, seed_tenant, seed_quote):
    seed_tenant("tenant_a")
    seed_tenant("tenant_b")
    seed_quote("q1", tenant_id="tenant_a")

    with pytest.raises(RenderError) as exc_info:
        services.gateway.request_render(tenant_ref="nobody", quote_id="q1")
    assert exc_info.value.code == "TENANT_NOT_FOUND"

    with pytest.raises(RenderError) as exc_info:
        services.gateway.request_render(tenant_ref="tenant_b", quote_id="q1")
    assert exc_info.value.code == "QUOTE_NOT_FOUND"


def test_render_status_reports_latest_job(services, seed_tenant, seed_quote):
    seed_tenant()
    seed_quote("q1")
    assert services.gateway.render_status(tenant_ref="tenant_a", quote_id="q1")["status"] == "not_requested"

    queued = services.gateway.request_render(tenant_ref="tenant_a", quote_id="q1")
    status = services.gateway.render_status(tenant_ref="tenant_a", quote_id="q1")
    assert status["status"] == "queued"
    assert status["job_id"] == queued["job_id"]


def test_seed_prompt_lists_known_quote_fields():
    prompt = build_seed_prompt(
        {
            "input": {"customer_context": {"category": "auto", "service_type": "headliner", "notes": ""}},
            "output": {"summary": "Replace sagging headliner."},
        }
    )
    assert "Category: auto" in prompt
    assert "Service type: headliner" in prompt
    assert "Customer notes" not in prompt
    assert prompt.endswith("Estimate summary: Replace sagging headliner.")


def test_kicker_skips_when_not_configured():
    assert WorkerKicker(base_url="", cron_secret="s").kick() == {
        "attempted": False,
        "ok": False,
        "reason": "missing_base_url",
    }
    assert WorkerKicker(base_url="https://app.test", cron_secret="").kick()["reason"] == "missing_cron_secret"


def test_kicker_posts_with_bearer_secret():
    response = MagicMock(ok=True, status_code=200)
    with patch("render_core.render_gateway.requests.post", return_value=response) as post:
        result = WorkerKicker(base_url="https://app.test/", cron_secret="s3cret", timeout_s=1.5).kick()

    assert result == {"attempted": True, "ok": True, "reason": "ok", "status": 200}
    args, kwargs = post.call_args
    assert args[0] == "https://app.test/api/cron/render"
    assert kwargs["params"] == {"max": 1}
    assert kwargs["headers"] == {"Authorization": "Bearer s3cret"}
    assert kwargs["timeout"] == 1.5


@pytest.mark.parametrize(
    ("side_effect", "reason"),
    [
        (requests.Timeout("slow"), "timeout"),
        (requests.ConnectionError("refused"), "fetch_error"),
    ],
)
def test_kicker_reports_transport_failures(side_effect, reason):
    with patch("render_core.render_gateway.requests.post", side_effect=side_effect):
        result = WorkerKicker(base_url="https://app.test", cron_secret="s").kick()
    assert result == {"attempted": True, "ok": False, "reason": reason}


def test_kicker_reports_http_errors():
    response = MagicMock(ok=False, status_code=401)
    with patch("render_core.render_gateway.requests.post", return_value=response):
        result = WorkerKicker(base_url="https://app.test", cron_secret="s").kick()
    assert result == {"attempted": True, "ok": False, "reason": "cron_http_error", "status": 401}
