from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests

from render_core.notifications import (
    EmailSendError,
    RenderNotifier,
    ResendEmailSender,
    customer_contact,
    lead_render_email_html,
)
from render_core.repositories import InMemoryEmailDeliveriesRepository, Tenant, TenantSettings


def _settings(**overrides) -> TenantSettings:
    values = {
        "tenant_id": "tenant_a",
        "business_name": "Acme <Upholstery>",
        "lead_to_email": "leads@acme.test",
        "resend_from_email": "renders@acme.test",
    }
    values.update(overrides)
    return TenantSettings(**values)


def _quote(email: str = "pat@example.test") -> dict:
    return {
        "quote_id": "q1",
        "input": {"customer_context": {"name": "Pat", "email": email, "phone": "555-0100"}},
    }


def test_resend_sender_posts_and_returns_message_id():
    response = MagicMock(ok=True, status_code=200)
    response.json.return_value = {"id": "msg_123"}
    with patch("render_core.notifications.requests.post", return_value=response) as post:
        message_id = ResendEmailSender(api_key="re_key", base_url="https://resend.test/").send(
            sender="a@x.test", to=["b@x.test"], subject="s", html_body="<p>h</p>"
        )

    assert message_id == "msg_123"
    args, kwargs = post.call_args
    assert args[0] == "https://resend.test/emails"
    assert kwargs["headers"] == {"Authorization": "Bearer re_key"}
    assert kwargs["json"] == {"from": "a@x.test", "to": ["b@x.test"], "subject": "s", "html": "<p>h</p>"}


def test_resend_sender_raises_on_http_and_transport_errors():
    bad = MagicMock(ok=False, status_code=422, text="invalid from")
    with patch("render_core.notifications.requests.post", return_value=bad):
        with pytest.raises(EmailSendError, match="HTTP 422"):
            ResendEmailSender(api_key="k").send(sender="a", to=["b"], subject="s", html_body="h")

    with patch("render_core.notifications.requests.post", side_effect=requests.ConnectionError("down")):
        with pytest.raises(EmailSendError, match="request failed"):
            ResendEmailSender(api_key="k").send(sender="a", to=["b"], subject="s", html_body="h")


def test_notifier_without_sender_reports_not_configured():
    notifier = RenderNotifier(deliveries=InMemoryEmailDeliveriesRepository(), sender=None)
    result = notifier.send_render_emails(
        tenant=Tenant(tenant_id="tenant_a", slug="acme"),
        settings=_settings(),
        quote=_quote(),
        render_image_url="https://cdn/x.png",
        original_images=[],
    )
    assert result == {"configured": False, "skipped": True, "reason": "RESEND_API_KEY missing"}


def test_notifier_skips_when_tenant_email_settings_missing():
    sender = MagicMock()
    notifier = RenderNotifier(deliveries=InMemoryEmailDeliveriesRepository(), sender=sender)
    result = notifier.send_render_emails(
        tenant=Tenant(tenant_id="tenant_a", slug="acme"),
        settings=_settings(lead_to_email=""),
        quote=_quote(),
        render_image_url="https://cdn/x.png",
        original_images=[],
    )
    assert result["skipped"] is True
    assert result["missing"] == {"business_name": False, "lead_to_email": True, "resend_from_email": False}
    sender.send.assert_not_called()


def test_notifier_records_each_delivery():
    deliveries = InMemoryEmailDeliveriesRepository()
    sender = MagicMock()
    sender.send.side_effect = ["msg_lead", EmailSendError("resend error (HTTP 429): slow down")]
    notifier = RenderNotifier(deliveries=deliveries, sender=sender)

    result = notifier.send_render_emails(
        tenant=Tenant(tenant_id="tenant_a", slug="acme"),
        settings=_settings(),
        quote=_quote(),
        render_image_url="https://cdn/x.png",
        original_images=["https://img/1.jpg"],
    )

    assert result["lead"] == {"attempted": True, "sent": True, "id": "msg_lead", "error": None}
    assert result["customer"]["sent"] is False
    assert "HTTP 429" in result["customer"]["error"]
    rows = {x["type"]: x for x in deliveries.list_for_quote(tenant_id="tenant_a", quote_id="q1")}
    assert rows["render.lead"]["status"] == "sent"
    assert rows["render.lead"]["provider_message_id"] == "msg_lead"
    assert rows["render.customer"]["status"] == "failed"
    assert rows["render.customer"]["to"] == ["pat@example.test"]
    customer_subject = sender.send.call_args_list[1].kwargs["subject"]
    assert customer_subject == "Your concept render from Acme <Upholstery>"


class _LeadRecordFailsDeliveries(InMemoryEmailDeliveriesRepository):
    def insert_queued(self, **kwargs):
        if kwargs["type"] == "render.lead":
            raise RuntimeError("delivery table unavailable")
        return super().insert_queued(**kwargs)


def test_delivery_record_failure_does_not_block_other_recipient():
    deliveries = _LeadRecordFailsDeliveries()
    sender = MagicMock()
    sender.send.side_effect = ["msg_lead", "msg_customer"]
    notifier = RenderNotifier(deliveries=deliveries, sender=sender)

    result = notifier.send_render_emails(
        tenant=Tenant(tenant_id="tenant_a", slug="acme"),
        settings=_settings(),
        quote=_quote(),
        render_image_url="https://cdn/x.png",
        original_images=[],
    )

    assert result["lead"]["sent"] is True
    assert result["lead"]["record_error"] == "delivery table unavailable"
    assert result["customer"] == {"attempted": True, "sent": True, "id": "msg_customer", "error": None}
    rows = deliveries.list_for_quote(tenant_id="tenant_a", quote_id="q1")
    assert [(x["type"], x["status"]) for x in rows] == [("render.customer", "sent")]


def test_mark_sent_failure_is_reported_per_recipient():
    deliveries = MagicMock()
    deliveries.insert_queued.side_effect = ["ed_lead", "ed_customer"]
    deliveries.mark_sent.side_effect = [RuntimeError("connection reset"), None]
    sender = MagicMock()
    sender.send.side_effect = ["msg_lead", "msg_customer"]

    result = RenderNotifier(deliveries=deliveries, sender=sender).send_render_emails(
        tenant=Tenant(tenant_id="tenant_a", slug="acme"),
        settings=_settings(),
        quote=_quote(),
        render_image_url="https://cdn/x.png",
        original_images=[],
    )

    assert result["lead"]["sent"] is True
    assert result["lead"]["record_error"] == "connection reset"
    assert result["customer"]["sent"] is True
    assert "record_error" not in result["customer"]
    assert sender.send.call_count == 2


def test_notifier_skips_customer_without_email():
    sender = MagicMock()
    sender.send.return_value = "msg_lead"
    notifier = RenderNotifier(deliveries=InMemoryEmailDeliveriesRepository(), sender=sender)

    result = notifier.send_render_emails(
        tenant=Tenant(tenant_id="tenant_a", slug="acme"),
        settings=_settings(),
        quote=_quote(email=""),
        render_image_url="https://cdn/x.png",
        original_images=[],
    )

    assert result["customer"] == {"attempted": False, "sent": False, "id": None, "error": None}
    assert sender.send.call_count == 1


def test_customer_contact_and_html_escaping():
    assert customer_contact({"contact": {"email": " a@b.test ", "name": "A"}})["email"] == "a@b.test"
    assert customer_contact({})["email"] == ""

    body = lead_render_email_html(
        tenant_slug="acme",
        quote_id="q1",
        customer={"name": "<script>", "email": "a@b.test", "phone": ""},
        images=["https://img/1.jpg"],
        render_image_url="https://cdn/x.png",
    )
    assert "<script>" not in body
    assert "&lt;script&gt;" in body
