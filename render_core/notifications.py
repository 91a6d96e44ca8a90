"""Best-effort render notifications (lead + customer emails via Resend)."""

from __future__ import annotations

import html
import logging
from typing import Any, Protocol

import requests

from render_core.repositories.tenants import Tenant, TenantSettings

logger = logging.getLogger(__name__)

PROVIDER_NAME = "resend"


class EmailSendError(RuntimeError):
    pass


class EmailSender(Protocol):
    def send(self, *, sender: str, to: list[str], subject: str, html_body: str) -> str | None: ...


class ResendEmailSender:
    def __init__(self, *, api_key: str, base_url: str = "https://api.resend.com", timeout_s: float = 10.0) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s

    def send(self, *, sender: str, to: list[str], subject: str, html_body: str) -> str | None:
        try:
            resp = requests.post(
                f"{self._base_url}/emails",
                json={"from": sender, "to": to, "subject": subject, "html": html_body},
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self._timeout_s,
            )
        except requests.RequestException as exc:
            raise EmailSendError(f"resend request failed: {exc}") from exc
        if not resp.ok:
            raise EmailSendError(f"resend error (HTTP {resp.status_code}): {resp.text[:300]}")
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        return payload.get("id") if isinstance(payload, dict) else None


def customer_contact(quote_input: dict[str, Any]) -> dict[str, str]:
    for key in ("customer_context", "contact", "customer"):
        block = quote_input.get(key)
        if isinstance(block, dict) and str(block.get("email") or "").strip():
            return {
                "name": str(block.get("name") or "").strip(),
                "email": str(block.get("email") or "").strip(),
                "phone": str(block.get("phone") or "").strip(),
            }
    return {"name": "", "email": "", "phone": ""}


def lead_render_email_html(
    *,
    tenant_slug: str,
    quote_id: str,
    customer: dict[str, str],
    images: list[str],
    render_image_url: str,
) -> str:
    esc = html.escape
    originals = "".join(
        f'<li><a href="{esc(url)}">{esc(url)}</a></li>' for url in images[:6]
    )
    return (
        "<div>"
        f"<h2>AI render ready</h2>"
        f"<p>Tenant: {esc(tenant_slug)}<br/>Quote: {esc(quote_id)}</p>"
        f"<p>Customer: {esc(customer.get('name') or '-')} &lt;{esc(customer.get('email') or '-')}&gt; "
        f"{esc(customer.get('phone') or '')}</p>"
        f'<p><img src="{esc(render_image_url)}" alt="render" style="max-width:100%"/></p>'
        f"<p>Original photos:</p><ul>{originals}</ul>"
        "</div>"
    )


def customer_render_email_html(*, business_name: str, quote_id: str, render_image_url: str) -> str:
    esc = html.escape
    return (
        "<div>"
        f"<h2>Your concept render from {esc(business_name)}</h2>"
        "<p>Here is an AI-generated concept of the finished work. "
        "It is a visual preview only and not a guarantee of the final result.</p>"
        f'<p><img src="{esc(render_image_url)}" alt="render" style="max-width:100%"/></p>'
        f"<p>Reference: {esc(quote_id)}</p>"
        "</div>"
    )


class RenderNotifier:
    def __init__(self, *, deliveries: Any, sender: EmailSender | None) -> None:
        self._deliveries = deliveries
        self._sender = sender

    def send_render_emails(
        self,
        *,
        tenant: Tenant,
        settings: TenantSettings | None,
        quote: dict[str, Any],
        render_image_url: str,
        original_images: list[str],
    ) -> dict[str, Any]:
        if self._sender is None:
            return {"configured": False, "skipped": True, "reason": "RESEND_API_KEY missing"}

        business_name = settings.business_name.strip() if settings else ""
        lead_to = settings.lead_to_email.strip() if settings else ""
        sender_email = settings.resend_from_email.strip() if settings else ""
        if not (business_name and lead_to and sender_email):
            return {
                "configured": False,
                "skipped": True,
                "reason": "tenant_settings missing business_name/lead_to_email/resend_from_email",
                "missing": {
                    "business_name": not business_name,
                    "lead_to_email": not lead_to,
                    "resend_from_email": not sender_email,
                },
            }

        quote_id = str(quote["quote_id"])
        customer = customer_contact(quote.get("input") or {})
        result: dict[str, Any] = {"configured": True}
        result["lead"] = self._deliver(
            tenant_id=tenant.tenant_id,
            quote_id=quote_id,
            type="render.lead",
            to=lead_to,
            sender_email=sender_email,
            subject=f"AI Render Ready - {quote_id}",
            html_body=lead_render_email_html(
                tenant_slug=tenant.slug,
                quote_id=quote_id,
                customer=customer,
                images=original_images,
                render_image_url=render_image_url,
            ),
        )
        if customer["email"]:
            result["customer"] = self._deliver(
                tenant_id=tenant.tenant_id,
                quote_id=quote_id,
                type="render.customer",
                to=customer["email"],
                sender_email=sender_email,
                subject=f"Your concept render from {business_name}",
                html_body=customer_render_email_html(
                    business_name=business_name,
                    quote_id=quote_id,
                    render_image_url=render_image_url,
                ),
            )
        else:
            result["customer"] = {"attempted": False, "sent": False, "id": None, "error": None}
        return result

    def _deliver(
        self,
        *,
        tenant_id: str,
        quote_id: str,
        type: str,
        to: str,
        sender_email: str,
        subject: str,
        html_body: str,
    ) -> dict[str, Any]:
        outcome: dict[str, Any] = {"attempted": True, "sent": False, "id": None, "error": None}
        try:
            delivery_id = self._deliveries.insert_queued(
                tenant_id=tenant_id,
                quote_id=quote_id,
                type=type,
                to=[to],
                sender=sender_email,
                provider=PROVIDER_NAME,
            )
        except Exception as exc:
            logger.exception("email delivery record insert failed tenant=%s quote=%s type=%s", tenant_id, quote_id, type)
            delivery_id = None
            outcome["record_error"] = str(exc)

        try:
            message_id = self._sender.send(sender=sender_email, to=[to], subject=subject, html_body=html_body)
        except Exception as exc:
            logger.warning("render email failed tenant=%s quote=%s type=%s error=%s", tenant_id, quote_id, type, exc)
            outcome["error"] = str(exc)
            self._record(outcome, "mark_failed", tenant_id=tenant_id, delivery_id=delivery_id, error=str(exc))
            return outcome

        outcome.update(sent=True, id=message_id)
        self._record(
            outcome,
            "mark_sent",
            tenant_id=tenant_id,
            delivery_id=delivery_id,
            provider_message_id=message_id,
        )
        return outcome

    def _record(self, outcome: dict[str, Any], method: str, *, delivery_id: str | None, **kwargs: Any) -> None:
        if delivery_id is None:
            return
        try:
            getattr(self._deliveries, method)(delivery_id=delivery_id, **kwargs)
        except Exception as exc:
            logger.exception("email delivery record %s failed delivery=%s", method, delivery_id)
            outcome["record_error"] = str(exc)
