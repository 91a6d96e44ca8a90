from __future__ import annotations

from fastapi import APIRouter, Query, Request

from render_core.errors import render_error
from render_core.routes._deps import services_from_request, trace_id_from_request
from render_core.schemas import RenderRequest, RenderRequestResult, success_envelope

router = APIRouter(prefix="/api/v1", tags=["renders"])


@router.post("/quote/render")
def request_render(payload: RenderRequest, request: Request):
    services = services_from_request(request)
    result = services.gateway.request_render(tenant_ref=payload.tenant_slug, quote_id=payload.quote_id)
    data = RenderRequestResult.model_validate(result).model_dump()
    return success_envelope(data, trace_id_from_request(request))


@router.get("/render/status")
def render_status(
    request: Request,
    tenant_slug: str = Query(min_length=1),
    quote_id: str = Query(min_length=1),
):
    services = services_from_request(request)
    data = services.gateway.render_status(tenant_ref=tenant_slug, quote_id=quote_id)
    return success_envelope(data, trace_id_from_request(request))


@router.get("/tenants/{tenant_ref}/key-policy")
def key_policy(tenant_ref: str, request: Request):
    services = services_from_request(request)
    tenant = services.tenants.get_by_slug_or_id(ref=tenant_ref)
    if tenant is None:
        raise render_error("TENANT_NOT_FOUND")
    data = {"tenant_id": tenant.tenant_id, **services.key_resolver.describe_policy(tenant_id=tenant.tenant_id)}
    return success_envelope(data, trace_id_from_request(request))
