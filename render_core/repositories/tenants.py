from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

from render_core.db.postgres import PostgresTxRunner, validate_identifier

RENDER_STYLE_KEYS = ("photoreal", "clean_oem", "custom")


def _clean(value: Any) -> str:
    return str(value or "").strip()


def normalize_style_key(value: Any) -> str:
    key = _clean(value).lower()
    return key if key in RENDER_STYLE_KEYS else "photoreal"


@dataclass(frozen=True)
class Tenant:
    tenant_id: str
    slug: str
    name: str = ""


@dataclass(frozen=True)
class TenantSettings:
    tenant_id: str
    rendering_enabled: bool = True
    ai_rendering_enabled: bool = True
    rendering_style: str = "photoreal"
    rendering_notes: str = ""
    rendering_max_per_day: int = 0
    rendering_customer_opt_in_required: bool = True
    business_name: str = ""
    lead_to_email: str = ""
    resend_from_email: str = ""
    pricing_enabled: bool = False
    ai_mode: str = "assessment_only"
    pricing_model: str = ""
    industry_key: str = ""
    reporting_timezone: str = "UTC"
    estimator_prompt_override: str = ""
    render_prompt_override: str = ""

    @property
    def rendering_allowed(self) -> bool:
        return bool(self.rendering_enabled and self.ai_rendering_enabled)


class InMemoryTenantsRepository:
    """Tenant directory, settings and encrypted credential blobs."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tenants: dict[str, Tenant] = {}
        self._settings: dict[str, TenantSettings] = {}
        self._secrets: dict[str, str] = {}

    def add_tenant(self, *, tenant_id: str, slug: str, name: str = "") -> Tenant:
        tenant = Tenant(tenant_id=tenant_id, slug=slug, name=name)
        with self._lock:
            self._tenants[tenant_id] = tenant
            self._settings.setdefault(tenant_id, TenantSettings(tenant_id=tenant_id))
        return tenant

    def put_settings(self, settings: TenantSettings) -> TenantSettings:
        with self._lock:
            self._settings[settings.tenant_id] = settings
        return settings

    def put_openai_key_enc(self, *, tenant_id: str, openai_key_enc: str | None) -> None:
        with self._lock:
            if openai_key_enc:
                self._secrets[tenant_id] = openai_key_enc
            else:
                self._secrets.pop(tenant_id, None)

    def get_by_slug_or_id(self, *, ref: str) -> Tenant | None:
        ref = _clean(ref)
        if not ref:
            return None
        with self._lock:
            if ref in self._tenants:
                return self._tenants[ref]
            for tenant in self._tenants.values():
                if tenant.slug == ref:
                    return tenant
        return None

    def get_by_id(self, *, tenant_id: str) -> Tenant | None:
        with self._lock:
            return self._tenants.get(tenant_id)

    def get_settings(self, *, tenant_id: str) -> TenantSettings | None:
        with self._lock:
            return self._settings.get(tenant_id)

    def get_openai_key_enc(self, *, tenant_id: str) -> str | None:
        with self._lock:
            return self._secrets.get(tenant_id)

    def reset(self) -> None:
        with self._lock:
            self._tenants.clear()
            self._settings.clear()
            self._secrets.clear()


class PostgresTenantsRepository:
    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        tenants_table: str = "tenants",
        settings_table: str = "tenant_settings",
        secrets_table: str = "tenant_secrets",
    ) -> None:
        self._tx_runner = tx_runner
        self._tenants_table = validate_identifier(tenants_table)
        self._settings_table = validate_identifier(settings_table)
        self._secrets_table = validate_identifier(secrets_table)

    def get_by_slug_or_id(self, *, ref: str) -> Tenant | None:
        ref = _clean(ref)
        if not ref:
            return None
        sql = f"""
            SELECT id, slug, name
            FROM {self._tenants_table}
            WHERE slug = %s OR id::text = %s
            ORDER BY (slug = %s) DESC
            LIMIT 1
        """

        def _op(conn: Any) -> Tenant | None:
            with conn.cursor() as cur:
                cur.execute(sql, (ref, ref, ref))
                row = cur.fetchone()
            if row is None:
                return None
            return Tenant(tenant_id=str(row[0]), slug=str(row[1] or ""), name=str(row[2] or ""))

        return self._tx_runner.run_in_tx(fn=_op)

    def get_by_id(self, *, tenant_id: str) -> Tenant | None:
        sql = f"SELECT id, slug, name FROM {self._tenants_table} WHERE id = %s LIMIT 1"

        def _op(conn: Any) -> Tenant | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return Tenant(tenant_id=str(row[0]), slug=str(row[1] or ""), name=str(row[2] or ""))

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def get_settings(self, *, tenant_id: str) -> TenantSettings | None:
        sql = f"""
            SELECT rendering_enabled, ai_rendering_enabled, rendering_style, rendering_notes,
                   rendering_max_per_day, rendering_customer_opt_in_required,
                   business_name, lead_to_email, resend_from_email,
                   pricing_enabled, ai_mode, pricing_model, industry_key, reporting_timezone,
                   estimator_prompt_override, render_prompt_override
            FROM {self._settings_table}
            WHERE tenant_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> TenantSettings | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return TenantSettings(
                tenant_id=tenant_id,
                rendering_enabled=row[0] is not False,
                ai_rendering_enabled=row[1] is not False,
                rendering_style=normalize_style_key(row[2]),
                rendering_notes=_clean(row[3]),
                rendering_max_per_day=max(0, int(row[4] or 0)),
                rendering_customer_opt_in_required=row[5] is not False,
                business_name=_clean(row[6]),
                lead_to_email=_clean(row[7]),
                resend_from_email=_clean(row[8]),
                pricing_enabled=bool(row[9]),
                ai_mode=_clean(row[10]) or "assessment_only",
                pricing_model=_clean(row[11]),
                industry_key=_clean(row[12]).lower(),
                reporting_timezone=_clean(row[13]) or "UTC",
                estimator_prompt_override=_clean(row[14]),
                render_prompt_override=_clean(row[15]),
            )

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def get_openai_key_enc(self, *, tenant_id: str) -> str | None:
        sql = f"SELECT openai_key_enc FROM {self._secrets_table} WHERE tenant_id = %s LIMIT 1"

        def _op(conn: Any) -> str | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                row = cur.fetchone()
            if row is None or not row[0]:
                return None
            return str(row[0])

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
