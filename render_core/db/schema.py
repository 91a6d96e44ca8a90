from __future__ import annotations

from render_core.db.postgres import _import_psycopg, validate_identifier

_DDL: dict[str, str] = {
    "tenants": """
        CREATE TABLE IF NOT EXISTS tenants (
            id TEXT PRIMARY KEY,
            slug TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL DEFAULT '',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """,
    "tenant_settings": """
        CREATE TABLE IF NOT EXISTS tenant_settings (
            tenant_id TEXT PRIMARY KEY REFERENCES tenants(id),
            plan_tier TEXT,
            activation_grace_credits INTEGER NOT NULL DEFAULT 0,
            activation_grace_used INTEGER NOT NULL DEFAULT 0,
            rendering_enabled BOOLEAN NOT NULL DEFAULT true,
            ai_rendering_enabled BOOLEAN NOT NULL DEFAULT true,
            rendering_style TEXT,
            rendering_notes TEXT,
            rendering_max_per_day INTEGER NOT NULL DEFAULT 0,
            rendering_customer_opt_in_required BOOLEAN NOT NULL DEFAULT true,
            business_name TEXT,
            lead_to_email TEXT,
            resend_from_email TEXT,
            pricing_enabled BOOLEAN NOT NULL DEFAULT false,
            ai_mode TEXT,
            pricing_model TEXT,
            industry_key TEXT,
            reporting_timezone TEXT,
            estimator_prompt_override TEXT,
            render_prompt_override TEXT,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT tenant_settings_grace_bounds
                CHECK (activation_grace_used >= 0 AND activation_grace_used <= activation_grace_credits)
        )
    """,
    "tenant_secrets": """
        CREATE TABLE IF NOT EXISTS tenant_secrets (
            tenant_id TEXT PRIMARY KEY REFERENCES tenants(id),
            openai_key_enc TEXT,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """,
    "quote_logs": """
        CREATE TABLE IF NOT EXISTS quote_logs (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL REFERENCES tenants(id),
            input JSONB NOT NULL DEFAULT '{}'::jsonb,
            output JSONB NOT NULL DEFAULT '{}'::jsonb,
            render_opt_in BOOLEAN NOT NULL DEFAULT false,
            render_status TEXT,
            render_image_url TEXT,
            render_error TEXT,
            render_prompt TEXT,
            rendered_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """,
    "render_jobs": """
        CREATE TABLE IF NOT EXISTS render_jobs (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            quote_log_id TEXT NOT NULL,
            status TEXT NOT NULL CHECK (status IN ('queued', 'running', 'rendered', 'failed')),
            prompt TEXT,
            image_url TEXT,
            error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ
        )
    """,
    "email_deliveries": """
        CREATE TABLE IF NOT EXISTS email_deliveries (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            quote_log_id TEXT NOT NULL,
            type TEXT NOT NULL,
            "to" JSONB NOT NULL DEFAULT '[]'::jsonb,
            "from" TEXT,
            provider TEXT,
            status TEXT NOT NULL,
            provider_message_id TEXT,
            error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            sent_at TIMESTAMPTZ
        )
    """,
}

_INDEXES: tuple[str, ...] = (
    "CREATE INDEX IF NOT EXISTS idx_render_jobs_claim ON render_jobs(status, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_render_jobs_quote ON render_jobs(quote_log_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_render_jobs_tenant_done ON render_jobs(tenant_id, status, completed_at)",
    "CREATE INDEX IF NOT EXISTS idx_email_deliveries_quote ON email_deliveries(quote_log_id)",
)


class PostgresRenderSchemaManager:
    """Create render tables and claim/dedupe indexes when absent."""

    DEFAULT_TABLES: tuple[str, ...] = tuple(_DDL)

    def __init__(self, dsn: str, *, tables: list[str] | tuple[str, ...] | None = None) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        target_tables = list(self.DEFAULT_TABLES if tables is None else tables)
        if not target_tables:
            raise ValueError("tables must not be empty")
        for name in target_tables:
            validate_identifier(name)
            if name not in _DDL:
                raise ValueError(f"unknown render table: {name}")
        # Keep foreign-key order regardless of how the caller listed them.
        self._tables = [name for name in self.DEFAULT_TABLES if name in target_tables]

    def statements(self) -> list[str]:
        out = [_DDL[name] for name in self._tables]
        if "render_jobs" in self._tables:
            out.extend(x for x in _INDEXES if "render_jobs" in x)
        if "email_deliveries" in self._tables:
            out.extend(x for x in _INDEXES if "email_deliveries" in x)
        return out

    def apply(self) -> list[str]:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for sql in self.statements():
                    cur.execute(sql)
            conn.commit()
        return list(self._tables)
