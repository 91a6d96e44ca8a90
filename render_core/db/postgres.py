from __future__ import annotations

import re
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for RENDER_STORE_BACKEND=postgres; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run one callback inside a single PostgreSQL transaction.

    ``tenant_id`` is exposed to the session as ``app.current_tenant`` when given.
    Cross-tenant work (the queue claim) runs without it.
    """

    def __init__(self, dsn: str, *, application_name: str = "render_core") -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        self._application_name = application_name

    def run_in_tx(
        self,
        *,
        fn: Callable[[Any], Any],
        tenant_id: str | None = None,
    ) -> Any:
        if tenant_id is not None and not tenant_id.strip():
            raise ValueError("tenant_id must not be empty")

        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn, application_name=self._application_name) as conn:
            if tenant_id is not None:
                with conn.cursor() as cur:
                    cur.execute("SELECT set_config('app.current_tenant', %s, true)", (tenant_id,))
            try:
                result = fn(conn)
            except Exception:
                conn.rollback()
                raise
            conn.commit()
            return result


def validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def as_iso(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).isoformat(timespec="microseconds")
    return str(value)
