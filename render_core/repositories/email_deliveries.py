from __future__ import annotations

import json
import threading
import uuid
from datetime import UTC, datetime
from typing import Any

from render_core.db.postgres import PostgresTxRunner, validate_identifier


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


class InMemoryEmailDeliveriesRepository:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rows: dict[str, dict[str, Any]] = {}

    def insert_queued(
        self,
        *,
        tenant_id: str,
        quote_id: str,
        type: str,
        to: list[str],
        sender: str,
        provider: str | None,
    ) -> str:
        delivery_id = f"ed_{uuid.uuid4().hex}"
        with self._lock:
            self._rows[delivery_id] = {
                "delivery_id": delivery_id,
                "tenant_id": tenant_id,
                "quote_id": quote_id,
                "type": type,
                "to": list(to),
                "from": sender,
                "provider": provider,
                "status": "queued",
                "provider_message_id": None,
                "error": None,
                "created_at": _utcnow_iso(),
                "sent_at": None,
            }
        return delivery_id

    def mark_sent(self, *, tenant_id: str, delivery_id: str, provider_message_id: str | None) -> None:
        with self._lock:
            row = self._rows.get(delivery_id)
            if row is None or row["tenant_id"] != tenant_id:
                return
            row.update(status="sent", provider_message_id=provider_message_id, sent_at=_utcnow_iso(), error=None)

    def mark_failed(self, *, tenant_id: str, delivery_id: str, error: str) -> None:
        with self._lock:
            row = self._rows.get(delivery_id)
            if row is None or row["tenant_id"] != tenant_id:
                return
            row.update(status="failed", error=error, sent_at=None)

    def list_for_quote(self, *, tenant_id: str, quote_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                dict(row)
                for row in self._rows.values()
                if row["tenant_id"] == tenant_id and row["quote_id"] == quote_id
            ]
        rows.sort(key=lambda row: row["created_at"])
        return rows

    def reset(self) -> None:
        with self._lock:
            self._rows.clear()


class PostgresEmailDeliveriesRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "email_deliveries") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def insert_queued(
        self,
        *,
        tenant_id: str,
        quote_id: str,
        type: str,
        to: list[str],
        sender: str,
        provider: str | None,
    ) -> str:
        delivery_id = str(uuid.uuid4())
        sql = f"""
            INSERT INTO {self._table_name} (
                id, tenant_id, quote_log_id, type, "to", "from", provider, status, created_at
            ) VALUES (%s, %s, %s, %s, %s::jsonb, %s, %s, 'queued', now())
        """

        def _op(conn: Any) -> str:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        delivery_id,
                        tenant_id,
                        quote_id,
                        type,
                        json.dumps(list(to), ensure_ascii=True),
                        sender,
                        provider,
                    ),
                )
            return delivery_id

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def mark_sent(self, *, tenant_id: str, delivery_id: str, provider_message_id: str | None) -> None:
        sql = f"""
            UPDATE {self._table_name}
            SET status = 'sent', provider_message_id = %s, sent_at = now(), error = NULL
            WHERE id = %s AND tenant_id = %s
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, (provider_message_id, delivery_id, tenant_id))

        self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def mark_failed(self, *, tenant_id: str, delivery_id: str, error: str) -> None:
        sql = f"""
            UPDATE {self._table_name}
            SET status = 'failed', error = %s, sent_at = NULL
            WHERE id = %s AND tenant_id = %s
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, (error[:2000], delivery_id, tenant_id))

        self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
