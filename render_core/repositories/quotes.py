from __future__ import annotations

import copy
import json
import threading
from datetime import UTC, datetime
from typing import Any

from render_core.db.postgres import PostgresTxRunner, as_iso, validate_identifier


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


def _json_obj(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip():
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _pending_from(*, replaces_failed: bool) -> tuple[str | None, ...]:
    # A rendered mirror is final; a failed one only yields to a newer job.
    if replaces_failed:
        return (None, "queued", "running", "failed")
    return (None, "queued", "running")


def rendering_payload(
    *,
    status: str,
    image_url: str | None,
    error: str | None,
    prompt: str,
) -> dict[str, Any]:
    return {
        "requested": True,
        "status": status,
        "image_url": image_url,
        "prompt": prompt,
        "error": error,
        "rendered_at": _utcnow_iso(),
    }


class InMemoryQuotesRepository:
    """Quote records owned by the estimate flow; render columns are a mirror."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._quotes: dict[str, dict[str, Any]] = {}

    def add(
        self,
        *,
        quote_id: str,
        tenant_id: str,
        input: dict[str, Any] | None = None,
        output: dict[str, Any] | None = None,
        render_opt_in: bool = False,
    ) -> dict[str, Any]:
        row = {
            "quote_id": quote_id,
            "tenant_id": tenant_id,
            "input": dict(input or {}),
            "output": dict(output or {}),
            "render_opt_in": bool(render_opt_in),
            "render_status": None,
            "render_image_url": None,
            "render_error": None,
            "render_prompt": None,
            "rendered_at": None,
        }
        with self._lock:
            self._quotes[quote_id] = row
            return copy.deepcopy(row)

    def get(self, *, tenant_id: str, quote_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._quotes.get(quote_id)
            if row is None or row["tenant_id"] != tenant_id:
                return None
            return copy.deepcopy(row)

    def get_by_id(self, *, quote_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._quotes.get(quote_id)
            return None if row is None else copy.deepcopy(row)

    def set_render_opt_in(self, *, tenant_id: str, quote_id: str, opt_in: bool) -> None:
        with self._lock:
            row = self._scoped(tenant_id=tenant_id, quote_id=quote_id)
            if row is not None:
                row["render_opt_in"] = bool(opt_in)

    def mark_render_pending(
        self,
        *,
        tenant_id: str,
        quote_id: str,
        status: str,
        rendering: dict[str, Any] | None = None,
        replaces_failed: bool = False,
    ) -> bool:
        """Move the mirror to ``queued``/``running`` unless it already holds a newer terminal result."""
        with self._lock:
            row = self._scoped(tenant_id=tenant_id, quote_id=quote_id)
            if row is None:
                return False
            if row["render_status"] not in _pending_from(replaces_failed=replaces_failed):
                return False
            row["render_status"] = status
            merged = dict(row["output"].get("rendering") or {})
            merged.update(copy.deepcopy(rendering or {}))
            merged["status"] = status
            row["output"]["rendering"] = merged
            return True

    def mirror_render_result(
        self,
        *,
        tenant_id: str,
        quote_id: str,
        status: str,
        image_url: str | None,
        error: str | None,
        prompt: str,
    ) -> None:
        with self._lock:
            row = self._scoped(tenant_id=tenant_id, quote_id=quote_id)
            if row is None:
                return
            row["render_status"] = status
            row["render_image_url"] = image_url
            row["render_error"] = error
            row["render_prompt"] = prompt
            if status == "rendered":
                row["rendered_at"] = _utcnow_iso()
            row["output"]["rendering"] = rendering_payload(
                status=status, image_url=image_url, error=error, prompt=prompt
            )

    def set_output_path(self, *, tenant_id: str, quote_id: str, key: str, value: Any) -> None:
        with self._lock:
            row = self._scoped(tenant_id=tenant_id, quote_id=quote_id)
            if row is not None:
                row["output"][key] = copy.deepcopy(value)

    def reset(self) -> None:
        with self._lock:
            self._quotes.clear()

    def _scoped(self, *, tenant_id: str, quote_id: str) -> dict[str, Any] | None:
        row = self._quotes.get(quote_id)
        if row is None or row["tenant_id"] != tenant_id:
            return None
        return row


class PostgresQuotesRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "quote_logs") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    @staticmethod
    def _row_to_quote(row: tuple[Any, ...]) -> dict[str, Any]:
        return {
            "quote_id": str(row[0]),
            "tenant_id": str(row[1]),
            "input": _json_obj(row[2]),
            "output": _json_obj(row[3]),
            "render_opt_in": bool(row[4]),
            "render_status": row[5],
            "render_image_url": row[6],
            "render_error": row[7],
            "render_prompt": row[8],
            "rendered_at": as_iso(row[9]),
        }

    def _select(self) -> str:
        return (
            "SELECT id, tenant_id, input, output, render_opt_in, render_status, "
            f"render_image_url, render_error, render_prompt, rendered_at FROM {self._table_name}"
        )

    def get(self, *, tenant_id: str, quote_id: str) -> dict[str, Any] | None:
        sql = f"{self._select()} WHERE id = %s AND tenant_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (quote_id, tenant_id))
                row = cur.fetchone()
            return None if row is None else self._row_to_quote(row)

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def get_by_id(self, *, quote_id: str) -> dict[str, Any] | None:
        sql = f"{self._select()} WHERE id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (quote_id,))
                row = cur.fetchone()
            return None if row is None else self._row_to_quote(row)

        return self._tx_runner.run_in_tx(fn=_op)

    def set_render_opt_in(self, *, tenant_id: str, quote_id: str, opt_in: bool) -> None:
        sql = f"UPDATE {self._table_name} SET render_opt_in = %s WHERE id = %s AND tenant_id = %s"
        self._execute(tenant_id=tenant_id, sql=sql, params=(bool(opt_in), quote_id, tenant_id))

    def mark_render_pending(
        self,
        *,
        tenant_id: str,
        quote_id: str,
        status: str,
        rendering: dict[str, Any] | None = None,
        replaces_failed: bool = False,
    ) -> bool:
        patch = dict(rendering or {})
        patch["status"] = status
        allowed = [s for s in _pending_from(replaces_failed=replaces_failed) if s is not None]
        sql = f"""
            UPDATE {self._table_name}
            SET render_status = %s,
                output = jsonb_set(
                    COALESCE(output, '{{}}'::jsonb),
                    '{{rendering}}',
                    COALESCE(output->'rendering', '{{}}'::jsonb) || %s::jsonb,
                    true
                )
            WHERE id = %s AND tenant_id = %s
              AND (render_status IS NULL OR render_status = ANY(%s))
            RETURNING id
        """
        params = (status, json.dumps(patch, ensure_ascii=True, sort_keys=True), quote_id, tenant_id, allowed)

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return cur.fetchone() is not None

        return bool(self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op))

    def mirror_render_result(
        self,
        *,
        tenant_id: str,
        quote_id: str,
        status: str,
        image_url: str | None,
        error: str | None,
        prompt: str,
    ) -> None:
        rendering = rendering_payload(status=status, image_url=image_url, error=error, prompt=prompt)
        sql = f"""
            UPDATE {self._table_name}
            SET render_status = %s,
                render_image_url = %s,
                render_error = %s,
                render_prompt = %s,
                rendered_at = CASE WHEN %s = 'rendered' THEN now() ELSE rendered_at END,
                output = COALESCE(output, '{{}}'::jsonb) || jsonb_build_object('rendering', %s::jsonb)
            WHERE id = %s AND tenant_id = %s
        """
        self._execute(
            tenant_id=tenant_id,
            sql=sql,
            params=(
                status,
                image_url,
                error,
                prompt,
                status,
                json.dumps(rendering, ensure_ascii=True, sort_keys=True),
                quote_id,
                tenant_id,
            ),
        )

    def set_output_path(self, *, tenant_id: str, quote_id: str, key: str, value: Any) -> None:
        path = "{" + str(key).replace("{", "").replace("}", "").replace('"', "") + "}"
        sql = f"""
            UPDATE {self._table_name}
            SET output = jsonb_set(COALESCE(output, '{{}}'::jsonb), %s::text[], %s::jsonb, true)
            WHERE id = %s AND tenant_id = %s
        """
        self._execute(
            tenant_id=tenant_id,
            sql=sql,
            params=(path, json.dumps(value, ensure_ascii=True, sort_keys=True), quote_id, tenant_id),
        )

    def _execute(self, *, tenant_id: str, sql: str, params: tuple[Any, ...]) -> None:
        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, params)

        self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
