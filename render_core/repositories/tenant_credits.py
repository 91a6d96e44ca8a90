from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from render_core.db.postgres import PostgresTxRunner, validate_identifier

DEFAULT_PLAN_TIER = "tier0"


def normalize_plan_tier(value: Any) -> str:
    tier = str(value or "").strip().lower()
    return tier or DEFAULT_PLAN_TIER


@dataclass(frozen=True)
class TenantCreditState:
    tenant_id: str
    plan_tier: str
    grace_credits: int
    grace_used: int

    @property
    def grace_remaining(self) -> int:
        return max(0, self.grace_credits - self.grace_used)

    @property
    def has_grace_remaining(self) -> bool:
        return self.grace_credits > 0 and self.grace_used < self.grace_credits

    def as_dict(self) -> dict[str, Any]:
        return {
            "plan_tier": self.plan_tier,
            "grace_credits": self.grace_credits,
            "grace_used": self.grace_used,
            "grace_remaining": self.grace_remaining,
        }


class InMemoryTenantCreditsRepository:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rows: dict[str, dict[str, Any]] = {}

    def upsert(
        self,
        *,
        tenant_id: str,
        plan_tier: str = DEFAULT_PLAN_TIER,
        grace_credits: int = 0,
        grace_used: int = 0,
    ) -> TenantCreditState:
        if grace_credits < 0 or grace_used < 0 or grace_used > grace_credits:
            raise ValueError("grace counters must satisfy 0 <= used <= credits")
        with self._lock:
            self._rows[tenant_id] = {
                "plan_tier": normalize_plan_tier(plan_tier),
                "grace_credits": int(grace_credits),
                "grace_used": int(grace_used),
            }
            return self._state(tenant_id)

    def get(self, *, tenant_id: str) -> TenantCreditState | None:
        with self._lock:
            if tenant_id not in self._rows:
                return None
            return self._state(tenant_id)

    def consume_one(self, *, tenant_id: str, eligible_tiers: Iterable[str]) -> TenantCreditState | None:
        tiers = {normalize_plan_tier(x) for x in eligible_tiers}
        with self._lock:
            row = self._rows.get(tenant_id)
            if row is None:
                return None
            if row["plan_tier"] not in tiers or row["grace_used"] >= row["grace_credits"]:
                return None
            row["grace_used"] += 1
            return self._state(tenant_id)

    def reset(self) -> None:
        with self._lock:
            self._rows.clear()

    def _state(self, tenant_id: str) -> TenantCreditState:
        row = self._rows[tenant_id]
        return TenantCreditState(
            tenant_id=tenant_id,
            plan_tier=row["plan_tier"],
            grace_credits=row["grace_credits"],
            grace_used=row["grace_used"],
        )


class PostgresTenantCreditsRepository:
    """Credit ledger columns on tenant_settings.

    ``consume_one`` is the only writer of activation_grace_used. Tier
    eligibility and remaining credit are re-checked in the UPDATE itself.
    """

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "tenant_settings") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    @staticmethod
    def _row_to_state(tenant_id: str, row: tuple[Any, ...]) -> TenantCreditState:
        return TenantCreditState(
            tenant_id=tenant_id,
            plan_tier=normalize_plan_tier(row[0]),
            grace_credits=int(row[1] or 0),
            grace_used=int(row[2] or 0),
        )

    def get(self, *, tenant_id: str) -> TenantCreditState | None:
        sql = f"""
            SELECT plan_tier,
                   COALESCE(activation_grace_credits, 0),
                   COALESCE(activation_grace_used, 0)
            FROM {self._table_name}
            WHERE tenant_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> TenantCreditState | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                row = cur.fetchone()
            return None if row is None else self._row_to_state(tenant_id, row)

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def consume_one(self, *, tenant_id: str, eligible_tiers: Iterable[str]) -> TenantCreditState | None:
        tiers = sorted({normalize_plan_tier(x) for x in eligible_tiers})
        sql = f"""
            UPDATE {self._table_name}
            SET activation_grace_used = COALESCE(activation_grace_used, 0) + 1,
                updated_at = now()
            WHERE tenant_id = %s
              AND LOWER(COALESCE(NULLIF(plan_tier, ''), %s)) = ANY(%s)
              AND COALESCE(activation_grace_used, 0) < COALESCE(activation_grace_credits, 0)
            RETURNING plan_tier,
                      COALESCE(activation_grace_credits, 0),
                      COALESCE(activation_grace_used, 0)
        """

        def _op(conn: Any) -> TenantCreditState | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, DEFAULT_PLAN_TIER, tiers))
                row = cur.fetchone()
            return None if row is None else self._row_to_state(tenant_id, row)

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
