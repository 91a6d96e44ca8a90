from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from render_core.errors import render_error
from render_core.repositories.tenant_credits import TenantCreditState, normalize_plan_tier
from render_core.secrets_crypto import decrypt_secret

logger = logging.getLogger(__name__)


class PreferredSource(str, Enum):
    """Caller hint for which credential pool should fund a call.

    Precedence: a configured tenant key always wins. ``PLATFORM`` is
    overridden (and logged) when the tenant has its own key. ``TENANT``
    fails with TENANT_KEY_MISSING instead of falling back to shared credits,
    so a multi-step pipeline can replay the source it used earlier.
    """

    AUTO = "auto"
    TENANT = "tenant"
    PLATFORM = "platform_grace"


class KeySource(str, Enum):
    TENANT = "tenant"
    PLATFORM_GRACE = "platform_grace"


@dataclass(frozen=True)
class ResolvedKey:
    api_key: str
    source: KeySource
    consumed: bool = False
    overridden: bool = False
    credit_state: TenantCreditState | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "key_source": self.source.value,
            "consumed": self.consumed,
            "overridden": self.overridden,
        }
        if self.credit_state is not None:
            data["credits"] = self.credit_state.as_dict()
        return data

    def __repr__(self) -> str:
        return f"ResolvedKey(source={self.source.value!r}, consumed={self.consumed}, overridden={self.overridden})"


class KeyResolver:
    def __init__(
        self,
        *,
        tenants: Any,
        credits: Any,
        platform_api_key: str,
        encryption_key: str,
        eligible_tiers: Iterable[str],
    ) -> None:
        self._tenants = tenants
        self._credits = credits
        self._platform_api_key = platform_api_key.strip()
        self._encryption_key = encryption_key
        self._eligible_tiers = frozenset(normalize_plan_tier(x) for x in eligible_tiers)

    @property
    def eligible_tiers(self) -> frozenset[str]:
        return self._eligible_tiers

    def resolve(
        self,
        *,
        tenant_id: str,
        consume: bool,
        preferred: PreferredSource = PreferredSource.AUTO,
    ) -> ResolvedKey:
        preferred = PreferredSource(preferred)
        key_enc = self._tenants.get_openai_key_enc(tenant_id=tenant_id)
        if key_enc:
            api_key = decrypt_secret(key_enc, encryption_key=self._encryption_key)
            overridden = preferred is PreferredSource.PLATFORM
            if overridden:
                logger.warning(
                    "key source override tenant=%s requested=%s used=%s",
                    tenant_id,
                    preferred.value,
                    KeySource.TENANT.value,
                )
            return ResolvedKey(api_key=api_key, source=KeySource.TENANT, overridden=overridden)

        if preferred is PreferredSource.TENANT:
            raise render_error("TENANT_KEY_MISSING")

        if not self._platform_api_key:
            raise render_error("PLATFORM_KEY_MISSING")

        state = self._check_grace(tenant_id=tenant_id, state=self._credits.get(tenant_id=tenant_id))
        if not consume:
            logger.info("platform grace key resolved without charge tenant=%s", tenant_id)
            return ResolvedKey(api_key=self._platform_api_key, source=KeySource.PLATFORM_GRACE, credit_state=state)

        updated = self._credits.consume_one(tenant_id=tenant_id, eligible_tiers=self._eligible_tiers)
        if updated is None:
            # Lost the race between the check above and the guarded update.
            current = self._credits.get(tenant_id=tenant_id)
            self._check_grace(tenant_id=tenant_id, state=current)
            raise self._exhausted(current)
        logger.info(
            "platform grace credit consumed tenant=%s used=%s credits=%s",
            tenant_id,
            updated.grace_used,
            updated.grace_credits,
        )
        return ResolvedKey(
            api_key=self._platform_api_key,
            source=KeySource.PLATFORM_GRACE,
            consumed=True,
            credit_state=updated,
        )

    def describe_policy(self, *, tenant_id: str) -> dict[str, Any]:
        has_tenant_key = bool(self._tenants.get_openai_key_enc(tenant_id=tenant_id))
        state = self._credits.get(tenant_id=tenant_id)
        plan_tier = state.plan_tier if state else normalize_plan_tier(None)
        eligible = (
            state is not None
            and plan_tier in self._eligible_tiers
            and state.has_grace_remaining
            and bool(self._platform_api_key)
        )
        if has_tenant_key:
            effective = KeySource.TENANT.value
        elif eligible:
            effective = KeySource.PLATFORM_GRACE.value
        else:
            effective = "none"
        return {
            "plan_tier": plan_tier,
            "has_tenant_key": has_tenant_key,
            "platform_key_configured": bool(self._platform_api_key),
            "grace_credits": state.grace_credits if state else 0,
            "grace_used": state.grace_used if state else 0,
            "grace_remaining": state.grace_remaining if state else 0,
            "eligible_for_platform_pool": eligible,
            "effective_source": effective,
        }

    def _check_grace(self, *, tenant_id: str, state: TenantCreditState | None) -> TenantCreditState:
        if state is None:
            raise render_error("SETTINGS_MISSING")
        if state.plan_tier not in self._eligible_tiers:
            logger.info("plan not eligible for platform pool tenant=%s tier=%s", tenant_id, state.plan_tier)
            raise render_error(
                "PLAN_NOT_ELIGIBLE",
                meta={"plan_tier": state.plan_tier, "eligible_tiers": sorted(self._eligible_tiers)},
            )
        if not state.has_grace_remaining:
            raise self._exhausted(state)
        return state

    @staticmethod
    def _exhausted(state: TenantCreditState | None):
        used = state.grace_used if state else 0
        credits = state.grace_credits if state else 0
        return render_error(
            "CREDITS_EXHAUSTED",
            f"platform credits exhausted ({used}/{credits} used); add your own API key",
            meta={"used": used, "credits": credits},
        )
