from __future__ import annotations

import logging
import threading

import pytest

from render_core.errors import RenderError
from render_core.key_resolver import KeyResolver, KeySource, PreferredSource
from render_core.repositories import (
    InMemoryTenantCreditsRepository,
    InMemoryTenantsRepository,
    PostgresTenantCreditsRepository,
)
from render_core.secrets_crypto import encrypt_secret

PLATFORM_KEY = "sk-platform-aaaaaaaaaaaaaaaaaaaa"
TENANT_KEY = "sk-tenant-bbbbbbbbbbbbbbbbbbbbbb"
ENC_KEY = "unit-test-encryption-key"


def _resolver(*, credits=None, tenants=None, platform_key: str = PLATFORM_KEY) -> KeyResolver:
    return KeyResolver(
        tenants=tenants or InMemoryTenantsRepository(),
        credits=credits or InMemoryTenantCreditsRepository(),
        platform_api_key=platform_key,
        encryption_key=ENC_KEY,
        eligible_tiers=("tier0", "tier1", "tier2"),
    )


def test_tier1_tenant_consumes_credits_then_gets_exhausted():
    credits = InMemoryTenantCreditsRepository()
    credits.upsert(tenant_id="tenant_a", plan_tier="tier1", grace_credits=3, grace_used=2)
    resolver = _resolver(credits=credits)

    first = resolver.resolve(tenant_id="tenant_a", consume=True)
    assert first.source is KeySource.PLATFORM_GRACE
    assert first.consumed is True
    assert first.api_key == PLATFORM_KEY
    assert first.credit_state.grace_used == 3
    assert first.as_dict() == {
        "key_source": "platform_grace",
        "consumed": True,
        "overridden": False,
        "credits": {"plan_tier": "tier1", "grace_credits": 3, "grace_used": 3, "grace_remaining": 0},
    }

    with pytest.raises(RenderError) as exc_info:
        resolver.resolve(tenant_id="tenant_a", consume=True)
    assert exc_info.value.code == "CREDITS_EXHAUSTED"
    assert exc_info.value.meta == {"used": 3, "credits": 3}
    assert credits.get(tenant_id="tenant_a").grace_used == 3


def test_tenant_key_wins_and_never_touches_credits():
    tenants = InMemoryTenantsRepository()
    tenants.put_openai_key_enc(tenant_id="tenant_a", openai_key_enc=encrypt_secret(TENANT_KEY, encryption_key=ENC_KEY))
    credits = InMemoryTenantCreditsRepository()
    credits.upsert(tenant_id="tenant_a", plan_tier="tier1", grace_credits=3, grace_used=0)
    resolver = _resolver(credits=credits, tenants=tenants)

    resolved = resolver.resolve(tenant_id="tenant_a", consume=True)
    assert resolved.source is KeySource.TENANT
    assert resolved.api_key == TENANT_KEY
    assert resolved.consumed is False
    assert credits.get(tenant_id="tenant_a").grace_used == 0


def test_platform_preference_is_overridden_by_tenant_key(caplog):
    tenants = InMemoryTenantsRepository()
    tenants.put_openai_key_enc(tenant_id="tenant_a", openai_key_enc=encrypt_secret(TENANT_KEY, encryption_key=ENC_KEY))
    resolver = _resolver(tenants=tenants)

    with caplog.at_level(logging.WARNING, logger="render_core.key_resolver"):
        resolved = resolver.resolve(tenant_id="tenant_a", consume=True, preferred=PreferredSource.PLATFORM)

    assert resolved.source is KeySource.TENANT
    assert resolved.overridden is True
    assert "key source override" in caplog.text
    assert TENANT_KEY not in caplog.text
    assert TENANT_KEY not in repr(resolved)


def test_tenant_preference_without_key_fails_instead_of_falling_back():
    credits = InMemoryTenantCreditsRepository()
    credits.upsert(tenant_id="tenant_a", plan_tier="tier1", grace_credits=3)
    resolver = _resolver(credits=credits)

    with pytest.raises(RenderError) as exc_info:
        resolver.resolve(tenant_id="tenant_a", consume=True, preferred=PreferredSource.TENANT)
    assert exc_info.value.code == "TENANT_KEY_MISSING"
    assert credits.get(tenant_id="tenant_a").grace_used == 0


def test_ineligible_plan_and_missing_settings():
    credits = InMemoryTenantCreditsRepository()
    credits.upsert(tenant_id="tenant_pro", plan_tier="tier3", grace_credits=10)
    resolver = _resolver(credits=credits)

    with pytest.raises(RenderError) as exc_info:
        resolver.resolve(tenant_id="tenant_pro", consume=True)
    assert exc_info.value.code == "PLAN_NOT_ELIGIBLE"
    assert exc_info.value.meta["plan_tier"] == "tier3"

    with pytest.raises(RenderError) as exc_info:
        resolver.resolve(tenant_id="tenant_unknown", consume=True)
    assert exc_info.value.code == "SETTINGS_MISSING"


def test_missing_platform_key_is_a_configuration_error():
    credits = InMemoryTenantCreditsRepository()
    credits.upsert(tenant_id="tenant_a", plan_tier="tier1", grace_credits=3)
    resolver = _resolver(credits=credits, platform_key="")

    with pytest.raises(RenderError) as exc_info:
        resolver.resolve(tenant_id="tenant_a", consume=True)
    assert exc_info.value.code == "PLATFORM_KEY_MISSING"
    assert exc_info.value.error_class == "configuration"


def test_resolve_without_consume_leaves_ledger_alone():
    credits = InMemoryTenantCreditsRepository()
    credits.upsert(tenant_id="tenant_a", plan_tier="tier0", grace_credits=1)
    resolver = _resolver(credits=credits)

    resolved = resolver.resolve(tenant_id="tenant_a", consume=False)
    assert resolved.source is KeySource.PLATFORM_GRACE
    assert resolved.consumed is False
    assert credits.get(tenant_id="tenant_a").grace_used == 0


def test_concurrent_consumers_never_exceed_credits():
    credits = InMemoryTenantCreditsRepository()
    credits.upsert(tenant_id="tenant_a", plan_tier="tier1", grace_credits=4)
    resolver = _resolver(credits=credits)
    barrier = threading.Barrier(10)
    outcomes: list[str] = []
    lock = threading.Lock()

    def _run() -> None:
        barrier.wait()
        try:
            resolver.resolve(tenant_id="tenant_a", consume=True)
            result = "ok"
        except RenderError as exc:
            result = exc.code
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_run) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 4
    assert outcomes.count("CREDITS_EXHAUSTED") == 6
    assert credits.get(tenant_id="tenant_a").grace_used == 4


def test_describe_policy_reports_effective_source():
    credits = InMemoryTenantCreditsRepository()
    credits.upsert(tenant_id="tenant_a", plan_tier="tier1", grace_credits=2, grace_used=1)
    resolver = _resolver(credits=credits)

    policy = resolver.describe_policy(tenant_id="tenant_a")
    assert policy["effective_source"] == "platform_grace"
    assert policy["grace_remaining"] == 1
    assert policy["has_tenant_key"] is False

    credits.upsert(tenant_id="tenant_a", plan_tier="tier1", grace_credits=2, grace_used=2)
    assert resolver.describe_policy(tenant_id="tenant_a")["effective_source"] == "none"


def test_credit_upsert_rejects_out_of_bounds_counters():
    credits = InMemoryTenantCreditsRepository()
    with pytest.raises(ValueError, match="grace counters"):
        credits.upsert(tenant_id="tenant_a", grace_credits=1, grace_used=2)


def test_postgres_consume_rechecks_tier_and_balance_in_update():
    statements: list[tuple[str, tuple | None]] = []

    class FakeCursor:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def execute(self, query: str, params=None):
            statements.append((query, params))

        def fetchone(self):
            return ("tier1", 3, 3)

    class FakeConnection:
        def cursor(self):
            return FakeCursor()

    class FakeRunner:
        def run_in_tx(self, *, fn, tenant_id=None):
            return fn(FakeConnection())

    repo = PostgresTenantCreditsRepository(tx_runner=FakeRunner())
    state = repo.consume_one(tenant_id="tenant_a", eligible_tiers=["Tier1", "tier0"])

    assert state.grace_used == 3
    sql, params = statements[0]
    assert "UPDATE tenant_settings" in sql
    assert "COALESCE(activation_grace_used, 0) + 1" in sql
    assert "< COALESCE(activation_grace_credits, 0)" in sql
    assert "= ANY(%s)" in sql
    assert params == ("tenant_a", "tier0", ["tier0", "tier1"])
