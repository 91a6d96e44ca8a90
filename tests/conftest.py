import pathlib
import sys
from typing import Any

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from render_core.config import RenderCoreConfig
from render_core.image_generation import StaticImageGenerator
from render_core.main import create_app
from render_core.notifications import RenderNotifier
from render_core.object_storage import LocalObjectStorage, ObjectStorageConfig
from render_core.repositories import (
    InMemoryEmailDeliveriesRepository,
    InMemoryQuotesRepository,
    InMemoryRenderJobsRepository,
    InMemoryTenantCreditsRepository,
    InMemoryTenantsRepository,
    TenantSettings,
)
from render_core.runtime import build_services

PLATFORM_KEY = "sk-platform-test-key-0000000000"
ENCRYPTION_KEY = "enc_test_key"
CRON_SECRET = "cron_test_secret"


class FakeKicker:
    def __init__(self) -> None:
        self.calls = 0

    def kick(self) -> dict[str, Any]:
        self.calls += 1
        return {"attempted": True, "ok": True, "reason": "ok", "status": 200}


class FakeEmailSender:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[dict[str, Any]] = []

    def send(self, *, sender: str, to: list[str], subject: str, html_body: str) -> str | None:
        from render_core.notifications import EmailSendError

        if self.fail:
            raise EmailSendError("resend error (HTTP 500): boom")
        self.sent.append({"from": sender, "to": to, "subject": subject, "html": html_body})
        return f"msg_{len(self.sent)}"


@pytest.fixture(autouse=True)
def render_env(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("RENDER_STORE_BACKEND", "memory")
    monkeypatch.setenv("RENDER_OBJECT_STORAGE_BACKEND", "local")
    monkeypatch.setenv("OBJECT_STORAGE_ROOT", str(tmp_path / "object_store"))
    for name in ("CRON_SECRET", "OPENAI_API_KEY", "ENCRYPTION_KEY", "RESEND_API_KEY", "RENDER_APP_BASE_URL"):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def config() -> RenderCoreConfig:
    return RenderCoreConfig(
        cron_secret=CRON_SECRET,
        platform_openai_key=PLATFORM_KEY,
        encryption_key=ENCRYPTION_KEY,
        grace_eligible_tiers=("tier0", "tier1", "tier2"),
    )


@pytest.fixture
def image_generator() -> StaticImageGenerator:
    return StaticImageGenerator(content_bytes=b"\x89PNG\r\n\x1a\nfake")


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def kicker() -> FakeKicker:
    return FakeKicker()


@pytest.fixture
def services(tmp_path, config, image_generator, email_sender, kicker):
    repositories = {
        "jobs": InMemoryRenderJobsRepository(),
        "quotes": InMemoryQuotesRepository(),
        "tenants": InMemoryTenantsRepository(),
        "credits": InMemoryTenantCreditsRepository(),
        "deliveries": InMemoryEmailDeliveriesRepository(),
    }
    storage = LocalObjectStorage(
        config=ObjectStorageConfig(
            backend="local",
            bucket="renders",
            root=str(tmp_path / "blobs"),
            prefix="",
            endpoint="",
            region="",
            access_key="",
            secret_key="",
            force_path_style=True,
            public_base_url="https://cdn.example.test",
        )
    )
    return build_services(
        config=config,
        repositories=repositories,
        object_storage=storage,
        image_generator=image_generator,
        kicker=kicker,
        notifier=RenderNotifier(deliveries=repositories["deliveries"], sender=email_sender),
    )


@pytest.fixture
def seed_tenant(services):
    def _seed(
        tenant_id: str = "tenant_a",
        *,
        slug: str | None = None,
        plan_tier: str = "tier1",
        grace_credits: int = 5,
        grace_used: int = 0,
        **settings: Any,
    ):
        tenant = services.tenants.add_tenant(tenant_id=tenant_id, slug=slug or f"{tenant_id}-slug", name=tenant_id)
        defaults: dict[str, Any] = {
            "business_name": "Acme Upholstery",
            "lead_to_email": "leads@acme.test",
            "resend_from_email": "renders@acme.test",
        }
        defaults.update(settings)
        services.tenants.put_settings(TenantSettings(tenant_id=tenant_id, **defaults))
        services.credits.upsert(
            tenant_id=tenant_id,
            plan_tier=plan_tier,
            grace_credits=grace_credits,
            grace_used=grace_used,
        )
        return tenant

    return _seed


@pytest.fixture
def seed_quote(services):
    def _seed(
        quote_id: str,
        *,
        tenant_id: str = "tenant_a",
        render_opt_in: bool = True,
        images: list[str] | None = None,
        service_type: str = "boat seat reupholstery",
        notes: str = "two captain chairs, sun faded vinyl",
        summary: str = "Replace vinyl on two helm seats.",
        email: str = "customer@example.test",
    ) -> dict[str, Any]:
        urls = ["https://img.example.test/before-1.jpg"] if images is None else images
        return services.quotes.add(
            quote_id=quote_id,
            tenant_id=tenant_id,
            input={
                "images": [{"url": u} for u in urls],
                "customer_context": {
                    "service_type": service_type,
                    "notes": notes,
                    "category": "marine",
                    "name": "Pat Customer",
                    "email": email,
                },
            },
            output={"summary": summary},
            render_opt_in=render_opt_in,
        )

    return _seed


@pytest.fixture
def client(services) -> TestClient:
    return TestClient(create_app(services=services))
