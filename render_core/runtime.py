from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from render_core.config import RenderCoreConfig
from render_core.db.postgres import PostgresTxRunner
from render_core.image_generation import ImageGenerator, OpenAIImageGenerator
from render_core.key_resolver import KeyResolver
from render_core.notifications import RenderNotifier, ResendEmailSender
from render_core.object_storage import ObjectStorageBackend, create_object_storage_from_env
from render_core.platform_config import PlatformLlmConfig, load_platform_config
from render_core.render_gateway import RenderGateway, WorkerKicker
from render_core.render_worker import RenderWorker
from render_core.repositories import (
    InMemoryEmailDeliveriesRepository,
    InMemoryQuotesRepository,
    InMemoryRenderJobsRepository,
    InMemoryTenantCreditsRepository,
    InMemoryTenantsRepository,
    PostgresEmailDeliveriesRepository,
    PostgresQuotesRepository,
    PostgresRenderJobsRepository,
    PostgresTenantCreditsRepository,
    PostgresTenantsRepository,
    SqliteRenderJobsRepository,
)

logger = logging.getLogger(__name__)


@dataclass
class RenderServices:
    config: RenderCoreConfig
    platform_config: PlatformLlmConfig
    jobs: Any
    quotes: Any
    tenants: Any
    credits: Any
    deliveries: Any
    key_resolver: KeyResolver
    worker: RenderWorker
    gateway: RenderGateway


def _create_repositories(config: RenderCoreConfig) -> dict[str, Any]:
    backend = config.store_backend
    if backend == "postgres":
        if not config.postgres_dsn:
            raise ValueError("POSTGRES_DSN must be set when RENDER_STORE_BACKEND=postgres")
        runner = PostgresTxRunner(config.postgres_dsn)
        return {
            "jobs": PostgresRenderJobsRepository(tx_runner=runner),
            "quotes": PostgresQuotesRepository(tx_runner=runner),
            "tenants": PostgresTenantsRepository(tx_runner=runner),
            "credits": PostgresTenantCreditsRepository(tx_runner=runner),
            "deliveries": PostgresEmailDeliveriesRepository(tx_runner=runner),
        }
    if backend == "sqlite":
        jobs: Any = SqliteRenderJobsRepository(config.sqlite_path)
    elif backend == "memory":
        jobs = InMemoryRenderJobsRepository()
    else:
        raise RuntimeError(f"unsupported store backend: {backend}")
    return {
        "jobs": jobs,
        "quotes": InMemoryQuotesRepository(),
        "tenants": InMemoryTenantsRepository(),
        "credits": InMemoryTenantCreditsRepository(),
        "deliveries": InMemoryEmailDeliveriesRepository(),
    }


def build_services(
    *,
    config: RenderCoreConfig,
    repositories: dict[str, Any],
    object_storage: ObjectStorageBackend,
    image_generator: ImageGenerator | None = None,
    platform_config: PlatformLlmConfig | None = None,
    kicker: WorkerKicker | None = None,
    notifier: RenderNotifier | None = None,
) -> RenderServices:
    platform = platform_config or load_platform_config(config.platform_config_path)
    render_model = platform.render_model if config.platform_config_path else config.render_model
    key_resolver = KeyResolver(
        tenants=repositories["tenants"],
        credits=repositories["credits"],
        platform_api_key=config.platform_openai_key,
        encryption_key=config.encryption_key,
        eligible_tiers=config.grace_eligible_tiers,
    )
    if notifier is None:
        sender = (
            ResendEmailSender(api_key=config.resend_api_key, base_url=config.resend_base_url)
            if config.resend_api_key
            else None
        )
        notifier = RenderNotifier(deliveries=repositories["deliveries"], sender=sender)
    worker = RenderWorker(
        jobs=repositories["jobs"],
        quotes=repositories["quotes"],
        tenants=repositories["tenants"],
        key_resolver=key_resolver,
        image_generator=image_generator or OpenAIImageGenerator(base_url=config.openai_base_url),
        object_storage=object_storage,
        notifier=notifier,
        platform_config=platform,
        render_model=render_model,
        image_size=config.render_image_size,
        platform_daily_cap=config.platform_daily_cap,
        render_debug=config.render_debug,
        poll_interval_ms=config.worker_poll_interval_ms,
    )
    gateway = RenderGateway(
        tenants=repositories["tenants"],
        quotes=repositories["quotes"],
        jobs=repositories["jobs"],
        kicker=kicker
        or WorkerKicker(
            base_url=config.app_base_url,
            cron_secret=config.cron_secret,
            timeout_s=config.kick_timeout_s,
        ),
    )
    return RenderServices(
        config=config,
        platform_config=platform,
        jobs=repositories["jobs"],
        quotes=repositories["quotes"],
        tenants=repositories["tenants"],
        credits=repositories["credits"],
        deliveries=repositories["deliveries"],
        key_resolver=key_resolver,
        worker=worker,
        gateway=gateway,
    )


def create_services_from_env(environ: Mapping[str, str] | None = None) -> RenderServices:
    env = os.environ if environ is None else environ
    config = RenderCoreConfig.from_env(env)
    if not config.cron_secret:
        logger.warning("CRON_SECRET is not set; the render sweep endpoint is open")
    return build_services(
        config=config,
        repositories=_create_repositories(config),
        object_storage=create_object_storage_from_env(env),
    )
