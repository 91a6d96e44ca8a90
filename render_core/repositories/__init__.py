from render_core.repositories.email_deliveries import (
    InMemoryEmailDeliveriesRepository,
    PostgresEmailDeliveriesRepository,
)
from render_core.repositories.quotes import InMemoryQuotesRepository, PostgresQuotesRepository
from render_core.repositories.render_jobs import (
    InMemoryRenderJobsRepository,
    PostgresRenderJobsRepository,
    SqliteRenderJobsRepository,
)
from render_core.repositories.tenant_credits import (
    InMemoryTenantCreditsRepository,
    PostgresTenantCreditsRepository,
    TenantCreditState,
)
from render_core.repositories.tenants import (
    InMemoryTenantsRepository,
    PostgresTenantsRepository,
    Tenant,
    TenantSettings,
)

__all__ = [
    "InMemoryEmailDeliveriesRepository",
    "PostgresEmailDeliveriesRepository",
    "InMemoryQuotesRepository",
    "PostgresQuotesRepository",
    "InMemoryRenderJobsRepository",
    "PostgresRenderJobsRepository",
    "SqliteRenderJobsRepository",
    "InMemoryTenantCreditsRepository",
    "PostgresTenantCreditsRepository",
    "TenantCreditState",
    "InMemoryTenantsRepository",
    "PostgresTenantsRepository",
    "Tenant",
    "TenantSettings",
]
