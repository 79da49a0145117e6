"""
Tareas periódicas de Celery para la sincronización de documentos fiscales.
"""
from functools import partial
from typing import Any, Dict, Optional
from uuid import UUID
import asyncio
import logging

from sqlalchemy import select

from backoffice.core.celery import celery_app
from backoffice.database.database import AsyncSessionLocal
from backoffice.modules.fiscal.archive import get_pdf_archive
from backoffice.modules.fiscal.sync import FiscalSyncAgent
from backoffice.modules.organizations.context import load_fiscal_context
from backoffice.modules.organizations.models import Organization
from backoffice.modules.sales.repository import SqlPaymentLedgerRepository

logger = logging.getLogger(__name__)


async def _sweep_tenant(db, tenant_id: UUID, archive) -> Dict[str, Any]:
    agent = FiscalSyncAgent(
        SqlPaymentLedgerRepository(db, tenant_id),
        partial(load_fiscal_context, db, tenant_id),
        archive=archive,
    )
    report = await agent.sweep()
    return {"updated": report.updated, "unchanged": report.unchanged, "failed": report.failed}


async def _sweep_async(tenant_id: Optional[str] = None) -> Dict[str, Any]:
    archive = get_pdf_archive()
    totals = {"tenants": 0, "updated": 0, "unchanged": 0, "failed": 0}

    async with AsyncSessionLocal() as db:
        query = select(Organization.id).where(
            Organization.fiscal_provider_enabled.is_(True),
            Organization.fiscal_account_name.isnot(None),
            Organization.fiscal_api_key.isnot(None),
        )
        if tenant_id:
            query = query.where(Organization.id == UUID(tenant_id))
        tenant_ids = (await db.execute(query)).scalars().all()

    for org_id in tenant_ids:
        # One session per tenant so a failed tenant does not poison the rest
        async with AsyncSessionLocal() as db:
            try:
                counts = await _sweep_tenant(db, org_id, archive)
            except Exception as e:
                await db.rollback()
                logger.error(f"Fiscal sweep for tenant {org_id} failed: {str(e)}")
                continue
        totals["tenants"] += 1
        for key, value in counts.items():
            totals[key] += value

    return totals


@celery_app.task
def sync_fiscal_documents():
    """
    Periodic task that repairs cached fiscal document data for every tenant
    with the provider integration enabled
    """
    try:
        logger.info("Starting fiscal document sync")
        totals = asyncio.run(_sweep_async())
        logger.info(f"Fiscal document sync completed: {totals}")
        return {"status": "completed", **totals}

    except Exception as e:
        logger.error(f"Fiscal document sync failed: {str(e)}")
        raise


@celery_app.task(bind=True, max_retries=3)
def sync_tenant_fiscal_documents(self, tenant_id: str):
    """On-demand sync for a single tenant."""
    try:
        totals = asyncio.run(_sweep_async(tenant_id))
        logger.info(f"Fiscal document sync for tenant {tenant_id} completed: {totals}")
        return {"status": "completed", "tenant_id": tenant_id, **totals}

    except Exception as exc:
        logger.error(f"Fiscal document sync for tenant {tenant_id} failed: {str(exc)}")
        raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))
