"""
Agente de sincronización con el proveedor fiscal.

Repara la copia local de los documentos: PDF o QR que no estaban listos al
emitir, y estados cambiados directamente en el proveedor. Solo escribe
cuando algún valor cambia, así que ejecutarlo dos veces seguidas no produce
una segunda escritura.
"""
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID
import logging

from backoffice.common.exceptions import BackofficeError, DriftError
from backoffice.core.config import settings
from backoffice.modules.fiscal.provider import FiscalProvider
from backoffice.modules.fiscal.schemas import DocumentSnapshot, DocumentStatus, DocumentType
from backoffice.modules.fiscal.service import FiscalRecord, FiscalService, utcnow
from backoffice.modules.sales.models import SalePayment

logger = logging.getLogger(__name__)

OUTCOME_UPDATED = "updated"
OUTCOME_UNCHANGED = "unchanged"
OUTCOME_FAILED = "failed"


@dataclass
class SyncResult:
    record_id: str
    outcome: str
    changes: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class SyncReport:
    results: List[SyncResult] = field(default_factory=list)

    def _count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def updated(self) -> int:
        return self._count(OUTCOME_UPDATED)

    @property
    def unchanged(self) -> int:
        return self._count(OUTCOME_UNCHANGED)

    @property
    def failed(self) -> int:
        return self._count(OUTCOME_FAILED)


class FiscalSyncAgent(FiscalService):

    async def _refresh(self, provider: FiscalProvider, record: FiscalRecord) -> Tuple[DocumentSnapshot, Dict[str, Any]]:
        """Consultar el documento y calcular qué columnas locales han cambiado."""
        doc_type = DocumentType(record.document_type)
        snapshot = await provider.fetch_document(record.document_provider_id, doc_type)
        changes: Dict[str, Any] = {}

        local_status = record.document_status
        remote_status = snapshot.status.value
        if remote_status != local_status:
            if local_status == DocumentStatus.CANCELLED.value:
                logger.warning(
                    f"Provider reports {remote_status} for locally cancelled document "
                    f"{record.document_provider_id}; keeping cancelled"
                )
            else:
                changes["document_status"] = remote_status
                if remote_status == DocumentStatus.CANCELLED.value and isinstance(record, SalePayment):
                    changes["fiscal_protected"] = False

        # Only fallback references ("FT #123") are replaced by the numbered one
        fallback = not record.document_reference or record.document_reference.endswith(f"#{record.document_provider_id}")
        if snapshot.sequence_number and fallback and snapshot.reference != record.document_reference:
            changes["document_reference"] = snapshot.reference

        file_ref, qr_code_url = await self.fetch_links(
            provider, record, doc_type, record.document_provider_id,
            known_pdf_url=snapshot.pdf_url,
            fetch_pdf=not record.document_file_url,
            fetch_qr=not record.qr_code_url,
        )
        if file_ref and file_ref != record.document_file_url:
            changes["document_file_url"] = file_ref
        if qr_code_url and qr_code_url != record.qr_code_url:
            changes["qr_code_url"] = qr_code_url

        return snapshot, changes

    async def _sync(self, provider: FiscalProvider, record: FiscalRecord) -> SyncResult:
        _, changes = await self._refresh(provider, record)
        if not changes:
            return SyncResult(record_id=str(record.id), outcome=OUTCOME_UNCHANGED)

        await self.save_record(record, {**changes, "document_synced_at": utcnow()})
        logger.info(f"Synced document {record.document_provider_id} for record {record.id}: {sorted(changes)}")
        return SyncResult(record_id=str(record.id), outcome=OUTCOME_UPDATED, changes=changes)

    async def sync_record(self, sale_id: UUID, payment_id: Optional[UUID] = None) -> SyncResult:
        """
        Sincronizar el documento de la venta o de un pago.

        Raises:
            DriftError: no se pudo refrescar; la copia local no se tocó
        """
        async with self.guard.hold(payment_id or ("sale", sale_id)):
            _, record = await self.resolve_document(sale_id, payment_id)
            context = await self.load_context()
            try:
                async with self.open_provider(context) as provider:
                    return await self._sync(provider, record)
            except BackofficeError as e:
                logger.warning(f"Sync of record {record.id} failed: {e.message}")
                raise DriftError(f"No se pudo sincronizar el documento {record.document_reference}: {e.message}") from e

    async def document_details(
        self, sale_id: UUID, payment_id: Optional[UUID] = None, sync: bool = False
    ) -> Tuple[FiscalRecord, DocumentSnapshot, Optional[SyncResult]]:
        """Documento completo según el proveedor; con ``sync`` también repara la copia local."""
        _, record = await self.resolve_document(sale_id, payment_id)
        context = await self.load_context()

        if not sync:
            async with self.open_provider(context) as provider:
                snapshot = await provider.fetch_document(record.document_provider_id, DocumentType(record.document_type))
            return record, snapshot, None

        async with self.guard.hold(payment_id or ("sale", sale_id)):
            async with self.open_provider(context) as provider:
                snapshot, changes = await self._refresh(provider, record)
            result = SyncResult(record_id=str(record.id), outcome=OUTCOME_UNCHANGED)
            if changes:
                record = await self.save_record(record, {**changes, "document_synced_at": utcnow()})
                result = SyncResult(record_id=str(record.id), outcome=OUTCOME_UPDATED, changes=changes)
        return record, snapshot, result

    async def sweep(self, stale_after: Optional[timedelta] = None, limit: int = 100) -> SyncReport:
        """
        Sincronizar todos los documentos del tenant pendientes de reparar.

        Un fallo en un registro se informa en el reporte y no detiene el resto.
        Cada registro revisado, cambie o no, guarda la hora de la revisión para
        que el siguiente barrido empiece por los que llevan más tiempo sin ella.
        """
        report = SyncReport()
        context = await self.context_loader(None)
        if not context.provider_available:
            logger.info(f"Skipping fiscal sweep for tenant {self.repository.tenant_id}: provider not available")
            return report

        if stale_after is None:
            stale_after = timedelta(seconds=settings.FISCAL_SYNC_INTERVAL_SECONDS)
        sales, payments = await self.repository.find_stale_fiscal_records(utcnow() - stale_after, limit=limit)

        async with self.open_provider(context) as provider:
            for record in [*sales, *payments]:
                key = record.id if isinstance(record, SalePayment) else ("sale", record.id)
                if self.guard.is_busy(key):
                    logger.info(f"Skipping record {record.id} in sweep: another operation is in flight")
                    report.results.append(SyncResult(
                        record_id=str(record.id), outcome=OUTCOME_FAILED, error="Operación en curso sobre el registro"
                    ))
                    continue
                async with self.guard.hold(key):
                    try:
                        result = await self._sync(provider, record)
                    except BackofficeError as e:
                        logger.warning(f"Sync of record {record.id} failed: {e.message}")
                        result = SyncResult(record_id=str(record.id), outcome=OUTCOME_FAILED, error=e.message)
                    if result.outcome != OUTCOME_UPDATED:
                        # Checked records go to the back of the queue
                        await self.save_record(record, {"document_synced_at": utcnow()})
                report.results.append(result)

        logger.info(
            f"Fiscal sweep for tenant {self.repository.tenant_id}: "
            f"{report.updated} updated, {report.unchanged} unchanged, {report.failed} failed"
        )
        return report
