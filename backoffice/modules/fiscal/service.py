"""
Piezas comunes a los servicios fiscales (emisión, anulación, email, sync).

Un "registro fiscal" es la venta (factura FT) o un pago (FR / RC): ambos
llevan las columnas de ``FiscalLinkMixin``.
"""
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union
from uuid import UUID
import logging

from backoffice.common.exceptions import BackofficeError, ConflictError, NotFoundError, ValidationError
from backoffice.modules.fiscal.archive import PdfArchive
from backoffice.modules.fiscal.provider import FiscalProvider, ProviderFactory, build_provider
from backoffice.modules.fiscal.schemas import ACTIVE_DOCUMENT_STATUSES, DocumentStatus, DocumentType
from backoffice.modules.organizations.context import FiscalContext
from backoffice.modules.sales.guard import InFlightRegistry, record_guard
from backoffice.modules.sales.models import Sale, SalePayment
from backoffice.modules.sales.repository import PaymentLedgerRepository

logger = logging.getLogger(__name__)

ContextLoader = Callable[[Optional[UUID]], Awaitable[FiscalContext]]
FiscalRecord = Union[Sale, SalePayment]

# Acciones que la interfaz puede ofrecer sobre un documento
ACTION_CANCEL = "cancel"
ACTION_CREDIT_NOTE = "credit_note"
ACTION_SEND_EMAIL = "send_email"
ACTION_SYNC = "sync"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def document_status_of(record: FiscalRecord) -> Optional[DocumentStatus]:
    if record.document_provider_id is None or not record.document_status:
        return None
    try:
        return DocumentStatus(record.document_status)
    except ValueError:
        return None


def has_active_document(record: FiscalRecord) -> bool:
    """Tiene un documento emitido que no está anulado (incluye borradores)."""
    return record.document_provider_id is not None and record.document_status != DocumentStatus.CANCELLED.value


def available_actions(record: FiscalRecord) -> list:
    """
    Acciones permitidas sobre el documento del registro según su estado.

    Un documento anulado no admite más acciones; un borrador solo puede
    sincronizarse; la nota de crédito solo aplica a facturas y
    facturas-recibo y una sola vez.
    """
    if record.document_provider_id is None:
        return []

    status = document_status_of(record)
    if status is None or status == DocumentStatus.DRAFT:
        return [ACTION_SYNC]
    if status == DocumentStatus.CANCELLED:
        return []

    actions = [ACTION_CANCEL]
    if record.document_type != DocumentType.RECEIPT.value and record.credit_note_provider_id is None:
        actions.append(ACTION_CREDIT_NOTE)
    actions.extend([ACTION_SEND_EMAIL, ACTION_SYNC])
    return actions


def ensure_provider_available(context: FiscalContext) -> None:
    if not context.integration_enabled:
        raise ValidationError("La integración con el proveedor fiscal está desactivada")
    if not context.credentials_configured:
        raise ValidationError("Las credenciales del proveedor fiscal no están configuradas")


def issued_link_fields(issued) -> Dict[str, Any]:
    """Columnas de ``FiscalLinkMixin`` para un documento recién emitido."""
    return {
        "document_provider_id": issued.provider_id,
        "document_type": issued.document_type.value,
        "document_reference": issued.reference,
        "document_status": issued.status.value,
        "document_file_url": issued.pdf_url or issued.permalink,
        "qr_code_url": issued.qr_code_url,
        "cancellation_reason": None,
        "credit_note_provider_id": None,
        "credit_note_reference": None,
        "document_synced_at": utcnow(),
    }


def draft_link_fields(doc_type: DocumentType, provider_id: int) -> Dict[str, Any]:
    """Borrador creado en el proveedor pero no finalizado."""
    return {
        "document_provider_id": provider_id,
        "document_type": doc_type.value,
        "document_reference": f"{doc_type.prefix} #{provider_id}",
        "document_status": DocumentStatus.DRAFT.value,
        "document_file_url": None,
        "qr_code_url": None,
        "cancellation_reason": None,
        "credit_note_provider_id": None,
        "credit_note_reference": None,
        "document_synced_at": utcnow(),
    }


class FiscalService:
    """Base de los servicios que hablan con el proveedor fiscal."""

    def __init__(
        self,
        repository: PaymentLedgerRepository,
        context_loader: ContextLoader,
        provider_factory: ProviderFactory = build_provider,
        archive: Optional[PdfArchive] = None,
        guard: InFlightRegistry = record_guard,
    ):
        self.repository = repository
        self.context_loader = context_loader
        self.provider_factory = provider_factory
        self.archive = archive
        self.guard = guard

    async def load_context(self, client_id: Optional[UUID] = None) -> FiscalContext:
        context = await self.context_loader(client_id)
        ensure_provider_available(context)
        return context

    def open_provider(self, context: FiscalContext) -> FiscalProvider:
        return self.provider_factory(context)

    async def resolve_record(self, sale_id: UUID, payment_id: Optional[UUID] = None) -> Tuple[Sale, FiscalRecord]:
        sale = await self.repository.get_sale(sale_id)
        if payment_id is None:
            return sale, sale
        payment = await self.repository.get_payment(sale_id, payment_id)
        return sale, payment

    async def resolve_document(self, sale_id: UUID, payment_id: Optional[UUID] = None) -> Tuple[Sale, FiscalRecord]:
        sale, record = await self.resolve_record(sale_id, payment_id)
        if record.document_provider_id is None or not record.document_type:
            raise NotFoundError("El registro no tiene documento fiscal")
        return sale, record

    async def save_record(self, record: FiscalRecord, fields: Dict[str, Any]) -> FiscalRecord:
        if isinstance(record, SalePayment):
            return await self.repository.update_payment(record, fields)
        return await self.repository.update_sale(record, fields)

    def archive_key(self, record: FiscalRecord, doc_type: DocumentType, provider_id: int) -> str:
        return f"{self.repository.tenant_id}/{record.id}/{doc_type.prefix}-{provider_id}.pdf"

    async def fetch_links(
        self,
        provider: FiscalProvider,
        record: FiscalRecord,
        doc_type: DocumentType,
        provider_id: int,
        known_pdf_url: Optional[str] = None,
        fetch_pdf: bool = True,
        fetch_qr: bool = True,
    ) -> Tuple[Optional[str], Optional[str]]:
        """
        Obtener la referencia del PDF (archivada si está habilitado) y el QR.

        Ninguno de los dos es obligatorio: si no están listos se devuelven
        None y el agente de sincronización los completará más tarde.
        """
        file_ref = None
        if fetch_pdf:
            pdf_url = known_pdf_url or await provider.fetch_pdf_url(provider_id)
            file_ref = pdf_url
            if pdf_url and self.archive is not None:
                stored = await self.archive.store(provider, pdf_url, self.archive_key(record, doc_type, provider_id))
                file_ref = stored or pdf_url

        qr_code_url = await provider.fetch_qr_code_url(provider_id) if fetch_qr else None
        return file_ref, qr_code_url

    async def attach_links(
        self,
        provider: FiscalProvider,
        record: FiscalRecord,
        doc_type: DocumentType,
        provider_id: int,
        known_pdf_url: Optional[str] = None,
    ) -> FiscalRecord:
        """
        Completar PDF y QR de un documento cuyo vínculo ya está guardado.

        Si falla, el registro conserva el vínculo y el agente de
        sincronización completará los enlaces más tarde.
        """
        try:
            file_ref, qr_code_url = await self.fetch_links(
                provider, record, doc_type, provider_id, known_pdf_url=known_pdf_url
            )
        except BackofficeError as e:
            logger.warning(f"Links for document {provider_id} not stored, left for sync: {e.message}")
            return record

        changes: Dict[str, Any] = {}
        if file_ref and file_ref != record.document_file_url:
            changes["document_file_url"] = file_ref
        if qr_code_url and qr_code_url != record.qr_code_url:
            changes["qr_code_url"] = qr_code_url
        if not changes:
            return record
        return await self.save_record(record, changes)

    @staticmethod
    def ensure_document_active(record: FiscalRecord, action: str) -> DocumentStatus:
        status = document_status_of(record)
        if status == DocumentStatus.CANCELLED:
            raise ConflictError("El documento ya está anulado")
        if status not in ACTIVE_DOCUMENT_STATUSES:
            raise ConflictError(f"No se puede {action} un documento en estado {record.document_status}")
        return status
