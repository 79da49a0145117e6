from fastapi import APIRouter, Depends, Query, status
from functools import partial
from typing import Annotated, Optional
from uuid import UUID

from backoffice.dependencies.dbDependecies import async_db_dependency
from backoffice.dependencies.tenantDependencies import TenantId
from backoffice.modules.fiscal.archive import PdfArchive, get_pdf_archive
from backoffice.modules.fiscal.cancellation import DocumentCancellationService
from backoffice.modules.fiscal.emailing import DocumentMailer
from backoffice.modules.fiscal.issuer import FiscalDocumentIssuer
from backoffice.modules.fiscal.provider import ProviderFactory, build_provider
from backoffice.modules.fiscal.schemas import (
    CancelDocumentRequest, CreditNoteRequest, DocumentDetailsOut, DocumentType, DraftPreviewOut,
    FiscalDocumentOut, IssueDocumentRequest, ReceiptAvailabilityOut, SendDocumentEmailRequest,
    SyncReportOut, SyncResultOut
)
from backoffice.modules.fiscal.service import ContextLoader, FiscalRecord, available_actions
from backoffice.modules.fiscal.sync import FiscalSyncAgent, SyncResult
from backoffice.modules.organizations.context import load_fiscal_context
from backoffice.modules.sales.repository import PaymentLedgerRepository, SqlPaymentLedgerRepository

router = APIRouter(prefix="/fiscal", tags=["Fiscal Documents"])


def get_fiscal_repository(db: async_db_dependency, tenant_id: TenantId) -> PaymentLedgerRepository:
    return SqlPaymentLedgerRepository(db, tenant_id)


def get_context_loader(db: async_db_dependency, tenant_id: TenantId) -> ContextLoader:
    return partial(load_fiscal_context, db, tenant_id)


def get_provider_factory() -> ProviderFactory:
    return build_provider


Repository = Annotated[PaymentLedgerRepository, Depends(get_fiscal_repository)]
Loader = Annotated[ContextLoader, Depends(get_context_loader)]
Factory = Annotated[ProviderFactory, Depends(get_provider_factory)]
Archive = Annotated[Optional[PdfArchive], Depends(get_pdf_archive)]


def get_issuer(repository: Repository, loader: Loader, factory: Factory, archive: Archive) -> FiscalDocumentIssuer:
    return FiscalDocumentIssuer(repository, loader, factory, archive)


def get_cancellation_service(repository: Repository, loader: Loader, factory: Factory) -> DocumentCancellationService:
    return DocumentCancellationService(repository, loader, factory)


def get_mailer(repository: Repository, loader: Loader, factory: Factory) -> DocumentMailer:
    return DocumentMailer(repository, loader, factory)


def get_sync_agent(repository: Repository, loader: Loader, factory: Factory, archive: Archive) -> FiscalSyncAgent:
    return FiscalSyncAgent(repository, loader, factory, archive)


Issuer = Annotated[FiscalDocumentIssuer, Depends(get_issuer)]
Cancellation = Annotated[DocumentCancellationService, Depends(get_cancellation_service)]
Mailer = Annotated[DocumentMailer, Depends(get_mailer)]
SyncAgent = Annotated[FiscalSyncAgent, Depends(get_sync_agent)]


def document_out(record: FiscalRecord) -> FiscalDocumentOut:
    return FiscalDocumentOut(
        provider_id=record.document_provider_id,
        document_type=record.document_type,
        reference=record.document_reference,
        status=record.document_status,
        file_url=record.document_file_url,
        qr_code_url=record.qr_code_url,
        cancellation_reason=record.cancellation_reason,
        credit_note_reference=record.credit_note_reference,
        available_actions=available_actions(record),
    )


def sync_result_out(result: SyncResult) -> SyncResultOut:
    return SyncResultOut(
        record_id=result.record_id,
        outcome=result.outcome,
        changes={key: str(value) for key, value in result.changes.items()},
        error=result.error,
    )


# --- EMISIÓN ---

@router.get("/sales/{sale_id}/preview", response_model=DraftPreviewOut)
async def preview_document(
    sale_id: UUID,
    issuer: Issuer,
    document_type: DocumentType = Query(DocumentType.INVOICE, description="invoice | invoice_receipt"),
    payment_id: Optional[UUID] = Query(None, description="Pago a documentar (factura-recibo)"),
    observations: Optional[str] = Query(None, max_length=2000),
):
    """
    Vista previa del documento antes de emitirlo

    Calcula subtotal, IVA (tasa del ítem o de la organización) y total, y
    propone las observaciones a partir de las fechas de pago.
    """
    draft = await issuer.preview(sale_id, document_type, payment_id=payment_id, observations=observations)
    return DraftPreviewOut.model_validate(draft)


@router.post("/sales/{sale_id}/invoice", response_model=FiscalDocumentOut, status_code=status.HTTP_201_CREATED)
async def issue_invoice(sale_id: UUID, request: IssueDocumentRequest, issuer: Issuer):
    """
    Emitir la factura (FT) por el total de la venta

    Requiere que el cliente tenga NIF. Los errores del proveedor se
    devuelven con su mensaje original.
    """
    sale = await issuer.issue_invoice(sale_id, observations=request.observations)
    return document_out(sale)


@router.post(
    "/sales/{sale_id}/payments/{payment_id}/invoice-receipt",
    response_model=FiscalDocumentOut,
    status_code=status.HTTP_201_CREATED
)
async def issue_invoice_receipt(sale_id: UUID, payment_id: UUID, request: IssueDocumentRequest, issuer: Issuer):
    """Emitir una factura-recibo (FR) por el importe del pago"""
    payment = await issuer.issue_invoice_receipt(sale_id, payment_id, observations=request.observations)
    return document_out(payment)


@router.get("/sales/{sale_id}/payments/{payment_id}/receipt", response_model=ReceiptAvailabilityOut)
async def get_receipt_availability(sale_id: UUID, payment_id: UUID, issuer: Issuer):
    """Indica si se puede emitir un recibo para el pago (requiere factura emitida)"""
    reason = await issuer.receipt_blocker(sale_id, payment_id)
    return ReceiptAvailabilityOut(available=reason is None, reason=reason)


@router.post(
    "/sales/{sale_id}/payments/{payment_id}/receipt",
    response_model=FiscalDocumentOut,
    status_code=status.HTTP_201_CREATED
)
async def issue_receipt(sale_id: UUID, payment_id: UUID, issuer: Issuer):
    """Emitir un recibo (RC) contra la factura de la venta; el pago queda pagado"""
    payment = await issuer.issue_receipt(sale_id, payment_id)
    return document_out(payment)


# --- DOCUMENTO EMITIDO ---
# payment_id vacío = documento de la venta; con payment_id = documento del pago

@router.get("/sales/{sale_id}/document", response_model=FiscalDocumentOut)
async def get_document(sale_id: UUID, agent: SyncAgent, payment_id: Optional[UUID] = None):
    """Referencia fiscal guardada localmente y acciones disponibles"""
    _, record = await agent.resolve_record(sale_id, payment_id)
    return document_out(record)


@router.get("/sales/{sale_id}/document/details", response_model=DocumentDetailsOut)
async def get_document_details(
    sale_id: UUID,
    agent: SyncAgent,
    payment_id: Optional[UUID] = None,
    sync: bool = Query(False, description="Actualizar también PDF, QR y estado locales")
):
    """Documento completo según el proveedor (estado, totales, cliente, ítems)"""
    record, snapshot, result = await agent.document_details(sale_id, payment_id, sync=sync)
    return DocumentDetailsOut(
        document=snapshot,
        link=document_out(record),
        sync=sync_result_out(result) if result else None
    )


@router.post("/sales/{sale_id}/document/cancel", response_model=FiscalDocumentOut)
async def cancel_document(
    sale_id: UUID,
    request: CancelDocumentRequest,
    service: Cancellation,
    payment_id: Optional[UUID] = None
):
    """
    Anular el documento

    La anulación es definitiva. El motivo es obligatorio.
    """
    record = await service.cancel_document(sale_id, request.reason, payment_id=payment_id)
    return document_out(record)


@router.post("/sales/{sale_id}/document/credit-note", response_model=FiscalDocumentOut, status_code=status.HTTP_201_CREATED)
async def create_credit_note(
    sale_id: UUID,
    request: CreditNoteRequest,
    service: Cancellation,
    payment_id: Optional[UUID] = None
):
    """
    Emitir una nota de crédito sobre el documento

    Copia los ítems del original salvo que se indiquen otros.
    """
    record = await service.create_credit_note(sale_id, request.reason, items=request.items, payment_id=payment_id)
    return document_out(record)


@router.post("/sales/{sale_id}/document/email", response_model=FiscalDocumentOut)
async def send_document_email(
    sale_id: UUID,
    request: SendDocumentEmailRequest,
    mailer: Mailer,
    payment_id: Optional[UUID] = None
):
    record = await mailer.send_document(sale_id, request, payment_id=payment_id)
    return document_out(record)


@router.post("/sales/{sale_id}/document/sync", response_model=SyncResultOut)
async def sync_document(sale_id: UUID, agent: SyncAgent, payment_id: Optional[UUID] = None):
    """Re-sincronizar estado, PDF y QR del documento"""
    result = await agent.sync_record(sale_id, payment_id)
    return sync_result_out(result)


@router.post("/sync", response_model=SyncReportOut)
async def sync_all_documents(agent: SyncAgent):
    """Sincronizar todos los documentos del tenant pendientes de reparar"""
    report = await agent.sweep()
    return SyncReportOut(
        updated=report.updated,
        unchanged=report.unchanged,
        failed=report.failed,
        results=[sync_result_out(r) for r in report.results]
    )
