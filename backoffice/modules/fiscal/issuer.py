"""
Emisión de documentos fiscales: factura (FT), factura-recibo (FR) y recibo (RC).

Todas las comprobaciones locales (integración, NIF, exenciones, estado de la
venta y del pago) se hacen antes de cualquier llamada al proveedor. Si el
proveedor falla no se escribe nada, salvo el ID del borrador cuando llegó a
crearse: así un reintento finaliza ese borrador en lugar de duplicarlo.
"""
from datetime import date
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID
import logging

from backoffice.common.exceptions import ConflictError, ProviderError, ValidationError
from backoffice.modules.fiscal.drafts import (
    DocumentDraft, DraftLine, build_draft, default_observations, direct_amount_line, lines_from_sale_items
)
from backoffice.modules.fiscal.provider import FiscalProvider
from backoffice.modules.fiscal.schemas import ACTIVE_DOCUMENT_STATUSES, DocumentStatus, DocumentType
from backoffice.modules.fiscal.service import (
    FiscalRecord, FiscalService, document_status_of, draft_link_fields, has_active_document, issued_link_fields
)
from backoffice.modules.organizations.context import FiscalContext
from backoffice.modules.sales.models import (
    PaymentRecordStatus, Sale, SaleItem, SalePayment, SaleStatus
)

logger = logging.getLogger(__name__)

PREVIEWABLE_TYPES = {DocumentType.INVOICE, DocumentType.INVOICE_RECEIPT}


def receipt_availability(sale: Sale, payment: SalePayment) -> Optional[str]:
    """
    Motivo por el que no se puede emitir un recibo para el pago, o None.

    El recibo se registra contra la factura de la venta, así que primero
    tiene que existir una factura (FT) finalizada y no anulada.
    """
    if sale.document_type != DocumentType.INVOICE.value or document_status_of(sale) not in ACTIVE_DOCUMENT_STATUSES:
        return "La venta aún no tiene factura emitida. Emita la factura primero."
    if has_active_document(payment):
        return f"El pago ya tiene un documento fiscal ({payment.document_reference})"
    return None


def _is_pending_draft(record: FiscalRecord, doc_type: DocumentType) -> bool:
    return (
        record.document_provider_id is not None
        and record.document_status == DocumentStatus.DRAFT.value
        and record.document_type == doc_type.value
    )


class FiscalDocumentIssuer(FiscalService):

    # ===== Borrador =====

    @staticmethod
    def _invoice_lines(sale: Sale, items: Sequence[SaleItem], context: FiscalContext) -> List[DraftLine]:
        if items:
            return lines_from_sale_items(items, context)
        return [direct_amount_line("Servicio", sale.total_value, context, description=f"Venta {sale.code or sale.id}")]

    @staticmethod
    def _invoice_receipt_lines(
        sale: Sale, items: Sequence[SaleItem], payments: Sequence[SalePayment],
        payment: SalePayment, context: FiscalContext
    ) -> List[DraftLine]:
        """
        Pago único: los ítems de la venta a valor completo. Con varios pagos
        el documento cubre solo el importe del pago, en una línea directa.
        """
        sole_payment = len(payments) == 1 and payments[0].id == payment.id
        if sole_payment and items:
            return lines_from_sale_items(items, context)
        return [direct_amount_line(
            f"Pago venta {sale.code or sale.id}", payment.amount, context,
            description=payment.notes or f"Venta {sale.code or sale.id}"
        )]

    def _build(
        self,
        doc_type: DocumentType,
        sale: Sale,
        items: Sequence[SaleItem],
        payments: Sequence[SalePayment],
        context: FiscalContext,
        payment: Optional[SalePayment] = None,
        observations: Optional[str] = None,
    ) -> DocumentDraft:
        if doc_type == DocumentType.INVOICE:
            lines = self._invoice_lines(sale, items, context)
            default = default_observations([p for p in payments if p.status == PaymentRecordStatus.PAID])
        else:
            lines = self._invoice_receipt_lines(sale, items, payments, payment, context)
            default = default_observations([payment])
        return build_draft(
            doc_type, lines, context,
            observations=observations if observations is not None else default,
        )

    async def preview(
        self,
        sale_id: UUID,
        document_type: DocumentType,
        payment_id: Optional[UUID] = None,
        observations: Optional[str] = None,
    ) -> DocumentDraft:
        """
        Calcular el borrador (subtotal, IVA, total, observaciones) sin
        llamar al proveedor.
        """
        if document_type not in PREVIEWABLE_TYPES:
            raise ValidationError("Solo se pueden previsualizar facturas y facturas-recibo")
        if document_type == DocumentType.INVOICE_RECEIPT and payment_id is None:
            raise ValidationError("La factura-recibo requiere indicar el pago")

        sale = await self.repository.get_sale(sale_id)
        payment = await self.repository.get_payment(sale_id, payment_id) if payment_id else None
        payments = await self.repository.list_payments(sale_id)
        items = await self.repository.list_sale_items(sale_id)
        context = await self.context_loader(sale.client_id)
        return self._build(document_type, sale, items, payments, context, payment=payment, observations=observations)

    # ===== Emisión =====

    @staticmethod
    def _require_tax_id(context: FiscalContext, label: str) -> None:
        if not context.client_has_tax_id:
            raise ValidationError(f"El cliente no tiene NIF. Añada el NIF antes de emitir {label}.")

    @staticmethod
    async def _issue_date(provider: FiscalProvider, doc_type: DocumentType) -> date:
        """La fecha nunca puede ser anterior a la del último documento del mismo tipo."""
        today = date.today()
        last = await provider.last_document_date(doc_type)
        if last and last > today:
            logger.warning(f"Issue date {today} precedes last {doc_type.value} date {last}; using {last}")
            return last
        return today

    async def _submit(
        self,
        record: FiscalRecord,
        draft: DocumentDraft,
        context: FiscalContext,
        proprietary_uid: str,
        extra_fields: Optional[Dict[str, Any]] = None,
    ):
        """Emitir (o finalizar el borrador pendiente) y guardar el vínculo antes de pedir PDF y QR."""
        doc_type = draft.document_type
        async with self.open_provider(context) as provider:
            try:
                if _is_pending_draft(record, doc_type):
                    logger.info(f"Finalizing existing draft {record.document_provider_id} for record {record.id}")
                    issued = await provider.finalize_document(record.document_provider_id, doc_type)
                else:
                    issue_date = await self._issue_date(provider, doc_type)
                    issued = await provider.issue_document(
                        draft.to_request(issue_date=issue_date, proprietary_uid=proprietary_uid)
                    )
            except ProviderError as e:
                if e.document_id is not None and record.document_provider_id != e.document_id:
                    await self.save_record(record, draft_link_fields(doc_type, e.document_id))
                    logger.warning(f"Kept draft {e.document_id} on record {record.id} after finalize failure")
                raise

            fields = issued_link_fields(issued)
            fields.update(extra_fields or {})
            record = await self.save_record(record, fields)
            record = await self.attach_links(
                provider, record, issued.document_type, issued.provider_id, known_pdf_url=issued.pdf_url
            )
        return issued, record

    async def issue_invoice(self, sale_id: UUID, observations: Optional[str] = None) -> Sale:
        """
        Emitir la factura (FT) por el total de la venta.

        Raises:
            ValidationError: integración desactivada, cliente sin NIF o
                ítems exentos sin motivo
            ConflictError: la venta ya tiene documento o está cancelada
            ProviderError: fallo del proveedor (mensaje original en el detalle)
        """
        async with self.guard.hold(("sale", sale_id)):
            sale = await self.repository.get_sale(sale_id)
            if sale.status == SaleStatus.CANCELLED:
                raise ConflictError("No se puede facturar una venta cancelada")
            if has_active_document(sale) and not _is_pending_draft(sale, DocumentType.INVOICE):
                raise ConflictError(f"La venta ya tiene un documento fiscal emitido ({sale.document_reference})")

            payments = await self.repository.list_payments(sale_id)
            if any(has_active_document(p) and p.document_type == DocumentType.INVOICE_RECEIPT.value for p in payments):
                raise ConflictError("La venta ya tiene facturas-recibo emitidas para sus pagos")

            context = await self.load_context(sale.client_id)
            self._require_tax_id(context, "la factura")

            items = await self.repository.list_sale_items(sale_id)
            draft = self._build(DocumentType.INVOICE, sale, items, payments, context, observations=observations)

            issued, sale = await self._submit(sale, draft, context, f"backoffice-ft-{sale.id}")

        logger.info(f"Invoice {issued.reference} ({issued.provider_id}) issued for sale {sale_id}")
        return sale

    async def issue_invoice_receipt(
        self, sale_id: UUID, payment_id: UUID, observations: Optional[str] = None
    ) -> SalePayment:
        """Emitir una factura-recibo (FR) por el importe de un pago; el pago queda pagado y protegido."""
        async with self.guard.hold(payment_id):
            sale = await self.repository.get_sale(sale_id)
            payment = await self.repository.get_payment(sale_id, payment_id)

            if sale.status == SaleStatus.CANCELLED:
                raise ConflictError("No se pueden emitir documentos para una venta cancelada")
            if has_active_document(sale) and sale.document_type == DocumentType.INVOICE.value:
                raise ConflictError("La venta ya tiene factura; emita un recibo para este pago")
            if has_active_document(payment) and not _is_pending_draft(payment, DocumentType.INVOICE_RECEIPT):
                raise ConflictError(f"El pago ya tiene un documento fiscal ({payment.document_reference})")

            context = await self.load_context(sale.client_id)
            self._require_tax_id(context, "la factura-recibo")

            payments = await self.repository.list_payments(sale_id)
            items = await self.repository.list_sale_items(sale_id)
            draft = self._build(
                DocumentType.INVOICE_RECEIPT, sale, items, payments, context,
                payment=payment, observations=observations
            )

            issued, payment = await self._submit(
                payment, draft, context, f"backoffice-fr-{payment.id}",
                extra_fields={"status": PaymentRecordStatus.PAID, "fiscal_protected": True},
            )

        logger.info(f"Invoice-receipt {issued.reference} ({issued.provider_id}) issued for payment {payment_id}")
        return payment

    async def receipt_blocker(self, sale_id: UUID, payment_id: UUID) -> Optional[str]:
        sale = await self.repository.get_sale(sale_id)
        payment = await self.repository.get_payment(sale_id, payment_id)
        return receipt_availability(sale, payment)

    async def issue_receipt(self, sale_id: UUID, payment_id: UUID) -> SalePayment:
        """Registrar un recibo (RC) del pago contra la factura de la venta y marcarlo como pagado."""
        async with self.guard.hold(payment_id):
            sale = await self.repository.get_sale(sale_id)
            payment = await self.repository.get_payment(sale_id, payment_id)

            reason = receipt_availability(sale, payment)
            if reason:
                raise ConflictError(reason)

            context = await self.load_context(sale.client_id)
            method = payment.payment_method.value if payment.payment_method else None

            async with self.open_provider(context) as provider:
                issued = await provider.register_partial_payment(
                    sale.document_provider_id, payment.amount, payment.payment_date,
                    payment_method=method, note=payment.notes
                )
                fields = issued_link_fields(issued)
                fields.update(status=PaymentRecordStatus.PAID, fiscal_protected=True)
                payment = await self.repository.update_payment(payment, fields)
                payment = await self.attach_links(
                    provider, payment, DocumentType.RECEIPT, issued.provider_id, known_pdf_url=issued.pdf_url
                )

        logger.info(f"Receipt {issued.reference} ({issued.provider_id}) issued for payment {payment_id}")
        return payment
