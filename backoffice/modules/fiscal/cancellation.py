"""
Anulación de documentos y notas de crédito.

La anulación es irreversible: un documento anulado no vuelve a ningún otro
estado y no admite nota de crédito. La referencia y el motivo se conservan
en el registro local para la auditoría.
"""
from typing import List, Optional
from uuid import UUID
import logging

from backoffice.common.exceptions import ConflictError, ProviderError, ValidationError
from backoffice.modules.fiscal.schemas import DocumentItem, DocumentStatus, DocumentType
from backoffice.modules.fiscal.service import (
    ACTION_CANCEL, ACTION_CREDIT_NOTE, FiscalRecord, FiscalService, available_actions, utcnow
)
from backoffice.modules.sales.models import SalePayment

logger = logging.getLogger(__name__)


def _required_reason(reason: Optional[str], label: str) -> str:
    if reason is None or not reason.strip():
        raise ValidationError(f"El motivo de {label} es obligatorio")
    return reason.strip()


class DocumentCancellationService(FiscalService):

    async def cancel_document(self, sale_id: UUID, reason: str, payment_id: Optional[UUID] = None) -> FiscalRecord:
        """
        Anular el documento de la venta (``payment_id`` vacío) o del pago.

        El pago pierde la protección fiscal; su estado de cobro no cambia.
        """
        reason = _required_reason(reason, "anulación")

        async with self.guard.hold(payment_id or ("sale", sale_id)):
            _, record = await self.resolve_document(sale_id, payment_id)
            self.ensure_document_active(record, "anular")
            if ACTION_CANCEL not in available_actions(record):
                raise ConflictError("El documento no se puede anular")

            doc_type = DocumentType(record.document_type)
            context = await self.load_context()
            async with self.open_provider(context) as provider:
                await provider.cancel_document(record.document_provider_id, doc_type, reason)

            fields = {
                "document_status": DocumentStatus.CANCELLED.value,
                "cancellation_reason": reason,
                "document_synced_at": utcnow(),
            }
            if isinstance(record, SalePayment):
                fields["fiscal_protected"] = False
            record = await self.save_record(record, fields)

        logger.info(f"Document {record.document_reference} ({record.document_provider_id}) cancelled: {reason}")
        return record

    async def create_credit_note(
        self,
        sale_id: UUID,
        reason: str,
        items: Optional[List[DocumentItem]] = None,
        payment_id: Optional[UUID] = None,
    ) -> FiscalRecord:
        """
        Emitir una nota de crédito que referencia el documento original.

        Copia los ítems del original salvo que se indiquen otros. El estado
        del documento original no cambia.
        """
        reason = _required_reason(reason, "la nota de crédito")

        async with self.guard.hold(payment_id or ("sale", sale_id)):
            _, record = await self.resolve_document(sale_id, payment_id)
            self.ensure_document_active(record, "emitir una nota de crédito para")
            if ACTION_CREDIT_NOTE not in available_actions(record):
                if record.credit_note_provider_id is not None:
                    raise ConflictError(f"El documento ya tiene una nota de crédito ({record.credit_note_reference})")
                raise ConflictError("Solo se pueden emitir notas de crédito para facturas y facturas-recibo")

            doc_type = DocumentType(record.document_type)
            context = await self.load_context()
            async with self.open_provider(context) as provider:
                try:
                    credit_note = await provider.create_credit_note(
                        record.document_provider_id, doc_type, reason, items=items
                    )
                except ProviderError as e:
                    if e.document_id is not None:
                        await self.save_record(record, {
                            "credit_note_provider_id": e.document_id,
                            "credit_note_reference": f"{DocumentType.CREDIT_NOTE.prefix} #{e.document_id}",
                        })
                        logger.warning(f"Kept credit note draft {e.document_id} on record {record.id}")
                    raise

            record = await self.save_record(record, {
                "credit_note_provider_id": credit_note.provider_id,
                "credit_note_reference": credit_note.reference,
            })

        logger.info(f"Credit note {credit_note.reference} issued for {record.document_reference}: {reason}")
        return record
