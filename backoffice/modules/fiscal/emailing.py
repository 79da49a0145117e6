"""
Envío de documentos fiscales por email a través del proveedor.
"""
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import UUID
import logging

from jinja2 import Environment, FileSystemLoader, select_autoescape

from backoffice.common.exceptions import ConflictError
from backoffice.modules.fiscal.schemas import DocumentType, SendDocumentEmailRequest
from backoffice.modules.fiscal.service import ACTION_SEND_EMAIL, FiscalRecord, FiscalService, available_actions
from backoffice.modules.organizations.context import FiscalContext
from backoffice.modules.sales.models import Sale

logger = logging.getLogger(__name__)

DOCUMENT_LABELS = {
    DocumentType.INVOICE: ("la", "Factura"),
    DocumentType.INVOICE_RECEIPT: ("la", "Factura-recibo"),
    DocumentType.RECEIPT: ("el", "Recibo"),
    DocumentType.CREDIT_NOTE: ("la", "Nota de crédito"),
}

template_dir = Path(__file__).parent / "templates"

jinja_env = Environment(
    loader=FileSystemLoader(str(template_dir)),
    autoescape=select_autoescape(['html', 'xml'])
)


def render_template(template_name: str, context: Dict[str, Any]) -> str:
    template = jinja_env.get_template(template_name)
    return template.render(**context).strip()


def email_context(record: FiscalRecord, sale: Sale, fiscal_context: FiscalContext) -> Dict[str, Any]:
    article, label = DOCUMENT_LABELS[DocumentType(record.document_type)]
    client = fiscal_context.client
    return {
        "document_label": label,
        "document_article": article,
        "reference": record.document_reference,
        "sale_code": sale.code,
        "client_name": client.display_name if client else None,
        "organization_name": fiscal_context.organization_name,
    }


class DocumentMailer(FiscalService):

    async def send_document(
        self, sale_id: UUID, request: SendDocumentEmailRequest, payment_id: Optional[UUID] = None
    ) -> FiscalRecord:
        """
        Enviar el documento al email indicado.

        Asunto y cuerpo por defecto se generan con las plantillas; el estado
        ``sent`` lo confirma la siguiente sincronización, no se asume aquí.
        """
        sale, record = await self.resolve_document(sale_id, payment_id)
        if ACTION_SEND_EMAIL not in available_actions(record):
            raise ConflictError(f"No se puede enviar un documento en estado {record.document_status}")

        context = await self.load_context(sale.client_id)
        values = email_context(record, sale, context)
        subject = request.subject or render_template("document_email_subject.txt", values)
        body = request.body or render_template("document_email_body.txt", values)

        async with self.open_provider(context) as provider:
            await provider.send_document_email(
                record.document_provider_id, DocumentType(record.document_type), request.email, subject, body
            )

        logger.info(f"Document {record.document_reference} sent to {request.email}")
        return record
