from pydantic import BaseModel, EmailStr, Field, TypeAdapter, field_validator
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from datetime import date
from enum import Enum


class DocumentType(str, Enum):
    INVOICE = "invoice"                  # FT - cubre el total de la venta
    INVOICE_RECEIPT = "invoice_receipt"  # FR - cubre un pago
    RECEIPT = "receipt"                  # RC - pago contra una FT existente
    CREDIT_NOTE = "credit_note"          # NC - documento compensatorio

    @property
    def prefix(self) -> str:
        return DOCUMENT_PREFIXES[self]


DOCUMENT_PREFIXES = {
    DocumentType.INVOICE: "FT",
    DocumentType.INVOICE_RECEIPT: "FR",
    DocumentType.RECEIPT: "RC",
    DocumentType.CREDIT_NOTE: "NC",
}


class DocumentStatus(str, Enum):
    DRAFT = "draft"
    FINAL = "final"
    SETTLED = "settled"
    CANCELLED = "cancelled"
    SECOND_COPY = "second_copy"
    SENT = "sent"

    @classmethod
    def from_provider(cls, value: Optional[str]) -> "DocumentStatus":
        """Normalizar el estado tal como lo devuelve el proveedor."""
        normalized = (value or "").strip().lower()
        aliases = {"canceled": "cancelled", "finalized": "final"}
        normalized = aliases.get(normalized, normalized)
        return cls(normalized)


# Estados sobre los que aún se puede anular o emitir nota de crédito
ACTIVE_DOCUMENT_STATUSES = {
    DocumentStatus.FINAL,
    DocumentStatus.SETTLED,
    DocumentStatus.SENT,
    DocumentStatus.SECOND_COPY,
}


def format_reference(doc_type: DocumentType, provider_id: int, sequence_number: Optional[str]) -> str:
    if sequence_number:
        return f"{doc_type.prefix} {sequence_number}"
    return f"{doc_type.prefix} #{provider_id}"


# ===== Contrato con el proveedor =====

class TaxInfo(BaseModel):
    name: str
    value: Decimal


class DocumentItem(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    unit_price: Decimal
    quantity: Decimal = Decimal("1")
    tax: Optional[TaxInfo] = None
    exemption_reason: Optional[str] = None


class DocumentClient(BaseModel):
    name: str
    code: Optional[str] = None
    fiscal_id: Optional[str] = None
    email: str = ""
    address: str = ""
    city: str = ""
    postal_code: str = ""
    country: Optional[str] = None


class DocumentRequest(BaseModel):
    """Datos para crear un documento en el proveedor."""
    doc_type: DocumentType
    issue_date: date
    due_date: date
    client: Optional[DocumentClient] = None
    items: List[DocumentItem]
    observations: Optional[str] = None
    tax_exemption: Optional[str] = None
    reference: Optional[str] = None          # Documento original (notas de crédito)
    proprietary_uid: Optional[str] = None    # Evita duplicados en reintentos


class _IssuedBase(BaseModel):
    provider_id: int
    sequence_number: Optional[str] = None
    status: DocumentStatus = DocumentStatus.FINAL
    permalink: Optional[str] = None
    pdf_url: Optional[str] = None
    qr_code_url: Optional[str] = None

    @property
    def document_type(self) -> DocumentType:
        return DocumentType(self.type)

    @property
    def reference(self) -> str:
        return format_reference(self.document_type, self.provider_id, self.sequence_number)


class IssuedInvoice(_IssuedBase):
    type: Literal["invoice"] = "invoice"


class IssuedInvoiceReceipt(_IssuedBase):
    type: Literal["invoice_receipt"] = "invoice_receipt"


class IssuedReceipt(_IssuedBase):
    type: Literal["receipt"] = "receipt"


class IssuedCreditNote(_IssuedBase):
    type: Literal["credit_note"] = "credit_note"


IssuedDocument = Annotated[
    Union[IssuedInvoice, IssuedInvoiceReceipt, IssuedReceipt, IssuedCreditNote],
    Field(discriminator="type")
]

issued_document_adapter = TypeAdapter(IssuedDocument)


def parse_issued_document(data: Dict[str, Any]) -> "_IssuedBase":
    """Validar la respuesta del proveedor antes de tocar registros locales."""
    return issued_document_adapter.validate_python(data)


class SnapshotItem(BaseModel):
    name: str
    description: Optional[str] = None
    unit_price: Decimal = Decimal("0")
    quantity: Decimal = Decimal("1")
    tax: Optional[TaxInfo] = None
    discount: Optional[Decimal] = None
    subtotal: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    total: Optional[Decimal] = None


class DocumentSnapshot(BaseModel):
    """Copia completa de un documento tal como lo ve el proveedor."""
    provider_id: int
    type: DocumentType
    status: DocumentStatus
    sequence_number: Optional[str] = None
    atcud: Optional[str] = None
    issue_date: Optional[str] = None
    due_date: Optional[str] = None
    permalink: Optional[str] = None
    before_taxes: Optional[Decimal] = None
    taxes: Optional[Decimal] = None
    total: Optional[Decimal] = None
    currency: Optional[str] = None
    tax_exemption: Optional[str] = None
    client: Optional[DocumentClient] = None
    items: List[SnapshotItem] = []
    pdf_url: Optional[str] = None
    qr_code_url: Optional[str] = None

    @property
    def reference(self) -> str:
        return format_reference(self.type, self.provider_id, self.sequence_number)


# ===== API =====

class DraftLineOut(BaseModel):
    name: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal

    class Config:
        from_attributes = True


class DraftPreviewOut(BaseModel):
    document_type: DocumentType
    client_name: Optional[str] = None
    client_nif: Optional[str] = None
    issue_date: date
    lines: List[DraftLineOut]
    subtotal: Decimal
    tax_total: Decimal
    total: Decimal
    tax_exemption_reason: Optional[str] = None
    observations: Optional[str] = None

    class Config:
        from_attributes = True


class IssueDocumentRequest(BaseModel):
    observations: Optional[str] = Field(None, max_length=2000, description="Observaciones; por defecto se generan a partir de las fechas de pago")


class CancelDocumentRequest(BaseModel):
    reason: str = Field(..., description="Motivo de la anulación")

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, v):
        if not v or not v.strip():
            raise ValueError('El motivo es obligatorio')
        return v.strip()


class CreditNoteRequest(BaseModel):
    reason: str = Field(..., description="Motivo de la nota de crédito")
    items: Optional[List[DocumentItem]] = Field(None, description="Ítems personalizados; por defecto se copian del original")

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, v):
        if not v or not v.strip():
            raise ValueError('El motivo es obligatorio')
        return v.strip()


class SendDocumentEmailRequest(BaseModel):
    email: EmailStr
    subject: Optional[str] = Field(None, max_length=255)
    body: Optional[str] = Field(None, max_length=5000)


class FiscalDocumentOut(BaseModel):
    """Referencia fiscal guardada en un pago o en la venta."""
    provider_id: Optional[int] = None
    document_type: Optional[str] = None
    reference: Optional[str] = None
    status: Optional[str] = None
    file_url: Optional[str] = None
    qr_code_url: Optional[str] = None
    cancellation_reason: Optional[str] = None
    credit_note_reference: Optional[str] = None
    available_actions: List[str] = []


class SyncResultOut(BaseModel):
    record_id: str
    outcome: str  # updated | unchanged | failed
    changes: Dict[str, Any] = {}
    error: Optional[str] = None


class SyncReportOut(BaseModel):
    updated: int
    unchanged: int
    failed: int
    results: List[SyncResultOut]


class DocumentDetailsOut(BaseModel):
    document: DocumentSnapshot
    link: FiscalDocumentOut
    sync: Optional[SyncResultOut] = None


class ReceiptAvailabilityOut(BaseModel):
    available: bool
    reason: Optional[str] = None
