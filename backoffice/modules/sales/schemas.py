from pydantic import BaseModel, Field, field_validator, model_validator
from decimal import Decimal
from typing import Optional, List
from uuid import UUID
from datetime import date, datetime
from backoffice.modules.sales.models import PaymentMethod, PaymentRecordStatus


# Payment Schemas
class PaymentCreate(BaseModel):
    amount: Decimal = Field(..., gt=0, description="Monto del pago")
    payment_date: date = Field(default_factory=date.today)
    payment_method: Optional[PaymentMethod] = None
    status: PaymentRecordStatus = PaymentRecordStatus.PAID
    notes: Optional[str] = Field(None, max_length=1000)
    document_reference: Optional[str] = Field(None, max_length=100, description="Referencia de un documento emitido fuera del sistema")
    document_file_url: Optional[str] = None

    @field_validator('amount')
    @classmethod
    def validate_amount(cls, v):
        if v <= 0:
            raise ValueError('El monto debe ser mayor a 0')
        return v.quantize(Decimal('0.01'))

    @field_validator('notes', 'document_reference')
    @classmethod
    def strip_blank(cls, v):
        if v is None:
            return v
        v = v.strip()
        return v or None


class PaymentUpdate(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0)
    payment_date: Optional[date] = None
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = Field(None, max_length=1000)

    # Omitted fields are left as they are; an explicit null is an error
    @field_validator('amount', 'payment_date')
    @classmethod
    def reject_null(cls, v, info):
        if v is None:
            raise ValueError(f'{info.field_name} no puede ser nulo')
        return v

    @field_validator('amount')
    @classmethod
    def validate_amount(cls, v):
        if v is not None and v <= 0:
            raise ValueError('El monto debe ser mayor a 0')
        return v.quantize(Decimal('0.01')) if v is not None else v


class PaymentOut(BaseModel):
    id: UUID
    sale_id: UUID
    amount: Decimal
    payment_date: date
    payment_method: Optional[PaymentMethod] = None
    status: PaymentRecordStatus
    fiscal_protected: bool = False
    notes: Optional[str] = None
    document_provider_id: Optional[int] = None
    document_type: Optional[str] = None
    document_reference: Optional[str] = None
    document_status: Optional[str] = None
    document_file_url: Optional[str] = None
    qr_code_url: Optional[str] = None
    credit_note_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentSummaryOut(BaseModel):
    total: Decimal
    paid: Decimal
    pending_scheduled: Decimal
    remaining: Decimal
    remaining_to_schedule: Decimal
    percentage: Decimal
    payment_status: str
    can_add_payment: bool
    is_over_scheduled: bool

    class Config:
        from_attributes = True


class SalePaymentsOut(BaseModel):
    sale_id: UUID
    payments: List[PaymentOut]
    summary: PaymentSummaryOut


# Installment Schemas
class InstallmentPlanRequest(BaseModel):
    count: int = Field(..., ge=1, description="Número de cuotas")
    dates: Optional[List[date]] = Field(None, description="Una fecha por cuota; por defecto cada 30 días")
    payment_method: Optional[PaymentMethod] = None
    amount: Optional[Decimal] = Field(None, gt=0, description="Monto a dividir; por defecto todo lo pendiente de agendar")

    @model_validator(mode='after')
    def validate_dates(self):
        if self.dates is not None and len(self.dates) != self.count:
            raise ValueError('Debe indicar exactamente una fecha por cuota')
        return self


class InstallmentOut(BaseModel):
    ordinal: int
    count: int
    amount: Decimal
    due_date: date
    payment_method: Optional[PaymentMethod] = None
    label: str

    class Config:
        from_attributes = True


class InstallmentPlanOut(BaseModel):
    remaining: Decimal
    total: Decimal
    installments: List[InstallmentOut]

    class Config:
        from_attributes = True


class InstallmentConfirmOut(BaseModel):
    created: List[PaymentOut]
    summary: PaymentSummaryOut
