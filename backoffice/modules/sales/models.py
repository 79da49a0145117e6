from backoffice.database.database import Base
from sqlalchemy import Column, String, Boolean, ForeignKey, Numeric, Enum, Date, Text
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import UUID
from datetime import date
from uuid import uuid4
from backoffice.common.mixins import TenantMixin, TimestampMixin, FiscalLinkMixin
from backoffice.modules.organizations.models import Client
import enum


class SaleStatus(str, enum.Enum):
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    FULFILLED = "fulfilled"
    DELIVERED = "delivered"    # Terminal: ya no se eliminan pagos
    CANCELLED = "cancelled"    # Terminal


class PaymentMethod(str, enum.Enum):
    MBWAY = "mbway"
    TRANSFER = "transfer"
    CASH = "cash"
    CARD = "card"
    CHECK = "check"
    OTHER = "other"


class PaymentRecordStatus(str, enum.Enum):
    PENDING = "pending"    # Agendado, aún no cobrado
    PAID = "paid"          # Cobrado


class Sale(Base, TenantMixin, TimestampMixin, FiscalLinkMixin):
    """
    Venta (raíz del agregado). Los campos de FiscalLinkMixin guardan la
    factura a nivel de venta (FT) cuando se emite una.
    """
    __tablename__ = "sales"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String(50), nullable=True)
    client_id = Column(UUID(as_uuid=True), ForeignKey("crm_clients.id"), nullable=True)
    sale_date = Column(Date, nullable=False, default=date.today)
    status = Column(Enum(SaleStatus), nullable=False, default=SaleStatus.DRAFT)
    total_value = Column(Numeric(15, 2), nullable=False, default=0)

    client = relationship(Client)
    items = relationship("SaleItem", back_populates="sale", cascade="all, delete-orphan")
    payments = relationship(
        "SalePayment",
        back_populates="sale",
        cascade="all, delete-orphan",
        order_by="SalePayment.payment_date"
    )


class SaleItem(Base, TimestampMixin):
    __tablename__ = "sale_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    sale_id = Column(UUID(as_uuid=True), ForeignKey("sales.id"), nullable=False, index=True)

    name = Column(String(200), nullable=False)
    quantity = Column(Numeric(10, 3), nullable=False, default=1)
    unit_price = Column(Numeric(15, 2), nullable=False)  # Precio sin impuestos
    tax_rate = Column(Numeric(5, 2), nullable=True)       # None = tasa de la organización
    tax_exemption_reason = Column(String(20), nullable=True)

    sale = relationship("Sale", back_populates="items")


class SalePayment(Base, TenantMixin, TimestampMixin, FiscalLinkMixin):
    """
    Entrada del libro de cobros de una venta: un cobro realizado o agendado.
    """
    __tablename__ = "sale_payments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    sale_id = Column(UUID(as_uuid=True), ForeignKey("sales.id"), nullable=False, index=True)

    amount = Column(Numeric(15, 2), nullable=False)
    payment_date = Column(Date, nullable=False, default=date.today)
    payment_method = Column(Enum(PaymentMethod), nullable=True)
    status = Column(Enum(PaymentRecordStatus), nullable=False, default=PaymentRecordStatus.PENDING)
    fiscal_protected = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)

    sale = relationship("Sale", back_populates="payments")
