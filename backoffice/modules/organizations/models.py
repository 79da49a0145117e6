from backoffice.database.database import Base
from sqlalchemy import Column, String, Boolean, Numeric, Text
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from backoffice.common.mixins import TenantMixin, TimestampMixin


class Organization(Base, TimestampMixin):
    """Empresa (tenant). Solo se consulta su configuración fiscal."""
    __tablename__ = "organizations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(200), nullable=False)

    # Integración con el proveedor fiscal
    fiscal_provider_enabled = Column(Boolean, nullable=False, default=True)
    fiscal_account_name = Column(String(100), nullable=True)
    fiscal_api_key = Column(String(200), nullable=True)

    # Configuración de impuestos por defecto
    default_tax_rate = Column(Numeric(5, 2), nullable=True)
    tax_exemption_reason = Column(String(20), nullable=True)  # Ej: "M10"


class Client(Base, TenantMixin, TimestampMixin):
    __tablename__ = "crm_clients"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(200), nullable=False)
    company = Column(String(200), nullable=True)
    code = Column(String(50), nullable=True)
    email = Column(String(150), nullable=True)
    nif = Column(String(20), nullable=True)  # Identificador fiscal
    address_line1 = Column(Text, nullable=True)
    city = Column(String(100), nullable=True)
    postal_code = Column(String(20), nullable=True)
    country = Column(String(60), nullable=True)
