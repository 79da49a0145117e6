"""
Contexto fiscal de solo lectura: configuración de la organización y datos
del cliente de una venta. El núcleo de cobros lo consume, no lo modifica.
"""
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.common.exceptions import NotFoundError
from backoffice.core.config import settings
from backoffice.modules.organizations.models import Organization, Client


class ClientInfo(BaseModel):
    name: str
    company: Optional[str] = None
    code: Optional[str] = None
    email: Optional[str] = None
    nif: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.company or self.name

    @property
    def has_tax_id(self) -> bool:
        return bool(self.nif and self.nif.strip())


class FiscalContext(BaseModel):
    organization_id: UUID
    organization_name: Optional[str] = None
    integration_enabled: bool = True
    account_name: Optional[str] = None
    api_key: Optional[str] = None
    default_tax_rate: Decimal = settings.DEFAULT_TAX_RATE
    tax_exemption_reason: Optional[str] = None
    client: Optional[ClientInfo] = None

    @property
    def credentials_configured(self) -> bool:
        return bool(self.account_name and self.api_key)

    @property
    def provider_available(self) -> bool:
        return self.integration_enabled and self.credentials_configured

    @property
    def client_has_tax_id(self) -> bool:
        return self.client is not None and self.client.has_tax_id


async def load_fiscal_context(db: AsyncSession, tenant_id: UUID, client_id: Optional[UUID] = None) -> FiscalContext:
    """Cargar la configuración fiscal del tenant y, si se indica, el cliente de la venta."""
    org = (await db.execute(select(Organization).where(Organization.id == tenant_id))).scalar_one_or_none()
    if not org:
        raise NotFoundError("Organización no encontrada")

    client_info = None
    if client_id:
        client = (await db.execute(
            select(Client).where(Client.id == client_id, Client.tenant_id == tenant_id)
        )).scalar_one_or_none()
        if client:
            client_info = ClientInfo(
                name=client.name,
                company=client.company,
                code=client.code,
                email=client.email,
                nif=client.nif,
                address=client.address_line1,
                city=client.city,
                postal_code=client.postal_code,
                country=client.country,
            )

    return FiscalContext(
        organization_id=org.id,
        organization_name=org.name,
        integration_enabled=org.fiscal_provider_enabled,
        account_name=org.fiscal_account_name,
        api_key=org.fiscal_api_key,
        default_tax_rate=org.default_tax_rate if org.default_tax_rate is not None else settings.DEFAULT_TAX_RATE,
        tax_exemption_reason=org.tax_exemption_reason,
        client=client_info,
    )
