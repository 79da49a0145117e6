"""
Construcción local del borrador de un documento fiscal.

Todo lo de este módulo es puro: calcula líneas, impuestos y observaciones
a partir de la venta y la configuración de la organización, sin tocar la
base de datos ni el proveedor. La vista previa y la emisión usan el mismo
borrador, así que lo que el usuario revisa es exactamente lo que se envía.
"""
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from backoffice.common.exceptions import ValidationError
from backoffice.core.config import settings
from backoffice.modules.fiscal.schemas import (
    DocumentClient, DocumentItem, DocumentRequest, DocumentType, TaxInfo
)
from backoffice.modules.organizations.context import ClientInfo, FiscalContext
from backoffice.modules.sales.summary import ZERO, to_money

UNIT_PRICE_QUANTUM = Decimal("0.0001")

COUNTRY_NAMES = {
    "PT": "Portugal", "ES": "Espanha", "FR": "França", "DE": "Alemanha", "IT": "Itália",
    "GB": "Reino Unido", "US": "Estados Unidos", "BR": "Brasil", "AO": "Angola", "MZ": "Moçambique",
    "CV": "Cabo Verde", "NL": "Países Baixos", "BE": "Bélgica", "CH": "Suíça", "AT": "Áustria",
    "IE": "Irlanda", "LU": "Luxemburgo", "PL": "Polónia", "SE": "Suécia", "DK": "Dinamarca",
}


def map_country(country: Optional[str]) -> str:
    """Convertir códigos ISO de dos letras al nombre que espera el proveedor."""
    if not country or not country.strip():
        return settings.DEFAULT_COUNTRY
    code = country.strip().upper()
    if len(code) == 2 and code in COUNTRY_NAMES:
        return COUNTRY_NAMES[code]
    return country.strip()


def format_date(value: date) -> str:
    return value.strftime("%d/%m/%Y")


def tax_label(rate: Decimal) -> str:
    if rate == ZERO:
        return "Isento"
    return f"IVA{Decimal(rate).normalize():f}"


@dataclass(frozen=True)
class DraftLine:
    name: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal
    exemption_reason: Optional[str] = None
    description: Optional[str] = None
    gross_amount: Optional[Decimal] = None

    @property
    def subtotal(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)

    @property
    def tax_amount(self) -> Decimal:
        # A fixed gross keeps the rounding difference in the tax
        if self.gross_amount is not None:
            return self.gross_amount - self.subtotal
        return to_money(self.subtotal * self.tax_rate / Decimal("100"))

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.tax_amount

    @property
    def is_exempt(self) -> bool:
        return self.tax_rate == ZERO

    def to_item(self) -> DocumentItem:
        return DocumentItem(
            name=self.name,
            description=self.description or self.name,
            unit_price=self.unit_price,
            quantity=self.quantity,
            tax=TaxInfo(name=tax_label(self.tax_rate), value=self.tax_rate),
            exemption_reason=self.exemption_reason if self.is_exempt else None,
        )


@dataclass
class DocumentDraft:
    document_type: DocumentType
    issue_date: date
    lines: List[DraftLine]
    client: Optional[ClientInfo] = None
    observations: Optional[str] = None
    tax_exemption_reason: Optional[str] = None

    @property
    def subtotal(self) -> Decimal:
        return sum((line.subtotal for line in self.lines), ZERO)

    @property
    def tax_total(self) -> Decimal:
        return sum((line.tax_amount for line in self.lines), ZERO)

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.tax_total

    @property
    def client_name(self) -> Optional[str]:
        return self.client.display_name if self.client else None

    @property
    def client_nif(self) -> Optional[str]:
        return self.client.nif if self.client else None

    def to_request(self, issue_date: Optional[date] = None, proprietary_uid: Optional[str] = None) -> DocumentRequest:
        """Convertir el borrador en la petición que se envía al proveedor."""
        when = issue_date or self.issue_date
        return DocumentRequest(
            doc_type=self.document_type,
            issue_date=when,
            due_date=when,
            client=document_client(self.client),
            items=[line.to_item() for line in self.lines],
            observations=self.observations or None,
            tax_exemption=self.tax_exemption_reason,
            proprietary_uid=proprietary_uid,
        )


def document_client(client: Optional[ClientInfo]) -> Optional[DocumentClient]:
    if client is None:
        return None
    return DocumentClient(
        name=client.display_name or "Cliente",
        code=client.code or client.nif,
        fiscal_id=client.nif,
        email=client.email or "",
        address=client.address or "",
        city=client.city or "",
        postal_code=client.postal_code or "",
        country=map_country(client.country),
    )


def resolve_line(name, unit_price, quantity, item_rate, item_exemption, context: FiscalContext, description=None) -> DraftLine:
    """Línea con la tasa del ítem o, si no tiene, la de la organización."""
    rate = Decimal(item_rate) if item_rate is not None else Decimal(context.default_tax_rate)
    reason = None
    if rate == ZERO:
        reason = item_exemption or context.tax_exemption_reason
    return DraftLine(
        name=name,
        quantity=Decimal(quantity),
        unit_price=Decimal(unit_price),
        tax_rate=rate,
        exemption_reason=reason,
        description=description,
    )


def lines_from_sale_items(items: Iterable, context: FiscalContext) -> List[DraftLine]:
    return [
        resolve_line(item.name, item.unit_price, item.quantity, item.tax_rate, item.tax_exemption_reason, context)
        for item in items
    ]


def direct_amount_line(name: str, gross_amount, context: FiscalContext, description: Optional[str] = None) -> DraftLine:
    """
    Línea única cuyo total (con impuestos) es ``gross_amount``.

    El precio unitario se obtiene descontando el IVA de la organización, así
    el documento cobra exactamente el importe pagado.
    """
    rate = Decimal(context.default_tax_rate)
    gross = to_money(gross_amount)
    net = (gross * Decimal("100") / (Decimal("100") + rate)).quantize(UNIT_PRICE_QUANTUM)
    reason = context.tax_exemption_reason if rate == ZERO else None
    return DraftLine(
        name=name,
        quantity=Decimal("1"),
        unit_price=net,
        tax_rate=rate,
        exemption_reason=reason,
        description=description,
        gross_amount=gross,
    )


def validate_exemptions(lines: Sequence[DraftLine]) -> Optional[str]:
    """
    Comprobar que todas las líneas exentas tienen motivo de exención.

    Returns:
        El primer motivo encontrado (se usa como exención del documento) o None
    """
    exempt = [line for line in lines if line.is_exempt]
    if not exempt:
        return None
    missing = [line.name for line in exempt if not line.exemption_reason]
    if missing:
        raise ValidationError(
            "Configure el motivo de exención de IVA en el producto o en la organización antes de emitir "
            f"({', '.join(missing)})"
        )
    return exempt[0].exemption_reason


def default_observations(paid_payments: Sequence) -> Optional[str]:
    """
    Observaciones por defecto a partir de los pagos cobrados.

    Un pago: "Pago recibido el dd/mm/aaaa". Varios: una lista con importe y
    fecha de cada uno.
    """
    paid = sorted(paid_payments, key=lambda p: p.payment_date)
    if not paid:
        return None
    if len(paid) == 1:
        return f"Pago recibido el {format_date(paid[0].payment_date)}"
    lines = [f"- {to_money(p.amount)} EUR el {format_date(p.payment_date)}" for p in paid]
    return "Pagos recibidos:\n" + "\n".join(lines)


def build_draft(
    document_type: DocumentType,
    lines: List[DraftLine],
    context: FiscalContext,
    observations: Optional[str] = None,
    issue_date: Optional[date] = None,
) -> DocumentDraft:
    if not lines:
        raise ValidationError("El documento no tiene líneas")
    reason = validate_exemptions(lines)
    return DocumentDraft(
        document_type=document_type,
        issue_date=issue_date or date.today(),
        lines=lines,
        client=context.client,
        observations=observations,
        tax_exemption_reason=reason,
    )
