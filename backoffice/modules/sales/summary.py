"""
Cálculo del resumen de cobros de una venta.

Función pura: se recalcula a partir del libro de cobros en cada lectura y
nunca se persiste, así que no puede quedar desactualizada.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from backoffice.modules.sales.models import PaymentRecordStatus

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _status_value(status) -> str:
    return status.value if isinstance(status, PaymentRecordStatus) else str(status)


@dataclass(frozen=True)
class PaymentSummary:
    total: Decimal
    paid: Decimal
    pending_scheduled: Decimal
    remaining: Decimal
    remaining_to_schedule: Decimal
    percentage: Decimal
    payment_status: str  # pending | partial | paid

    @property
    def can_add_payment(self) -> bool:
        return self.remaining_to_schedule > ZERO

    @property
    def is_over_scheduled(self) -> bool:
        return self.paid + self.pending_scheduled > self.total


def calculate_payment_summary(payments: Iterable, sale_total) -> PaymentSummary:
    """
    Derivar pagado / agendado / restante a partir de los cobros.

    Args:
        payments: Objetos con ``amount`` y ``status`` (pending | paid)
        sale_total: Valor total de la venta

    Returns:
        PaymentSummary. Ambos restantes se limitan a cero cuando lo
        cobrado o agendado supera el total.
    """
    total = to_money(sale_total)
    paid = ZERO
    pending = ZERO

    for payment in payments:
        amount = to_money(payment.amount)
        status = _status_value(payment.status)
        if status == PaymentRecordStatus.PAID.value:
            paid += amount
        elif status == PaymentRecordStatus.PENDING.value:
            pending += amount

    remaining = max(ZERO, total - paid)
    remaining_to_schedule = max(ZERO, total - paid - pending)

    if total > ZERO:
        percentage = min(Decimal("100"), paid / total * 100).quantize(CENT, rounding=ROUND_HALF_UP)
    else:
        percentage = ZERO

    if paid == ZERO:
        payment_status = "pending"
    elif paid >= total:
        payment_status = "paid"
    else:
        payment_status = "partial"

    return PaymentSummary(
        total=total,
        paid=paid,
        pending_scheduled=pending,
        remaining=remaining,
        remaining_to_schedule=remaining_to_schedule,
        percentage=percentage,
        payment_status=payment_status,
    )
