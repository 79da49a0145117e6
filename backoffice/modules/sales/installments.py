"""
Planificador de cuotas.

Divide un saldo en N cuotas fechadas y las materializa como cobros
pendientes mediante un pipeline estrictamente secuencial.
"""
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal, ROUND_DOWN
from typing import Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar
import logging

from backoffice.common.exceptions import BackofficeError, PartialSequenceError, ValidationError
from backoffice.core.config import settings
from backoffice.modules.sales.models import PaymentMethod
from backoffice.modules.sales.summary import CENT, ZERO, to_money

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Installment:
    ordinal: int
    count: int
    amount: Decimal
    due_date: date
    payment_method: Optional[PaymentMethod] = None

    @property
    def label(self) -> str:
        return f"Cuota {self.ordinal}/{self.count}"


@dataclass(frozen=True)
class InstallmentPlan:
    remaining: Decimal
    installments: List[Installment] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return sum((i.amount for i in self.installments), ZERO)


def split_amount(remaining, count: int) -> List[Decimal]:
    """
    Dividir ``remaining`` en ``count`` partes redondeadas hacia abajo al
    céntimo; la última absorbe la diferencia para que la suma sea exacta.
    """
    remaining = to_money(remaining)
    base = (remaining / count).quantize(CENT, rounding=ROUND_DOWN)
    last = remaining - base * (count - 1)
    return [base] * (count - 1) + [last]


def default_installment_dates(count: int, start: Optional[date] = None, interval_days: Optional[int] = None) -> List[date]:
    start = start or date.today()
    interval = interval_days if interval_days is not None else settings.INSTALLMENT_INTERVAL_DAYS
    return [start + timedelta(days=interval * (i + 1)) for i in range(count)]


def plan_installments(
    remaining,
    count: int,
    dates: Optional[Sequence[date]] = None,
    payment_method: Optional[PaymentMethod] = None,
    start: Optional[date] = None,
) -> InstallmentPlan:
    """
    Construir el plan de cuotas (sin escribir nada).

    Args:
        remaining: Saldo a dividir (> 0)
        count: Número de cuotas, entre 1 y INSTALLMENT_MAX_COUNT
        dates: Fechas elegidas por el usuario, una por cuota. Si se omite se
            usan fechas separadas INSTALLMENT_INTERVAL_DAYS a partir de ``start``
        payment_method: Método aplicado a todas las cuotas
    """
    remaining = to_money(remaining)
    if remaining <= ZERO:
        raise ValidationError("El saldo a dividir debe ser mayor a 0")

    max_count = settings.INSTALLMENT_MAX_COUNT
    if count < 1 or count > max_count:
        raise ValidationError(f"El número de cuotas debe estar entre 1 y {max_count}")

    if dates is None:
        dates = default_installment_dates(count, start)
    elif len(dates) != count:
        raise ValidationError(f"Se esperaban {count} fechas y se recibieron {len(dates)}")

    amounts = split_amount(remaining, count)
    installments = [
        Installment(
            ordinal=i + 1,
            count=count,
            amount=amounts[i],
            due_date=dates[i],
            payment_method=payment_method,
        )
        for i in range(count)
    ]
    return InstallmentPlan(remaining=remaining, installments=installments)


class SequentialPipeline(Generic[T]):
    """
    Ejecuta una lista de comandos uno a uno, esperando cada resultado antes
    de enviar el siguiente.

    Si el primer paso falla se propaga el error original (no se creó nada).
    Si falla un paso posterior se lanza PartialSequenceError con los
    resultados ya completados, que no se revierten.
    """

    def __init__(self, commands: Sequence, description: str = "secuencia"):
        self.commands = list(commands)
        self.description = description

    async def run(self, execute: Callable[..., Awaitable[T]]) -> List[T]:
        completed: List[T] = []
        total = len(self.commands)

        for step, command in enumerate(self.commands, start=1):
            try:
                result = await execute(command)
            except Exception as exc:
                if not completed:
                    raise
                logger.error(
                    f"{self.description}: step {step}/{total} failed after "
                    f"{len(completed)} completed: {exc}"
                )
                message = exc.message if isinstance(exc, BackofficeError) else str(exc)
                raise PartialSequenceError(
                    f"Se completaron {len(completed)} de {total} pasos; el paso {step} falló: {message}",
                    completed=completed,
                    failed_step=step,
                    total_steps=total,
                    cause=exc,
                ) from exc
            completed.append(result)

        return completed
