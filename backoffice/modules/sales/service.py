from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID
from datetime import date
import logging

from backoffice.common.exceptions import ConflictError, ValidationError
from backoffice.modules.sales.guard import InFlightRegistry, record_guard
from backoffice.modules.sales.installments import (
    InstallmentPlan, SequentialPipeline, plan_installments
)
from backoffice.modules.sales.models import (
    Sale, SalePayment, SaleStatus, PaymentRecordStatus
)
from backoffice.modules.sales.repository import PaymentLedgerRepository
from backoffice.modules.sales.schemas import PaymentCreate, PaymentUpdate, InstallmentPlanRequest
from backoffice.modules.sales.summary import PaymentSummary, calculate_payment_summary, ZERO

logger = logging.getLogger(__name__)


def ledger_key(sale_id: UUID):
    """Clave del guard para las operaciones que agendan saldo de la venta."""
    return ("ledger", sale_id)


def deletion_blocker(payment: SalePayment, sale: Optional[Sale] = None) -> Optional[str]:
    """
    Motivo por el que un pago no se puede eliminar, o None si se puede.
    """
    if payment.status != PaymentRecordStatus.PENDING:
        return "Solo se pueden eliminar pagos pendientes"
    if payment.fiscal_protected:
        return "El pago está protegido por un documento fiscal"
    if payment.document_provider_id is not None and payment.document_status != "cancelled":
        return "El pago tiene un documento fiscal emitido"
    if sale is not None and sale.status == SaleStatus.DELIVERED:
        return "La venta ya fue entregada"
    return None


class PaymentLedgerService:
    """
    Mutaciones del libro de cobros de una venta.

    Cada escritura es independiente; el resumen se recalcula en cada lectura.
    """

    def __init__(self, repository: PaymentLedgerRepository, guard: InFlightRegistry = record_guard):
        self.repository = repository
        self.guard = guard

    async def get_ledger(self, sale_id: UUID) -> Tuple[Sale, List[SalePayment], PaymentSummary]:
        sale = await self.repository.get_sale(sale_id)
        payments = await self.repository.list_payments(sale_id)
        return sale, payments, calculate_payment_summary(payments, sale.total_value)

    async def get_summary(self, sale_id: UUID) -> PaymentSummary:
        _, _, summary = await self.get_ledger(sale_id)
        return summary

    @staticmethod
    def _ensure_schedulable(sale: Sale) -> None:
        if sale.status == SaleStatus.CANCELLED:
            raise ConflictError("No se pueden registrar pagos en una venta cancelada")

    async def create_payment(self, sale_id: UUID, payment_data: PaymentCreate) -> SalePayment:
        """
        Registrar un pago (cobrado o agendado).

        Se rechaza si la venta está cancelada, si ya no queda saldo por
        agendar o si el monto supera ese saldo.
        """
        async with self.guard.hold(ledger_key(sale_id)):
            sale, _, summary = await self.get_ledger(sale_id)
            self._ensure_schedulable(sale)

            if not summary.can_add_payment:
                raise ConflictError("La venta no tiene saldo pendiente por agendar")

            if payment_data.amount > summary.remaining_to_schedule:
                raise ValidationError(
                    f"El monto ({payment_data.amount}) supera el saldo por agendar ({summary.remaining_to_schedule})"
                )

            payment = await self.repository.add_payment(sale_id, {
                "amount": payment_data.amount,
                "payment_date": payment_data.payment_date,
                "payment_method": payment_data.payment_method,
                "status": payment_data.status,
                "notes": payment_data.notes,
                "document_reference": payment_data.document_reference,
                "document_file_url": payment_data.document_file_url,
                "fiscal_protected": False,
            })
        logger.info(f"Payment {payment.id} created for sale {sale_id}: {payment.amount} ({payment.status.value})")
        return payment

    async def update_payment(self, sale_id: UUID, payment_id: UUID, payment_update: PaymentUpdate) -> SalePayment:
        """Editar monto, fecha, método o notas de un pago pendiente."""
        async with self.guard.hold(payment_id):
            payment = await self.repository.get_payment(sale_id, payment_id)

            if payment.status != PaymentRecordStatus.PENDING:
                raise ConflictError("Solo se pueden editar pagos pendientes")

            changes = payment_update.model_dump(exclude_unset=True)
            if "amount" not in changes or changes["amount"] == payment.amount:
                return await self.repository.update_payment(payment, changes)

            async with self.guard.hold(ledger_key(sale_id)):
                summary = await self.get_summary(sale_id)
                available = summary.remaining_to_schedule + Decimal(str(payment.amount))
                if changes["amount"] > available:
                    raise ValidationError(
                        f"El monto ({changes['amount']}) supera el saldo por agendar ({available})"
                    )
                return await self.repository.update_payment(payment, changes)

    async def delete_payment(self, sale_id: UUID, payment_id: UUID) -> None:
        async with self.guard.hold(payment_id):
            sale = await self.repository.get_sale(sale_id)
            payment = await self.repository.get_payment(sale_id, payment_id)

            reason = deletion_blocker(payment, sale)
            if reason:
                raise ConflictError(reason)

            await self.repository.delete_payment(payment)
            logger.info(f"Payment {payment_id} deleted from sale {sale_id}")

    async def mark_paid(self, sale_id: UUID, payment_id: UUID, paid_on: Optional[date] = None) -> SalePayment:
        async with self.guard.hold(payment_id):
            payment = await self.repository.get_payment(sale_id, payment_id)
            if payment.status == PaymentRecordStatus.PAID:
                raise ConflictError("El pago ya está marcado como pagado")

            changes = {"status": PaymentRecordStatus.PAID}
            if paid_on:
                changes["payment_date"] = paid_on
            return await self.repository.update_payment(payment, changes)

    # ===== CUOTAS =====

    async def preview_installments(self, sale_id: UUID, request: InstallmentPlanRequest) -> InstallmentPlan:
        """Calcular el plan de cuotas sin escribir nada."""
        sale, _, summary = await self.get_ledger(sale_id)
        self._ensure_schedulable(sale)

        amount = request.amount if request.amount is not None else summary.remaining_to_schedule
        if amount <= ZERO:
            raise ConflictError("La venta no tiene saldo pendiente por agendar")
        if amount > summary.remaining_to_schedule:
            raise ValidationError(
                f"El monto ({amount}) supera el saldo por agendar ({summary.remaining_to_schedule})"
            )

        return plan_installments(
            amount,
            request.count,
            dates=request.dates,
            payment_method=request.payment_method,
        )

    async def confirm_installments(self, sale_id: UUID, request: InstallmentPlanRequest) -> List[SalePayment]:
        """
        Crear un pago pendiente por cuota, en orden y uno a la vez.

        Si una cuota falla, las anteriores permanecen y se lanza
        PartialSequenceError con los pagos creados.
        """
        async with self.guard.hold(ledger_key(sale_id)):
            plan = await self.preview_installments(sale_id, request)

            async def create(installment) -> SalePayment:
                return await self.repository.add_payment(sale_id, {
                    "amount": installment.amount,
                    "payment_date": installment.due_date,
                    "payment_method": installment.payment_method,
                    "status": PaymentRecordStatus.PENDING,
                    "notes": installment.label,
                    "fiscal_protected": False,
                })

            pipeline = SequentialPipeline(plan.installments, description=f"installments for sale {sale_id}")
            created = await pipeline.run(create)
            logger.info(f"Created {len(created)} installments for sale {sale_id} ({plan.total})")
            return created
