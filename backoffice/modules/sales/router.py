from fastapi import APIRouter, Depends, status, Response
from typing import Annotated, Optional
from uuid import UUID
from datetime import date

from backoffice.dependencies.dbDependecies import async_db_dependency
from backoffice.dependencies.tenantDependencies import TenantId
from backoffice.modules.sales.repository import SqlPaymentLedgerRepository
from backoffice.modules.sales.service import PaymentLedgerService
from backoffice.modules.sales.schemas import (
    PaymentCreate, PaymentUpdate, PaymentOut, PaymentSummaryOut, SalePaymentsOut,
    InstallmentPlanRequest, InstallmentPlanOut, InstallmentConfirmOut
)

router = APIRouter(prefix="/sales", tags=["Sale Payments"])


def get_ledger_service(db: async_db_dependency, tenant_id: TenantId) -> PaymentLedgerService:
    return PaymentLedgerService(SqlPaymentLedgerRepository(db, tenant_id))


LedgerService = Annotated[PaymentLedgerService, Depends(get_ledger_service)]


@router.get("/{sale_id}/payments", response_model=SalePaymentsOut)
async def list_payments(sale_id: UUID, service: LedgerService):
    """
    Listar los pagos de una venta junto con el resumen de cobro

    El resumen (pagado, agendado, restante) se recalcula en cada consulta.
    """
    sale, payments, summary = await service.get_ledger(sale_id)
    return SalePaymentsOut(
        sale_id=sale.id,
        payments=[PaymentOut.model_validate(p) for p in payments],
        summary=PaymentSummaryOut.model_validate(summary)
    )


@router.get("/{sale_id}/payments/summary", response_model=PaymentSummaryOut)
async def get_payment_summary(sale_id: UUID, service: LedgerService):
    summary = await service.get_summary(sale_id)
    return PaymentSummaryOut.model_validate(summary)


@router.post("/{sale_id}/payments", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
async def create_payment(sale_id: UUID, payment_data: PaymentCreate, service: LedgerService):
    """
    Registrar un pago o un cobro agendado

    Solo está disponible mientras quede saldo por agendar.
    """
    payment = await service.create_payment(sale_id, payment_data)
    return PaymentOut.model_validate(payment)


@router.patch("/{sale_id}/payments/{payment_id}", response_model=PaymentOut)
async def update_payment(sale_id: UUID, payment_id: UUID, payment_update: PaymentUpdate, service: LedgerService):
    """Editar un pago (solo pendientes)"""
    payment = await service.update_payment(sale_id, payment_id, payment_update)
    return PaymentOut.model_validate(payment)


@router.delete("/{sale_id}/payments/{payment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_payment(sale_id: UUID, payment_id: UUID, service: LedgerService):
    """
    Eliminar un pago

    Se rechaza si el pago está pagado, protegido por un documento fiscal o
    si la venta ya fue entregada.
    """
    await service.delete_payment(sale_id, payment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{sale_id}/payments/{payment_id}/mark-paid", response_model=PaymentOut)
async def mark_payment_paid(sale_id: UUID, payment_id: UUID, service: LedgerService, paid_on: Optional[date] = None):
    payment = await service.mark_paid(sale_id, payment_id, paid_on)
    return PaymentOut.model_validate(payment)


# --- CUOTAS ---

@router.post("/{sale_id}/installments/preview", response_model=InstallmentPlanOut)
async def preview_installments(sale_id: UUID, request: InstallmentPlanRequest, service: LedgerService):
    """
    Calcular el plan de cuotas sin crear pagos

    La última cuota absorbe la diferencia de redondeo.
    """
    plan = await service.preview_installments(sale_id, request)
    return InstallmentPlanOut.model_validate(plan, from_attributes=True)


@router.post("/{sale_id}/installments", response_model=InstallmentConfirmOut, status_code=status.HTTP_201_CREATED)
async def confirm_installments(sale_id: UUID, request: InstallmentPlanRequest, service: LedgerService):
    """
    Crear un pago pendiente por cuota, en orden

    Si una cuota falla las anteriores no se revierten; la respuesta 207
    indica qué pagos se crearon y en qué cuota se detuvo.
    """
    created = await service.confirm_installments(sale_id, request)
    summary = await service.get_summary(sale_id)
    return InstallmentConfirmOut(
        created=[PaymentOut.model_validate(p) for p in created],
        summary=PaymentSummaryOut.model_validate(summary)
    )
