"""
Repositorio del libro de cobros, acotado por tenant.

Todas las lecturas y escrituras de cobros pasan por aquí; los valores
derivados (pagado, restante...) nunca se guardan, se recalculan con
``calculate_payment_summary`` a partir de lo que devuelve el repositorio.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.common.exceptions import ConflictError, NotFoundError
from backoffice.modules.sales.models import Sale, SaleItem, SalePayment, PaymentRecordStatus

SYNC_EXCLUDED_STATUSES = ("cancelled",)


class PaymentLedgerRepository(ABC):
    """Contrato de persistencia del libro de cobros."""

    tenant_id: UUID

    @abstractmethod
    async def get_sale(self, sale_id: UUID) -> Sale: ...

    @abstractmethod
    async def list_sale_items(self, sale_id: UUID) -> List[SaleItem]: ...

    @abstractmethod
    async def list_payments(self, sale_id: UUID) -> List[SalePayment]: ...

    @abstractmethod
    async def get_payment(self, sale_id: UUID, payment_id: UUID) -> SalePayment: ...

    @abstractmethod
    async def add_payment(self, sale_id: UUID, fields: Dict[str, Any]) -> SalePayment: ...

    @abstractmethod
    async def update_payment(self, payment: SalePayment, fields: Dict[str, Any]) -> SalePayment: ...

    @abstractmethod
    async def delete_payment(self, payment: SalePayment) -> None: ...

    @abstractmethod
    async def update_sale(self, sale: Sale, fields: Dict[str, Any]) -> Sale: ...

    @abstractmethod
    async def find_stale_fiscal_records(
        self, synced_before: datetime, limit: int = 100
    ) -> Tuple[List[Sale], List[SalePayment]]: ...


class SqlPaymentLedgerRepository(PaymentLedgerRepository):
    """Implementación sobre SQLAlchemy AsyncSession; cada escritura hace commit."""

    def __init__(self, db: AsyncSession, tenant_id: UUID):
        self.db = db
        self.tenant_id = tenant_id

    async def get_sale(self, sale_id: UUID) -> Sale:
        query = select(Sale).where(and_(Sale.id == sale_id, Sale.tenant_id == self.tenant_id))
        result = await self.db.execute(query)
        sale = result.scalar_one_or_none()
        if not sale:
            raise NotFoundError("Venta no encontrada")
        return sale

    async def list_sale_items(self, sale_id: UUID) -> List[SaleItem]:
        query = select(SaleItem).where(SaleItem.sale_id == sale_id).order_by(SaleItem.created_at)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_payments(self, sale_id: UUID) -> List[SalePayment]:
        query = select(SalePayment).where(
            and_(
                SalePayment.sale_id == sale_id,
                SalePayment.tenant_id == self.tenant_id
            )
        ).order_by(SalePayment.payment_date, SalePayment.created_at)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_payment(self, sale_id: UUID, payment_id: UUID) -> SalePayment:
        query = select(SalePayment).where(
            and_(
                SalePayment.id == payment_id,
                SalePayment.sale_id == sale_id,
                SalePayment.tenant_id == self.tenant_id
            )
        )
        result = await self.db.execute(query)
        payment = result.scalar_one_or_none()
        if not payment:
            raise NotFoundError("Pago no encontrado")
        return payment

    async def add_payment(self, sale_id: UUID, fields: Dict[str, Any]) -> SalePayment:
        payment = SalePayment(tenant_id=self.tenant_id, sale_id=sale_id, **fields)
        self.db.add(payment)
        await self.db.commit()
        await self.db.refresh(payment)
        return payment

    async def update_payment(self, payment: SalePayment, fields: Dict[str, Any]) -> SalePayment:
        for key, value in fields.items():
            setattr(payment, key, value)
        await self.db.commit()
        await self.db.refresh(payment)
        return payment

    async def delete_payment(self, payment: SalePayment) -> None:
        if payment.status != PaymentRecordStatus.PENDING:
            raise ConflictError("Solo se pueden eliminar pagos pendientes")
        await self.db.delete(payment)
        await self.db.commit()

    async def update_sale(self, sale: Sale, fields: Dict[str, Any]) -> Sale:
        for key, value in fields.items():
            setattr(sale, key, value)
        await self.db.commit()
        await self.db.refresh(sale)
        return sale

    async def find_stale_fiscal_records(
        self, synced_before: datetime, limit: int = 100
    ) -> Tuple[List[Sale], List[SalePayment]]:
        """Documentos emitidos sin PDF en caché o con estado sin confirmar recientemente."""

        def stale(model):
            return and_(
                model.tenant_id == self.tenant_id,
                model.document_provider_id.isnot(None),
                or_(
                    model.document_file_url.is_(None),
                    and_(
                        or_(model.document_status.is_(None), model.document_status.notin_(SYNC_EXCLUDED_STATUSES)),
                        or_(model.document_synced_at.is_(None), model.document_synced_at < synced_before)
                    )
                )
            )

        def oldest_first(model):
            # Missing PDFs first, then the longest without a sync
            return model.document_file_url.isnot(None), model.document_synced_at.asc().nullsfirst()

        sales = await self.db.execute(select(Sale).where(stale(Sale)).order_by(*oldest_first(Sale)).limit(limit))
        payments = await self.db.execute(
            select(SalePayment).where(stale(SalePayment)).order_by(*oldest_first(SalePayment)).limit(limit)
        )
        return list(sales.scalars().all()), list(payments.scalars().all())
