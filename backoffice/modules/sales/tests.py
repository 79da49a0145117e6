"""
Tests para el módulo de Ventas (libro de cobros)

Cubren:
- Resumen de cobro (clamping, porcentaje, estado)
- División en cuotas y pipeline secuencial con fallo parcial
- Reglas de edición y eliminación de pagos
- Endpoints con un repositorio en memoria

Todos los tests trabajan sin base de datos: el repositorio en memoria
implementa el mismo contrato que el de SQLAlchemy.
"""

import asyncio
import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from fastapi.testclient import TestClient
from uuid import uuid4

from backoffice.common.exceptions import (
    ConflictError, NotFoundError, PartialSequenceError, RecordBusyError, ValidationError
)
from backoffice.main import app
from backoffice.modules.sales.guard import InFlightRegistry
from backoffice.modules.sales.installments import SequentialPipeline, plan_installments, split_amount
from backoffice.modules.sales.models import (
    PaymentMethod, PaymentRecordStatus, Sale, SaleItem, SalePayment, SaleStatus
)
from backoffice.modules.sales.repository import PaymentLedgerRepository
from backoffice.modules.sales.router import get_ledger_service
from backoffice.modules.sales.schemas import InstallmentPlanRequest, PaymentCreate, PaymentUpdate
from backoffice.modules.sales.service import PaymentLedgerService, deletion_blocker, ledger_key
from backoffice.modules.sales.summary import calculate_payment_summary


# ===== REPOSITORIO EN MEMORIA =====

class InMemoryLedgerRepository(PaymentLedgerRepository):
    """Repositorio de pruebas; ``fail_on_add`` hace fallar la N-ésima inserción."""

    def __init__(self, tenant_id=None):
        self.tenant_id = tenant_id or uuid4()
        self.sales = {}
        self.items = {}
        self.payments = {}
        self.writes = 0
        self.add_calls = 0
        self.fail_on_add = None

    def add_sale(self, total, status=SaleStatus.IN_PROGRESS, client_id=None, code="V-0001") -> Sale:
        sale = Sale(
            id=uuid4(),
            tenant_id=self.tenant_id,
            code=code,
            client_id=client_id,
            sale_date=date(2025, 3, 1),
            status=status,
            total_value=Decimal(str(total)),
        )
        self.sales[sale.id] = sale
        self.items[sale.id] = []
        return sale

    def add_item(self, sale, name, unit_price, quantity=1, tax_rate=None, exemption=None) -> SaleItem:
        item = SaleItem(
            id=uuid4(),
            sale_id=sale.id,
            name=name,
            quantity=Decimal(str(quantity)),
            unit_price=Decimal(str(unit_price)),
            tax_rate=Decimal(str(tax_rate)) if tax_rate is not None else None,
            tax_exemption_reason=exemption,
        )
        self.items[sale.id].append(item)
        return item

    def seed_payment(self, sale, amount, status=PaymentRecordStatus.PAID, payment_date=None, **fields) -> SalePayment:
        payment = SalePayment(
            id=uuid4(),
            tenant_id=self.tenant_id,
            sale_id=sale.id,
            amount=Decimal(str(amount)),
            payment_date=payment_date or date(2025, 3, 5),
            payment_method=fields.pop("payment_method", None),
            status=status,
            fiscal_protected=fields.pop("fiscal_protected", False),
            notes=fields.pop("notes", None),
            created_at=datetime.now(timezone.utc),
            **fields
        )
        self.payments[payment.id] = payment
        return payment

    async def get_sale(self, sale_id):
        if sale_id not in self.sales:
            raise NotFoundError("Venta no encontrada")
        return self.sales[sale_id]

    async def list_sale_items(self, sale_id):
        return list(self.items.get(sale_id, []))

    async def list_payments(self, sale_id):
        payments = [p for p in self.payments.values() if p.sale_id == sale_id]
        return sorted(payments, key=lambda p: p.payment_date)

    async def get_payment(self, sale_id, payment_id):
        payment = self.payments.get(payment_id)
        if payment is None or payment.sale_id != sale_id:
            raise NotFoundError("Pago no encontrado")
        return payment

    async def add_payment(self, sale_id, fields):
        self.add_calls += 1
        if self.fail_on_add == self.add_calls:
            raise RuntimeError("connection lost")
        payment = SalePayment(
            id=uuid4(), tenant_id=self.tenant_id, sale_id=sale_id,
            created_at=datetime.now(timezone.utc), **fields
        )
        self.payments[payment.id] = payment
        self.writes += 1
        return payment

    async def update_payment(self, payment, fields):
        for key, value in fields.items():
            setattr(payment, key, value)
        self.writes += 1
        return payment

    async def delete_payment(self, payment):
        if payment.status != PaymentRecordStatus.PENDING:
            raise ConflictError("Solo se pueden eliminar pagos pendientes")
        del self.payments[payment.id]
        self.writes += 1

    async def update_sale(self, sale, fields):
        for key, value in fields.items():
            setattr(sale, key, value)
        self.writes += 1
        return sale

    async def find_stale_fiscal_records(self, synced_before, limit=100):
        def stale(record):
            if record.document_provider_id is None:
                return False
            if record.document_file_url is None:
                return True
            return record.document_status != "cancelled" and (
                record.document_synced_at is None or record.document_synced_at < synced_before
            )

        def oldest_first(record):
            synced = record.document_synced_at
            return record.document_file_url is not None, synced is not None, synced or datetime.min

        sales = sorted((s for s in self.sales.values() if stale(s)), key=oldest_first)[:limit]
        payments = sorted((p for p in self.payments.values() if stale(p)), key=oldest_first)[:limit]
        return sales, payments


# ===== FIXTURES =====

@pytest.fixture
def repo():
    return InMemoryLedgerRepository()


@pytest.fixture
def service(repo):
    return PaymentLedgerService(repo, guard=InFlightRegistry("test"))


@pytest.fixture
def api(repo):
    """Cliente HTTP con el servicio apuntando al repositorio en memoria"""
    app.dependency_overrides[get_ledger_service] = lambda: PaymentLedgerService(repo, guard=InFlightRegistry("api"))
    client = TestClient(app)
    client.headers.update({"X-Company-ID": str(repo.tenant_id)})
    yield client
    app.dependency_overrides.clear()


# ===== TESTS DEL RESUMEN =====

class TestPaymentSummary:
    """Tests para calculate_payment_summary"""

    def test_paid_and_scheduled_split(self, repo):
        """Test venta de 1000 con 400 cobrado y 600 agendado"""
        sale = repo.add_sale(1000)
        payments = [repo.seed_payment(sale, 400, PaymentRecordStatus.PAID)]
        summary = calculate_payment_summary(payments, sale.total_value)
        assert summary.remaining == Decimal("600.00")
        assert summary.remaining_to_schedule == Decimal("600.00")
        assert summary.can_add_payment is True

        payments.append(repo.seed_payment(sale, 600, PaymentRecordStatus.PENDING))
        summary = calculate_payment_summary(payments, sale.total_value)

        assert summary.paid == Decimal("400.00")
        assert summary.pending_scheduled == Decimal("600.00")
        assert summary.remaining == Decimal("600.00")
        assert summary.remaining_to_schedule == Decimal("0.00")
        assert summary.percentage == Decimal("40.00")
        assert summary.payment_status == "partial"
        assert summary.can_add_payment is False

    def test_overpayment_is_clamped(self, repo):
        """Test que los restantes nunca son negativos"""
        sale = repo.add_sale(1000)
        payments = [repo.seed_payment(sale, 1200, PaymentRecordStatus.PAID)]
        summary = calculate_payment_summary(payments, sale.total_value)

        assert summary.remaining == Decimal("0.00")
        assert summary.remaining_to_schedule == Decimal("0.00")
        assert summary.percentage == Decimal("100")
        assert summary.payment_status == "paid"

    def test_over_scheduled_detected(self, repo):
        sale = repo.add_sale(100)
        payments = [
            repo.seed_payment(sale, 60, PaymentRecordStatus.PAID),
            repo.seed_payment(sale, 60, PaymentRecordStatus.PENDING),
        ]
        summary = calculate_payment_summary(payments, sale.total_value)

        assert summary.is_over_scheduled is True
        assert summary.remaining_to_schedule == Decimal("0.00")

    def test_no_payments(self, repo):
        sale = repo.add_sale(250)
        summary = calculate_payment_summary([], sale.total_value)

        assert summary.paid == Decimal("0.00")
        assert summary.remaining == Decimal("250.00")
        assert summary.remaining_to_schedule == Decimal("250.00")
        assert summary.payment_status == "pending"
        assert summary.can_add_payment is True

    def test_zero_total_sale(self):
        summary = calculate_payment_summary([], 0)
        assert summary.percentage == Decimal("0.00")
        assert summary.can_add_payment is False


# ===== TESTS DE CUOTAS =====

class TestInstallments:
    """Tests para el planificador de cuotas"""

    def test_split_last_installment_absorbs_rounding(self):
        assert split_amount(Decimal("100"), 3) == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]

    @pytest.mark.parametrize("amount", ["100", "0.05", "999.99", "1234.57"])
    @pytest.mark.parametrize("count", [1, 2, 3, 4])
    def test_split_sums_to_remaining(self, amount, count):
        parts = split_amount(Decimal(amount), count)
        assert len(parts) == count
        assert sum(parts) == Decimal(amount)
        assert all(p >= 0 for p in parts)

    def test_default_dates_are_spaced(self):
        start = date(2025, 1, 1)
        plan = plan_installments(Decimal("300"), 3, start=start)

        assert [i.due_date for i in plan.installments] == [
            start + timedelta(days=30), start + timedelta(days=60), start + timedelta(days=90)
        ]
        assert [i.label for i in plan.installments] == ["Cuota 1/3", "Cuota 2/3", "Cuota 3/3"]
        assert plan.total == Decimal("300.00")

    def test_count_above_maximum_rejected(self):
        with pytest.raises(ValidationError):
            plan_installments(Decimal("100"), 5)

    def test_dates_must_match_count(self):
        with pytest.raises(ValidationError):
            plan_installments(Decimal("100"), 2, dates=[date(2025, 1, 1)])

    def test_nothing_to_split_rejected(self):
        with pytest.raises(ValidationError):
            plan_installments(Decimal("0"), 2)


class TestSequentialPipeline:
    """Tests para la ejecución secuencial de pasos"""

    def test_runs_in_order(self):
        seen = []

        async def execute(command):
            seen.append(command)
            return command * 10

        result = asyncio.run(SequentialPipeline([1, 2, 3]).run(execute))
        assert seen == [1, 2, 3]
        assert result == [10, 20, 30]

    def test_first_step_failure_propagates_original_error(self):
        async def execute(command):
            raise ValidationError("monto inválido")

        with pytest.raises(ValidationError):
            asyncio.run(SequentialPipeline([1, 2]).run(execute))

    def test_partial_failure_reports_completed_steps(self):
        seen = []

        async def execute(command):
            if command == 3:
                raise RuntimeError("timeout")
            seen.append(command)
            return command

        with pytest.raises(PartialSequenceError) as exc_info:
            asyncio.run(SequentialPipeline([1, 2, 3, 4]).run(execute))

        error = exc_info.value
        assert error.completed == [1, 2]
        assert error.failed_step == 3
        assert error.total_steps == 4
        # Step 4 never ran
        assert seen == [1, 2]


# ===== TESTS DE REGLAS DEL LIBRO =====

class TestDeletionRules:
    """Tests para deletion_blocker"""

    def test_pending_payment_can_be_deleted(self, repo):
        sale = repo.add_sale(100)
        payment = repo.seed_payment(sale, 50, PaymentRecordStatus.PENDING)
        assert deletion_blocker(payment, sale) is None

    def test_paid_payment_blocked(self, repo):
        sale = repo.add_sale(100)
        payment = repo.seed_payment(sale, 50, PaymentRecordStatus.PAID)
        assert deletion_blocker(payment, sale) == "Solo se pueden eliminar pagos pendientes"

    def test_fiscal_protected_payment_blocked(self, repo):
        sale = repo.add_sale(100)
        payment = repo.seed_payment(sale, 50, PaymentRecordStatus.PENDING, fiscal_protected=True)
        assert "protegido" in deletion_blocker(payment, sale)

    def test_active_document_blocks_deletion(self, repo):
        sale = repo.add_sale(100)
        payment = repo.seed_payment(
            sale, 50, PaymentRecordStatus.PENDING,
            document_provider_id=10, document_status="final", document_type="invoice_receipt"
        )
        assert deletion_blocker(payment, sale) == "El pago tiene un documento fiscal emitido"

        payment.document_status = "cancelled"
        assert deletion_blocker(payment, sale) is None

    def test_delivered_sale_blocks_deletion(self, repo):
        sale = repo.add_sale(100, status=SaleStatus.DELIVERED)
        payment = repo.seed_payment(sale, 50, PaymentRecordStatus.PENDING)
        assert deletion_blocker(payment, sale) == "La venta ya fue entregada"


class TestLedgerService:
    """Tests para PaymentLedgerService"""

    def test_create_payment_within_remaining(self, repo, service):
        sale = repo.add_sale(1000)
        repo.seed_payment(sale, 400)

        payment = asyncio.run(service.create_payment(sale.id, PaymentCreate(amount=Decimal("150"))))

        assert payment.amount == Decimal("150.00")
        assert payment.status == PaymentRecordStatus.PAID
        assert payment.fiscal_protected is False

    def test_create_payment_over_remaining_rejected(self, repo, service):
        sale = repo.add_sale(1000)
        repo.seed_payment(sale, 400)
        repo.seed_payment(sale, 500, PaymentRecordStatus.PENDING)

        with pytest.raises(ValidationError):
            asyncio.run(service.create_payment(sale.id, PaymentCreate(amount=Decimal("150"))))
        assert repo.add_calls == 0

    def test_create_payment_when_fully_scheduled(self, repo, service):
        sale = repo.add_sale(100)
        repo.seed_payment(sale, 100, PaymentRecordStatus.PENDING)

        with pytest.raises(ConflictError):
            asyncio.run(service.create_payment(sale.id, PaymentCreate(amount=Decimal("1"))))

    def test_cancelled_sale_rejects_payments(self, repo, service):
        sale = repo.add_sale(100, status=SaleStatus.CANCELLED)
        with pytest.raises(ConflictError):
            asyncio.run(service.create_payment(sale.id, PaymentCreate(amount=Decimal("10"))))

    def test_update_pending_amount_limited_to_available(self, repo, service):
        sale = repo.add_sale(1000)
        repo.seed_payment(sale, 400)
        pending = repo.seed_payment(sale, 600, PaymentRecordStatus.PENDING)

        with pytest.raises(ValidationError):
            asyncio.run(service.update_payment(sale.id, pending.id, PaymentUpdate(amount=Decimal("700"))))

        updated = asyncio.run(service.update_payment(sale.id, pending.id, PaymentUpdate(amount=Decimal("550"))))
        assert updated.amount == Decimal("550.00")

    def test_paid_payment_not_editable(self, repo, service):
        sale = repo.add_sale(1000)
        paid = repo.seed_payment(sale, 400)
        with pytest.raises(ConflictError):
            asyncio.run(service.update_payment(sale.id, paid.id, PaymentUpdate(notes="x")))

    def test_mark_paid(self, repo, service):
        sale = repo.add_sale(100)
        pending = repo.seed_payment(sale, 100, PaymentRecordStatus.PENDING)

        payment = asyncio.run(service.mark_paid(sale.id, pending.id, date(2025, 4, 1)))
        assert payment.status == PaymentRecordStatus.PAID
        assert payment.payment_date == date(2025, 4, 1)

        with pytest.raises(ConflictError):
            asyncio.run(service.mark_paid(sale.id, pending.id))

    def test_concurrent_mutation_rejected(self, repo):
        guard = InFlightRegistry("test")
        service = PaymentLedgerService(repo, guard=guard)
        sale = repo.add_sale(100)
        pending = repo.seed_payment(sale, 100, PaymentRecordStatus.PENDING)

        async def scenario():
            async with guard.hold(pending.id):
                await service.delete_payment(sale.id, pending.id)

        with pytest.raises(RecordBusyError):
            asyncio.run(scenario())
        assert pending.id in repo.payments
        assert guard.is_busy(pending.id) is False

    def test_confirm_installments_creates_pending_payments(self, repo, service):
        sale = repo.add_sale(1000)
        repo.seed_payment(sale, 400)

        created = asyncio.run(service.confirm_installments(
            sale.id, InstallmentPlanRequest(count=3, payment_method=PaymentMethod.TRANSFER)
        ))

        assert [p.amount for p in created] == [Decimal("200.00")] * 3
        assert all(p.status == PaymentRecordStatus.PENDING for p in created)
        assert all(p.payment_method == PaymentMethod.TRANSFER for p in created)
        summary = asyncio.run(service.get_summary(sale.id))
        assert summary.remaining_to_schedule == Decimal("0.00")

    def test_confirm_installments_partial_failure_keeps_created(self, repo, service):
        sale = repo.add_sale(100)
        repo.fail_on_add = 2

        with pytest.raises(PartialSequenceError) as exc_info:
            asyncio.run(service.confirm_installments(sale.id, InstallmentPlanRequest(count=3)))

        assert exc_info.value.failed_step == 2
        assert len(exc_info.value.completed) == 1
        # No rollback: the first installment stays
        remaining = asyncio.run(repo.list_payments(sale.id))
        assert len(remaining) == 1
        assert remaining[0].amount == Decimal("33.33")
        assert repo.add_calls == 2

    def test_cancelled_sale_rejects_installments(self, repo, service):
        sale = repo.add_sale(300, status=SaleStatus.CANCELLED)

        with pytest.raises(ConflictError):
            asyncio.run(service.preview_installments(sale.id, InstallmentPlanRequest(count=3)))
        with pytest.raises(ConflictError):
            asyncio.run(service.confirm_installments(sale.id, InstallmentPlanRequest(count=3)))
        assert repo.add_calls == 0

    def test_create_rejected_while_installments_in_flight(self, repo):
        guard = InFlightRegistry("test")
        service = PaymentLedgerService(repo, guard=guard)
        sale = repo.add_sale(100)

        async def scenario():
            async with guard.hold(ledger_key(sale.id)):
                await service.create_payment(sale.id, PaymentCreate(amount=Decimal("60")))

        with pytest.raises(RecordBusyError):
            asyncio.run(scenario())
        assert repo.add_calls == 0

    def test_amount_edit_shares_sale_key_with_create(self, repo):
        guard = InFlightRegistry("test")
        service = PaymentLedgerService(repo, guard=guard)
        sale = repo.add_sale(100)
        pending = repo.seed_payment(sale, 40, PaymentRecordStatus.PENDING)

        async def scenario():
            async with guard.hold(ledger_key(sale.id)):
                await service.update_payment(sale.id, pending.id, PaymentUpdate(amount=Decimal("90")))

        with pytest.raises(RecordBusyError):
            asyncio.run(scenario())
        assert pending.amount == Decimal("40.00")

        # Notes only: no sale-wide lock needed
        async def notes_only():
            async with guard.hold(ledger_key(sale.id)):
                return await service.update_payment(sale.id, pending.id, PaymentUpdate(notes="Cuota 1"))

        assert asyncio.run(notes_only()).notes == "Cuota 1"


# ===== TESTS DE ENDPOINTS =====

class TestPaymentEndpoints:
    """Tests de la API del libro de cobros"""

    def test_missing_tenant_header(self, api, repo):
        sale = repo.add_sale(100)
        response = TestClient(app).get(f"/sales/{sale.id}/payments")
        assert response.status_code == 400

    def test_list_payments_with_summary(self, api, repo):
        sale = repo.add_sale(1000)
        repo.seed_payment(sale, 400)
        repo.seed_payment(sale, 600, PaymentRecordStatus.PENDING)

        response = api.get(f"/sales/{sale.id}/payments")

        assert response.status_code == 200
        data = response.json()
        assert len(data["payments"]) == 2
        assert Decimal(data["summary"]["paid"]) == Decimal("400")
        assert Decimal(data["summary"]["remaining_to_schedule"]) == Decimal("0")
        assert data["summary"]["can_add_payment"] is False
        assert data["summary"]["is_over_scheduled"] is False

    def test_unknown_sale_returns_404(self, api):
        response = api.get(f"/sales/{uuid4()}/payments/summary")
        assert response.status_code == 404
        assert response.json()["detail"] == "Venta no encontrada"

    def test_create_payment(self, api, repo):
        sale = repo.add_sale(1000)
        response = api.post(f"/sales/{sale.id}/payments", json={
            "amount": "250.00",
            "payment_method": "mbway",
            "payment_date": "2025-03-10",
        })

        assert response.status_code == 201
        data = response.json()
        assert Decimal(data["amount"]) == Decimal("250")
        assert data["status"] == "paid"
        assert data["fiscal_protected"] is False

    def test_create_payment_over_remaining(self, api, repo):
        sale = repo.add_sale(100)
        response = api.post(f"/sales/{sale.id}/payments", json={"amount": "150.00"})

        assert response.status_code == 422
        assert "supera el saldo" in response.json()["detail"]

    def test_update_with_null_fields_rejected(self, api, repo):
        sale = repo.add_sale(100)
        pending = repo.seed_payment(sale, 40, PaymentRecordStatus.PENDING)

        response = api.patch(
            f"/sales/{sale.id}/payments/{pending.id}", json={"amount": None, "payment_date": None}
        )

        assert response.status_code == 422
        assert pending.amount == Decimal("40")
        assert pending.payment_date == date(2025, 3, 5)
        assert repo.writes == 0

    def test_update_omitted_fields_kept(self, api, repo):
        sale = repo.add_sale(100)
        pending = repo.seed_payment(sale, 40, PaymentRecordStatus.PENDING)

        response = api.patch(f"/sales/{sale.id}/payments/{pending.id}", json={"notes": "Segunda cuota"})

        assert response.status_code == 200
        assert Decimal(response.json()["amount"]) == Decimal("40")
        assert response.json()["payment_date"] == "2025-03-05"

    def test_delete_paid_payment_rejected(self, api, repo):
        sale = repo.add_sale(100)
        paid = repo.seed_payment(sale, 50)

        response = api.delete(f"/sales/{sale.id}/payments/{paid.id}")
        assert response.status_code == 409
        assert paid.id in repo.payments

    def test_delete_pending_payment(self, api, repo):
        sale = repo.add_sale(100)
        pending = repo.seed_payment(sale, 50, PaymentRecordStatus.PENDING)

        response = api.delete(f"/sales/{sale.id}/payments/{pending.id}")
        assert response.status_code == 204
        assert pending.id not in repo.payments

    def test_preview_installments_writes_nothing(self, api, repo):
        sale = repo.add_sale(100)
        response = api.post(f"/sales/{sale.id}/installments/preview", json={"count": 3})

        assert response.status_code == 200
        amounts = [Decimal(i["amount"]) for i in response.json()["installments"]]
        assert amounts == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]
        assert repo.writes == 0

    def test_confirm_installments_partial_failure_is_207(self, api, repo):
        sale = repo.add_sale(300)
        repo.fail_on_add = 3

        response = api.post(f"/sales/{sale.id}/installments", json={"count": 3})

        assert response.status_code == 207
        detail = response.json()["detail"]
        assert len(detail["completed"]) == 2
        assert detail["failed_step"] == 3
        assert detail["total_steps"] == 3
        assert detail["error"] == "connection lost"
