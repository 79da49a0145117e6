"""
Tests para el módulo Fiscal

Cubren:
- Vista previa (impuestos, exenciones, observaciones)
- Emisión de FT / FR / RC y validaciones previas al proveedor
- Anulación irreversible y notas de crédito
- Sincronización idempotente y barrido con fallos parciales
- Endpoints con proveedor y repositorio falsos

El proveedor falso registra cada llamada para comprobar que las
validaciones locales se hacen antes de cualquier petición de red.
"""

import asyncio
import pytest
from datetime import date
from decimal import Decimal
from fastapi.testclient import TestClient
from urllib3.exceptions import MaxRetryError
from uuid import uuid4

from backoffice.common.exceptions import (
    ConflictError, DriftError, NotFoundError, ProviderError, ValidationError
)
from backoffice.main import app
from backoffice.modules.fiscal.archive import PdfArchive, get_pdf_archive
from backoffice.modules.fiscal.cancellation import DocumentCancellationService
from backoffice.modules.fiscal.drafts import build_draft, default_observations, direct_amount_line, map_country
from backoffice.modules.fiscal.emailing import DocumentMailer
from backoffice.modules.fiscal.issuer import FiscalDocumentIssuer, receipt_availability
from backoffice.modules.fiscal.provider import (
    FiscalProvider, InvoiceXpressProvider, parse_provider_date, parse_provider_status
)
from backoffice.modules.fiscal.router import get_context_loader, get_fiscal_repository, get_provider_factory
from backoffice.modules.fiscal.schemas import (
    DocumentSnapshot, DocumentStatus, DocumentType, IssuedCreditNote, IssuedReceipt,
    SendDocumentEmailRequest, parse_issued_document
)
from backoffice.modules.fiscal.service import available_actions
from backoffice.modules.fiscal.sync import FiscalSyncAgent
from backoffice.modules.organizations.context import ClientInfo, FiscalContext
from backoffice.modules.sales.guard import InFlightRegistry
from backoffice.modules.sales.models import PaymentMethod, PaymentRecordStatus, SaleStatus
from backoffice.modules.sales.tests import InMemoryLedgerRepository


# ===== PROVEEDOR FALSO =====

class FakeProvider(FiscalProvider):

    def __init__(self):
        self.calls = []
        self.documents = {}
        self.next_id = 1000
        self.fail_finalize = False
        self.fail_fetch_for = set()
        self.pdf_url = "https://files.example.com/doc.pdf"
        self.qr_code_url = "https://files.example.com/qr.png"
        self.last_date = None
        self.fail_links = False

    def _new_id(self):
        self.next_id += 1
        return self.next_id

    def _issued(self, doc_type, provider_id):
        self.documents[provider_id] = {"type": doc_type, "status": DocumentStatus.FINAL}
        return parse_issued_document({
            "type": doc_type.value,
            "provider_id": provider_id,
            "sequence_number": f"A/{provider_id}",
            "status": "final",
        })

    async def issue_document(self, request):
        self.calls.append(("issue_document", request))
        provider_id = self._new_id()
        if self.fail_finalize:
            self.documents[provider_id] = {"type": request.doc_type, "status": DocumentStatus.DRAFT}
            raise ProviderError(
                "Documento creado pero no finalizado. Finalícelo en InvoiceXpress (422)",
                provider_status=422, details='{"errors": ["invalid"]}', document_id=provider_id
            )
        return self._issued(request.doc_type, provider_id)

    async def finalize_document(self, provider_id, doc_type):
        self.calls.append(("finalize_document", provider_id))
        return self._issued(doc_type, provider_id)

    async def cancel_document(self, provider_id, doc_type, reason):
        self.calls.append(("cancel_document", provider_id, reason))
        self.documents.setdefault(provider_id, {"type": doc_type})["status"] = DocumentStatus.CANCELLED

    async def create_credit_note(self, original_id, original_type, reason, items=None):
        self.calls.append(("create_credit_note", original_id, reason))
        provider_id = self._new_id()
        return IssuedCreditNote(provider_id=provider_id, sequence_number=f"NC/{provider_id}")

    async def register_partial_payment(self, invoice_id, amount, payment_date, payment_method=None, note=None):
        self.calls.append(("register_partial_payment", invoice_id, amount, payment_method))
        provider_id = self._new_id()
        return IssuedReceipt(provider_id=provider_id, sequence_number=f"RC/{provider_id}")

    async def send_document_email(self, provider_id, doc_type, email, subject, body):
        self.calls.append(("send_document_email", provider_id, email, subject, body))

    async def fetch_document(self, provider_id, doc_type):
        self.calls.append(("fetch_document", provider_id))
        if provider_id in self.fail_fetch_for:
            raise ProviderError("Error al obtener el documento de InvoiceXpress (500)", provider_status=500)
        document = self.documents.get(provider_id, {"status": DocumentStatus.FINAL})
        return DocumentSnapshot(
            provider_id=provider_id,
            type=doc_type,
            status=document["status"],
            sequence_number=f"A/{provider_id}",
            total=Decimal("123.00"),
        )

    async def fetch_pdf_url(self, provider_id):
        self.calls.append(("fetch_pdf_url", provider_id))
        if self.fail_links:
            raise ProviderError("PDF no disponible (503)", provider_status=503)
        return self.pdf_url

    async def fetch_qr_code_url(self, provider_id):
        self.calls.append(("fetch_qr_code_url", provider_id))
        return self.qr_code_url

    async def last_document_date(self, doc_type):
        return self.last_date

    async def download(self, url):
        return b"%PDF-1.4"

    def call_names(self):
        return [call[0] for call in self.calls]


class UnreachableMinio:
    """Cliente MinIO cuyo servidor no responde"""

    def __init__(self, error):
        self.error = error

    def bucket_exists(self, bucket_name):
        raise self.error

    def put_object(self, **kwargs):
        raise self.error


def make_context(nif="123456789", enabled=True, rate="23", exemption=None, with_client=True):
    client = ClientInfo(name="Maria Silva", email="maria@example.com", nif=nif, country="PT") if with_client else None
    return FiscalContext(
        organization_id=uuid4(),
        organization_name="Loja Exemplo",
        integration_enabled=enabled,
        account_name="loja",
        api_key="secret",
        default_tax_rate=Decimal(rate),
        tax_exemption_reason=exemption,
        client=client,
    )


# ===== FIXTURES =====

@pytest.fixture
def repo():
    return InMemoryLedgerRepository()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def context():
    return make_context()


@pytest.fixture
def loader(context):
    async def load(client_id=None):
        return context
    return load


@pytest.fixture
def build(repo, provider, loader):
    """Construye cualquier servicio fiscal con el repositorio y proveedor falsos"""
    def factory(service_class):
        return service_class(repo, loader, lambda ctx: provider, guard=InFlightRegistry("test"))
    return factory


def invoiced_sale(repo, provider_id=500, status="final", **fields):
    sale = repo.add_sale(123)
    sale.document_provider_id = provider_id
    sale.document_type = DocumentType.INVOICE.value
    sale.document_reference = f"FT A/{provider_id}"
    sale.document_status = status
    sale.document_file_url = fields.get("file_url", "https://files.example.com/old.pdf")
    sale.qr_code_url = fields.get("qr_code_url", "https://files.example.com/old.png")
    return sale


# ===== TESTS DEL BORRADOR =====

class TestDraftPreview:
    """Tests para la vista previa del documento"""

    def test_item_rate_falls_back_to_organization(self, repo, build):
        sale = repo.add_sale(246)
        repo.add_item(sale, "Cadeira", 100, quantity=2)
        issuer = build(FiscalDocumentIssuer)

        draft = asyncio.run(issuer.preview(sale.id, DocumentType.INVOICE))

        assert draft.lines[0].tax_rate == Decimal("23")
        assert draft.subtotal == Decimal("200.00")
        assert draft.tax_total == Decimal("46.00")
        assert draft.total == Decimal("246.00")
        assert draft.client_nif == "123456789"

    def test_exempt_item_without_reason_rejected(self, repo, build):
        sale = repo.add_sale(50)
        repo.add_item(sale, "Livro", 50, tax_rate=0)
        issuer = build(FiscalDocumentIssuer)

        with pytest.raises(ValidationError):
            asyncio.run(issuer.preview(sale.id, DocumentType.INVOICE))

    def test_exempt_item_uses_organization_reason(self, repo, build, context):
        context.tax_exemption_reason = "M10"
        sale = repo.add_sale(50)
        repo.add_item(sale, "Livro", 50, tax_rate=0)
        repo.add_item(sale, "Caneta", 10)
        issuer = build(FiscalDocumentIssuer)

        draft = asyncio.run(issuer.preview(sale.id, DocumentType.INVOICE))

        assert draft.tax_exemption_reason == "M10"
        assert draft.lines[0].exemption_reason == "M10"
        assert draft.lines[1].exemption_reason is None
        assert draft.tax_total == Decimal("2.30")

    def test_default_observations_from_paid_payments(self, repo, build):
        sale = repo.add_sale(100)
        repo.add_item(sale, "Mesa", 100)
        repo.seed_payment(sale, 40, payment_date=date(2025, 3, 5))
        repo.seed_payment(sale, 60, PaymentRecordStatus.PENDING, payment_date=date(2025, 4, 5))
        issuer = build(FiscalDocumentIssuer)

        draft = asyncio.run(issuer.preview(sale.id, DocumentType.INVOICE))
        assert draft.observations == "Pago recibido el 05/03/2025"

        custom = asyncio.run(issuer.preview(sale.id, DocumentType.INVOICE, observations="Entrega parcial"))
        assert custom.observations == "Entrega parcial"

    def test_multiple_payments_listed(self, repo):
        sale = repo.add_sale(100)
        payments = [
            repo.seed_payment(sale, 60, payment_date=date(2025, 4, 5)),
            repo.seed_payment(sale, 40, payment_date=date(2025, 3, 5)),
        ]
        assert default_observations(payments) == (
            "Pagos recibidos:\n- 40.00 EUR el 05/03/2025\n- 60.00 EUR el 05/04/2025"
        )

    def test_direct_amount_line_matches_gross(self, context):
        line = direct_amount_line("Pago", Decimal("50"), context)
        assert line.unit_price == Decimal("40.6504")
        assert line.total == Decimal("50.00")

    @pytest.mark.parametrize("amount", ["33.34", "0.08", "0.13", "19.99", "1234.57"])
    def test_direct_amount_total_is_exact(self, context, amount):
        line = direct_amount_line("Pago", Decimal(amount), context)
        assert line.subtotal + line.tax_amount == Decimal(amount)
        assert line.total == Decimal(amount)

    def test_last_installment_invoice_receipt_preview(self, repo, build):
        sale = repo.add_sale(100)
        repo.seed_payment(sale, "33.33")
        repo.seed_payment(sale, "33.33")
        last = repo.seed_payment(sale, "33.34")

        draft = asyncio.run(build(FiscalDocumentIssuer).preview(
            sale.id, DocumentType.INVOICE_RECEIPT, payment_id=last.id
        ))

        assert draft.subtotal == Decimal("27.11")
        assert draft.tax_total == Decimal("6.23")
        assert draft.total == Decimal("33.34")

    def test_invoice_receipt_preview_requires_payment(self, repo, build):
        sale = repo.add_sale(100)
        with pytest.raises(ValidationError):
            asyncio.run(build(FiscalDocumentIssuer).preview(sale.id, DocumentType.INVOICE_RECEIPT))

    def test_preview_makes_no_provider_calls(self, repo, build, provider):
        sale = repo.add_sale(100)
        payment = repo.seed_payment(sale, 50)
        repo.seed_payment(sale, 50, PaymentRecordStatus.PENDING)

        draft = asyncio.run(build(FiscalDocumentIssuer).preview(
            sale.id, DocumentType.INVOICE_RECEIPT, payment_id=payment.id
        ))

        assert draft.total == Decimal("50.00")
        assert provider.calls == []

    def test_country_codes_mapped(self):
        assert map_country("PT") == "Portugal"
        assert map_country("es") == "Espanha"
        assert map_country(None) == "Portugal"
        assert map_country("Noruega") == "Noruega"


# ===== TESTS DE EMISIÓN =====

class TestIssuance:
    """Tests para FiscalDocumentIssuer"""

    def test_invoice_requires_client_tax_id(self, repo, build, provider, context):
        context.client.nif = None
        sale = repo.add_sale(100)
        repo.add_item(sale, "Mesa", 100)

        with pytest.raises(ValidationError):
            asyncio.run(build(FiscalDocumentIssuer).issue_invoice(sale.id))

        assert provider.calls == []
        assert sale.document_provider_id is None

    def test_disabled_integration_rejected(self, repo, build, provider, context):
        context.integration_enabled = False
        sale = repo.add_sale(100)

        with pytest.raises(ValidationError):
            asyncio.run(build(FiscalDocumentIssuer).issue_invoice(sale.id))
        assert provider.calls == []

    def test_issue_invoice_stores_link(self, repo, build, provider):
        sale = repo.add_sale(123)
        repo.add_item(sale, "Mesa", 100)

        sale = asyncio.run(build(FiscalDocumentIssuer).issue_invoice(sale.id))

        assert sale.document_type == "invoice"
        assert sale.document_status == "final"
        assert sale.document_reference == f"FT A/{sale.document_provider_id}"
        assert sale.document_file_url == provider.pdf_url
        assert sale.qr_code_url == provider.qr_code_url
        assert available_actions(sale) == ["cancel", "credit_note", "send_email", "sync"]

        request = provider.calls[0][1]
        assert request.proprietary_uid == f"backoffice-ft-{sale.id}"
        assert request.items[0].tax.value == Decimal("23")

    def test_issue_date_never_before_last_document(self, repo, build, provider):
        provider.last_date = date(2999, 1, 1)
        sale = repo.add_sale(123)
        repo.add_item(sale, "Mesa", 100)

        asyncio.run(build(FiscalDocumentIssuer).issue_invoice(sale.id))
        assert provider.calls[0][1].issue_date == date(2999, 1, 1)

    def test_second_invoice_rejected(self, repo, build, provider):
        sale = invoiced_sale(repo)
        with pytest.raises(ConflictError):
            asyncio.run(build(FiscalDocumentIssuer).issue_invoice(sale.id))
        assert provider.calls == []

    def test_cancelled_sale_cannot_be_invoiced(self, repo, build):
        sale = repo.add_sale(100, status=SaleStatus.CANCELLED)
        with pytest.raises(ConflictError):
            asyncio.run(build(FiscalDocumentIssuer).issue_invoice(sale.id))

    def test_finalize_failure_keeps_draft_and_retry_finalizes(self, repo, build, provider):
        sale = repo.add_sale(123)
        repo.add_item(sale, "Mesa", 100)
        issuer = build(FiscalDocumentIssuer)
        provider.fail_finalize = True

        with pytest.raises(ProviderError) as exc_info:
            asyncio.run(issuer.issue_invoice(sale.id))

        draft_id = exc_info.value.document_id
        assert sale.document_provider_id == draft_id
        assert sale.document_status == "draft"
        assert available_actions(sale) == ["sync"]

        provider.fail_finalize = False
        sale = asyncio.run(issuer.issue_invoice(sale.id))

        assert sale.document_provider_id == draft_id
        assert sale.document_status == "final"
        assert provider.call_names().count("issue_document") == 1
        assert ("finalize_document", draft_id) in provider.calls

    def test_invoice_receipt_protects_payment(self, repo, build, provider):
        sale = repo.add_sale(100)
        payment = repo.seed_payment(sale, 100, PaymentRecordStatus.PENDING)

        payment = asyncio.run(build(FiscalDocumentIssuer).issue_invoice_receipt(sale.id, payment.id))

        assert payment.status == PaymentRecordStatus.PAID
        assert payment.fiscal_protected is True
        assert payment.document_type == "invoice_receipt"
        assert payment.document_reference.startswith("FR ")
        assert sale.document_provider_id is None

    def test_invoice_receipt_rejected_when_sale_invoiced(self, repo, build, provider):
        sale = invoiced_sale(repo)
        payment = repo.seed_payment(sale, 50)

        with pytest.raises(ConflictError):
            asyncio.run(build(FiscalDocumentIssuer).issue_invoice_receipt(sale.id, payment.id))
        assert provider.calls == []

    @pytest.mark.parametrize("error", [
        MaxRetryError(None, "/fiscal", reason="connection refused"),
        ConnectionRefusedError("connection refused"),
    ])
    def test_archive_outage_keeps_issued_link(self, repo, loader, provider, error):
        issuer = FiscalDocumentIssuer(
            repo, loader, lambda ctx: provider,
            archive=PdfArchive(client=UnreachableMinio(error), bucket_name="fiscal"),
            guard=InFlightRegistry("test"),
        )
        sale = repo.add_sale(123)
        repo.add_item(sale, "Mesa", 100)

        sale = asyncio.run(issuer.issue_invoice(sale.id))

        assert sale.document_status == "final"
        assert sale.document_reference == f"FT A/{sale.document_provider_id}"
        assert sale.document_file_url == provider.pdf_url
        assert provider.call_names().count("issue_document") == 1

    def test_link_saved_before_pdf_is_ready(self, repo, build, provider):
        provider.fail_links = True
        sale = repo.add_sale(123)
        repo.add_item(sale, "Mesa", 100)

        sale = asyncio.run(build(FiscalDocumentIssuer).issue_invoice(sale.id))

        assert sale.document_status == "final"
        assert sale.document_file_url is None
        assert sale.qr_code_url is None

        provider.fail_links = False
        result = asyncio.run(build(FiscalSyncAgent).sync_record(sale.id))

        assert result.outcome == "updated"
        assert sale.document_file_url == provider.pdf_url
        assert sale.qr_code_url == provider.qr_code_url


class TestReceipts:
    """Tests para recibos contra una factura existente"""

    def test_receipt_unavailable_until_invoice(self, repo, build, provider):
        sale = repo.add_sale(100)
        payment = repo.seed_payment(sale, 50, PaymentRecordStatus.PENDING)

        assert "Emita la factura primero" in receipt_availability(sale, payment)
        with pytest.raises(ConflictError):
            asyncio.run(build(FiscalDocumentIssuer).issue_receipt(sale.id, payment.id))
        assert provider.calls == []

    def test_receipt_unavailable_for_cancelled_invoice(self, repo):
        sale = invoiced_sale(repo, status="cancelled")
        payment = repo.seed_payment(sale, 50)
        assert receipt_availability(sale, payment) is not None

    def test_receipt_after_invoice(self, repo, build, provider):
        sale = invoiced_sale(repo, provider_id=700)
        payment = repo.seed_payment(
            sale, 50, PaymentRecordStatus.PENDING, payment_method=PaymentMethod.MBWAY
        )

        payment = asyncio.run(build(FiscalDocumentIssuer).issue_receipt(sale.id, payment.id))

        assert ("register_partial_payment", 700, Decimal("50"), "mbway") in provider.calls
        assert payment.status == PaymentRecordStatus.PAID
        assert payment.fiscal_protected is True
        assert payment.document_type == "receipt"
        assert available_actions(payment) == ["cancel", "send_email", "sync"]

        # A second receipt for the same payment is rejected
        assert receipt_availability(sale, payment) is not None


# ===== TESTS DE ANULACIÓN =====

class TestCancellation:
    """Tests para DocumentCancellationService"""

    def test_cancel_is_one_way(self, repo, build, provider):
        sale = invoiced_sale(repo)
        service = build(DocumentCancellationService)

        sale = asyncio.run(service.cancel_document(sale.id, "Erro no cliente"))

        assert sale.document_status == "cancelled"
        assert sale.cancellation_reason == "Erro no cliente"
        assert sale.document_reference == "FT A/500"
        assert available_actions(sale) == []

        with pytest.raises(ConflictError):
            asyncio.run(service.cancel_document(sale.id, "Outra vez"))
        with pytest.raises(ConflictError):
            asyncio.run(service.create_credit_note(sale.id, "Devolução"))
        assert provider.call_names() == ["cancel_document"]

    def test_cancel_requires_reason(self, repo, build, provider):
        sale = invoiced_sale(repo)
        with pytest.raises(ValidationError):
            asyncio.run(build(DocumentCancellationService).cancel_document(sale.id, "   "))
        assert provider.calls == []

    def test_cancel_without_document(self, repo, build):
        sale = repo.add_sale(100)
        with pytest.raises(NotFoundError):
            asyncio.run(build(DocumentCancellationService).cancel_document(sale.id, "Erro"))

    def test_cancel_payment_document_removes_protection(self, repo, build):
        sale = repo.add_sale(100)
        payment = repo.seed_payment(
            sale, 100, fiscal_protected=True, document_provider_id=800,
            document_type="invoice_receipt", document_reference="FR A/800", document_status="final"
        )

        payment = asyncio.run(build(DocumentCancellationService).cancel_document(sale.id, "Erro", payment_id=payment.id))

        assert payment.fiscal_protected is False
        assert payment.status == PaymentRecordStatus.PAID
        assert payment.document_status == "cancelled"

    def test_credit_note_once(self, repo, build, provider):
        sale = invoiced_sale(repo)
        service = build(DocumentCancellationService)

        sale = asyncio.run(service.create_credit_note(sale.id, "Devolução"))

        assert sale.credit_note_reference.startswith("NC ")
        assert sale.document_status == "final"
        assert "credit_note" not in available_actions(sale)
        with pytest.raises(ConflictError):
            asyncio.run(service.create_credit_note(sale.id, "Devolução"))

    def test_credit_note_not_for_receipts(self, repo, build, provider):
        sale = invoiced_sale(repo)
        payment = repo.seed_payment(
            sale, 50, document_provider_id=900, document_type="receipt",
            document_reference="RC A/900", document_status="final"
        )
        with pytest.raises(ConflictError):
            asyncio.run(build(DocumentCancellationService).create_credit_note(sale.id, "x", payment_id=payment.id))
        assert provider.calls == []


# ===== TESTS DE SINCRONIZACIÓN =====

class TestSync:
    """Tests para FiscalSyncAgent"""

    def test_sync_fills_missing_links_once(self, repo, build, provider):
        sale = invoiced_sale(repo, file_url=None, qr_code_url=None)
        agent = build(FiscalSyncAgent)

        first = asyncio.run(agent.sync_record(sale.id))
        assert first.outcome == "updated"
        assert sale.document_file_url == provider.pdf_url
        assert sale.qr_code_url == provider.qr_code_url
        assert repo.writes == 1

        second = asyncio.run(agent.sync_record(sale.id))
        assert second.outcome == "unchanged"
        assert repo.writes == 1

    def test_remote_cancellation_applied(self, repo, build, provider):
        sale = repo.add_sale(100)
        payment = repo.seed_payment(
            sale, 100, fiscal_protected=True, document_provider_id=801,
            document_type="invoice_receipt", document_reference="FR A/801", document_status="final",
            document_file_url="https://x/doc.pdf", qr_code_url="https://x/qr.png"
        )
        provider.documents[801] = {"status": DocumentStatus.CANCELLED}

        result = asyncio.run(build(FiscalSyncAgent).sync_record(sale.id, payment.id))

        assert result.changes["document_status"] == "cancelled"
        assert payment.document_status == "cancelled"
        assert payment.fiscal_protected is False

    def test_local_cancellation_never_reverted(self, repo, build, provider):
        sale = invoiced_sale(repo, status="cancelled")
        provider.documents[500] = {"status": DocumentStatus.FINAL}

        result = asyncio.run(build(FiscalSyncAgent).sync_record(sale.id))

        assert result.outcome == "unchanged"
        assert sale.document_status == "cancelled"

    def test_fallback_reference_replaced(self, repo, build):
        sale = invoiced_sale(repo)
        sale.document_reference = "FT #500"

        asyncio.run(build(FiscalSyncAgent).sync_record(sale.id))
        assert sale.document_reference == "FT A/500"

    def test_provider_failure_is_drift(self, repo, build, provider):
        sale = invoiced_sale(repo, file_url=None)
        provider.fail_fetch_for.add(500)

        with pytest.raises(DriftError):
            asyncio.run(build(FiscalSyncAgent).sync_record(sale.id))
        assert sale.document_file_url is None
        assert repo.writes == 0

    def test_sweep_continues_after_failure(self, repo, build, provider):
        broken = invoiced_sale(repo, provider_id=601, file_url=None)
        healthy = invoiced_sale(repo, provider_id=602, file_url=None)
        provider.fail_fetch_for.add(601)

        report = asyncio.run(build(FiscalSyncAgent).sweep())

        assert report.updated == 1
        assert report.failed == 1
        assert healthy.document_file_url == provider.pdf_url
        assert broken.document_file_url is None
        failed = [r for r in report.results if r.outcome == "failed"][0]
        assert failed.record_id == str(broken.id)

    def test_sweep_skipped_without_credentials(self, repo, build, provider, context):
        context.api_key = None
        invoiced_sale(repo, file_url=None)

        report = asyncio.run(build(FiscalSyncAgent).sweep())
        assert report.results == []
        assert provider.calls == []

    def test_sweep_reaches_missing_pdf_beyond_limit(self, repo, build, provider):
        complete = [invoiced_sale(repo, provider_id=610 + n) for n in range(5)]
        missing = invoiced_sale(repo, provider_id=620, file_url=None)
        agent = build(FiscalSyncAgent)

        first = asyncio.run(agent.sweep(limit=3))

        assert len(first.results) == 3
        assert first.results[0].record_id == str(missing.id)
        assert missing.document_file_url == provider.pdf_url

        second = asyncio.run(agent.sweep(limit=3))
        third = asyncio.run(agent.sweep(limit=3))

        assert second.unchanged == 3
        assert third.results == []
        assert all(sale.document_synced_at is not None for sale in complete)

    def test_sweep_skips_record_in_flight(self, repo, loader, provider):
        guard = InFlightRegistry("test")
        agent = FiscalSyncAgent(repo, loader, lambda ctx: provider, guard=guard)
        busy = invoiced_sale(repo, provider_id=630, file_url=None)

        async def scenario():
            async with guard.hold(("sale", busy.id)):
                return await agent.sweep()

        report = asyncio.run(scenario())

        assert report.failed == 1
        assert busy.document_file_url is None
        assert busy.document_synced_at is None

    def test_document_details_without_sync_writes_nothing(self, repo, build):
        sale = invoiced_sale(repo, file_url=None)

        record, snapshot, result = asyncio.run(build(FiscalSyncAgent).document_details(sale.id))

        assert snapshot.total == Decimal("123.00")
        assert result is None
        assert repo.writes == 0


class TestProviderStatus:

    def test_status_aliases(self):
        assert DocumentStatus.from_provider("canceled") == DocumentStatus.CANCELLED
        assert DocumentStatus.from_provider("Finalized") == DocumentStatus.FINAL
        assert DocumentStatus.from_provider("settled") == DocumentStatus.SETTLED

    def test_unknown_status_is_provider_error(self):
        with pytest.raises(ProviderError):
            parse_provider_status("archived")

    def test_unknown_status_after_finalize_carries_document_id(self):
        client = InvoiceXpressProvider("loja", "secret")

        async def respond(*args, **kwargs):
            return {"invoice": {"id": 77, "status": "archived"}}

        client._request = respond

        with pytest.raises(ProviderError) as exc_info:
            asyncio.run(client.finalize_document(77, DocumentType.INVOICE))
        assert exc_info.value.document_id == 77


class TestEmail:

    def test_send_document_renders_defaults(self, repo, build, provider):
        sale = invoiced_sale(repo)

        asyncio.run(build(DocumentMailer).send_document(
            sale.id, SendDocumentEmailRequest(email="maria@example.com")
        ))

        _, provider_id, email, subject, body = provider.calls[0]
        assert provider_id == 500
        assert email == "maria@example.com"
        assert subject == "Factura FT A/500 - Loja Exemplo"
        assert "Estimado/a Maria Silva" in body
        assert "V-0001" in body
        # Sent status is confirmed by sync, not assumed
        assert sale.document_status == "final"

    def test_cancelled_document_not_sent(self, repo, build, provider):
        sale = invoiced_sale(repo, status="cancelled")
        with pytest.raises(ConflictError):
            asyncio.run(build(DocumentMailer).send_document(
                sale.id, SendDocumentEmailRequest(email="maria@example.com")
            ))
        assert provider.calls == []


# ===== TESTS DE ENDPOINTS =====

class TestFiscalEndpoints:
    """Tests de la API fiscal con dependencias sustituidas"""

    @pytest.fixture
    def api(self, repo, provider, loader):
        app.dependency_overrides[get_fiscal_repository] = lambda: repo
        app.dependency_overrides[get_context_loader] = lambda: loader
        app.dependency_overrides[get_provider_factory] = lambda: (lambda ctx: provider)
        app.dependency_overrides[get_pdf_archive] = lambda: None
        client = TestClient(app)
        client.headers.update({"X-Company-ID": str(repo.tenant_id)})
        yield client
        app.dependency_overrides.clear()

    def test_issue_invoice(self, api, repo):
        sale = repo.add_sale(123)
        repo.add_item(sale, "Mesa", 100)

        response = api.post(f"/fiscal/sales/{sale.id}/invoice", json={})

        assert response.status_code == 201
        data = response.json()
        assert data["document_type"] == "invoice"
        assert data["reference"].startswith("FT A/")
        assert data["available_actions"] == ["cancel", "credit_note", "send_email", "sync"]

    def test_missing_tax_id_is_422(self, api, repo, context, provider):
        context.client.nif = ""
        sale = repo.add_sale(123)
        repo.add_item(sale, "Mesa", 100)

        response = api.post(f"/fiscal/sales/{sale.id}/invoice", json={})

        assert response.status_code == 422
        assert "NIF" in response.json()["detail"]
        assert provider.calls == []

    def test_provider_error_message_kept(self, api, repo, provider):
        sale = repo.add_sale(123)
        repo.add_item(sale, "Mesa", 100)
        provider.fail_finalize = True

        response = api.post(f"/fiscal/sales/{sale.id}/invoice", json={})

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["message"].startswith("Documento creado pero no finalizado")
        assert detail["details"] == '{"errors": ["invalid"]}'
        assert detail["document_id"] == sale.document_provider_id

    def test_preview(self, api, repo):
        sale = repo.add_sale(246)
        repo.add_item(sale, "Cadeira", 100, quantity=2)

        response = api.get(f"/fiscal/sales/{sale.id}/preview", params={"document_type": "invoice"})

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["total"]) == Decimal("246")
        assert Decimal(data["lines"][0]["tax_rate"]) == Decimal("23")

    def test_receipt_availability(self, api, repo):
        sale = repo.add_sale(100)
        payment = repo.seed_payment(sale, 50, PaymentRecordStatus.PENDING)

        response = api.get(f"/fiscal/sales/{sale.id}/payments/{payment.id}/receipt")
        assert response.status_code == 200
        assert response.json()["available"] is False

        response = api.post(f"/fiscal/sales/{sale.id}/payments/{payment.id}/receipt")
        assert response.status_code == 409

    def test_cancel_requires_reason(self, api, repo):
        sale = invoiced_sale(repo)
        response = api.post(f"/fiscal/sales/{sale.id}/document/cancel", json={"reason": "  "})
        assert response.status_code == 422
        assert sale.document_status == "final"

    def test_cancel_then_document_has_no_actions(self, api, repo):
        sale = invoiced_sale(repo)

        response = api.post(f"/fiscal/sales/{sale.id}/document/cancel", json={"reason": "Erro"})
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        response = api.get(f"/fiscal/sales/{sale.id}/document")
        assert response.json()["available_actions"] == []
        assert response.json()["cancellation_reason"] == "Erro"

    def test_sync_endpoint(self, api, repo):
        sale = invoiced_sale(repo, file_url=None)

        response = api.post(f"/fiscal/sales/{sale.id}/document/sync")
        assert response.status_code == 200
        assert response.json()["outcome"] == "updated"

        response = api.post("/fiscal/sync")
        assert response.status_code == 200
        assert response.json()["failed"] == 0


# ===== TESTS DEL CLIENTE INVOICEXPRESS (sin red) =====

class TestInvoiceXpressPayloads:
    """Traducción de borradores y respuestas sin hacer peticiones"""

    def test_document_payload(self, context):
        line = direct_amount_line("Pago", Decimal("123"), context)
        draft_request = build_draft(DocumentType.INVOICE, [line], context, observations="Obs").to_request(
            issue_date=date(2025, 3, 5), proprietary_uid="backoffice-ft-1"
        )
        payload = InvoiceXpressProvider("loja", "secret")._document_payload(draft_request)

        assert payload["date"] == "05/03/2025"
        assert payload["observations"] == "Obs"
        assert payload["items"][0]["unit_price"] == 100.0
        assert payload["items"][0]["tax"] == {"name": "IVA23", "value": 23.0}
        assert payload["client"]["fiscal_id"] == "123456789"
        assert payload["client"]["country"] == "Portugal"

    def test_raw_items_shapes(self):
        single = {"items": {"item": {"name": "Mesa"}}}
        many = {"items": [{"name": "Mesa"}, {"name": "Cadeira"}]}

        assert InvoiceXpressProvider._raw_items(single) == [{"name": "Mesa"}]
        assert len(InvoiceXpressProvider._raw_items(many)) == 2
        assert InvoiceXpressProvider._raw_items({}) == []

    def test_provider_dates(self):
        assert parse_provider_date("31/12/2024") == date(2024, 12, 31)
        assert parse_provider_date("2024-12-31") is None
        assert parse_provider_date(None) is None
