"""
Contrato con el proveedor fiscal y cliente HTTP de InvoiceXpress.

El resto del módulo solo conoce ``FiscalProvider``; las respuestas se validan
con los esquemas de ``schemas.py`` antes de tocar registros locales. Los
errores del proveedor se propagan como ``ProviderError`` con el cuerpo de la
respuesta intacto para mostrarlo al usuario.
"""
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
import asyncio
import json
import logging

import aiohttp

from backoffice.common.exceptions import NotFoundError, ProviderError, ValidationError
from backoffice.core.config import settings
from backoffice.modules.fiscal.drafts import format_date, map_country
from backoffice.modules.fiscal.schemas import (
    DocumentClient, DocumentItem, DocumentRequest, DocumentSnapshot, DocumentStatus,
    DocumentType, IssuedCreditNote, IssuedReceipt, SnapshotItem, TaxInfo, parse_issued_document
)
from backoffice.modules.organizations.context import FiscalContext

logger = logging.getLogger(__name__)

ENDPOINTS = {
    DocumentType.INVOICE: "invoices",
    DocumentType.INVOICE_RECEIPT: "invoice_receipts",
    DocumentType.RECEIPT: "receipts",
    DocumentType.CREDIT_NOTE: "credit_notes",
}

RESPONSE_KEYS = {
    DocumentType.INVOICE: "invoice",
    DocumentType.INVOICE_RECEIPT: "invoice_receipt",
    DocumentType.RECEIPT: "receipt",
    DocumentType.CREDIT_NOTE: "credit_note",
}

PAYMENT_MECHANISMS = {
    "mbway": "MB",
    "transfer": "TB",
    "cash": "NU",
    "card": "CC",
    "check": "CH",
    "other": "OU",
}


def parse_provider_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%d/%m/%Y").date()
    except ValueError:
        logger.warning(f"Unexpected provider date format: {value}")
        return None


def parse_provider_status(value: Optional[str], document_id: Optional[int] = None) -> DocumentStatus:
    try:
        return DocumentStatus.from_provider(value)
    except ValueError:
        raise ProviderError(
            f"Estado de documento desconocido devuelto por el proveedor: {value}", document_id=document_id
        )


class FiscalProvider(ABC):
    """
    Operaciones que el sistema necesita del proveedor fiscal.

    Se usa como context manager asíncrono para liberar la sesión HTTP:

        async with build_provider(context) as provider:
            issued = await provider.issue_document(request)
    """

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self) -> None:
        return None

    @abstractmethod
    async def issue_document(self, request: DocumentRequest):
        """Crear el borrador y finalizarlo. Devuelve un documento de la unión ``IssuedDocument``."""

    @abstractmethod
    async def finalize_document(self, provider_id: int, doc_type: DocumentType):
        """Finalizar un borrador que quedó creado en un intento anterior."""

    @abstractmethod
    async def cancel_document(self, provider_id: int, doc_type: DocumentType, reason: str) -> None: ...

    @abstractmethod
    async def create_credit_note(
        self, original_id: int, original_type: DocumentType, reason: str,
        items: Optional[List[DocumentItem]] = None
    ) -> IssuedCreditNote: ...

    @abstractmethod
    async def register_partial_payment(
        self, invoice_id: int, amount: Decimal, payment_date: date,
        payment_method: Optional[str] = None, note: Optional[str] = None
    ) -> IssuedReceipt: ...

    @abstractmethod
    async def send_document_email(
        self, provider_id: int, doc_type: DocumentType, email: str, subject: str, body: str
    ) -> None: ...

    @abstractmethod
    async def fetch_document(self, provider_id: int, doc_type: DocumentType) -> DocumentSnapshot: ...

    @abstractmethod
    async def fetch_pdf_url(self, provider_id: int) -> Optional[str]: ...

    @abstractmethod
    async def fetch_qr_code_url(self, provider_id: int) -> Optional[str]: ...

    @abstractmethod
    async def last_document_date(self, doc_type: DocumentType) -> Optional[date]: ...

    @abstractmethod
    async def download(self, url: str) -> bytes: ...


class InvoiceXpressProvider(FiscalProvider):
    """Cliente de la API JSON de InvoiceXpress (una cuenta por organización)."""

    def __init__(
        self,
        account_name: str,
        api_key: str,
        domain: Optional[str] = None,
        timeout: Optional[float] = None,
        poll_attempts: Optional[int] = None,
        poll_delay: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.account_name = account_name
        self.api_key = api_key
        self.base_url = f"https://{account_name}.{domain or settings.FISCAL_PROVIDER_DOMAIN}"
        self.timeout = timeout if timeout is not None else settings.FISCAL_HTTP_TIMEOUT
        self.poll_attempts = poll_attempts if poll_attempts is not None else settings.FISCAL_POLL_ATTEMPTS
        self.poll_delay = poll_delay if poll_delay is not None else settings.FISCAL_POLL_DELAY_SECONDS
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        error_message: str = "Error en la comunicación con InvoiceXpress",
        document_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        session = self._get_session()
        query = {"api_key": self.api_key}
        if params:
            query.update(params)

        try:
            async with session.request(method, f"{self.base_url}{path}", params=query, json=payload) as response:
                text = await response.text()
                if response.status >= 400:
                    logger.error(f"InvoiceXpress {method} {path} failed: {response.status} {text}")
                    raise ProviderError(
                        f"{error_message} ({response.status})",
                        provider_status=response.status,
                        details=text,
                        document_id=document_id,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"InvoiceXpress {method} {path} unreachable: {e!r}")
            raise ProviderError(f"{error_message}: {e}", document_id=document_id) from e

        if not text.strip():
            return {}
        try:
            return json.loads(text)
        except ValueError:
            logger.warning(f"InvoiceXpress {method} {path} returned non-JSON body")
            return {}

    # ===== Emisión =====

    def _item_payload(self, item: DocumentItem) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": item.name,
            "description": item.description or item.name,
            "unit_price": float(item.unit_price),
            "quantity": float(item.quantity),
        }
        if item.tax is not None:
            payload["tax"] = {"name": item.tax.name, "value": float(item.tax.value)}
        if item.exemption_reason:
            payload["exemption_reason"] = item.exemption_reason
        return payload

    def _document_payload(self, request: DocumentRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "date": format_date(request.issue_date),
            "due_date": format_date(request.due_date),
            "items": [self._item_payload(item) for item in request.items],
        }
        if request.client is not None:
            client = request.client
            payload["client"] = {
                "name": client.name,
                "code": client.code or client.fiscal_id or client.name,
                "fiscal_id": client.fiscal_id,
                "email": client.email,
                "address": client.address,
                "city": client.city,
                "postal_code": client.postal_code,
                "country": client.country or settings.DEFAULT_COUNTRY,
            }
        if request.observations:
            payload["observations"] = request.observations
        if request.tax_exemption:
            payload["tax_exemption"] = request.tax_exemption
        if request.reference:
            payload["reference"] = request.reference
        return payload

    async def issue_document(self, request: DocumentRequest):
        endpoint = ENDPOINTS[request.doc_type]
        key = RESPONSE_KEYS[request.doc_type]

        body: Dict[str, Any] = {key: self._document_payload(request)}
        if request.proprietary_uid:
            body["proprietary_uid"] = request.proprietary_uid

        data = await self._request(
            "POST", f"/{endpoint}.json", body,
            error_message="Error al crear el documento en InvoiceXpress"
        )
        document = data.get(key) or {}
        document_id = document.get("id")
        if not document_id:
            raise ProviderError("InvoiceXpress no devolvió el ID del documento", details=json.dumps(data))

        logger.info(f"InvoiceXpress draft {request.doc_type.value} {document_id} created")
        issued = await self.finalize_document(document_id, request.doc_type)
        if not issued.sequence_number and document.get("sequential_number"):
            issued = issued.model_copy(update={"sequence_number": str(document["sequential_number"])})
        if not issued.permalink and document.get("permalink"):
            issued = issued.model_copy(update={"permalink": document["permalink"]})
        return issued

    async def finalize_document(self, provider_id: int, doc_type: DocumentType):
        endpoint = ENDPOINTS[doc_type]
        key = RESPONSE_KEYS[doc_type]
        data = await self._request(
            "PUT", f"/{endpoint}/{provider_id}/change-state.json", {key: {"state": "finalized"}},
            error_message="Documento creado pero no finalizado. Finalícelo en InvoiceXpress",
            document_id=provider_id,
        )
        document = data.get(key) or {}
        sequence = document.get("sequential_number") or document.get("sequence_number")
        # The document exists remotely from here on; errors must carry its id
        status = parse_provider_status(document["status"], provider_id) if document.get("status") else DocumentStatus.FINAL
        return parse_issued_document({
            "type": doc_type.value,
            "provider_id": provider_id,
            "sequence_number": str(sequence) if sequence else None,
            "status": status,
            "permalink": document.get("permalink"),
        })

    async def cancel_document(self, provider_id: int, doc_type: DocumentType, reason: str) -> None:
        endpoint = ENDPOINTS[doc_type]
        key = RESPONSE_KEYS[doc_type]
        await self._request(
            "PUT", f"/{endpoint}/{provider_id}/change-state.json",
            {key: {"state": "canceled", "message": reason}},
            error_message="Error al anular el documento en InvoiceXpress",
        )
        logger.info(f"InvoiceXpress {doc_type.value} {provider_id} cancelled")

    async def _fetch_raw(self, provider_id: int, doc_type: DocumentType) -> Dict[str, Any]:
        endpoint = ENDPOINTS[doc_type]
        data = await self._request(
            "GET", f"/{endpoint}/{provider_id}.json",
            error_message="Error al obtener el documento de InvoiceXpress",
        )
        document = data.get(RESPONSE_KEYS[doc_type])
        if not document:
            raise NotFoundError("Documento no encontrado en el proveedor")
        return document

    @staticmethod
    def _raw_items(document: Dict[str, Any]) -> List[Dict[str, Any]]:
        items = document.get("items") or []
        if isinstance(items, dict):
            item = items.get("item")
            if item is None:
                return []
            return item if isinstance(item, list) else [item]
        return items

    @staticmethod
    def _raw_client(document: Dict[str, Any]) -> Optional[DocumentClient]:
        client = document.get("client")
        if not client:
            return None
        return DocumentClient(
            name=client.get("name") or "Cliente",
            code=client.get("code"),
            fiscal_id=client.get("fiscal_id"),
            email=client.get("email") or "",
            address=client.get("address") or "",
            city=client.get("city") or "",
            postal_code=client.get("postal_code") or "",
            country=map_country(client.get("country")),
        )

    async def create_credit_note(
        self, original_id: int, original_type: DocumentType, reason: str,
        items: Optional[List[DocumentItem]] = None
    ) -> IssuedCreditNote:
        original = await self._fetch_raw(original_id, original_type)

        if items:
            credit_items = list(items)
        else:
            credit_items = []
            for raw in self._raw_items(original):
                tax = raw.get("tax")
                credit_items.append(DocumentItem(
                    name=raw.get("name") or "Item",
                    description=raw.get("description") or raw.get("name"),
                    unit_price=Decimal(str(raw.get("unit_price") or 0)),
                    quantity=Decimal(str(raw.get("quantity") or 1)),
                    tax=TaxInfo(name=tax.get("name"), value=Decimal(str(tax.get("value") or 0))) if tax else None,
                ))
        if not credit_items:
            raise ValidationError("No se pudieron determinar los ítems para la nota de crédito")

        today = date.today()
        request = DocumentRequest(
            doc_type=DocumentType.CREDIT_NOTE,
            issue_date=today,
            due_date=today,
            client=self._raw_client(original),
            items=credit_items,
            observations=reason,
            tax_exemption=original.get("tax_exemption") or None,
            reference=str(original.get("sequence_number") or original.get("sequential_number") or f"Doc #{original_id}"),
        )
        return await self.issue_document(request)

    async def register_partial_payment(
        self, invoice_id: int, amount: Decimal, payment_date: date,
        payment_method: Optional[str] = None, note: Optional[str] = None
    ) -> IssuedReceipt:
        method = payment_method or "other"
        payload = {
            "partial_payment": {
                "payment_mechanism": PAYMENT_MECHANISMS.get(method, "OU"),
                "amount": float(amount),
                "payment_date": format_date(payment_date),
                "note": note or f"Pago - {method.upper()}",
            }
        }
        data = await self._request(
            "POST", f"/documents/{invoice_id}/partial_payments.json", payload,
            error_message="Error al generar el recibo en InvoiceXpress",
        )
        receipt = data.get("receipt") or {}
        receipt_id = receipt.get("id")
        if not receipt_id:
            raise ProviderError("InvoiceXpress no devolvió el ID del recibo", details=json.dumps(data))

        sequence = receipt.get("inverted_sequence_number") or receipt.get("sequence_number")
        status = parse_provider_status(receipt["status"], receipt_id) if receipt.get("status") else DocumentStatus.FINAL
        logger.info(f"InvoiceXpress receipt {receipt_id} registered against invoice {invoice_id}")
        return IssuedReceipt(
            provider_id=receipt_id,
            sequence_number=str(sequence) if sequence else None,
            status=status,
            permalink=receipt.get("permalink"),
        )

    async def send_document_email(
        self, provider_id: int, doc_type: DocumentType, email: str, subject: str, body: str
    ) -> None:
        endpoint = ENDPOINTS[doc_type]
        payload = {
            "message": {
                "client": {"email": email, "save": "0"},
                "subject": subject or "",
                "body": body or "",
                "logo": "0",
            }
        }
        await self._request(
            "PUT", f"/{endpoint}/{provider_id}/email-document.json", payload,
            error_message="Error al enviar el documento por email",
        )
        logger.info(f"InvoiceXpress {doc_type.value} {provider_id} emailed")

    # ===== Consulta =====

    async def fetch_document(self, provider_id: int, doc_type: DocumentType) -> DocumentSnapshot:
        document = await self._fetch_raw(provider_id, doc_type)
        sequence = document.get("sequence_number") or document.get("inverted_sequence_number")

        items = []
        for raw in self._raw_items(document):
            tax = raw.get("tax")
            items.append(SnapshotItem(
                name=raw.get("name") or "",
                description=raw.get("description"),
                unit_price=Decimal(str(raw.get("unit_price") or 0)),
                quantity=Decimal(str(raw.get("quantity") or 1)),
                tax=TaxInfo(name=tax.get("name") or "", value=Decimal(str(tax.get("value") or 0))) if tax else None,
                discount=raw.get("discount"),
                subtotal=raw.get("subtotal"),
                tax_amount=raw.get("tax_amount"),
                total=raw.get("total"),
            ))

        return DocumentSnapshot(
            provider_id=document.get("id") or provider_id,
            type=doc_type,
            status=parse_provider_status(document.get("status")),
            sequence_number=str(sequence) if sequence else None,
            atcud=document.get("atcud"),
            issue_date=document.get("date"),
            due_date=document.get("due_date"),
            permalink=document.get("permalink"),
            before_taxes=document.get("before_taxes"),
            taxes=document.get("taxes"),
            total=document.get("total"),
            currency=document.get("currency"),
            tax_exemption=document.get("tax_exemption"),
            client=self._raw_client(document),
            items=items,
        )

    async def _poll(self, path: str, extract: Callable[[Dict[str, Any]], Optional[str]], label: str, provider_id: int) -> Optional[str]:
        """El proveedor genera PDF y QR de forma asíncrona; su ausencia no es un error."""
        for attempt in range(1, self.poll_attempts + 1):
            try:
                data = await self._request("GET", path, error_message=f"{label} no disponible")
                value = extract(data)
                if value:
                    return value
            except ProviderError as e:
                logger.warning(f"{label} polling attempt {attempt} for document {provider_id} failed: {e.message}")
            if attempt < self.poll_attempts:
                await asyncio.sleep(self.poll_delay)

        logger.warning(f"{label} not available for document {provider_id} after {self.poll_attempts} attempts")
        return None

    async def fetch_pdf_url(self, provider_id: int) -> Optional[str]:
        return await self._poll(
            f"/api/pdf/{provider_id}.json",
            lambda data: (data.get("output") or {}).get("pdfUrl"),
            "PDF",
            provider_id,
        )

    async def fetch_qr_code_url(self, provider_id: int) -> Optional[str]:
        return await self._poll(
            f"/api/qr_codes/{provider_id}.json",
            lambda data: (data.get("qr_code") or {}).get("url"),
            "QR code",
            provider_id,
        )

    async def last_document_date(self, doc_type: DocumentType) -> Optional[date]:
        endpoint = ENDPOINTS[doc_type]
        try:
            data = await self._request(
                "GET", f"/{endpoint}.json", params={"page": 1, "per_page": 1},
                error_message="No se pudo consultar el último documento",
            )
        except ProviderError as e:
            logger.warning(f"Could not check last {doc_type.value} date: {e.message}")
            return None

        documents = data.get(endpoint) or []
        if not isinstance(documents, list) or not documents:
            return None
        return parse_provider_date(documents[0].get("date"))

    async def download(self, url: str) -> bytes:
        session = self._get_session()
        try:
            async with session.get(url) as response:
                if response.status >= 400:
                    raise ProviderError(f"No se pudo descargar el PDF ({response.status})", provider_status=response.status)
                return await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderError(f"No se pudo descargar el PDF: {e}") from e


ProviderFactory = Callable[[FiscalContext], FiscalProvider]


def build_provider(context: FiscalContext) -> FiscalProvider:
    return InvoiceXpressProvider(context.account_name, context.api_key)
