"""Führt validierte Intents als Domänenoperationen eines Mandanten aus."""

from __future__ import annotations

from datetime import date, timedelta
import logging
import time
from typing import Optional

from konsul.email_adapter import EmailAdapter, get_adapter
from konsul.email_template import DOCUMENT_LABELS, email_subject, render_document_email
from konsul.errors import KonsulError, NotFoundError, ValidationError
from konsul.models import (
    ActionError,
    ActionResult,
    Client,
    ClientsListed,
    ClientSummary,
    CreateDocumentIntent,
    Document,
    DocumentCreated,
    DocumentsListed,
    DocumentSummary,
    DocumentType,
    EmailSent,
    Intent,
    LineItem,
    ListClientsIntent,
    ListDocumentsIntent,
    SendDocumentIntent,
    StatusUpdated,
    UnknownIntent,
    UpdateStatusIntent,
    allowed_statuses,
    normalize_status,
)
from konsul.repository import Repository
from konsul.sequence import next_id
from konsul.settings import settings
from konsul.summaries import STATUS_LABELS

logger = logging.getLogger(__name__)

_MISSING_LABELS = {"client": "cliente", "title": "título", "items": "conceptos"}


def compute_totals(items: list[LineItem], tax_rate: float) -> tuple[float, float, float]:
    """Gibt ``(subtotal, tax_amount, total)`` auf zwei Stellen gerundet zurück."""
    subtotal = sum(item.qty * item.price for item in items)
    tax_amount = subtotal * tax_rate / 100
    return round(subtotal, 2), round(tax_amount, 2), round(subtotal + tax_amount, 2)


def _not_found(document_id: str, document_type: Optional[DocumentType]) -> NotFoundError:
    if document_type is DocumentType.INVOICE:
        label = "Factura"
    elif document_type is DocumentType.QUOTE:
        label = "Cotización"
    else:
        label = "Documento"
    return NotFoundError(
        f"document {document_id} not found",
        f"{label} {document_id} no encontrada. Revisa el número con «lista».",
    )


class CommandDispatcher:
    """Bildet jede Intent-Variante auf genau eine Operation ab."""

    def __init__(
        self, repository: Repository, email_adapter: Optional[EmailAdapter] = None
    ) -> None:
        self.repository = repository
        self._email_adapter = email_adapter

    @property
    def email_adapter(self) -> EmailAdapter:
        return self._email_adapter or get_adapter()

    def dispatch(
        self, intent: Intent, tenant_id: str, acting_user_id: Optional[str] = None
    ) -> ActionResult:
        start = time.perf_counter()
        logger.info(
            "Dispatching %s for tenant %s (user %s)", intent.kind, tenant_id, acting_user_id
        )
        try:
            if isinstance(intent, CreateDocumentIntent):
                return self.create_document(intent, tenant_id)
            if isinstance(intent, UpdateStatusIntent):
                return self.update_status(intent, tenant_id)
            if isinstance(intent, SendDocumentIntent):
                return self.send_document(intent, tenant_id)
            if isinstance(intent, ListDocumentsIntent):
                return self.list_documents(intent, tenant_id)
            if isinstance(intent, ListClientsIntent):
                return self.list_clients(intent, tenant_id)
            if isinstance(intent, UnknownIntent):
                raise ValidationError(
                    "unknown intent cannot be dispatched",
                    "No entendí qué quieres hacer. Escribe /ayuda para ver ejemplos.",
                )
            raise TypeError(f"unsupported intent {type(intent).__name__}")
        finally:
            logger.info("Dispatch took %.3f s", time.perf_counter() - start)

    def dispatch_safely(
        self, intent: Intent, tenant_id: str, acting_user_id: Optional[str] = None
    ) -> ActionResult:
        """Wie ``dispatch``, wandelt fachliche Fehler aber in ``ActionError``."""
        try:
            return self.dispatch(intent, tenant_id, acting_user_id)
        except KonsulError as exc:
            if exc.retryable:
                logger.exception("Dispatch of %s failed", intent.kind)
            else:
                logger.warning("Dispatch of %s rejected: %s", intent.kind, exc)
            return ActionError(message=exc.user_message, retryable=exc.retryable)

    # -- Anlegen ---------------------------------------------------------

    def create_document(
        self, intent: CreateDocumentIntent, tenant_id: str
    ) -> DocumentCreated:
        if not intent.complete:
            missing = ", ".join(_MISSING_LABELS[m] for m in intent.missing)
            raise ValidationError(
                f"incomplete create intent: {intent.missing}",
                f"Faltan datos para crear el documento: {missing}.",
            )
        client = self.repository.upsert_client(
            tenant_id, intent.client_name, intent.client_email
        )
        return self.create_for_client(
            tenant_id,
            intent.document_type,
            client,
            intent.title,
            intent.items,
            currency=intent.currency,
            tax_rate=intent.tax_rate,
            send_email=intent.send_email,
        )

    def create_for_client(
        self,
        tenant_id: str,
        document_type: DocumentType,
        client: Client,
        title: str,
        items: list[LineItem],
        currency: Optional[str] = None,
        tax_rate: Optional[float] = None,
        send_email: bool = False,
        issue_date: Optional[date] = None,
        due_in_days: Optional[int] = None,
        notes: Optional[str] = None,
        quote_id: Optional[str] = None,
    ) -> DocumentCreated:
        """Gemeinsamer Anlagepfad für Chat, wiederkehrende Rechnungen und Umwandlung."""
        if not items:
            raise ValidationError(
                "document without items", "Añade al menos un concepto."
            )
        tenant = self.repository.tenant_settings(tenant_id)
        rate = tax_rate if tax_rate is not None else tenant.default_tax_rate
        subtotal, tax_amount, total = compute_totals(items, rate)
        issue_date = issue_date or date.today()
        due_date = None
        balance_due = None
        if document_type is DocumentType.INVOICE:
            days = due_in_days if due_in_days is not None else tenant.default_due_days
            due_date = issue_date + timedelta(days=days)
            balance_due = total

        document_id = next_id(
            self.repository,
            tenant_id,
            document_type,
            tenant.prefix_for(document_type),
            tenant.number_padding,
        )
        document = Document(
            id=document_id,
            tenant_id=tenant_id,
            type=document_type,
            client_id=client.id,
            client_name=client.name,
            title=title,
            items=list(items),
            currency=(currency or tenant.default_currency).upper(),
            tax_rate=rate,
            subtotal=subtotal,
            tax_amount=tax_amount,
            total=total,
            issue_date=issue_date,
            due_date=due_date,
            balance_due=balance_due,
            notes=notes,
            quote_id=quote_id,
        )
        self.repository.create_document(document)
        logger.info("Created %s %s for client %s", document_type.value, document_id, client.id)

        warning = None
        if send_email:
            warning = self._send_after_create(document, client)
        return DocumentCreated(
            id=document.id,
            document_type=document_type,
            title=document.title,
            total=document.total,
            currency=document.currency,
            client_name=client.name,
            warning=warning,
        )

    def _send_after_create(self, document: Document, client: Client) -> Optional[str]:
        if not client.email:
            return "No se envió el email: el cliente no tiene email registrado."
        try:
            self.email_adapter.send(
                client.email, email_subject(document), render_document_email(document)
            )
        except KonsulError as exc:
            logger.error("Email for %s failed: %s", document.id, exc)
            return "El documento se creó, pero no se pudo enviar el email. Inténtalo con «envía»."
        return None

    def convert_quote_to_invoice(self, quote_id: str, tenant_id: str) -> DocumentCreated:
        """Erzeugt aus einem angenommenen Angebot eine neue Rechnung."""
        quote = self.repository.get_document(tenant_id, quote_id.strip().upper())
        if quote is None or quote.type is not DocumentType.QUOTE:
            raise _not_found(quote_id, DocumentType.QUOTE)
        if quote.status != "accepted":
            raise ValidationError(
                f"quote {quote.id} is {quote.status}",
                f"La cotización {quote.id} debe estar aceptada antes de facturarla.",
            )
        client = self.repository.get_client(tenant_id, quote.client_id)
        if client is None:
            raise NotFoundError(
                f"client {quote.client_id} not found",
                "El cliente de la cotización ya no existe.",
            )
        return self.create_for_client(
            tenant_id,
            DocumentType.INVOICE,
            client,
            quote.title,
            quote.items,
            currency=quote.currency,
            tax_rate=quote.tax_rate,
            notes=quote.notes,
            quote_id=quote.id,
        )

    # -- Status und Versand ----------------------------------------------

    def _get_document(
        self, tenant_id: str, document_id: str, document_type: Optional[DocumentType]
    ) -> Document:
        document = self.repository.get_document(tenant_id, document_id)
        if document is None or (
            document_type is not None and document.type is not document_type
        ):
            raise _not_found(document_id, document_type)
        return document

    def update_status(self, intent: UpdateStatusIntent, tenant_id: str) -> StatusUpdated:
        document = self._get_document(tenant_id, intent.document_id, intent.document_type)
        status = normalize_status(intent.status, document.type)
        allowed = allowed_statuses(document.type)
        if status not in allowed:
            options = ", ".join(STATUS_LABELS[s] for s in allowed)
            raise ValidationError(
                f"invalid status {intent.status!r} for {document.type.value}",
                f"Estado no válido para {document.id}. Usa uno de: {options}.",
            )
        updated = self.repository.update_document_status(tenant_id, document.id, status)
        return StatusUpdated(id=updated.id, status=updated.status)

    def send_document(self, intent: SendDocumentIntent, tenant_id: str) -> EmailSent:
        document = self._get_document(tenant_id, intent.document_id, intent.document_type)
        client = self.repository.get_client(tenant_id, document.client_id)
        if client is None or not client.email:
            raise ValidationError(
                f"client of {document.id} has no email",
                "El cliente no tiene email registrado. Crea el documento de nuevo "
                "indicando su email.",
            )
        self.email_adapter.send(
            client.email, email_subject(document), render_document_email(document)
        )
        label = DOCUMENT_LABELS[document.type]
        return EmailSent(message=f"{label} {document.id} enviada a {client.email}")

    # -- Listen ----------------------------------------------------------

    @staticmethod
    def _limit(limit: Optional[int]) -> int:
        return min(limit or settings.list_limit_default, settings.list_limit_max)

    def list_documents(
        self, intent: ListDocumentsIntent, tenant_id: str
    ) -> DocumentsListed:
        if len(intent.client_candidates) > 1:
            names = ", ".join(c.name for c in intent.client_candidates)
            raise ValidationError(
                "ambiguous client filter",
                f"Hay varios clientes que coinciden: {names}. ¿Cuál de ellos?",
            )
        documents = self.repository.list_documents(
            tenant_id,
            document_type=intent.document_type,
            client_filter=intent.client_filter,
            limit=self._limit(intent.limit),
        )
        return DocumentsListed(
            documents=[DocumentSummary.from_document(d) for d in documents]
        )

    def list_clients(self, intent: ListClientsIntent, tenant_id: str) -> ClientsListed:
        clients = self.repository.list_clients(
            tenant_id, name_filter=intent.name_filter, limit=self._limit(intent.limit)
        )
        return ClientsListed(
            clients=[ClientSummary(name=c.name, email=c.email) for c in clients]
        )
