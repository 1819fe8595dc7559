"""Datenmodelle für Dokumente, Gespräche, Intents und Aktionsergebnisse."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
import json
import re
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    computed_field,
    field_validator,
)


class DocumentType(str, Enum):
    QUOTE = "quote"
    INVOICE = "invoice"


QUOTE_STATUSES = ("draft", "sent", "accepted", "rejected")
INVOICE_STATUSES = ("draft", "sent", "paid", "overdue", "cancelled")

# Spanische und englische Varianten, wie sie Nutzer und LLMs liefern.
_STATUS_SYNONYMS = {
    "borrador": "draft",
    "draft": "draft",
    "enviada": "sent",
    "enviado": "sent",
    "sent": "sent",
    "aceptada": "accepted",
    "aceptado": "accepted",
    "aprobada": "accepted",
    "accepted": "accepted",
    "rechazada": "rejected",
    "rechazado": "rejected",
    "rejected": "rejected",
    "pagada": "paid",
    "pagado": "paid",
    "cobrada": "paid",
    "paid": "paid",
    "vencida": "overdue",
    "overdue": "overdue",
    "cancelada": "cancelled",
    "anulada": "cancelled",
    "cancelled": "cancelled",
    "canceled": "cancelled",
}


def normalize_status(status: str, document_type: DocumentType | None = None) -> str:
    """Bringt einen Status auf das kanonische Vokabular.

    Rechnungen kennen keinen Status "accepted"; er wird dort zu "paid".
    """

    key = status.strip().casefold()
    canonical = _STATUS_SYNONYMS.get(key, key)
    if document_type is DocumentType.INVOICE and canonical == "accepted":
        return "paid"
    return canonical


def allowed_statuses(document_type: DocumentType) -> tuple[str, ...]:
    if document_type is DocumentType.INVOICE:
        return INVOICE_STATUSES
    return QUOTE_STATUSES


class LineItem(BaseModel):
    """Einzelne Position eines Angebots oder einer Rechnung."""

    description: str = Field(min_length=1)
    qty: float = Field(gt=0)
    price: float = Field(ge=0)

    @property
    def total(self) -> float:
        """Gesamtpreis der Position (Menge × Einzelpreis)."""
        return self.qty * self.price


class Client(BaseModel):
    id: str
    tenant_id: str
    name: str
    email: Optional[str] = None


class ClientCandidate(BaseModel):
    """Treffer aus der Kundensuche, der dem Nutzer zur Auswahl angeboten wird."""

    id: str
    name: str
    email: Optional[str] = None


class TenantSettings(BaseModel):
    """Voreinstellungen eines Mandanten; fehlende Werte kommen aus ``Settings``."""

    default_tax_rate: float = 21.0
    default_currency: str = "EUR"
    invoice_prefix: str = "INV-"
    quote_prefix: str = "Q-"
    number_padding: int = 5
    default_due_days: int = 15

    def prefix_for(self, document_type: DocumentType) -> str:
        if document_type is DocumentType.INVOICE:
            return self.invoice_prefix
        return self.quote_prefix


class Document(BaseModel):
    id: str
    tenant_id: str
    type: DocumentType
    client_id: str
    client_name: str
    title: str
    items: list[LineItem]
    currency: str
    tax_rate: float
    subtotal: float
    tax_amount: float
    total: float
    status: str = "draft"
    issue_date: date
    due_date: Optional[date] = None
    balance_due: Optional[float] = None
    # Angebot, aus dem eine Rechnung hervorging.
    quote_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class DocumentSummary(BaseModel):
    id: str
    type: DocumentType
    title: str
    client_name: str
    status: str
    total: float
    currency: str

    @classmethod
    def from_document(cls, document: Document) -> "DocumentSummary":
        return cls(
            id=document.id,
            type=document.type,
            title=document.title,
            client_name=document.client_name,
            status=document.status,
            total=document.total,
            currency=document.currency,
        )


class ClientSummary(BaseModel):
    name: str
    email: Optional[str] = None


class Frequency(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class RecurringSchedule(BaseModel):
    """Vorlage für wiederkehrende Rechnungen samt Ausführungsrhythmus."""

    id: str
    tenant_id: str
    client_id: str
    title: str
    items: list[LineItem] = []
    currency: str = "EUR"
    tax_rate: float = 21.0
    frequency: Frequency = Frequency.MONTHLY
    interval: int = Field(default=1, ge=1)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    next_run_date: date
    last_run_date: Optional[date] = None
    end_date: Optional[date] = None
    is_active: bool = True
    due_in_days: int = 30
    notes: Optional[str] = None


# ---------------------------------------------------------------------------
# Gesprächszustand


class ConversationState(str, Enum):
    IDLE = "idle"
    COLLECTING_CLIENT = "collecting_client"
    COLLECTING_TITLE = "collecting_title"
    COLLECTING_ITEMS = "collecting_items"
    CONFIRMING = "confirming"


class Draft(BaseModel):
    """Noch nicht abgeschickter Dokumententwurf einer Sitzung."""

    type: DocumentType
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    title: Optional[str] = None
    items: list[LineItem] = []
    currency: Optional[str] = None
    tax_rate: Optional[float] = None
    send_email: bool = False
    # Nur solange gefüllt, wie eine nummerierte Auswahl aussteht.
    candidates: list[ClientCandidate] = []
    awaiting_new_client_name: bool = False

    @property
    def subtotal(self) -> float:
        return sum(item.total for item in self.items)


class ConversationSession(BaseModel):
    channel: str
    conversation_id: str
    state: ConversationState = ConversationState.IDLE
    user_id: Optional[str] = None
    tenant_id: Optional[str] = None
    draft: Optional[Draft] = None
    listing_type: Optional[DocumentType] = None
    listing_candidates: list[ClientCandidate] = []
    history: list[dict[str, str]] = []

    @property
    def key(self) -> str:
        return session_key(self.channel, self.conversation_id, self.tenant_id)

    def reset(self) -> None:
        """Verwirft den Entwurf und kehrt in den Ruhezustand zurück."""
        self.state = ConversationState.IDLE
        self.draft = None
        self.listing_type = None
        self.listing_candidates = []


def session_key(
    channel: str, conversation_id: str, tenant_id: Optional[str] = None
) -> str:
    if tenant_id is None:
        return f"{channel}:{conversation_id}"
    return f"{tenant_id}:{channel}:{conversation_id}"


# ---------------------------------------------------------------------------
# Intents


class _IntentBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    source: str = "llm"


class CreateDocumentIntent(_IntentBase):
    kind: Literal["create_document"] = "create_document"
    document_type: DocumentType
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    # Mehrdeutige Kundentreffer; solange gefüllt, ist der Intent unvollständig.
    client_candidates: list[ClientCandidate] = []
    title: Optional[str] = None
    items: list[LineItem] = []
    currency: Optional[str] = None
    tax_rate: Optional[float] = Field(default=None, ge=0, le=100)
    send_email: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def missing(self) -> list[str]:
        missing: list[str] = []
        if not self.client_name or self.client_candidates:
            missing.append("client")
        if not self.title:
            missing.append("title")
        if not self.items:
            missing.append("items")
        return missing

    @computed_field  # type: ignore[prop-decorator]
    @property
    def complete(self) -> bool:
        return not self.missing


class UpdateStatusIntent(_IntentBase):
    kind: Literal["update_status"] = "update_status"
    document_id: str = Field(min_length=1)
    status: str = Field(min_length=1)
    document_type: Optional[DocumentType] = None

    @field_validator("document_id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        return value.strip().upper()


class SendDocumentIntent(_IntentBase):
    kind: Literal["send_document"] = "send_document"
    document_id: str = Field(min_length=1)
    document_type: Optional[DocumentType] = None

    @field_validator("document_id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        return value.strip().upper()


class ListDocumentsIntent(_IntentBase):
    kind: Literal["list_documents"] = "list_documents"
    document_type: Optional[DocumentType] = None
    client_filter: Optional[str] = None
    client_candidates: list[ClientCandidate] = []
    limit: int = Field(default=10, ge=1)


class ListClientsIntent(_IntentBase):
    kind: Literal["list_clients"] = "list_clients"
    name_filter: Optional[str] = None
    limit: int = Field(default=10, ge=1)


class UnknownIntent(_IntentBase):
    kind: Literal["unknown"] = "unknown"
    # Freitextantwort des LLMs, falls vorhanden.
    reply: Optional[str] = None
    # Warum kein verwertbarer Intent entstand (z. B. "missing_document_id").
    reason: Optional[str] = None


Intent = Annotated[
    Union[
        CreateDocumentIntent,
        UpdateStatusIntent,
        SendDocumentIntent,
        ListDocumentsIntent,
        ListClientsIntent,
        UnknownIntent,
    ],
    Field(discriminator="kind"),
]

IntentAdapter: TypeAdapter[Intent] = TypeAdapter(Intent)


# ---------------------------------------------------------------------------
# Aktionsergebnisse


class DocumentCreated(BaseModel):
    type: Literal["document_created"] = "document_created"
    id: str
    document_type: DocumentType
    title: str
    total: float
    currency: str
    client_name: str
    # Hinweis, wenn z. B. der E-Mail-Versand fehlschlug.
    warning: Optional[str] = None


class StatusUpdated(BaseModel):
    type: Literal["status_updated"] = "status_updated"
    id: str
    status: str


class DocumentsListed(BaseModel):
    type: Literal["documents_listed"] = "documents_listed"
    documents: list[DocumentSummary]


class ClientsListed(BaseModel):
    type: Literal["clients_listed"] = "clients_listed"
    clients: list[ClientSummary]


class EmailSent(BaseModel):
    type: Literal["email_sent"] = "email_sent"
    message: str


class ActionError(BaseModel):
    type: Literal["error"] = "error"
    message: str
    retryable: bool = False


ActionResult = Annotated[
    Union[
        DocumentCreated,
        StatusUpdated,
        DocumentsListed,
        ClientsListed,
        EmailSent,
        ActionError,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Rohdaten aus LLM-Antworten

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)

# Ältere Funktionsnamen der Chat-Schnittstelle → (kind, Dokumenttyp)
_LEGACY_KINDS: dict[str, tuple[str, DocumentType | None]] = {
    "create_invoice": ("create_document", DocumentType.INVOICE),
    "create_quote": ("create_document", DocumentType.QUOTE),
    "update_invoice_status": ("update_status", DocumentType.INVOICE),
    "update_quote_status": ("update_status", DocumentType.QUOTE),
    "send_invoice_email": ("send_document", DocumentType.INVOICE),
    "send_quote_email": ("send_document", DocumentType.QUOTE),
    "list_invoices": ("list_documents", DocumentType.INVOICE),
    "list_quotes": ("list_documents", DocumentType.QUOTE),
    "query": ("unknown", None),
}

_KINDS = {
    "create_document",
    "update_status",
    "send_document",
    "list_documents",
    "list_clients",
    "unknown",
}


def load_json_payload(text: str) -> dict[str, Any]:
    """Sucht das JSON-Objekt in einer LLM-Antwort und lädt es.

    Zuerst wird ein Markdown-Codeblock gesucht, sonst der längste Abschnitt
    zwischen geschweiften Klammern.
    """

    if not text or not text.strip():
        raise ValueError("empty payload")

    cleaned = text.strip()
    fenced = _FENCE_PATTERN.search(cleaned)
    if fenced:
        cleaned = fenced.group(1)

    match = re.search(r"\{.*\}", cleaned, re.DOTALL)
    if not match:
        raise ValueError("no JSON object found")
    cleaned = match.group(0)

    # Übrig gebliebene Fence-Marker, Kommentare und hängende Kommata
    # entfernen. Die Regex für Zeilenkommentare ignoriert ``https://``.
    cleaned = cleaned.replace("```json", "").replace("```", "")
    cleaned = re.sub(r"(?<![:\"])//.*", "", cleaned)
    cleaned = re.sub(r"/\*.*?\*/", "", cleaned, flags=re.DOTALL)
    cleaned = re.sub(r",\s*(?=[}\]])", "", cleaned)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid JSON payload") from exc
    if not isinstance(data, dict):
        raise ValueError("JSON payload is not an object")
    return data


def document_type_from_text(text: str) -> DocumentType | None:
    """Erkennt den Dokumenttyp aus Wörtern wie "factura" oder "quote"."""

    lowered = text.strip().casefold()
    if lowered.startswith(("factura", "invoice")):
        return DocumentType.INVOICE
    if lowered.startswith(("cotiz", "quote", "presupuesto")):
        return DocumentType.QUOTE
    return None


def _to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = re.search(r"-?\d+(?:[.,]\d+)?", str(value))
    if not match:
        return None
    return float(match.group(0).replace(",", "."))


def _normalize_items(raw_items: Any) -> list[dict[str, Any]]:
    if not isinstance(raw_items, list):
        return []
    items: list[dict[str, Any]] = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            # Nicht interpretierbare Positionen werden übersprungen.
            continue
        description = str(raw.get("description") or "").strip()
        qty = _to_float(raw.get("qty", raw.get("quantity")))
        price = _to_float(raw.get("price", raw.get("unit_price")))
        if qty is None:
            qty = 1.0
        if not description or qty <= 0 or price is None or price < 0:
            continue
        items.append({"description": description, "qty": qty, "price": price})
    return items


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _unwrap_function_call(data: dict[str, Any]) -> tuple[str | None, dict[str, Any]]:
    """Zieht den ersten Funktionsaufruf aus ``{"function_calls": [...]}``."""

    calls = data.get("function_calls")
    if not isinstance(calls, list) or not calls:
        return None, data
    call = calls[0] if isinstance(calls[0], dict) else {}
    arguments = call.get("arguments") or {}
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError as exc:
            raise ValueError("invalid function call arguments") from exc
    if not isinstance(arguments, dict):
        raise ValueError("function call arguments are not an object")
    return call.get("name"), arguments


def parse_intent_payload(
    payload: str | dict[str, Any],
    name: str | None = None,
    source: str = "llm",
) -> Intent:
    """Überführt eine rohe LLM-Antwort in eine streng validierte Intent-Variante.

    ``payload`` ist entweder Freitext mit eingebettetem JSON oder bereits ein
    Dictionary (z. B. die Argumente eines Funktionsaufrufs, dann steht der
    Funktionsname in ``name``). Ungültige Daten führen zu ``ValueError``.
    """

    data = load_json_payload(payload) if isinstance(payload, str) else dict(payload)
    reply = data.get("message") if isinstance(data.get("message"), str) else None
    call_name, arguments = _unwrap_function_call(data)
    if call_name:
        name = call_name
        data = arguments

    label = str(name or _first(data, "kind", "intent", "action") or "unknown")
    label = label.strip().casefold()
    document_type: DocumentType | None = None
    if label in _LEGACY_KINDS:
        label, document_type = _LEGACY_KINDS[label]
    if label not in _KINDS:
        raise ValueError(f"unsupported intent {label!r}")

    raw_type = _first(data, "document_type", "documentType", "type")
    if document_type is None and raw_type:
        document_type = document_type_from_text(str(raw_type))

    confidence = _to_float(data.get("confidence"))
    common: dict[str, Any] = {
        "kind": label,
        "source": source,
        "confidence": min(max(confidence, 0.0), 1.0) if confidence is not None else 0.8,
    }

    if label == "create_document":
        actions = data.get("actions") or []
        send_email = bool(_first(data, "send_email", "sendEmail")) or (
            isinstance(actions, list) and "send_email" in actions
        )
        fields = {
            "document_type": document_type,
            "client_name": _first(data, "client_name", "clientName", "client"),
            "client_email": _first(data, "client_email", "clientEmail", "email"),
            "title": _first(data, "title"),
            "items": _normalize_items(data.get("items")),
            "currency": _first(data, "currency"),
            "tax_rate": _to_float(_first(data, "tax_rate", "taxRate", "tax")),
            "send_email": send_email,
        }
    elif label in ("update_status", "send_document"):
        fields = {
            "document_id": _first(
                data, "document_id", "documentId", "invoiceId", "quoteId", "id"
            ),
            "document_type": document_type,
        }
        if label == "update_status":
            status = _first(data, "status")
            fields["status"] = (
                normalize_status(str(status), document_type) if status else None
            )
    elif label == "list_documents":
        fields = {
            "document_type": document_type,
            "client_filter": _first(data, "client_filter", "clientName", "client"),
            "limit": int(_to_float(data.get("limit")) or 10),
        }
    elif label == "list_clients":
        fields = {
            "name_filter": _first(data, "name_filter", "filter", "query"),
            "limit": int(_to_float(data.get("limit")) or 10),
        }
    else:
        fields = {"reply": reply or _first(data, "reply", "text")}

    if isinstance(fields.get("currency"), str):
        fields["currency"] = fields["currency"].strip().upper()
    cleaned = {k: v for k, v in fields.items() if v is not None}
    try:
        return IntentAdapter.validate_python({**common, **cleaned})
    except ValidationError as exc:
        raise ValueError(f"invalid {label} intent: {exc.error_count()} errors") from exc
