"""Übersetzt Freitext in einen validierten Intent.

Die konfigurierten LLM-Backends werden der Reihe nach gefragt. Liefert keines
eine verwertbare Antwort, greift ein regelbasierter Parser. Anschließend
werden Kundennamen und Verweise wie "la última" gegen den Mandantenkontext
aufgelöst. Das Parsen selbst schreibt nichts in die Datenbank.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Optional

from pydantic import BaseModel

from konsul.errors import ProviderError
from konsul.llm_agent import (
    TOOLS,
    LLMProvider,
    LLMReply,
    complete_with_timing,
    configured_providers,
)
from konsul.models import (
    ClientCandidate,
    CreateDocumentIntent,
    DocumentSummary,
    DocumentType,
    Intent,
    LineItem,
    ListClientsIntent,
    ListDocumentsIntent,
    SendDocumentIntent,
    UnknownIntent,
    UpdateStatusIntent,
    document_type_from_text,
    normalize_status,
    parse_intent_payload,
)

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.4


class TenantContext(BaseModel):
    """Was der Parser über den Mandanten wissen darf."""

    tenant_id: str
    clients: list[ClientCandidate] = []
    # Neueste Dokumente zuerst.
    recent_documents: list[DocumentSummary] = []
    default_currency: str = "EUR"
    default_tax_rate: float = 21.0


class ClientResolution(BaseModel):
    match: Optional[ClientCandidate] = None
    candidates: list[ClientCandidate] = []

    @property
    def is_new(self) -> bool:
        return self.match is None and not self.candidates


def resolve_client(name: str, clients: list[ClientCandidate]) -> ClientResolution:
    """Exakter Treffer gewinnt, Teiltreffer werden zur Auswahl gestellt."""

    needle = name.strip().casefold()
    if not needle:
        return ClientResolution()
    for client in clients:
        if client.name.casefold() == needle:
            return ClientResolution(match=client)
    candidates = [c for c in clients if needle in c.name.casefold()]
    return ClientResolution(candidates=candidates)


# ---------------------------------------------------------------------------
# Regelbasierter Rückfall

_ID_PATTERN = re.compile(r"\b([A-Za-z]{1,6}-\d{1,10})\b")
_EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
_PERCENT_PATTERN = re.compile(r"(\d+(?:[.,]\d+)?)\s*%")
_NUMBER_PATTERN = re.compile(r"\d{1,3}(?:\.\d{3})+(?:,\d+)?|\d+(?:[.,]\d+)?")
_GROUPED_PATTERN = re.compile(r"\d{1,3}(?:\.\d{3})+")
_CLIENT_PATTERN = re.compile(
    r"\b(?:para|de|for)\s+"
    r"([A-ZÁÉÍÓÚÑ][\w.&'-]*(?:\s+[A-ZÁÉÍÓÚÑ][\w.&'-]*)*)"
)
_DESCRIPTION_PATTERNS = (
    re.compile(r"\bconcepto:?\s+([^,;\n]+)", re.IGNORECASE),
    re.compile(r"\bpor\s+(?![\d$€])([^,;\n]+)", re.IGNORECASE),
    re.compile(r"\bde\s+(?![\d$€])([a-záéíóúñü][^,;\n]*)"),
)
_DESCRIPTION_STOP = re.compile(
    r"\s+(?:para|por|de|for|con)\s+(?=[A-ZÁÉÍÓÚÑ\d$€])|\s+\d|\.\s*$"
)
_DEICTIC_PATTERN = re.compile(
    r"\b(?:la|el|lo)\s+[úu]ltim[ao]\b|\b[úu]ltim[ao]\b|\bthe\s+last(?:\s+one)?\b|\blatest\b",
    re.IGNORECASE,
)

_CREATE_WORDS = {
    "crea", "crear", "creame", "créame", "nueva", "nuevo", "haz", "hazme",
    "genera", "generar", "prepara", "create", "new", "make",
}
_LIST_WORDS = {
    "lista", "listar", "listame", "lístame", "muestra", "mostrar", "muéstrame",
    "muestrame", "ver", "enseña", "list", "show",
}
_SEND_WORDS = {
    "envía", "envia", "enviar", "envíala", "enviala", "envíalo", "envialo",
    "manda", "mandar", "mándala", "mandala", "send",
}
_STATUS_WORDS = {
    "pagada", "pagado", "cobrada", "paid", "aceptada", "aceptado", "aprobada",
    "accepted", "rechazada", "rechazado", "rejected", "enviada", "enviado",
    "sent", "cancelada", "anulada", "cancelled", "canceled", "vencida",
    "overdue", "borrador", "draft",
}
_PLURAL_TYPES = {
    "facturas": DocumentType.INVOICE,
    "invoices": DocumentType.INVOICE,
    "cotizaciones": DocumentType.QUOTE,
    "presupuestos": DocumentType.QUOTE,
    "quotes": DocumentType.QUOTE,
}


def _tokens(text: str) -> list[str]:
    return re.findall(r"[\wáéíóúñü]+", text.casefold())


def _detect_document_type(tokens: list[str]) -> Optional[DocumentType]:
    for token in tokens:
        detected = document_type_from_text(token)
        if detected is not None:
            return detected
    return None


def _extract_client_name(text: str) -> Optional[str]:
    match = _CLIENT_PATTERN.search(text)
    if not match:
        return None
    name = match.group(1).strip().rstrip(",;:")
    # Satzendepunkt entfernen, Abkürzungen wie "S.A." aber behalten.
    if name.endswith(".") and "." not in name.split()[-1][:-1]:
        name = name[:-1]
    return name or None


def _extract_description(text: str) -> Optional[str]:
    for pattern in _DESCRIPTION_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        phrase = _DESCRIPTION_STOP.split(match.group(1), maxsplit=1)[0].strip()
        phrase = phrase.strip(" .")
        if phrase and not _PLURAL_TYPES.get(phrase.casefold()):
            return phrase
    return None


def parse_amount(token: str) -> float:
    """Liest ``"1.500"``, ``"1.000,50"``, ``"1,000.50"``, ``"12,5"`` und ``"10.5"``."""
    token = token.strip()
    if "," in token and "." in token:
        if token.rfind(",") > token.rfind("."):
            token = token.replace(".", "").replace(",", ".")
        else:
            token = token.replace(",", "")
    elif _GROUPED_PATTERN.fullmatch(token):
        token = token.replace(".", "")
    else:
        token = token.replace(",", ".")
    return float(token)


def _extract_price(text: str) -> Optional[float]:
    scrubbed = _EMAIL_PATTERN.sub(" ", text)
    scrubbed = _ID_PATTERN.sub(" ", scrubbed)
    scrubbed = _PERCENT_PATTERN.sub(" ", scrubbed)
    values = []
    for token in _NUMBER_PATTERN.findall(scrubbed):
        values.append(parse_amount(token))
    return max(values) if values else None


def _detect_currency(text: str, default: str) -> str:
    lowered = text.casefold()
    if "$" in text or re.search(r"\b(usd|d[oó]lar(es)?|dollars?)\b", lowered):
        return "USD"
    if "€" in text or re.search(r"\b(eur|euros?)\b", lowered):
        return "EUR"
    return default


def _latest_document(
    context: TenantContext, document_type: Optional[DocumentType]
) -> Optional[DocumentSummary]:
    for document in context.recent_documents:
        if document_type is None or document.type is document_type:
            return document
    return None


def fallback_parse(text: str, context: TenantContext) -> Intent:
    """Ordnet Schlüsselwörter einer Intent-Variante zu."""

    tokens = _tokens(text)
    token_set = set(tokens)
    lowered = text.casefold()
    common = {"source": "fallback", "confidence": FALLBACK_CONFIDENCE}
    document_type = _detect_document_type(tokens)
    id_match = _ID_PATTERN.search(text)
    document_id = id_match.group(1).upper() if id_match else None
    deictic = bool(_DEICTIC_PATTERN.search(text))

    if any(t.startswith("cliente") or t == "clients" for t in tokens) and (
        token_set & _LIST_WORDS or lowered.strip() in ("clientes", "/clientes", "clients")
    ):
        name_filter = None
        match = re.search(r"\b(?:llamad[oa]s?|con nombre|named)\s+(\S+)", text, re.I)
        if match:
            name_filter = match.group(1)
        return ListClientsIntent(name_filter=name_filter, **common)

    status_word = next((t for t in tokens if t in _STATUS_WORDS), None)
    if document_id or deictic:
        if document_id is None:
            latest = _latest_document(context, document_type)
            if latest is None:
                return UnknownIntent(reason="no_recent_document", **common)
            document_id = latest.id
            document_type = document_type or latest.type
        if status_word:
            return UpdateStatusIntent(
                document_id=document_id,
                status=normalize_status(status_word, document_type),
                document_type=document_type,
                **common,
            )
        if token_set & _SEND_WORDS:
            return SendDocumentIntent(
                document_id=document_id, document_type=document_type, **common
            )

    plural_type = next((_PLURAL_TYPES[t] for t in tokens if t in _PLURAL_TYPES), None)
    creating = bool(token_set & _CREATE_WORDS)
    if (plural_type and not creating) or (token_set & _LIST_WORDS and document_type):
        return ListDocumentsIntent(
            document_type=plural_type or document_type,
            client_filter=_extract_client_name(text),
            **common,
        )

    if document_type is not None:
        description = _extract_description(text)
        price = _extract_price(text)
        items = []
        if price is not None:
            items.append(LineItem(description=description or "Servicio", qty=1, price=price))
        email_match = _EMAIL_PATTERN.search(text)
        percent = _PERCENT_PATTERN.search(text)
        tax_rate = parse_amount(percent.group(1)) if percent else None
        if tax_rate is not None and not 0 <= tax_rate <= 100:
            logger.info("Ignoring tax rate %s outside 0-100", tax_rate)
            tax_rate = None
        return CreateDocumentIntent(
            document_type=document_type,
            client_name=_extract_client_name(text),
            client_email=email_match.group(0) if email_match else None,
            title=description,
            items=items,
            currency=_detect_currency(text, context.default_currency),
            tax_rate=tax_rate,
            send_email=bool(token_set & _SEND_WORDS),
            **common,
        )

    return UnknownIntent(reason="no_match", source="fallback", confidence=0.0)


# ---------------------------------------------------------------------------
# LLM-Pfad


def build_prompt(text: str, context: TenantContext) -> str:
    """Stellt den Eingabetext für das LLM zusammen."""
    clients = [c.model_dump(exclude={"id"}) for c in context.clients[:50]]
    documents = [d.model_dump(mode="json") for d in context.recent_documents[:10]]
    return (
        f"Moneda por defecto: {context.default_currency}. "
        f"IVA por defecto: {context.default_tax_rate}%.\n"
        f"Clientes conocidos: {json.dumps(clients, ensure_ascii=False)}\n"
        f"Documentos recientes: {json.dumps(documents, ensure_ascii=False)}\n"
        "Estados de cotización: draft, sent, accepted, rejected. "
        "Estados de factura: draft, sent, paid, overdue, cancelled.\n"
        f'Mensaje: "{text}"'
    )


def intent_from_reply(reply: LLMReply) -> Intent:
    """Validiert eine Backend-Antwort; ungültige Daten lösen ``ValueError`` aus."""
    if reply.is_tool_call:
        return parse_intent_payload(
            reply.arguments or {}, name=reply.tool_name, source=reply.provider
        )
    return parse_intent_payload(reply.text or "", source=reply.provider)


class IntentParser:
    """Fragt die LLM-Backends der Reihe nach und fällt auf Regeln zurück."""

    def __init__(self, providers: Optional[list[LLMProvider]] = None) -> None:
        # ``None`` bedeutet: die konfigurierten Provider bei jedem Aufruf lesen.
        self._providers = providers

    @property
    def providers(self) -> list[LLMProvider]:
        if self._providers is None:
            return configured_providers()
        return self._providers

    def parse(self, raw_text: str, context: TenantContext) -> Intent:
        text = (raw_text or "").strip()
        if not text:
            return UnknownIntent(reason="empty", source="fallback", confidence=0.0)

        intent: Optional[Intent] = None
        prompt = build_prompt(text, context)
        for provider in self.providers:
            try:
                reply = complete_with_timing(provider, prompt, TOOLS)
                logger.debug("LLM raw reply from %s: %s", provider.name, reply)
                intent = intent_from_reply(reply)
                break
            except ProviderError as exc:
                logger.warning("LLM provider %s failed: %s", provider.name, exc)
            except ValueError as exc:
                logger.warning(
                    "Discarding unparsable reply from %s: %s", provider.name, exc
                )

        if intent is None:
            try:
                intent = fallback_parse(text, context)
            except ValueError as exc:
                logger.warning("Rule-based parse produced invalid values: %s", exc)
                return UnknownIntent(
                    reason="invalid_values", source="fallback", confidence=0.0
                )
        return self._resolve(intent, text, context)

    def _resolve(self, intent: Intent, text: str, context: TenantContext) -> Intent:
        if isinstance(intent, CreateDocumentIntent):
            update: dict = {}
            if intent.client_name:
                resolution = resolve_client(intent.client_name, context.clients)
                if resolution.match is not None:
                    update["client_name"] = resolution.match.name
                    if not intent.client_email and resolution.match.email:
                        update["client_email"] = resolution.match.email
                elif resolution.candidates:
                    update["client_candidates"] = resolution.candidates
            if not intent.currency:
                update["currency"] = context.default_currency
            if intent.tax_rate is None:
                update["tax_rate"] = context.default_tax_rate
            return intent.model_copy(update=update)

        if isinstance(intent, ListDocumentsIntent) and intent.client_filter:
            resolution = resolve_client(intent.client_filter, context.clients)
            if resolution.match is not None:
                return intent.model_copy(update={"client_filter": resolution.match.name})
            if len(resolution.candidates) > 1:
                return intent.model_copy(
                    update={"client_candidates": resolution.candidates}
                )
            return intent

        if isinstance(intent, (UpdateStatusIntent, SendDocumentIntent)):
            document_id = intent.document_id
            document_type = intent.document_type
            if _DEICTIC_PATTERN.search(document_id) or (
                not _ID_PATTERN.fullmatch(document_id) and _DEICTIC_PATTERN.search(text)
            ):
                latest = _latest_document(context, document_type)
                if latest is None:
                    return UnknownIntent(
                        reason="no_recent_document",
                        source=intent.source,
                        confidence=intent.confidence,
                    )
                document_id = latest.id
            if document_type is None:
                known = next(
                    (d for d in context.recent_documents if d.id == document_id), None
                )
                if known is not None:
                    document_type = known.type
            update = {"document_id": document_id, "document_type": document_type}
            if isinstance(intent, UpdateStatusIntent):
                update["status"] = normalize_status(intent.status, document_type)
            return intent.model_copy(update=update)

        return intent
