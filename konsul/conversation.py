"""Mehrstufige Erfassung von Angeboten und Rechnungen im Dialog.

Die Zustandsmaschine ist kanalunabhängig: Web-Chat und Telegram-Bot rufen
beide ``ConversationEngine.handle`` auf und rendern nur die Antwort.
"""

from __future__ import annotations

from functools import lru_cache
import logging
import re
from typing import Optional

from pydantic import BaseModel

from konsul.dispatcher import CommandDispatcher
from konsul.intent_parser import IntentParser, TenantContext, parse_amount, resolve_client
from konsul.models import (
    ActionError,
    ActionResult,
    ClientCandidate,
    ConversationSession,
    ConversationState,
    CreateDocumentIntent,
    DocumentSummary,
    DocumentType,
    Draft,
    LineItem,
    ListClientsIntent,
    ListDocumentsIntent,
    UnknownIntent,
    session_key,
)
from konsul.repository import Repository, get_repository
from konsul.request_id import conversation_ctx_var
from konsul.session_store import SessionStore, get_session_store
from konsul.settings import settings
from konsul.summaries import TYPE_LABELS, describe_draft, describe_items, describe_result, format_money

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20

CANCEL_WORDS = {"cancelar", "cancel", "/cancelar", "/cancel"}
DONE_WORDS = {"terminar", "done", "listo", "finalizar"}
NEW_CLIENT_WORDS = {"nuevo", "nueva", "new"}
YES_WORDS = {"sí", "si", "s", "yes", "y", "ok", "vale", "confirmar", "confirmo", "dale"}
NO_WORDS = {"no", "n", "descartar"}

_CREATE_PATTERN = re.compile(
    r"\b(crea|crear|créame|creame|nueva|nuevo|haz|hazme|genera|create|new)\b.*"
    r"\b(factura|cotizaci[oó]n|presupuesto|invoice|quote)\b",
    re.IGNORECASE,
)

_AMOUNT_PATTERN = re.compile(r"\d+(?:[.,]\d+)*")

HELP_TEXT = (
    "📖 Comandos disponibles:\n\n"
    "/crear_factura - Crear una nueva factura\n"
    "/crear_cotizacion - Crear una nueva cotización\n"
    "/clientes - Listar todos los clientes\n"
    "/cancelar - Cancelar operación en curso\n"
    "/ayuda - Mostrar esta ayuda\n\n"
    "También puedes escribir, por ejemplo: "
    "«crea una cotización para Acme de 500 euros, concepto hosting»."
)

ITEM_FORMAT_HELP = (
    "Formato:\n"
    "Descripción | Cantidad | Precio\n\n"
    "Ejemplo: Desarrollo web | 10 | 50"
)


class ConversationReply(BaseModel):
    message: str
    state: ConversationState
    actions: list[ActionResult] = []
    draft: Optional[Draft] = None


def _type_word(document_type: DocumentType) -> str:
    return TYPE_LABELS[document_type].lower()


def _parse_number(value: str) -> Optional[float]:
    """Liest Zahlen wie ``"10"``, ``"12,5"``, ``"1.5"`` oder ``"1.500"``."""
    cleaned = value.strip().replace("€", "").replace("$", "").strip()
    if not _AMOUNT_PATTERN.fullmatch(cleaned):
        return None
    return parse_amount(cleaned)


def _parse_item_line(text: str) -> Optional[LineItem]:
    parts = [p.strip() for p in text.split("|")]
    if len(parts) != 3 or not parts[0]:
        return None
    qty = _parse_number(parts[1])
    price = _parse_number(parts[2])
    if qty is None or price is None or qty <= 0 or price <= 0:
        return None
    return LineItem(description=parts[0], qty=qty, price=price)


def _numbered_candidates(candidates: list[ClientCandidate]) -> str:
    return "\n".join(
        f"{idx}. {c.name}" + (f" ({c.email})" if c.email else "")
        for idx, c in enumerate(candidates, start=1)
    )


class ConversationEngine:
    """Verarbeitet eine Nachricht im Kontext ihrer Sitzung."""

    def __init__(
        self,
        repository: Repository,
        parser: IntentParser,
        dispatcher: CommandDispatcher,
        store: SessionStore,
        confirm_single_turn: Optional[bool] = None,
    ) -> None:
        self.repository = repository
        self.parser = parser
        self.dispatcher = dispatcher
        self.store = store
        self.confirm_single_turn = (
            settings.confirm_single_turn if confirm_single_turn is None else confirm_single_turn
        )

    def handle(
        self,
        channel: str,
        conversation_id: str,
        text: str,
        tenant_id: str,
        user_id: Optional[str] = None,
    ) -> ConversationReply:
        key = session_key(channel, conversation_id, tenant_id)
        token = conversation_ctx_var.set(key)
        try:
            with self.store.lock(key):
                session = self.store.load(channel, conversation_id, tenant_id)
                session.user_id = user_id
                reply = self._handle(session, (text or "").strip())
                session.history.append({"role": "user", "content": text or ""})
                session.history.append({"role": "assistant", "content": reply.message})
                session.history = session.history[-HISTORY_LIMIT:]
                self.store.save(session)
            logger.info("Conversation %s now %s", key, reply.state.value)
            return reply
        finally:
            conversation_ctx_var.reset(token)

    # -- Verteilung nach Zustand -----------------------------------------

    def _reply(
        self,
        session: ConversationSession,
        message: str,
        actions: Optional[list[ActionResult]] = None,
    ) -> ConversationReply:
        return ConversationReply(
            message=message,
            state=session.state,
            actions=actions or [],
            draft=session.draft.model_copy(deep=True) if session.draft else None,
        )

    def _handle(self, session: ConversationSession, text: str) -> ConversationReply:
        lowered = text.casefold()

        if lowered in CANCEL_WORDS:
            had_draft = session.draft is not None
            session.reset()
            if had_draft:
                return self._reply(session, "✅ Operación cancelada.")
            return self._reply(session, "No hay ninguna operación en curso.")

        if lowered.startswith("/"):
            session.listing_type = None
            session.listing_candidates = []
            return self._command(session, lowered.split()[0])

        if not text:
            return self._reply(session, self._prompt_for(session))

        if session.state is ConversationState.IDLE and session.listing_candidates:
            picked = self._pick_listing_client(session, text)
            if picked is not None:
                return picked

        notice = ""
        if session.state is not ConversationState.IDLE and self._is_new_creation(
            session, text
        ):
            notice = self._discard_notice(session)
            session.reset()

        if session.state is ConversationState.COLLECTING_CLIENT:
            return self._collect_client(session, text)
        if session.state is ConversationState.COLLECTING_TITLE:
            return self._collect_title(session, text)
        if session.state is ConversationState.COLLECTING_ITEMS:
            return self._collect_items(session, text)
        if session.state is ConversationState.CONFIRMING:
            return self._confirm(session, lowered)
        return self._idle(session, text, notice)

    def _is_new_creation(self, session: ConversationSession, text: str) -> bool:
        # title and item answers may name documents themselves
        if session.state not in (
            ConversationState.COLLECTING_CLIENT,
            ConversationState.CONFIRMING,
        ):
            return False
        return bool(_CREATE_PATTERN.search(text))

    def _discard_notice(self, session: ConversationSession) -> str:
        if session.draft is None:
            return ""
        return (
            f"🗑️ Descarté el borrador anterior de {_type_word(session.draft.type)}"
            f"{' para ' + session.draft.client_name if session.draft.client_name else ''}.\n\n"
        )

    def _command(self, session: ConversationSession, command: str) -> ConversationReply:
        if command in ("/start", "/ayuda", "/help"):
            if command == "/start":
                session.reset()
                return self._reply(
                    session, "👋 ¡Hola! Soy tu asistente de Konsul Bills.\n\n" + HELP_TEXT
                )
            return self._reply(session, HELP_TEXT)
        if command in ("/crear_factura", "/crear_cotizacion"):
            notice = self._discard_notice(session)
            document_type = (
                DocumentType.INVOICE if command == "/crear_factura" else DocumentType.QUOTE
            )
            session.reset()
            session.draft = Draft(type=document_type)
            session.state = ConversationState.COLLECTING_CLIENT
            return self._reply(session, notice + self._prompt_for(session))
        if command == "/clientes":
            result = self.dispatcher.dispatch_safely(
                ListClientsIntent(source="command"), session.tenant_id, session.user_id
            )
            return self._reply(
                session, "📋 Tus clientes:\n\n" + describe_result(result), [result]
            )
        return self._reply(
            session, "❌ Comando no reconocido. Usa /ayuda para ver los comandos disponibles."
        )

    # -- Ruhezustand -----------------------------------------------------

    def tenant_context(self, tenant_id: str) -> TenantContext:
        tenant = self.repository.tenant_settings(tenant_id)
        clients = self.repository.list_clients(tenant_id, limit=200)
        documents = self.repository.recent_documents(tenant_id, limit=10)
        return TenantContext(
            tenant_id=tenant_id,
            clients=[ClientCandidate(id=c.id, name=c.name, email=c.email) for c in clients],
            recent_documents=[DocumentSummary.from_document(d) for d in documents],
            default_currency=tenant.default_currency,
            default_tax_rate=tenant.default_tax_rate,
        )

    def _idle(
        self, session: ConversationSession, text: str, notice: str = ""
    ) -> ConversationReply:
        intent = self.parser.parse(text, self.tenant_context(session.tenant_id))
        logger.info(
            "Parsed %s from %s (confidence %.2f)", intent.kind, intent.source, intent.confidence
        )

        if isinstance(intent, CreateDocumentIntent):
            return self._start_draft(session, intent, notice)

        if isinstance(intent, ListDocumentsIntent) and len(intent.client_candidates) > 1:
            session.listing_type = intent.document_type
            session.listing_candidates = list(intent.client_candidates)
            names = _numbered_candidates(intent.client_candidates)
            return self._reply(
                session,
                notice
                + f"🔍 Varios clientes coinciden con «{intent.client_filter}»:\n\n{names}\n\n"
                "¿De cuál quieres ver los documentos? Responde con el número "
                f"(1-{len(intent.client_candidates)}) o su nombre completo.",
            )

        if isinstance(intent, UnknownIntent):
            if intent.reply:
                message = intent.reply
            elif intent.reason == "no_recent_document":
                message = "No encontré ningún documento reciente al que referirme."
            else:
                message = (
                    "No entiendo tu mensaje. Usa /ayuda para ver los comandos disponibles."
                )
            return self._reply(session, notice + message)

        result = self.dispatcher.dispatch_safely(intent, session.tenant_id, session.user_id)
        return self._reply(session, notice + describe_result(result), [result])

    def _pick_listing_client(
        self, session: ConversationSession, text: str
    ) -> Optional[ConversationReply]:
        """Beantwortet die Rückfrage nach dem Kunden einer mehrdeutigen Liste.

        Passt die Antwort zu keinem Kandidaten, wird die Rückfrage verworfen
        und die Nachricht normal verarbeitet.
        """
        candidates = session.listing_candidates
        document_type = session.listing_type
        session.listing_type = None
        session.listing_candidates = []

        chosen = None
        if text.isdigit():
            idx = int(text) - 1
            if 0 <= idx < len(candidates):
                chosen = candidates[idx]
        else:
            needle = text.casefold()
            exact = [c for c in candidates if c.name.casefold() == needle]
            partial = [c for c in candidates if needle in c.name.casefold()]
            if exact:
                chosen = exact[0]
            elif len(partial) == 1:
                chosen = partial[0]
        if chosen is None:
            return None

        intent = ListDocumentsIntent(
            document_type=document_type, client_filter=chosen.name, source="command"
        )
        result = self.dispatcher.dispatch_safely(intent, session.tenant_id, session.user_id)
        return self._reply(session, describe_result(result), [result])

    def _start_draft(
        self, session: ConversationSession, intent: CreateDocumentIntent, notice: str
    ) -> ConversationReply:
        draft = Draft(
            type=intent.document_type,
            client_name=None if intent.client_candidates else intent.client_name,
            client_email=intent.client_email,
            title=intent.title,
            items=list(intent.items),
            currency=intent.currency,
            tax_rate=intent.tax_rate,
            send_email=intent.send_email,
            candidates=list(intent.client_candidates),
        )
        session.draft = draft

        if intent.complete:
            if self.confirm_single_turn:
                session.state = ConversationState.CONFIRMING
                return self._reply(
                    session,
                    notice + describe_draft(draft) + "\n\n¿Lo creo? Responde «sí» o «no».",
                )
            return self._dispatch_draft(session, notice)

        if draft.candidates:
            session.state = ConversationState.COLLECTING_CLIENT
            names = _numbered_candidates(draft.candidates)
            return self._reply(
                session,
                notice
                + f"🔍 Encontré clientes similares:\n\n{names}\n\n"
                f"¿Es uno de estos? Responde con el número (1-{len(draft.candidates)}) "
                "o escribe «nuevo» para crear uno nuevo.",
            )

        session.state = self._first_missing_state(draft)
        return self._reply(session, notice + self._prompt_for(session))

    @staticmethod
    def _first_missing_state(draft: Draft) -> ConversationState:
        if not draft.client_name:
            return ConversationState.COLLECTING_CLIENT
        if not draft.title:
            return ConversationState.COLLECTING_TITLE
        return ConversationState.COLLECTING_ITEMS

    def _prompt_for(self, session: ConversationSession) -> str:
        draft = session.draft
        if session.state is ConversationState.COLLECTING_CLIENT and draft:
            icon = "📝" if draft.type is DocumentType.INVOICE else "📋"
            return (
                f"{icon} Creando nueva {_type_word(draft.type)}...\n\n"
                "¿Cuál es el nombre del cliente?\n"
                "(Puedes escribir el nombre completo o buscar entre tus clientes)"
            )
        if session.state is ConversationState.COLLECTING_TITLE and draft:
            return f"¿Cuál es el título de la {_type_word(draft.type)}?"
        if session.state is ConversationState.COLLECTING_ITEMS and draft:
            message = f"Agrega los conceptos. {ITEM_FORMAT_HELP}"
            if draft.items:
                listed = "\n".join(describe_items(draft.items, draft.currency or "EUR"))
                message = f"Conceptos ya anotados:\n{listed}\n\n" + message
            return message + "\n\nEscribe «terminar» cuando hayas agregado todos los conceptos."
        if session.state is ConversationState.CONFIRMING and draft:
            return describe_draft(draft) + "\n\n¿Lo creo? Responde «sí» o «no»."
        return "¿En qué te ayudo? Usa /ayuda para ver ejemplos."

    # -- Erfassung -------------------------------------------------------

    def _advance_from_client(self, session: ConversationSession, message: str) -> ConversationReply:
        draft = session.draft
        session.state = (
            ConversationState.COLLECTING_TITLE
            if not draft.title
            else ConversationState.COLLECTING_ITEMS
        )
        return self._reply(session, message + "\n\n" + self._prompt_for(session))

    def _collect_client(self, session: ConversationSession, text: str) -> ConversationReply:
        draft = session.draft
        lowered = text.casefold()

        if draft.candidates:
            if text.isdigit():
                index = int(text)
                if 1 <= index <= len(draft.candidates):
                    chosen = draft.candidates[index - 1]
                    draft.client_id = chosen.id
                    draft.client_name = chosen.name
                    draft.client_email = draft.client_email or chosen.email
                    draft.candidates = []
                    return self._advance_from_client(
                        session, f"✅ Cliente seleccionado: «{chosen.name}»"
                    )
                return self._reply(
                    session,
                    f"Elige un número entre 1 y {len(draft.candidates)} "
                    "o escribe «nuevo» para crear un cliente nuevo.",
                )
            if lowered in NEW_CLIENT_WORDS:
                draft.candidates = []
                draft.awaiting_new_client_name = True
                return self._reply(session, "Escribe el nombre completo del nuevo cliente:")

        if draft.awaiting_new_client_name:
            draft.awaiting_new_client_name = False
            draft.client_id = None
            draft.client_name = text
            return self._advance_from_client(session, f"✅ Cliente nuevo: «{text}»")

        clients = self.repository.search_clients(session.tenant_id, text, limit=10)
        resolution = resolve_client(
            text, [ClientCandidate(id=c.id, name=c.name, email=c.email) for c in clients]
        )
        if resolution.match is not None:
            draft.client_id = resolution.match.id
            draft.client_name = resolution.match.name
            draft.client_email = draft.client_email or resolution.match.email
            draft.candidates = []
            return self._advance_from_client(
                session, f"✅ Cliente encontrado: «{resolution.match.name}»"
            )
        if resolution.candidates:
            draft.candidates = resolution.candidates
            names = _numbered_candidates(resolution.candidates)
            return self._reply(
                session,
                f"🔍 Encontré clientes similares:\n\n{names}\n\n"
                f"¿Es uno de estos? Responde con el número (1-{len(resolution.candidates)}) "
                "o escribe «nuevo» para crear uno nuevo.",
            )

        # Der Kunde wird erst beim Anlegen des Dokuments gespeichert.
        draft.client_id = None
        draft.client_name = text
        draft.candidates = []
        return self._advance_from_client(session, f"✅ Cliente nuevo: «{text}»")

    def _collect_title(self, session: ConversationSession, text: str) -> ConversationReply:
        session.draft.title = text
        session.state = ConversationState.COLLECTING_ITEMS
        return self._reply(session, "✅ Título guardado.\n\n" + self._prompt_for(session))

    def _collect_items(self, session: ConversationSession, text: str) -> ConversationReply:
        draft = session.draft
        if text.casefold() in DONE_WORDS:
            if not draft.items:
                return self._reply(
                    session, f"❌ Debes agregar al menos un concepto. {ITEM_FORMAT_HELP}"
                )
            return self._dispatch_draft(session)

        if text.count("|") != 2:
            return self._reply(session, f"❌ Formato incorrecto. {ITEM_FORMAT_HELP}")
        item = _parse_item_line(text)
        if item is None:
            return self._reply(
                session,
                f"❌ Cantidad y precio deben ser números positivos. {ITEM_FORMAT_HELP}",
            )
        draft.items.append(item)
        currency = draft.currency or "EUR"
        return self._reply(
            session,
            f"✅ Concepto agregado: {item.description}\n"
            f"Subtotal actual: {format_money(draft.subtotal, currency)}\n\n"
            "Agrega otro concepto o escribe «terminar» para finalizar.",
        )

    def _confirm(self, session: ConversationSession, lowered: str) -> ConversationReply:
        if lowered in YES_WORDS:
            return self._dispatch_draft(session)
        if lowered in NO_WORDS:
            session.reset()
            return self._reply(session, "Borrador descartado.")
        return self._reply(session, "Responde «sí» para crearlo o «no» para descartarlo.")

    def _dispatch_draft(
        self, session: ConversationSession, notice: str = ""
    ) -> ConversationReply:
        draft = session.draft
        intent = CreateDocumentIntent(
            document_type=draft.type,
            client_name=draft.client_name,
            client_email=draft.client_email,
            title=draft.title,
            items=draft.items,
            currency=draft.currency,
            tax_rate=draft.tax_rate,
            send_email=draft.send_email,
            source="conversation",
            confidence=1.0,
        )
        result = self.dispatcher.dispatch_safely(intent, session.tenant_id, session.user_id)
        if isinstance(result, ActionError):
            # Entwurf bleibt erhalten, damit der Nutzer es erneut versuchen kann.
            if session.state is ConversationState.IDLE:
                session.state = ConversationState.CONFIRMING
            hint = (
                "Responde «sí» para reintentar o /cancelar para descartar."
                if session.state is ConversationState.CONFIRMING
                else "Escribe «terminar» para reintentar o /cancelar para descartar."
            )
            return self._reply(session, f"{notice}{describe_result(result)}\n{hint}", [result])
        session.reset()
        return self._reply(session, notice + describe_result(result), [result])


@lru_cache(maxsize=1)
def get_engine() -> ConversationEngine:
    """Gemeinsame Engine für alle Kanäle."""
    repository = get_repository()
    return ConversationEngine(
        repository=repository,
        parser=IntentParser(),
        dispatcher=CommandDispatcher(repository),
        store=get_session_store(),
    )
