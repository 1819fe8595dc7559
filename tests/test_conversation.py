import sys, os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest

from konsul.conversation import HELP_TEXT, HISTORY_LIMIT, ConversationEngine
from konsul.dispatcher import CommandDispatcher
from konsul.errors import ConflictError
from konsul.intent_parser import IntentParser
from konsul.models import (
    ActionError,
    ClientsListed,
    ConversationState,
    DocumentCreated,
    DocumentsListed,
    DocumentType,
    StatusUpdated,
)
from konsul.repository import InMemoryRepository


class FlakyRepository(InMemoryRepository):
    """Lässt die Nummernvergabe scheitern, solange ``failing`` gesetzt ist."""

    def __init__(self):
        super().__init__()
        self.failing = True

    def increment_sequence(self, tenant_id, document_type):
        if self.failing:
            raise ConflictError("sequence busy")
        return super().increment_sequence(tenant_id, document_type)


def _say(engine, text, conversation="c1", tenant="t1"):
    return engine.handle("web", conversation, text, tenant, "u1")


def test_guided_invoice_flow(engine, repository):
    """Collects client, title and items step by step"""
    reply = _say(engine, "crea una factura")
    assert reply.state is ConversationState.COLLECTING_CLIENT
    assert "nombre del cliente" in reply.message

    reply = _say(engine, "Omar Ortiz")
    assert reply.state is ConversationState.COLLECTING_TITLE
    assert "Omar Ortiz" in reply.message
    assert repository.list_clients("t1") == []

    reply = _say(engine, "Diseño web")
    assert reply.state is ConversationState.COLLECTING_ITEMS
    assert reply.draft.title == "Diseño web"

    reply = _say(engine, "Desarrollo web | 10 | 50")
    assert reply.state is ConversationState.COLLECTING_ITEMS
    assert "500,00 €" in reply.message

    reply = _say(engine, "terminar")
    assert reply.state is ConversationState.IDLE
    created = reply.actions[0]
    assert isinstance(created, DocumentCreated)
    assert created.id == "INV-00001"
    assert created.total == pytest.approx(605.00)
    assert created.client_name == "Omar Ortiz"
    assert reply.draft is None


def test_single_turn_creation(engine, repository):
    """A complete request is executed right away"""
    reply = _say(engine, "Crea una factura para Acme por diseño web de 500 euros")
    assert reply.state is ConversationState.IDLE
    created = reply.actions[0]
    assert isinstance(created, DocumentCreated)
    assert created.client_name == "Acme"
    assert created.title == "diseño web"
    assert created.total == pytest.approx(605.00)
    assert "INV-00001" in reply.message
    assert repository.get_document("t1", "INV-00001") is not None


def test_single_turn_with_confirmation(repository, dispatcher, session_store):
    """With confirmation enabled the draft waits for yes"""
    engine = ConversationEngine(
        repository, IntentParser(providers=[]), dispatcher, session_store, confirm_single_turn=True
    )
    reply = _say(engine, "Crea una factura para Acme por diseño web de 500 euros")
    assert reply.state is ConversationState.CONFIRMING
    assert repository.list_documents("t1") == []

    reply = _say(engine, "sí")
    assert isinstance(reply.actions[0], DocumentCreated)
    assert reply.state is ConversationState.IDLE


def test_confirmation_declined(repository, dispatcher, session_store):
    """Answering no discards the draft"""
    engine = ConversationEngine(
        repository, IntentParser(providers=[]), dispatcher, session_store, confirm_single_turn=True
    )
    _say(engine, "Crea una factura para Acme por diseño web de 500 euros")
    reply = _say(engine, "no")
    assert reply.state is ConversationState.IDLE
    assert reply.draft is None
    assert repository.list_documents("t1") == []


def test_cancel_twice(engine):
    """Second cancel reports that nothing is in progress"""
    _say(engine, "crea una factura")
    reply = _say(engine, "cancelar")
    assert reply.state is ConversationState.IDLE
    assert "cancelada" in reply.message

    reply = _say(engine, "cancelar")
    assert reply.state is ConversationState.IDLE
    assert "No hay ninguna operación en curso" in reply.message


def test_candidate_selection_by_number(engine, repository):
    """Similar clients are offered and picked by number"""
    repository.upsert_client("t1", "Cranealo Studio")
    repository.upsert_client("t1", "Cranealo Labs", "labs@cranealo.test")

    reply = _say(engine, "Crea una cotización para Cranealo por logo de 300")
    assert reply.state is ConversationState.COLLECTING_CLIENT
    assert "1. Cranealo Labs" in reply.message
    assert "2. Cranealo Studio" in reply.message
    assert repository.list_documents("t1") == []

    reply = _say(engine, "1")
    assert reply.state is ConversationState.COLLECTING_ITEMS
    assert reply.draft.client_name == "Cranealo Labs"
    assert reply.draft.client_email == "labs@cranealo.test"

    reply = _say(engine, "terminar")
    created = reply.actions[0]
    assert created.document_type is DocumentType.QUOTE
    assert created.client_name == "Cranealo Labs"
    assert len(repository.list_clients("t1")) == 2


def test_candidate_out_of_range(engine, repository):
    """Numbers outside the list are rejected"""
    repository.upsert_client("t1", "Cranealo Studio")
    repository.upsert_client("t1", "Cranealo Labs")
    _say(engine, "Crea una cotización para Cranealo por logo de 300")
    reply = _say(engine, "7")
    assert reply.state is ConversationState.COLLECTING_CLIENT
    assert "entre 1 y 2" in reply.message


def test_candidate_new_client(engine, repository):
    """Writing nuevo asks for the name of a new client"""
    repository.upsert_client("t1", "Cranealo Studio")
    repository.upsert_client("t1", "Cranealo Labs")
    _say(engine, "Crea una cotización para Cranealo por logo de 300")

    reply = _say(engine, "nuevo")
    assert reply.state is ConversationState.COLLECTING_CLIENT
    reply = _say(engine, "Cranealo Media")
    assert reply.draft.client_name == "Cranealo Media"
    assert reply.state is ConversationState.COLLECTING_ITEMS

    _say(engine, "terminar")
    assert len(repository.list_clients("t1")) == 3


def test_client_search_during_collection(engine, repository):
    """Typing part of a name offers matching clients"""
    repository.upsert_client("t1", "Acme Iberia")
    repository.upsert_client("t1", "Acme Norte")
    _say(engine, "/crear_factura")
    reply = _say(engine, "acme")
    assert reply.state is ConversationState.COLLECTING_CLIENT
    assert len(reply.draft.candidates) == 2

    reply = _say(engine, "2")
    assert reply.draft.client_name == "Acme Norte"
    assert reply.state is ConversationState.COLLECTING_TITLE


def test_item_validation(engine):
    """Malformed or non-positive items are refused"""
    _say(engine, "/crear_cotizacion")
    _say(engine, "Acme")
    _say(engine, "Hosting")

    reply = _say(engine, "terminar")
    assert "al menos un concepto" in reply.message
    assert reply.state is ConversationState.COLLECTING_ITEMS

    reply = _say(engine, "Hosting anual 12 10")
    assert "Formato incorrecto" in reply.message

    reply = _say(engine, "Hosting | 0 | 10")
    assert "números positivos" in reply.message
    assert reply.draft.items == []

    reply = _say(engine, "Hosting | 12 | 10,5")
    assert reply.draft.items[0].price == 10.5

    reply = _say(engine, "Servidor | 1 | 1.500")
    assert reply.draft.items[1].price == 1500


def test_new_request_discards_draft(engine):
    """Starting a new document replaces the pending draft"""
    _say(engine, "crea una factura")
    reply = _say(engine, "crea una cotización para Acme por hosting de 100 euros")
    assert "Descarté el borrador anterior de factura" in reply.message
    created = reply.actions[0]
    assert created.document_type is DocumentType.QUOTE
    assert reply.state is ConversationState.IDLE


def test_title_mentioning_a_document_is_kept(engine):
    """A title that reads like a request is stored as the title"""
    _say(engine, "crea una factura")
    _say(engine, "Omar Ortiz")
    reply = _say(engine, "Nueva factura electrónica para web")
    assert reply.state is ConversationState.COLLECTING_ITEMS
    assert reply.draft.client_name == "Omar Ortiz"
    assert reply.draft.title == "Nueva factura electrónica para web"
    assert "Descarté" not in reply.message


def test_draft_kept_when_creation_fails(dispatcher, session_store):
    """A failed creation keeps the draft for a retry"""
    repository = FlakyRepository()
    engine = ConversationEngine(
        repository,
        IntentParser(providers=[]),
        CommandDispatcher(repository, email_adapter=dispatcher.email_adapter),
        session_store,
        confirm_single_turn=False,
    )
    reply = _say(engine, "Crea una factura para Acme por diseño web de 500 euros")
    assert isinstance(reply.actions[0], ActionError)
    assert reply.actions[0].retryable
    assert reply.state is ConversationState.CONFIRMING
    assert reply.draft.client_name == "Acme"

    repository.failing = False
    reply = _say(engine, "sí")
    assert isinstance(reply.actions[0], DocumentCreated)
    assert reply.state is ConversationState.IDLE


def test_ambiguous_list_filter_asks_back(engine, repository):
    """Listing with an ambiguous client name asks which client"""
    repository.upsert_client("t1", "Cranealo Studio")
    repository.upsert_client("t1", "Cranealo Labs")
    reply = _say(engine, "muestra las cotizaciones de Cranealo")
    assert reply.actions == []
    assert "Varios clientes coinciden" in reply.message


def _two_cranealo_quotes(engine):
    _say(engine, "crea una cotización para Cranealo Studio por hosting de 100 euros")
    _say(engine, "crea una cotización para Cranealo Labs por diseño de 200 euros")


def test_ambiguous_list_answered_by_number(engine):
    """The numbered answer lists the chosen client's documents"""
    _two_cranealo_quotes(engine)
    prompt = _say(engine, "muestra las cotizaciones de Cranealo").message
    second = next(line[3:] for line in prompt.splitlines() if line.startswith("2. "))
    reply = _say(engine, "2")
    listed = reply.actions[0]
    assert isinstance(listed, DocumentsListed)
    assert [d.client_name for d in listed.documents] == [second]


def test_ambiguous_list_answered_by_name(engine):
    """Answering with the client's name lists that client's documents"""
    _two_cranealo_quotes(engine)
    _say(engine, "muestra las cotizaciones de Cranealo")
    reply = _say(engine, "cranealo labs")
    listed = reply.actions[0]
    assert isinstance(listed, DocumentsListed)
    assert [d.client_name for d in listed.documents] == ["Cranealo Labs"]
    assert all(d.type is DocumentType.QUOTE for d in listed.documents)


def test_ambiguous_list_other_answer_is_new_message(engine):
    """An unrelated answer drops the question and is handled normally"""
    _two_cranealo_quotes(engine)
    _say(engine, "muestra las cotizaciones de Cranealo")
    reply = _say(engine, "/clientes")
    assert isinstance(reply.actions[0], ClientsListed)
    reply = _say(engine, "1")
    assert reply.actions == []
    assert "No entiendo" in reply.message


def test_same_conversation_id_is_separate_per_tenant(engine):
    """Another tenant writing to the same conversation id never sees the draft"""
    _say(engine, "crea una factura", conversation="shared", tenant="t1")
    _say(engine, "Secreto SA", conversation="shared", tenant="t1")
    reply = _say(engine, "Servidor", conversation="shared", tenant="t2")
    assert reply.draft is None
    assert "Secreto SA" not in reply.message
    assert reply.state is ConversationState.IDLE

    reply = _say(engine, "Servidor", conversation="shared", tenant="t1")
    assert reply.state is ConversationState.COLLECTING_ITEMS
    assert reply.draft.client_name == "Secreto SA"
    assert reply.draft.title == "Servidor"


def test_status_update_on_last_invoice(engine):
    """References to the last invoice are resolved"""
    _say(engine, "Crea una factura para Acme por diseño web de 500 euros")
    reply = _say(engine, "marca la última factura como pagada")
    result = reply.actions[0]
    assert isinstance(result, StatusUpdated)
    assert result.id == "INV-00001"
    assert result.status == "paid"


def test_list_clients_command(engine, repository):
    """/clientes lists the tenant's clients"""
    repository.upsert_client("t1", "Acme")
    repository.upsert_client("t2", "Otro")
    reply = _say(engine, "/clientes")
    assert isinstance(reply.actions[0], ClientsListed)
    assert "Acme" in reply.message
    assert "Otro" not in reply.message


def test_help_and_unknown_commands(engine):
    """Help text and unknown commands"""
    assert _say(engine, "/ayuda").message == HELP_TEXT
    assert "no reconocido" in _say(engine, "/borrar").message


def test_unknown_message(engine):
    """Unrelated text gets a hint"""
    reply = _say(engine, "hola qué tal")
    assert "No entiendo" in reply.message
    assert reply.actions == []


def test_sessions_are_isolated(engine):
    """Each conversation keeps its own state"""
    _say(engine, "crea una factura", conversation="a")
    reply = _say(engine, "lista de clientes", conversation="b")
    assert reply.state is ConversationState.IDLE
    assert engine.store.load("web", "a", "t1").state is ConversationState.COLLECTING_CLIENT


def test_history_is_capped(engine):
    """Only the latest messages are kept in the session"""
    for _ in range(HISTORY_LIMIT):
        _say(engine, "hola")
    session = engine.store.load("web", "c1", "t1")
    assert len(session.history) == HISTORY_LIMIT
    assert session.history[-1]["role"] == "assistant"


def test_quote_with_concept_in_one_message(engine):
    """A quote request with concept is created in one turn"""
    reply = _say(engine, "crea una cotización para Acme de 500 euros, concepto hosting")
    created = reply.actions[0]
    assert created.document_type is DocumentType.QUOTE
    assert created.title == "hosting"
    assert created.total == pytest.approx(605.00)


def test_cancel_from_idle_twice(engine):
    """Cancelling without a draft keeps the session idle"""
    for _ in range(2):
        reply = _say(engine, "cancel")
        assert reply.state is ConversationState.IDLE
        assert reply.draft is None


def test_invoice_listing_with_similar_clients(engine, repository):
    """Similar client names are presented instead of filtering"""
    repository.upsert_client("t1", "Cranealo S.A.")
    repository.upsert_client("t1", "Cranealo Studio")
    reply = _say(engine, "facturas para Cranealo")
    assert reply.actions == []
    assert "Cranealo S.A." in reply.message
    assert "Cranealo Studio" in reply.message
