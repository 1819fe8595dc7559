import sys, os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest

from konsul.models import (
    CreateDocumentIntent,
    DocumentType,
    ListDocumentsIntent,
    SendDocumentIntent,
    UnknownIntent,
    UpdateStatusIntent,
    load_json_payload,
    normalize_status,
    parse_intent_payload,
)


def test_normalize_status_spanish_synonyms():
    """Maps Spanish status words onto the canonical vocabulary"""
    assert normalize_status("Pagada") == "paid"
    assert normalize_status("enviada") == "sent"
    assert normalize_status("rechazada") == "rejected"
    assert normalize_status("cancelada") == "cancelled"
    assert normalize_status("vencida") == "overdue"
    assert normalize_status("borrador") == "draft"


def test_accepted_invoice_becomes_paid():
    """Invoices have no accepted status; it is stored as paid"""
    assert normalize_status("accepted", DocumentType.INVOICE) == "paid"
    assert normalize_status("aceptada", DocumentType.INVOICE) == "paid"
    assert normalize_status("accepted", DocumentType.QUOTE) == "accepted"


def test_load_json_payload_prefers_fenced_block():
    """Reads JSON from a markdown code block"""
    text = 'Claro:\n```json\n{"kind": "list_clients"}\n```\n{"ignored": true}'
    assert load_json_payload(text) == {"kind": "list_clients"}


def test_load_json_payload_scrubs_comments_and_trailing_commas():
    """Removes comments and trailing commas before parsing"""
    text = """Respuesta: {
        "kind": "list_documents", // tipo
        /* bloque */
        "url": "https://example.com/x",
        "limit": 5,
    }"""
    data = load_json_payload(text)
    assert data["limit"] == 5
    assert data["url"] == "https://example.com/x"


@pytest.mark.parametrize("text", ["", "sin json", '{"a": [1, 2}'])
def test_load_json_payload_rejects_garbage(text):
    """Raises ValueError when no JSON object can be read"""
    with pytest.raises(ValueError):
        load_json_payload(text)


def test_parse_legacy_create_invoice():
    """Maps create_invoice function calls onto create_document"""
    intent = parse_intent_payload(
        {
            "clientName": "Acme",
            "title": "Hosting",
            "items": [{"description": "Hosting", "qty": "2", "price": "50,5"}],
            "tax": 10,
            "currency": "usd",
        },
        name="create_invoice",
        source="openai",
    )
    assert isinstance(intent, CreateDocumentIntent)
    assert intent.document_type is DocumentType.INVOICE
    assert intent.client_name == "Acme"
    assert intent.items[0].qty == 2
    assert intent.items[0].price == 50.5
    assert intent.tax_rate == 10
    assert intent.currency == "USD"
    assert intent.source == "openai"
    assert intent.complete


def test_create_intent_reports_missing_fields():
    """Incomplete create intents list what is missing"""
    intent = parse_intent_payload({"kind": "create_document", "document_type": "factura"})
    assert isinstance(intent, CreateDocumentIntent)
    assert intent.missing == ["client", "title", "items"]
    assert not intent.complete


def test_invalid_items_are_dropped():
    """Items without description or with non-positive quantity are skipped"""
    intent = parse_intent_payload(
        {
            "kind": "create_document",
            "document_type": "quote",
            "items": [
                {"description": "", "price": 10},
                {"description": "Diseño", "qty": 0, "price": 10},
                {"description": "Logo", "price": 80},
                "texto",
            ],
        }
    )
    assert [item.description for item in intent.items] == ["Logo"]
    assert intent.items[0].qty == 1


def test_function_calls_wrapper_with_string_arguments():
    """Unwraps {"function_calls": [...]} replies with JSON string arguments"""
    text = (
        '{"function_calls": [{"name": "update_quote_status", '
        '"arguments": "{\\"quoteId\\": \\"q-00003\\", \\"status\\": \\"aceptada\\"}"}]}'
    )
    intent = parse_intent_payload(text, source="gemini")
    assert isinstance(intent, UpdateStatusIntent)
    assert intent.document_id == "Q-00003"
    assert intent.status == "accepted"
    assert intent.document_type is DocumentType.QUOTE


def test_update_invoice_status_accepted_maps_to_paid():
    """update_invoice_status with accepted is normalized to paid"""
    intent = parse_intent_payload(
        {"invoiceId": "INV-00001", "status": "accepted"}, name="update_invoice_status"
    )
    assert intent.status == "paid"


def test_send_and_list_variants():
    """Send and list payloads validate into their variants"""
    send = parse_intent_payload({"quoteId": "Q-1"}, name="send_quote_email")
    assert isinstance(send, SendDocumentIntent)
    listed = parse_intent_payload({"limit": 3}, name="list_invoices")
    assert isinstance(listed, ListDocumentsIntent)
    assert listed.limit == 3
    assert listed.document_type is DocumentType.INVOICE


def test_query_becomes_unknown_with_reply():
    """Plain questions become an unknown intent carrying the reply"""
    intent = parse_intent_payload('{"type": "query", "message": "Hola, ¿en qué te ayudo?"}', name="query")
    assert isinstance(intent, UnknownIntent)
    assert intent.reply == "Hola, ¿en qué te ayudo?"


def test_missing_required_field_raises():
    """A status update without document id is rejected"""
    with pytest.raises(ValueError):
        parse_intent_payload({"status": "paid"}, name="update_status")


def test_unsupported_kind_raises():
    """Unknown function names are rejected"""
    with pytest.raises(ValueError):
        parse_intent_payload({"x": 1}, name="delete_everything")
