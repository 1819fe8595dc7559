"""Hilfsfunktionen für natürlichsprachliche Antworten (spanisch)."""

from __future__ import annotations

from typing import Iterable

from konsul.models import (
    ActionError,
    ClientsListed,
    DocumentCreated,
    DocumentsListed,
    DocumentSummary,
    DocumentType,
    Draft,
    EmailSent,
    LineItem,
    StatusUpdated,
)

STATUS_LABELS = {
    "draft": "borrador",
    "sent": "enviada",
    "accepted": "aceptada",
    "rejected": "rechazada",
    "paid": "pagada",
    "overdue": "vencida",
    "cancelled": "cancelada",
}

TYPE_LABELS = {
    DocumentType.INVOICE: "Factura",
    DocumentType.QUOTE: "Cotización",
}


def format_quantity(value: float | None) -> str:
    """Formatiert Mengen mit maximal zwei Dezimalstellen."""

    if value is None:
        return "0"

    if abs(value - round(value)) < 1e-6:
        return f"{int(round(value))}"

    return f"{value:.2f}".replace(".", ",")


def format_money(value: float | None, currency: str = "EUR") -> str:
    """Gibt einen Geldbetrag im spanischen Format zurück."""

    if value is None:
        value = 0.0

    amount = f"{value:.2f}".replace(".", ",")
    if currency.upper() == "EUR":
        return f"{amount} €"
    if currency.upper() == "USD":
        return f"${amount}"
    return f"{amount} {currency.upper()}"


def describe_item(index: int, item: LineItem, currency: str) -> str:
    return (
        f"{index}. {item.description}: {format_quantity(item.qty)} × "
        f"{format_money(item.price, currency)} = {format_money(item.total, currency)}"
    )


def describe_items(items: Iterable[LineItem], currency: str) -> list[str]:
    return [describe_item(idx, item, currency) for idx, item in enumerate(items, start=1)]


def describe_draft(draft: Draft) -> str:
    """Kurze Zusammenfassung eines Entwurfs, z. B. vor der Bestätigung."""

    currency = draft.currency or "EUR"
    label = TYPE_LABELS[draft.type].lower()
    lines = [
        f"Nueva {label} para {draft.client_name or '(sin cliente)'}: "
        f"{draft.title or '(sin título)'}"
    ]
    lines.extend(describe_items(draft.items, currency))
    lines.append(f"Subtotal: {format_money(draft.subtotal, currency)}")
    if draft.tax_rate is not None:
        lines.append(f"IVA: {format_quantity(draft.tax_rate)}%")
    return "\n".join(lines)


def _describe_summary(document: DocumentSummary) -> str:
    status = STATUS_LABELS.get(document.status, document.status)
    return (
        f"• {document.id} · {document.title} · {document.client_name} · "
        f"{format_money(document.total, document.currency)} · {status}"
    )


def describe_result(result) -> str:
    """Antworttext für ein ``ActionResult``."""

    if isinstance(result, DocumentCreated):
        label = TYPE_LABELS[result.document_type]
        text = (
            f"✅ {label} {result.id} creada para {result.client_name}: {result.title}. "
            f"Total: {format_money(result.total, result.currency)}."
        )
        if result.warning:
            text += f"\n⚠️ {result.warning}"
        return text
    if isinstance(result, StatusUpdated):
        status = STATUS_LABELS.get(result.status, result.status)
        return f"✅ El estado de {result.id} ahora es «{status}»."
    if isinstance(result, DocumentsListed):
        if not result.documents:
            return "No encontré documentos."
        return "\n".join(_describe_summary(d) for d in result.documents)
    if isinstance(result, ClientsListed):
        if not result.clients:
            return "Aún no tienes clientes registrados."
        return "\n".join(
            f"• {c.name}" + (f" ({c.email})" if c.email else "") for c in result.clients
        )
    if isinstance(result, EmailSent):
        return f"📧 {result.message}"
    if isinstance(result, ActionError):
        return f"❌ {result.message}"
    raise TypeError(f"unknown action result {type(result).__name__}")
