"""HTML-Text für den Versand von Angeboten und Rechnungen."""

from __future__ import annotations

from html import escape

from konsul.models import Document, DocumentType
from konsul.summaries import format_money, format_quantity

DOCUMENT_LABELS = {
    DocumentType.INVOICE: "Factura",
    DocumentType.QUOTE: "Cotización",
}


def email_subject(document: Document) -> str:
    return f"{DOCUMENT_LABELS[document.type]} {document.id} - {document.title}"


def render_document_email(document: Document) -> str:
    """Erzeugt den HTML-Körper der E-Mail für ein Dokument."""

    label = DOCUMENT_LABELS[document.type]
    rows = []
    for item in document.items:
        rows.append(
            "<tr>"
            f"<td>{escape(item.description)}</td>"
            f"<td>{format_quantity(item.qty)}</td>"
            f"<td>{format_money(item.price, document.currency)}</td>"
            f"<td>{format_money(item.total, document.currency)}</td>"
            "</tr>"
        )

    lines = [
        f"<h2>{label} {escape(document.id)}</h2>",
        f"<p>Hola {escape(document.client_name)},</p>",
        f"<p>Te enviamos la {label.lower()} <strong>{escape(document.title)}</strong>.</p>",
        "<table>",
        "<tr><th>Concepto</th><th>Cantidad</th><th>Precio</th><th>Importe</th></tr>",
        *rows,
        "</table>",
        f"<p>Subtotal: {format_money(document.subtotal, document.currency)}</p>",
        f"<p>IVA ({format_quantity(document.tax_rate)}%): "
        f"{format_money(document.tax_amount, document.currency)}</p>",
        f"<p><strong>Total: {format_money(document.total, document.currency)}</strong></p>",
    ]
    if document.type is DocumentType.INVOICE and document.due_date:
        lines.append(f"<p>Fecha de vencimiento: {document.due_date.strftime('%d/%m/%Y')}</p>")
    if document.notes:
        lines.append(f"<p>{escape(document.notes)}</p>")
    return "\n".join(lines)
