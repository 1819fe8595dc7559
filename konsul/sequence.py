"""Fortlaufende, lesbare Dokumentnummern pro Mandant und Dokumenttyp."""

from __future__ import annotations

import logging

from konsul.errors import ConflictError
from konsul.models import DocumentType

logger = logging.getLogger(__name__)


def format_human_id(prefix: str, value: int, pad_width: int = 5) -> str:
    """``format_human_id("INV-", 7)`` ergibt ``"INV-00007"``."""
    return f"{prefix}{str(value).zfill(pad_width)}"


def next_id(
    repository,
    tenant_id: str,
    document_type: DocumentType,
    prefix: str,
    pad_width: int = 5,
) -> str:
    """Erhöht den Zähler atomar und liefert die neue Nummer.

    Ein ``ConflictError`` des Repositorys wird genau einmal wiederholt;
    jeder andere Fehler bricht ab, bevor ein Dokument entsteht.
    """
    try:
        value = repository.increment_sequence(tenant_id, document_type)
    except ConflictError:
        logger.warning(
            "Sequence conflict for %s/%s, retrying once",
            tenant_id,
            document_type.value,
        )
        value = repository.increment_sequence(tenant_id, document_type)
    return format_human_id(prefix, value, pad_width)
