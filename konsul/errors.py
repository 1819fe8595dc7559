"""Fehlertypen des Konversationskerns.

Jeder Fehler trägt eine Meldung für den Nutzer (spanisch, mit nächstem
Schritt) und die Angabe, ob ein erneuter Versuch sinnvoll ist.
"""

from __future__ import annotations


class KonsulError(Exception):
    """Basisklasse für alle fachlichen Fehler."""

    retryable = False

    def __init__(self, message: str, user_message: str | None = None) -> None:
        super().__init__(message)
        self.user_message = user_message or message


class ValidationError(KonsulError):
    """Fehlende oder fehlerhafte Angaben; durch erneutes Nachfragen lösbar."""


class NotFoundError(KonsulError):
    """Ziel existiert nicht oder gehört zu einem anderen Mandanten."""


class ProviderError(KonsulError):
    """Ein LLM- oder E-Mail-Backend ist ausgefallen."""

    retryable = True


class ConflictError(KonsulError):
    """Konkurrierender Schreibzugriff (Sequenz oder Persistenz)."""

    retryable = True


class IdentityLookupError(KonsulError):
    """Die Kanal-Identität konnte wegen eines Speicherfehlers nicht geprüft werden.

    Nicht zu verwechseln mit einer fehlenden Verknüpfung (``None``).
    """

    retryable = True
