from __future__ import annotations
from abc import ABC, abstractmethod
from importlib import import_module
import logging
from typing import Optional

from konsul.settings import settings

logger = logging.getLogger(__name__)


class EmailAdapter(ABC):
    """Basisklasse für alle E-Mail-Transporte."""

    @abstractmethod
    def send(self, to: str, subject: str, html: str) -> dict:
        """Send one HTML e-mail; failures raise ``ProviderError``."""
        raise NotImplementedError


class LoggingEmailAdapter(EmailAdapter):
    """Rückfalllösung ohne echten Versand: protokolliert nur die Nachricht."""

    def send(self, to: str, subject: str, html: str) -> dict:
        logger.info(
            "Email from %s to %s: %s (%d bytes)",
            settings.email_sender,
            to,
            subject,
            len(html),
        )
        return {"status": "logged", "to": to, "subject": subject}


def _load_adapter(path: Optional[str]) -> EmailAdapter:
    """Dynamisch eine Adapter-Klasse aus ``module:Class`` laden."""
    if not path:
        return LoggingEmailAdapter()
    module_name, class_name = path.split(":")
    module = import_module(module_name)
    adapter_cls = getattr(module, class_name)
    if not issubclass(adapter_cls, EmailAdapter):
        raise TypeError("Adapter must inherit from EmailAdapter")
    return adapter_cls()


_adapter: Optional[EmailAdapter] = None


def get_adapter() -> EmailAdapter:
    """Gibt den einmalig initialisierten Adapter zurück."""
    global _adapter
    if _adapter is None:
        _adapter = _load_adapter(settings.email_adapter)
    return _adapter


def send_email(to: str, subject: str, html: str) -> dict:
    """Hilfsfunktion für den Rest des Codes, der keine Adapterdetails kennt."""
    return get_adapter().send(to, subject, html)
