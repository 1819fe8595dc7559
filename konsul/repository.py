"""Persistenzschnittstelle und eine threadsichere In-Memory-Implementierung."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date
from importlib import import_module
import logging
from threading import RLock
from typing import Optional
from uuid import uuid4

from konsul.errors import ConflictError, NotFoundError
from konsul.models import (
    Client,
    Document,
    DocumentType,
    RecurringSchedule,
    TenantSettings,
)
from konsul.settings import settings

logger = logging.getLogger(__name__)


class Repository(ABC):
    """Mandantenbezogener Zugriff auf Kunden, Dokumente, Sequenzen und Pläne.

    Jede Methode mit ``tenant_id`` darf ausschließlich Datensätze dieses
    Mandanten lesen oder schreiben.
    """

    @abstractmethod
    def tenant_settings(self, tenant_id: str) -> TenantSettings:
        raise NotImplementedError

    @abstractmethod
    def list_clients(
        self, tenant_id: str, name_filter: str | None = None, limit: int | None = None
    ) -> list[Client]:
        """Kunden alphabetisch, optional nach Namensteil gefiltert."""
        raise NotImplementedError

    @abstractmethod
    def find_client_by_name(self, tenant_id: str, name: str) -> Optional[Client]:
        """Exakter Namensvergleich ohne Beachtung der Groß-/Kleinschreibung."""
        raise NotImplementedError

    @abstractmethod
    def get_client(self, tenant_id: str, client_id: str) -> Optional[Client]:
        raise NotImplementedError

    @abstractmethod
    def upsert_client(
        self, tenant_id: str, name: str, email: str | None = None
    ) -> Client:
        """Legt einen Kunden an oder aktualisiert die E-Mail eines gleichnamigen."""
        raise NotImplementedError

    @abstractmethod
    def increment_sequence(self, tenant_id: str, document_type: DocumentType) -> int:
        """Atomares Erhöhen-und-Lesen; legt den Zähler bei Bedarf mit 1 an."""
        raise NotImplementedError

    @abstractmethod
    def create_document(self, document: Document) -> Document:
        """Speichert Kopf und Positionen als eine Einheit."""
        raise NotImplementedError

    @abstractmethod
    def get_document(self, tenant_id: str, document_id: str) -> Optional[Document]:
        raise NotImplementedError

    @abstractmethod
    def update_document_status(
        self, tenant_id: str, document_id: str, status: str
    ) -> Document:
        raise NotImplementedError

    @abstractmethod
    def list_documents(
        self,
        tenant_id: str,
        document_type: DocumentType | None = None,
        client_filter: str | None = None,
        limit: int = 10,
    ) -> list[Document]:
        """Neueste Dokumente zuerst."""
        raise NotImplementedError

    def search_clients(self, tenant_id: str, term: str, limit: int = 10) -> list[Client]:
        """Kunden, deren Name ``term`` enthält (ohne Groß-/Kleinschreibung)."""
        return self.list_clients(tenant_id, name_filter=term, limit=limit)

    def recent_documents(self, tenant_id: str, limit: int = 5) -> list[Document]:
        return self.list_documents(tenant_id, limit=limit)

    @abstractmethod
    def due_schedules(self, today: date) -> list[RecurringSchedule]:
        """Aktive Pläne mit ``next_run_date <= today`` über alle Mandanten."""
        raise NotImplementedError

    @abstractmethod
    def save_schedule(self, schedule: RecurringSchedule) -> RecurringSchedule:
        raise NotImplementedError

    @abstractmethod
    def get_linked_user(self, channel: str, external_id: str) -> Optional[str]:
        """Nutzer-ID zu einer Kanal-Identität oder ``None``, wenn nicht verknüpft."""
        raise NotImplementedError

    @abstractmethod
    def link_channel_user(self, channel: str, external_id: str, user_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_user_tenant(self, user_id: str) -> Optional[str]:
        raise NotImplementedError


class InMemoryRepository(Repository):
    """Prozesslokale Implementierung, abgesichert durch ein gemeinsames Lock."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._settings: dict[str, TenantSettings] = {}
        self._clients: dict[str, Client] = {}
        self._sequences: dict[tuple[str, DocumentType], int] = {}
        # (tenant_id, document_id) -> Document
        self._documents: dict[tuple[str, str], Document] = {}
        self._schedules: dict[str, RecurringSchedule] = {}
        self._links: dict[tuple[str, str], str] = {}
        self._user_tenants: dict[str, str] = {}

    # -- Mandanten -------------------------------------------------------

    def set_tenant_settings(self, tenant_id: str, tenant_settings: TenantSettings) -> None:
        with self._lock:
            self._settings[tenant_id] = tenant_settings

    def tenant_settings(self, tenant_id: str) -> TenantSettings:
        with self._lock:
            stored = self._settings.get(tenant_id)
        if stored is not None:
            return stored
        return TenantSettings(
            default_tax_rate=settings.default_tax_rate,
            default_currency=settings.default_currency,
            invoice_prefix=settings.invoice_prefix,
            quote_prefix=settings.quote_prefix,
            number_padding=settings.number_padding,
            default_due_days=settings.default_due_days,
        )

    def add_user(self, user_id: str, tenant_id: str) -> None:
        with self._lock:
            self._user_tenants[user_id] = tenant_id

    def get_user_tenant(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._user_tenants.get(user_id)

    def get_linked_user(self, channel: str, external_id: str) -> Optional[str]:
        with self._lock:
            return self._links.get((channel, external_id))

    def link_channel_user(self, channel: str, external_id: str, user_id: str) -> None:
        with self._lock:
            # Ein Nutzer hat pro Kanal genau eine Identität.
            for key, linked in list(self._links.items()):
                if key[0] == channel and linked == user_id:
                    del self._links[key]
            self._links[(channel, external_id)] = user_id

    # -- Kunden ----------------------------------------------------------

    def list_clients(
        self, tenant_id: str, name_filter: str | None = None, limit: int | None = None
    ) -> list[Client]:
        needle = (name_filter or "").strip().casefold()
        with self._lock:
            clients = [
                c
                for c in self._clients.values()
                if c.tenant_id == tenant_id and needle in c.name.casefold()
            ]
        clients.sort(key=lambda c: c.name.casefold())
        return clients[:limit] if limit else clients

    def find_client_by_name(self, tenant_id: str, name: str) -> Optional[Client]:
        key = name.strip().casefold()
        with self._lock:
            for client in self._clients.values():
                if client.tenant_id == tenant_id and client.name.casefold() == key:
                    return client
        return None

    def get_client(self, tenant_id: str, client_id: str) -> Optional[Client]:
        with self._lock:
            client = self._clients.get(client_id)
        if client is None or client.tenant_id != tenant_id:
            return None
        return client

    def upsert_client(
        self, tenant_id: str, name: str, email: str | None = None
    ) -> Client:
        with self._lock:
            existing = self.find_client_by_name(tenant_id, name)
            if existing is not None:
                if email and existing.email != email:
                    existing = existing.model_copy(update={"email": email})
                    self._clients[existing.id] = existing
                return existing
            client = Client(
                id=f"client_{uuid4().hex[:16]}",
                tenant_id=tenant_id,
                name=name.strip(),
                email=email,
            )
            self._clients[client.id] = client
            return client

    # -- Sequenzen und Dokumente ------------------------------------------

    def increment_sequence(self, tenant_id: str, document_type: DocumentType) -> int:
        key = (tenant_id, document_type)
        with self._lock:
            current = self._sequences.get(key, 0) + 1
            self._sequences[key] = current
            return current

    def create_document(self, document: Document) -> Document:
        key = (document.tenant_id, document.id)
        with self._lock:
            if key in self._documents:
                raise ConflictError(
                    f"document {document.id} already exists",
                    "Ese número de documento ya existe. Inténtalo de nuevo.",
                )
            self._documents[key] = document.model_copy(deep=True)
        return document

    def get_document(self, tenant_id: str, document_id: str) -> Optional[Document]:
        with self._lock:
            document = self._documents.get((tenant_id, document_id))
        return document.model_copy(deep=True) if document else None

    def update_document_status(
        self, tenant_id: str, document_id: str, status: str
    ) -> Document:
        with self._lock:
            document = self._documents.get((tenant_id, document_id))
            if document is None:
                raise NotFoundError(
                    f"document {document_id} not found",
                    f"No encontré el documento {document_id}.",
                )
            updated = document.model_copy(update={"status": status})
            self._documents[(tenant_id, document_id)] = updated
        return updated.model_copy(deep=True)

    def list_documents(
        self,
        tenant_id: str,
        document_type: DocumentType | None = None,
        client_filter: str | None = None,
        limit: int = 10,
    ) -> list[Document]:
        needle = (client_filter or "").strip().casefold()
        with self._lock:
            documents = [
                d
                for (owner, _), d in self._documents.items()
                if owner == tenant_id
                and (document_type is None or d.type is document_type)
                and needle in d.client_name.casefold()
            ]
        # Einfügereihenfolge entscheidet bei gleichem Zeitstempel.
        documents.reverse()
        documents.sort(key=lambda d: d.created_at, reverse=True)
        return [d.model_copy(deep=True) for d in documents[:limit]]

    # -- Wiederkehrende Rechnungen ---------------------------------------

    def due_schedules(self, today: date) -> list[RecurringSchedule]:
        with self._lock:
            due = [
                s
                for s in self._schedules.values()
                if s.is_active and s.next_run_date <= today
            ]
        return [s.model_copy(deep=True) for s in due]

    def save_schedule(self, schedule: RecurringSchedule) -> RecurringSchedule:
        with self._lock:
            self._schedules[schedule.id] = schedule.model_copy(deep=True)
        return schedule

    def get_schedule(self, schedule_id: str) -> Optional[RecurringSchedule]:
        with self._lock:
            schedule = self._schedules.get(schedule_id)
        return schedule.model_copy(deep=True) if schedule else None


def _load_repository(path: Optional[str]) -> Repository:
    """Dynamisch eine Repository-Klasse aus ``module:Class`` laden."""
    if not path:
        return InMemoryRepository()
    module_name, class_name = path.split(":")
    module = import_module(module_name)
    repository_cls = getattr(module, class_name)
    if not issubclass(repository_cls, Repository):
        raise TypeError("Repository must inherit from Repository")
    return repository_cls()


_repository: Optional[Repository] = None


def get_repository() -> Repository:
    """Gibt das einmalig initialisierte Repository zurück."""
    global _repository
    if _repository is None:
        _repository = _load_repository(settings.repository)
        logger.info("Using repository %s", type(_repository).__name__)
    return _repository


def set_repository(repository: Repository | None) -> None:
    """Ersetzt das Repository (z. B. in Tests oder beim Start)."""
    global _repository
    _repository = repository
