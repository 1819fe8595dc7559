"""Ablage des Gesprächszustands je ``(Kanal, Konversation)``."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
import logging
from threading import Lock, RLock
from typing import Iterator, Optional

import redis

from konsul.models import ConversationSession, session_key
from konsul.settings import settings

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """Speichert Sitzungen und serialisiert Nachrichten innerhalb einer Sitzung."""

    @abstractmethod
    def get(self, key: str) -> Optional[ConversationSession]:
        raise NotImplementedError

    @abstractmethod
    def save(self, session: ConversationSession) -> None:
        raise NotImplementedError

    @abstractmethod
    def clear(self, key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def lock(self, key: str):
        """Kontextmanager, der die Sitzung exklusiv hält."""
        raise NotImplementedError

    def load(
        self, channel: str, conversation_id: str, tenant_id: Optional[str] = None
    ) -> ConversationSession:
        """Vorhandene Sitzung oder eine frische im Zustand ``idle``."""
        session = self.get(session_key(channel, conversation_id, tenant_id))
        if session is None:
            session = ConversationSession(
                channel=channel, conversation_id=conversation_id, tenant_id=tenant_id
            )
        return session


class InMemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self._sessions: dict[str, ConversationSession] = {}
        # key -> [lock, holders]; entries are dropped once nobody holds them
        self._locks: dict[str, list] = {}
        self._guard = Lock()

    def get(self, key: str) -> Optional[ConversationSession]:
        with self._guard:
            session = self._sessions.get(key)
        return session.model_copy(deep=True) if session else None

    def save(self, session: ConversationSession) -> None:
        with self._guard:
            self._sessions[session.key] = session.model_copy(deep=True)

    def clear(self, key: str) -> None:
        with self._guard:
            self._sessions.pop(key, None)

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class RedisSessionStore(SessionStore):
    """Sitzungen als JSON in Redis; Sperren über ``redis.lock.Lock``."""

    prefix = "konsul:session:"

    def __init__(self, client: Optional[redis.Redis] = None) -> None:
        self._client = client or redis.Redis.from_url(settings.redis_url)

    def get(self, key: str) -> Optional[ConversationSession]:
        raw = self._client.get(self.prefix + key)
        if raw is None:
            return None
        return ConversationSession.model_validate_json(raw)

    def save(self, session: ConversationSession) -> None:
        ttl = settings.session_ttl_seconds or None
        self._client.set(self.prefix + session.key, session.model_dump_json(), ex=ttl)

    def clear(self, key: str) -> None:
        self._client.delete(self.prefix + key)

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        lock = self._client.lock(
            f"konsul:lock:{key}",
            timeout=settings.session_lock_timeout,
            blocking_timeout=settings.session_lock_timeout,
        )
        with lock:
            yield


_STORES: dict[str, type[SessionStore]] = {
    "memory": InMemorySessionStore,
    "redis": RedisSessionStore,
}


def _select_store() -> SessionStore:
    """Gibt den konfigurierten Sitzungsspeicher zurück."""
    try:
        store_cls = _STORES[settings.session_store]
    except KeyError:
        raise ValueError(f"Unsupported SESSION_STORE {settings.session_store}")
    logger.info("Using session store %s", settings.session_store)
    return store_cls()


_store: Optional[SessionStore] = None


def get_session_store() -> SessionStore:
    global _store
    if _store is None:
        _store = _select_store()
    return _store


def set_session_store(store: Optional[SessionStore]) -> None:
    global _store
    _store = store
