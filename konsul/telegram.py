"""Telegram-Bot: Webhook, Kontoverknüpfung und Versand von Antworten."""

from __future__ import annotations

import logging
from typing import Any, Optional, Union

from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel
import requests

from konsul.conversation import ConversationEngine, get_engine
from konsul.errors import IdentityLookupError, ProviderError
from konsul.repository import Repository, get_repository
from konsul.settings import settings
from konsul.task_queue import TaskQueue, get_task_queue

logger = logging.getLogger(__name__)

router = APIRouter()

CHANNEL = "telegram"

NOT_LINKED_MESSAGE = (
    "⚠️ No estás vinculado a una cuenta.\n\n"
    "Para usar el bot, primero necesitas vincular tu cuenta de Telegram.\n"
    "Visita tu panel de configuración en la aplicación web. "
    "Tu ID de Telegram es: {telegram_id}"
)
NO_TENANT_MESSAGE = "❌ No se encontró una empresa asociada a tu cuenta."
SERVICE_ERROR_MESSAGE = (
    "⚠️ No pude verificar tu cuenta en este momento. "
    "Inténtalo de nuevo en unos minutos."
)
PROCESSING_ERROR_MESSAGE = (
    "❌ Ocurrió un error al procesar tu mensaje. Por favor, intenta de nuevo."
)


class TelegramClient:
    """Minimaler Client für die Bot-API (nur ``sendMessage``)."""

    def __init__(self, token: Optional[str] = None, api_base: Optional[str] = None) -> None:
        if token is None and settings.telegram_bot_token is not None:
            token = settings.telegram_bot_token.get_secret_value()
        self.token = token
        self.api_base = (api_base or settings.telegram_api_base).rstrip("/")

    def send_message(self, chat_id: int | str, text: str) -> dict:
        if not self.token:
            raise ProviderError("TELEGRAM_BOT_TOKEN is not configured")
        url = f"{self.api_base}/bot{self.token}/sendMessage"
        try:
            resp = requests.post(url, json={"chat_id": chat_id, "text": text}, timeout=10)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise ProviderError(f"Telegram sendMessage failed: {exc}") from exc
        return resp.json()


def lookup_user(repository: Repository, telegram_id: str) -> Optional[str]:
    """Verknüpfte Nutzer-ID oder ``None``; Speicherfehler als ``IdentityLookupError``."""
    try:
        return repository.get_linked_user(CHANNEL, telegram_id)
    except Exception as exc:
        raise IdentityLookupError(
            f"identity lookup for telegram:{telegram_id} failed: {exc}",
            SERVICE_ERROR_MESSAGE,
        ) from exc


def process_update(
    update: dict[str, Any],
    engine: Optional[ConversationEngine] = None,
    repository: Optional[Repository] = None,
    client: Optional[TelegramClient] = None,
    task_queue: Optional[TaskQueue] = None,
) -> None:
    """Verarbeitet ein einzelnes Update; läuft im Worker-Thread.

    Mit ``task_queue`` wird die Antwort als eigene Aufgabe zugestellt, damit
    ein Zustellfehler die bereits verarbeitete Nachricht nicht erneut auslöst.
    """
    message = update.get("message") or update.get("edited_message")
    if not message or not message.get("text"):
        logger.debug("Ignoring Telegram update %s without text", update.get("update_id"))
        return
    engine = engine or get_engine()
    repository = repository or get_repository()
    client = client or TelegramClient()

    chat_id = message["chat"]["id"]
    sender = message.get("from") or {}
    telegram_id = str(sender.get("id", chat_id))

    user_id = lookup_user(repository, telegram_id)
    if user_id is None:
        client.send_message(chat_id, NOT_LINKED_MESSAGE.format(telegram_id=telegram_id))
        return
    tenant_id = repository.get_user_tenant(user_id)
    if tenant_id is None:
        client.send_message(chat_id, NO_TENANT_MESSAGE)
        return

    reply = engine.handle(CHANNEL, str(chat_id), message["text"], tenant_id, user_id)
    if task_queue is not None:
        task_queue.submit(client.send_message, chat_id, reply.message)
    else:
        client.send_message(chat_id, reply.message)


def _notify_failure(chat_id: Any, client: Optional[TelegramClient] = None):
    def on_failure(exc: BaseException) -> None:
        text = (
            SERVICE_ERROR_MESSAGE
            if isinstance(exc, IdentityLookupError)
            else PROCESSING_ERROR_MESSAGE
        )
        (client or TelegramClient()).send_message(chat_id, text)

    return on_failure


@router.post("/telegram/webhook")
async def telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: Optional[str] = Header(default=None),
):
    """Bestätigt sofort und reicht das Update an die Task-Queue weiter."""
    if settings.telegram_bot_token is None:
        raise HTTPException(status_code=503, detail="Telegram bot no configurado")
    secret = settings.telegram_webhook_secret
    if secret is not None and x_telegram_bot_api_secret_token != secret.get_secret_value():
        raise HTTPException(status_code=401, detail="Invalid secret token")

    update = await request.json()
    message = update.get("message") or update.get("edited_message") or {}
    chat_id = (message.get("chat") or {}).get("id")
    on_failure = _notify_failure(chat_id) if chat_id is not None else None
    task_queue = get_task_queue()
    task_queue.submit(process_update, update, task_queue=task_queue, on_failure=on_failure)
    return {"ok": True}


class LinkRequest(BaseModel):
    telegram_id: Union[str, int]


@router.post("/telegram/link")
def link_telegram_user(
    body: LinkRequest,
    x_user_id: Optional[str] = Header(default=None),
):
    """Verknüpft die Telegram-ID mit dem angemeldeten Nutzer."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="No autenticado")
    repository = get_repository()
    if repository.get_user_tenant(x_user_id) is None:
        raise HTTPException(status_code=404, detail="Usuario sin empresa")
    telegram_id = str(body.telegram_id).strip()
    if not telegram_id:
        raise HTTPException(status_code=400, detail="telegram_id es requerido")
    repository.link_channel_user(CHANNEL, telegram_id, x_user_id)
    logger.info("Linked telegram:%s to user %s", telegram_id, x_user_id)
    return {"success": True, "telegram_id": telegram_id, "user_id": x_user_id}
