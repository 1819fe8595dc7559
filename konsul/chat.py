"""Web-Chat-Endpunkt für die eingebettete Oberfläche."""

from __future__ import annotations

import logging
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel

from konsul.conversation import ConversationEngine, ConversationReply, get_engine

logger = logging.getLogger(__name__)

router = APIRouter()

CHANNEL = "web"


class ChatRequest(BaseModel):
    message: str
    session_id: Optional[str] = None


class ChatResponse(ConversationReply):
    session_id: str


@router.post("/chat/", response_model=ChatResponse)
def chat(
    body: ChatRequest,
    x_tenant_id: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
    x_session_id: Optional[str] = Header(default=None),
    engine: ConversationEngine = Depends(get_engine),
):
    """Nimmt eine Chatnachricht entgegen und gibt die Antwort des Assistenten zurück."""

    # Die Anmeldung selbst übernimmt ein vorgelagerter Dienst.
    if not x_tenant_id:
        raise HTTPException(status_code=401, detail="No autenticado")
    if not body.message.strip():
        raise HTTPException(status_code=400, detail="El mensaje está vacío")

    session_id = body.session_id or x_session_id or x_user_id or uuid4().hex
    reply = engine.handle(CHANNEL, session_id, body.message, x_tenant_id, x_user_id)
    return ChatResponse(session_id=session_id, **reply.model_dump())
