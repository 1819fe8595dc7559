import logging
import time
from datetime import date
from typing import Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Request

# Die eigentliche Geschäftslogik steckt in diesen Hilfsmodulen. Wir holen sie
# hier zusammen, damit die FastAPI-Endpunkte schlank bleiben.
from konsul.chat import router as chat_router
from konsul.conversation import ConversationEngine, get_engine
from konsul.errors import KonsulError, NotFoundError
from konsul.llm_agent import check_llm_backend, configured_providers
from konsul.logging_config import configure_logging
from konsul.recurring import generate_recurring_invoices
from konsul.request_id import request_id_ctx_var
from konsul.settings import settings
from konsul.task_queue import get_task_queue
from konsul.telegram import router as telegram_router

# Einmalig beim Import die Standard-Logging-Konfiguration anwenden.
configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI()


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid4())
    token = request_id_ctx_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx_var.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(chat_router)
app.include_router(telegram_router)


@app.on_event("startup")
def _check_llm_backend() -> None:
    """Prüft beim Start, ob ein konfiguriertes LLM erreichbar ist."""
    if not configured_providers():
        logger.info("No LLM provider configured, using rule-based parsing only")
        return
    if check_llm_backend():
        logger.info("LLM backend reachable")
        return
    msg = (
        "LLM backend unreachable. "
        "Messages fall back to rule-based parsing; set "
        "FAIL_ON_LLM_UNAVAILABLE=1 to abort startup."
    )
    if settings.fail_on_llm_unavailable:
        raise RuntimeError(msg)
    logger.warning(msg)


@app.on_event("shutdown")
def _stop_task_queue() -> None:
    get_task_queue().stop()


@app.get("/")
def read_root():
    """Simple health/info endpoint for the API root."""
    return {
        "message": "Konsul Bills asistente en marcha",
        "usage": "POST a message to /chat/",
    }


def _check_cron_auth(authorization: Optional[str]) -> None:
    if settings.cron_secret is None:
        logger.error("CRON_SECRET not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if authorization != f"Bearer {settings.cron_secret.get_secret_value()}":
        logger.error("Unauthorized cron access attempt")
        raise HTTPException(status_code=401, detail="Unauthorized")


@app.post("/cron/recurring-invoices")
def run_recurring_invoices(
    authorization: Optional[str] = Header(default=None),
    engine: ConversationEngine = Depends(get_engine),
):
    """Erzeugt alle heute fälligen wiederkehrenden Rechnungen."""
    _check_cron_auth(authorization)
    start = time.perf_counter()
    result = generate_recurring_invoices(engine.repository, engine.dispatcher, date.today())
    duration = time.perf_counter() - start
    logger.info("Recurring invoices took %.3f s", duration)
    return {
        "success": True,
        "duration": f"{duration:.3f}s",
        "generated": len(result.generated),
        "invoices": result.generated,
        "errors": len(result.errors),
        "error_details": [e.model_dump() for e in result.errors],
    }


@app.get("/cron/recurring-invoices")
def recurring_invoices_status(authorization: Optional[str] = Header(default=None)):
    _check_cron_auth(authorization)
    return {"status": "ok", "message": "Recurring invoices cron endpoint is ready"}


@app.post("/quotes/{quote_id}/convert-to-invoice")
def convert_quote(
    quote_id: str,
    x_tenant_id: Optional[str] = Header(default=None),
    engine: ConversationEngine = Depends(get_engine),
):
    """Wandelt ein angenommenes Angebot in eine Rechnung um."""
    if not x_tenant_id:
        raise HTTPException(status_code=401, detail="No autenticado")
    try:
        created = engine.dispatcher.convert_quote_to_invoice(quote_id, x_tenant_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.user_message)
    except KonsulError as exc:
        status_code = 503 if exc.retryable else 400
        raise HTTPException(status_code=status_code, detail=exc.user_message)
    return created.model_dump(mode="json")
