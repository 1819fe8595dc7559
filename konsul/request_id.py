from __future__ import annotations

import logging
from contextvars import ContextVar


# Context variable that holds the current request id
request_id_ctx_var: ContextVar[str] = ContextVar("request_id", default="-")
# Channel conversation currently being processed ("web:abc", "telegram:42")
conversation_ctx_var: ContextVar[str] = ContextVar("conversation", default="-")


class RequestIdFilter(logging.Filter):
    """Logging filter to inject the request and conversation ids into records."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        record.request_id = request_id_ctx_var.get()
        record.conversation = conversation_ctx_var.get()
        return True
