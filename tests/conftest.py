import logging
import inspect
import sys
import os
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from konsul.conversation import ConversationEngine
from konsul.dispatcher import CommandDispatcher
from konsul.email_adapter import EmailAdapter
from konsul.intent_parser import IntentParser
from konsul.repository import InMemoryRepository
from konsul.session_store import InMemorySessionStore


@pytest.fixture(autouse=True)
def log_test_start(request):
    doc = inspect.getdoc(request.node.obj) if hasattr(request.node, "obj") else None
    if doc:
        first_line = doc.splitlines()[0]
        logging.info(f"START {request.node.name} - {first_line}")
    else:
        logging.info(f"START {request.node.name}")
    yield
    logging.info(f"END {request.node.name}")


class RecordingEmailAdapter(EmailAdapter):
    """Merkt sich alle Nachrichten statt sie zu versenden."""

    def __init__(self):
        self.sent = []

    def send(self, to, subject, html):
        self.sent.append({"to": to, "subject": subject, "html": html})
        return {"status": "recorded"}


@pytest.fixture
def repository():
    repo = InMemoryRepository()
    repo.add_user("u1", "t1")
    repo.add_user("u2", "t2")
    return repo


@pytest.fixture
def email_adapter():
    return RecordingEmailAdapter()


@pytest.fixture
def dispatcher(repository, email_adapter):
    return CommandDispatcher(repository, email_adapter=email_adapter)


@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def engine(repository, dispatcher, session_store):
    # Ohne LLM-Provider greift ausschließlich der regelbasierte Parser.
    return ConversationEngine(
        repository=repository,
        parser=IntentParser(providers=[]),
        dispatcher=dispatcher,
        store=session_store,
        confirm_single_turn=False,
    )
