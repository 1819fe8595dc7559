import sys, os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import importlib
import pytest

from konsul import settings as konsul_settings
from konsul import email_adapter, repository, session_store


def test_settings_read_environment(monkeypatch):
    """Environment variables override the defaults"""
    monkeypatch.setenv("DEFAULT_TAX_RATE", "16")
    monkeypatch.setenv("LLM_PROVIDERS", '["ollama"]')
    monkeypatch.setenv("CONFIRM_SINGLE_TURN", "1")
    config = konsul_settings.Settings()
    assert config.default_tax_rate == 16.0
    assert config.llm_providers == ["ollama"]
    assert config.confirm_single_turn is True


def test_default_email_adapter(monkeypatch):
    """Uses the logging adapter when none is configured"""
    monkeypatch.setattr(konsul_settings.settings, "email_adapter", None)
    importlib.reload(email_adapter)
    result = email_adapter.send_email("billing@acme.test", "Factura INV-00001", "<p>Hola</p>")
    assert result["status"] == "logged"
    assert result["to"] == "billing@acme.test"


def test_env_email_adapter(monkeypatch):
    """Loads the adapter named in the settings"""
    monkeypatch.setattr(
        konsul_settings.settings, "email_adapter", "konsul.email_adapter:LoggingEmailAdapter"
    )
    importlib.reload(email_adapter)
    assert isinstance(email_adapter.get_adapter(), email_adapter.LoggingEmailAdapter)


def test_invalid_email_adapter(monkeypatch):
    """Raises error if the adapter class has the wrong base"""
    monkeypatch.setattr(konsul_settings.settings, "email_adapter", "konsul.models:Document")
    importlib.reload(email_adapter)
    with pytest.raises(TypeError):
        email_adapter.get_adapter()


def test_invalid_repository(monkeypatch):
    """Rejects repository classes with the wrong base"""
    monkeypatch.setattr(konsul_settings.settings, "repository", "konsul.models:Client")
    with pytest.raises(TypeError):
        repository._load_repository(konsul_settings.settings.repository)


def test_default_repository():
    """Without configuration the in-memory repository is used"""
    assert isinstance(repository._load_repository(None), repository.InMemoryRepository)


def test_invalid_llm_provider():
    """Rejects invalid LLM provider configuration"""
    from konsul import llm_agent
    with pytest.raises(ValueError):
        llm_agent._select_provider("foo")


def test_invalid_llm_provider_in_settings(monkeypatch, caplog):
    """Unknown names in LLM_PROVIDERS are skipped with a warning"""
    from konsul import llm_agent
    monkeypatch.setattr(konsul_settings.settings, "llm_providers", ["foo", "ollama"])
    names = [p.name for p in llm_agent.configured_providers()]
    assert names == ["ollama"]
    assert "Skipping unknown LLM provider foo" in caplog.text


def test_invalid_session_store(monkeypatch):
    """Rejects unknown session stores"""
    monkeypatch.setattr(konsul_settings.settings, "session_store", "foo")
    with pytest.raises(ValueError):
        session_store._select_store()


def test_memory_session_store(monkeypatch):
    """The memory store is the default"""
    monkeypatch.setattr(konsul_settings.settings, "session_store", "memory")
    assert isinstance(session_store._select_store(), session_store.InMemorySessionStore)
