import sys, os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import json
from types import SimpleNamespace

import httpx
import pytest
from pydantic import SecretStr

from konsul import llm_agent
from konsul.errors import ProviderError
from konsul.settings import settings


class DummyOpenAI:
    """Imitiert ``OpenAI`` und liefert eine vorbereitete Antwort."""

    def __init__(self, message):
        self.kwargs = None
        self._message = message
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        self.kwargs = kwargs
        return SimpleNamespace(choices=[SimpleNamespace(message=self._message)])


class DummyResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = json.dumps(self._payload)

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            request = httpx.Request("POST", "http://test")
            raise httpx.HTTPStatusError(
                "error", request=request, response=httpx.Response(self.status_code, request=request)
            )


def test_openai_tool_call(monkeypatch):
    """Reads name and arguments of the first tool call"""
    call = SimpleNamespace(
        function=SimpleNamespace(
            name="create_document",
            arguments='{"document_type": "invoice", "client_name": "Acme"}',
        )
    )
    dummy = DummyOpenAI(SimpleNamespace(tool_calls=[call], content=None))
    monkeypatch.setattr(settings, "openai_api_key", SecretStr("sk-test"))
    monkeypatch.setattr(llm_agent, "OpenAI", lambda **kw: dummy)

    reply = llm_agent.OpenAIProvider().complete("prompt", llm_agent.TOOLS)

    assert reply.is_tool_call
    assert reply.tool_name == "create_document"
    assert reply.arguments["client_name"] == "Acme"
    assert dummy.kwargs["tools"][0]["type"] == "function"
    assert dummy.kwargs["messages"][1]["content"] == "prompt"


def test_openai_plain_text_uses_json_mode(monkeypatch):
    """Without tools the request asks for a JSON object"""
    dummy = DummyOpenAI(SimpleNamespace(tool_calls=None, content='{"kind": "list_clients"}'))
    monkeypatch.setattr(settings, "openai_api_key", SecretStr("sk-test"))
    monkeypatch.setattr(llm_agent, "OpenAI", lambda **kw: dummy)

    reply = llm_agent.OpenAIProvider().complete("prompt")

    assert not reply.is_tool_call
    assert reply.text == '{"kind": "list_clients"}'
    assert dummy.kwargs["response_format"] == {"type": "json_object"}


def test_openai_error_becomes_provider_error(monkeypatch):
    """SDK errors are reported as retryable provider errors"""

    def failing_create(**kwargs):
        raise llm_agent.OpenAIError("boom")

    dummy = DummyOpenAI(None)
    dummy.chat = SimpleNamespace(completions=SimpleNamespace(create=failing_create))
    monkeypatch.setattr(settings, "openai_api_key", SecretStr("sk-test"))
    monkeypatch.setattr(llm_agent, "OpenAI", lambda **kw: dummy)

    with pytest.raises(ProviderError) as excinfo:
        llm_agent.OpenAIProvider().complete("prompt", llm_agent.TOOLS)
    assert excinfo.value.retryable


def test_gemini_function_call(monkeypatch):
    """Gemini functionCall parts become tool call replies"""
    captured = {}

    def fake_post(url, params=None, json=None, timeout=None):
        captured.update(url=url, params=params, body=json)
        return DummyResponse(
            payload={
                "candidates": [
                    {
                        "content": {
                            "parts": [
                                {"functionCall": {"name": "list_clients", "args": {"limit": 5}}}
                            ]
                        }
                    }
                ]
            }
        )

    monkeypatch.setattr(settings, "gemini_api_key", SecretStr("g-key"))
    monkeypatch.setattr(llm_agent.httpx, "post", fake_post)

    reply = llm_agent.GeminiProvider().complete("hola", llm_agent.TOOLS)

    assert reply.tool_name == "list_clients"
    assert reply.arguments == {"limit": 5}
    assert captured["params"] == {"key": "g-key"}
    assert captured["url"].endswith(f"{settings.gemini_model}:generateContent")
    assert captured["body"]["tools"][0]["functionDeclarations"] == llm_agent.TOOLS


def test_gemini_http_error(monkeypatch):
    """HTTP failures of Gemini raise ProviderError"""
    monkeypatch.setattr(settings, "gemini_api_key", SecretStr("g-key"))
    monkeypatch.setattr(
        llm_agent.httpx, "post", lambda *a, **kw: DummyResponse(status_code=500)
    )
    with pytest.raises(ProviderError):
        llm_agent.GeminiProvider().complete("hola")


def test_gemini_without_candidates(monkeypatch):
    """A response without candidates is treated as provider failure"""
    monkeypatch.setattr(settings, "gemini_api_key", SecretStr("g-key"))
    monkeypatch.setattr(
        llm_agent.httpx, "post", lambda *a, **kw: DummyResponse(payload={"candidates": []})
    )
    with pytest.raises(ProviderError):
        llm_agent.GeminiProvider().complete("hola")


def test_ollama_puts_tools_into_prompt(monkeypatch):
    """Ollama gets the function schemas inside the prompt"""
    captured = {}

    def fake_post(url, json=None, timeout=None):
        captured.update(url=url, body=json)
        return DummyResponse(payload={"response": '{"kind": "list_clients"}'})

    monkeypatch.setattr(llm_agent.httpx, "post", fake_post)

    reply = llm_agent.OllamaProvider().complete("hola", llm_agent.TOOLS)

    assert reply.text == '{"kind": "list_clients"}'
    assert captured["url"].endswith("/api/generate")
    assert "create_document" in captured["body"]["prompt"]
    assert captured["body"]["format"] == "json"


def test_ollama_missing_model(monkeypatch):
    """404 from Ollama means the model is not available"""
    monkeypatch.setattr(
        llm_agent.httpx,
        "post",
        lambda *a, **kw: DummyResponse(status_code=404, payload={"error": "model not found"}),
    )
    with pytest.raises(ProviderError) as excinfo:
        llm_agent.OllamaProvider().complete("hola")
    assert "unavailable" in str(excinfo.value)


def test_ollama_unreachable(monkeypatch):
    """Connection errors raise ProviderError"""

    def fake_post(*args, **kwargs):
        raise httpx.ConnectError("refused")

    monkeypatch.setattr(llm_agent.httpx, "post", fake_post)
    with pytest.raises(ProviderError):
        llm_agent.OllamaProvider().complete("hola")


def test_configured_providers_skip_missing_credentials(monkeypatch):
    """Providers without API key are left out"""
    monkeypatch.setattr(settings, "llm_providers", ["openai", "gemini", "ollama"])
    monkeypatch.setattr(settings, "openai_api_key", None)
    monkeypatch.setattr(settings, "gemini_api_key", SecretStr("g-key"))
    names = [p.name for p in llm_agent.configured_providers()]
    assert names == ["gemini", "ollama"]


def test_check_llm_backend_without_providers(monkeypatch):
    """No configured provider means no reachable backend"""
    monkeypatch.setattr(settings, "llm_providers", [])
    assert llm_agent.check_llm_backend() is False
