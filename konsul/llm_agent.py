"""Kommunikation mit unterschiedlichen LLM-Anbietern."""

from __future__ import annotations

from abc import ABC, abstractmethod
import json
import logging
import time
from typing import Any, Optional

import httpx
from openai import OpenAI, OpenAIError
from pydantic import BaseModel

from konsul.errors import ProviderError
from konsul.settings import settings

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = (
    "Eres el asistente de facturación de una pequeña empresa. Convierte cada "
    "mensaje en exactamente una de las funciones disponibles. Si falta un dato, "
    "llama igualmente a la función con los campos que conozcas. Responde solo "
    "con una llamada a función o con un objeto JSON."
)

_ITEMS_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "description": {"type": "string"},
            "qty": {"type": "number"},
            "price": {"type": "number"},
        },
        "required": ["description", "price"],
    },
}

_DOCUMENT_TYPE_SCHEMA = {"type": "string", "enum": ["quote", "invoice"]}

# Funktionsschemata im OpenAI-Format; Gemini nutzt dieselben Deklarationen.
TOOLS: list[dict[str, Any]] = [
    {
        "name": "create_document",
        "description": "Crea una cotización o una factura para un cliente.",
        "parameters": {
            "type": "object",
            "properties": {
                "document_type": _DOCUMENT_TYPE_SCHEMA,
                "client_name": {"type": "string"},
                "client_email": {"type": "string"},
                "title": {"type": "string"},
                "items": _ITEMS_SCHEMA,
                "currency": {"type": "string"},
                "tax_rate": {"type": "number"},
                "send_email": {"type": "boolean"},
            },
            "required": ["document_type"],
        },
    },
    {
        "name": "update_status",
        "description": "Cambia el estado de una cotización o factura existente.",
        "parameters": {
            "type": "object",
            "properties": {
                "document_id": {"type": "string"},
                "document_type": _DOCUMENT_TYPE_SCHEMA,
                "status": {"type": "string"},
            },
            "required": ["document_id", "status"],
        },
    },
    {
        "name": "send_document",
        "description": "Envía por email una cotización o factura al cliente.",
        "parameters": {
            "type": "object",
            "properties": {
                "document_id": {"type": "string"},
                "document_type": _DOCUMENT_TYPE_SCHEMA,
            },
            "required": ["document_id"],
        },
    },
    {
        "name": "list_documents",
        "description": "Lista las cotizaciones o facturas más recientes.",
        "parameters": {
            "type": "object",
            "properties": {
                "document_type": _DOCUMENT_TYPE_SCHEMA,
                "client_filter": {"type": "string"},
                "limit": {"type": "integer"},
            },
        },
    },
    {
        "name": "list_clients",
        "description": "Lista los clientes registrados.",
        "parameters": {
            "type": "object",
            "properties": {
                "name_filter": {"type": "string"},
                "limit": {"type": "integer"},
            },
        },
    },
]


class LLMReply(BaseModel):
    """Antwort eines Backends: entweder ein Funktionsaufruf oder Freitext."""

    provider: str
    tool_name: Optional[str] = None
    arguments: Optional[dict[str, Any]] = None
    text: Optional[str] = None

    @property
    def is_tool_call(self) -> bool:
        return self.tool_name is not None


class LLMProvider(ABC):
    """Abstrakte Basis für alle Large-Language-Model-Backends."""

    name = "llm"

    @abstractmethod
    def complete(
        self, prompt: str, tools: Optional[list[dict[str, Any]]] = None
    ) -> LLMReply:
        """Schickt den Prompt ab; Ausfälle werden als ``ProviderError`` gemeldet."""
        raise NotImplementedError

    def is_configured(self) -> bool:
        return True


class OpenAIProvider(LLMProvider):
    """Verwendet die Chat-Completions-API von OpenAI mit Function Calling."""

    name = "openai"

    def is_configured(self) -> bool:
        return settings.openai_api_key is not None

    def complete(
        self, prompt: str, tools: Optional[list[dict[str, Any]]] = None
    ) -> LLMReply:
        client = OpenAI(
            api_key=settings.openai_api_key.get_secret_value()
            if settings.openai_api_key
            else None,
            timeout=settings.llm_timeout,
        )
        kwargs: dict[str, Any] = {}
        if tools:
            kwargs["tools"] = [{"type": "function", "function": t} for t in tools]
            kwargs["tool_choice"] = "auto"
        else:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = client.chat.completions.create(
                model=settings.llm_model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                **kwargs,
            )
        except OpenAIError as exc:
            raise ProviderError(
                f"OpenAI request failed: {exc}",
                "El asistente no está disponible ahora mismo. Inténtalo en unos minutos.",
            ) from exc

        message = response.choices[0].message
        tool_calls = getattr(message, "tool_calls", None)
        if tool_calls:
            call = tool_calls[0]
            try:
                arguments = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError as exc:
                raise ProviderError(
                    "OpenAI returned invalid tool arguments"
                ) from exc
            return LLMReply(
                provider=self.name, tool_name=call.function.name, arguments=arguments
            )
        return LLMReply(provider=self.name, text=message.content or "")


class GeminiProvider(LLMProvider):
    """Spricht die REST-Schnittstelle ``generateContent`` von Gemini an."""

    name = "gemini"

    def is_configured(self) -> bool:
        return settings.gemini_api_key is not None

    def complete(
        self, prompt: str, tools: Optional[list[dict[str, Any]]] = None
    ) -> LLMReply:
        url = (
            f"{settings.gemini_api_base.rstrip('/')}/models/"
            f"{settings.gemini_model}:generateContent"
        )
        body: dict[str, Any] = {
            "systemInstruction": {"parts": [{"text": SYSTEM_PROMPT}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        }
        if tools:
            body["tools"] = [{"functionDeclarations": tools}]
        else:
            body["generationConfig"] = {"responseMimeType": "application/json"}
        api_key = settings.gemini_api_key.get_secret_value() if settings.gemini_api_key else ""
        try:
            resp = httpx.post(
                url,
                params={"key": api_key},
                json=body,
                timeout=settings.llm_timeout,
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Gemini request to %s failed: %s", url, exc)
            raise ProviderError(
                f"Gemini request failed: {exc}",
                "El asistente no está disponible ahora mismo. Inténtalo en unos minutos.",
            ) from exc

        logger.debug("Gemini response: %s", resp.text)
        try:
            parts = resp.json()["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ProviderError("Gemini response without content") from exc

        texts: list[str] = []
        for part in parts:
            call = part.get("functionCall")
            if call:
                return LLMReply(
                    provider=self.name,
                    tool_name=call.get("name"),
                    arguments=call.get("args") or {},
                )
            if part.get("text"):
                texts.append(part["text"])
        return LLMReply(provider=self.name, text="".join(texts))


class OllamaProvider(LLMProvider):
    """Spricht mit einem lokalen Ollama-Server."""

    name = "ollama"

    def complete(
        self, prompt: str, tools: Optional[list[dict[str, Any]]] = None
    ) -> LLMReply:
        url = f"{settings.ollama_base_url.rstrip('/')}/api/generate"
        if tools:
            # Ollama kennt hier kein Function Calling; die Schemata wandern in den Prompt.
            prompt = (
                f"{SYSTEM_PROMPT}\nFunciones disponibles:\n"
                f"{json.dumps(tools, ensure_ascii=False)}\n"
                'Responde con JSON: {"kind": <función>, ...argumentos}.\n\n'
                f"{prompt}"
            )
        try:
            resp = httpx.post(
                url,
                json={
                    "model": settings.ollama_model,
                    "prompt": prompt,
                    "stream": False,
                    "format": "json",
                },
                timeout=settings.llm_timeout,
            )
        except httpx.RequestError as exc:
            logger.exception("Failed to contact Ollama server at %s", url)
            raise ProviderError(
                "Ollama server unreachable",
                "El asistente local no responde. Inténtalo más tarde.",
            ) from exc
        if resp.status_code == 404:
            # Ollama antwortet mit 404, wenn das Modell nicht geladen ist.
            try:
                detail = resp.json().get("error", "model not found")
            except ValueError:
                detail = "model not found"
            logger.error(
                "Ollama model '%s' unavailable: %s", settings.ollama_model, detail
            )
            raise ProviderError(
                f"Ollama model '{settings.ollama_model}' unavailable: {detail}"
            )
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(f"Ollama request failed: {exc}") from exc
        logger.debug("Ollama response: %s", resp.text)
        return LLMReply(provider=self.name, text=resp.json().get("response", ""))


_LLM_PROVIDERS: dict[str, type[LLMProvider]] = {
    "openai": OpenAIProvider,
    "gemini": GeminiProvider,
    "ollama": OllamaProvider,
}


def _select_provider(name: str) -> LLMProvider:
    """Gibt eine Instanz des benannten LLM-Providers zurück."""
    try:
        provider_cls = _LLM_PROVIDERS[name]
    except KeyError:
        raise ValueError(f"Unsupported LLM provider {name}")
    return provider_cls()


def configured_providers() -> list[LLMProvider]:
    """Alle konfigurierten Provider in Prioritätsreihenfolge.

    Unbekannte Namen und Provider ohne Zugangsdaten werden übersprungen.
    """
    providers = []
    for name in settings.llm_providers:
        try:
            provider = _select_provider(name)
        except ValueError:
            logger.warning("Skipping unknown LLM provider %s", name)
            continue
        if provider.is_configured():
            providers.append(provider)
        else:
            logger.debug("Skipping LLM provider %s without credentials", name)
    return providers


def complete_with_timing(
    provider: LLMProvider, prompt: str, tools: Optional[list[dict[str, Any]]] = None
) -> LLMReply:
    """Ruft ``provider.complete`` auf und protokolliert die Dauer."""
    start = time.perf_counter()
    try:
        return provider.complete(prompt, tools)
    finally:
        logger.info("LLM call to %s took %.3f s", provider.name, time.perf_counter() - start)


def check_llm_backend(timeout: float = 5.0) -> bool:
    """Prüft, ob mindestens ein konfiguriertes LLM erreichbar ist."""
    for provider in configured_providers():
        try:
            if provider.name == "openai":
                # Listing models is a lightweight way to verify connectivity.
                OpenAI(
                    api_key=settings.openai_api_key.get_secret_value(),
                    timeout=timeout,
                ).models.list()
            elif provider.name == "gemini":
                httpx.get(
                    f"{settings.gemini_api_base.rstrip('/')}/models",
                    params={"key": settings.gemini_api_key.get_secret_value()},
                    timeout=timeout,
                ).raise_for_status()
            elif provider.name == "ollama":
                url = f"{settings.ollama_base_url.rstrip('/')}/api/tags"
                httpx.get(url, timeout=timeout).raise_for_status()
        except (OpenAIError, httpx.HTTPError) as exc:
            logger.warning("LLM backend %s unreachable: %s", provider.name, exc)
            continue
        return True
    return False
