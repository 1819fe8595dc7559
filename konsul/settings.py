from __future__ import annotations

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    openai_api_key: SecretStr | None = None
    gemini_api_key: SecretStr | None = None
    # Backends in priority order; only those with credentials are used.
    llm_providers: list[str] = ["openai", "gemini"]
    llm_model: str = "gpt-4o-mini"
    gemini_model: str = "gemini-2.5-flash"
    gemini_api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.1"
    llm_timeout: float = 20.0
    fail_on_llm_unavailable: bool = False

    default_tax_rate: float = 21.0
    default_currency: str = "EUR"
    invoice_prefix: str = "INV-"
    quote_prefix: str = "Q-"
    number_padding: int = 5
    default_due_days: int = 15
    list_limit_default: int = 10
    list_limit_max: int = 100

    repository: str | None = None
    email_adapter: str | None = None
    email_sender: str = "facturas@konsul.app"

    session_store: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    session_ttl_seconds: int = 0
    session_lock_timeout: float = 30.0
    confirm_single_turn: bool = False

    telegram_bot_token: SecretStr | None = None
    telegram_api_base: str = "https://api.telegram.org"
    telegram_webhook_secret: SecretStr | None = None
    cron_secret: SecretStr | None = None
    task_max_attempts: int = 3
    task_retry_delay: float = 1.0
    task_dead_letter_limit: int = 100

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
