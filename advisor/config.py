from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./advisor.db"
DEFAULT_FRONTEND_ORIGIN = "http://localhost:3000"
DEFAULT_CLOUDFLARE_MODEL = "@cf/meta/llama-3.1-8b-instruct"
DEFAULT_GEMINI_MODEL = "gemini-1.5-flash"

SUPPORTED_PROVIDERS = ("cloudflare", "gemini")
ENVIRONMENTS = ("development", "test", "production")


@dataclass(frozen=True)
class AdvisorSettings:
    database_url: str = DEFAULT_DATABASE_URL
    frontend_origin: str = DEFAULT_FRONTEND_ORIGIN
    provider: str = "cloudflare"
    cloudflare_api_token: str | None = None
    cloudflare_account_id: str | None = None
    cloudflare_model: str = DEFAULT_CLOUDFLARE_MODEL
    gemini_api_key: str | None = None
    gemini_model: str = DEFAULT_GEMINI_MODEL
    http_timeout_ms: int = 20_000
    max_attempts: int = 3
    max_tokens: int = 900
    environment: str = "development"

    def __post_init__(self) -> None:
        if self.provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unsupported advisor provider: {self.provider}")
        if not 1000 <= self.http_timeout_ms <= 120_000:
            raise ValueError("ADVISOR_HTTP_TIMEOUT_MS must be between 1000 and 120000.")
        if not 1 <= self.max_attempts <= 5:
            raise ValueError("ADVISOR_MAX_ATTEMPTS must be between 1 and 5.")
        if self.max_tokens <= 0:
            raise ValueError("ADVISOR_MAX_TOKENS must be positive.")
        if self.environment not in ENVIRONMENTS:
            raise ValueError(f"Unsupported APP_ENV: {self.environment}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AdvisorSettings":
        env = os.environ if environ is None else environ
        return cls(
            database_url=env.get("DATABASE_URL", DEFAULT_DATABASE_URL),
            frontend_origin=env.get("FRONTEND_ORIGIN", DEFAULT_FRONTEND_ORIGIN),
            provider=(env.get("ADVISOR_PROVIDER") or "cloudflare").strip().lower(),
            cloudflare_api_token=_optional(env.get("ADVISOR_CLOUDFLARE_API_TOKEN")),
            cloudflare_account_id=_optional(env.get("ADVISOR_CLOUDFLARE_ACCOUNT_ID")),
            cloudflare_model=_optional(env.get("ADVISOR_CLOUDFLARE_MODEL")) or DEFAULT_CLOUDFLARE_MODEL,
            gemini_api_key=_optional(env.get("GEMINI_API_KEY")),
            gemini_model=_optional(env.get("GEMINI_MODEL")) or DEFAULT_GEMINI_MODEL,
            http_timeout_ms=_int_setting(env, "ADVISOR_HTTP_TIMEOUT_MS", 20_000),
            max_attempts=_int_setting(env, "ADVISOR_MAX_ATTEMPTS", 3),
            max_tokens=_int_setting(env, "ADVISOR_MAX_TOKENS", 900),
            environment=(env.get("APP_ENV") or "development").strip().lower(),
        )

    @property
    def provider_configured(self) -> bool:
        if self.provider == "cloudflare":
            return bool(self.cloudflare_api_token and self.cloudflare_account_id)
        return bool(self.gemini_api_key)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def http_timeout_seconds(self) -> float:
        return self.http_timeout_ms / 1000


def _optional(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _int_setting(env: Mapping[str, str], name: str, default: int) -> int:
    raw = _optional(env.get(name))
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer.") from exc
