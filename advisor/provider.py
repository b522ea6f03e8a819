from __future__ import annotations

import asyncio
import json
import logging
import math
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional, Protocol
from urllib.parse import quote

import httpx

from advisor.config import AdvisorSettings
from advisor.diagnostics import DiagnosticEvent, DiagnosticSink, NullSink

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 20.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MAX_TOKENS = 900
DEFAULT_TEMPERATURE = 0.3

BACKOFF_BASE_SECONDS = 0.3
BACKOFF_JITTER_SECONDS = 0.12
MAX_DETAIL_LENGTH = 180


class ProviderError(RuntimeError):
    """Raised when the provider call cannot produce assistant text.

    ``reason`` is one of ``rate_limited``, ``request_invalid``, ``http_error``,
    ``timeout``, ``response_parse_error``, ``response_shape_error`` or
    ``request_error``. ``status`` is only set when the vendor answered.
    """

    def __init__(
        self,
        message: str,
        reason: str,
        *,
        status: Optional[int] = None,
        trace_id: Optional[str] = None,
        retry_after_sec: Optional[int] = None,
        provider_code: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.status = status
        self.trace_id = trace_id
        self.retry_after_sec = retry_after_sec
        self.provider_code = provider_code
        self.provider = provider


@dataclass(frozen=True)
class ProviderResult:
    provider: str
    model: str
    status: int
    trace_id: Optional[str]
    text: str


@dataclass(frozen=True)
class ProviderRequest:
    url: str
    headers: dict[str, str]
    body: dict[str, Any]


@dataclass(frozen=True)
class ProviderHealth:
    provider: str
    model: str
    model_exists: bool
    models_count: int
    latency_ms: int
    status: int


class ProviderAdapter(Protocol):
    name: str
    model: str
    trace_header: Optional[str]

    def build_request(self, system_prompt: str, user_prompt: str, max_tokens: int) -> ProviderRequest: ...

    def extract_text(self, payload: Any) -> str: ...

    def build_models_request(self) -> ProviderRequest: ...

    def model_names(self, payload: Any) -> list[str]: ...


@dataclass(frozen=True)
class CloudflareWorkersAI:
    api_token: str
    account_id: str
    model: str
    temperature: float = DEFAULT_TEMPERATURE
    base_url: str = "https://api.cloudflare.com/client/v4"

    name = "cloudflare"
    trace_header = "cf-ray"

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/accounts/{quote(self.account_id, safe='')}/ai/run/{quote(self.model, safe='/@')}"

    def build_request(self, system_prompt: str, user_prompt: str, max_tokens: int) -> ProviderRequest:
        return ProviderRequest(
            url=self.endpoint,
            headers={
                "Authorization": f"Bearer {self.api_token}",
                "Content-Type": "application/json",
            },
            body={
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                "max_tokens": max_tokens,
                "temperature": self.temperature,
                "response_format": {"type": "json_object"},
            },
        )

    def build_models_request(self) -> ProviderRequest:
        return ProviderRequest(
            url=f"{self.base_url}/accounts/{quote(self.account_id, safe='')}/ai/models/search",
            headers={
                "Authorization": f"Bearer {self.api_token}",
                "Content-Type": "application/json",
            },
            body={},
        )

    def model_names(self, payload: Any) -> list[str]:
        if not isinstance(payload, dict):
            return []
        source = payload.get("result")
        if not isinstance(source, list):
            source = payload.get("models")
        names: dict[str, None] = {}
        for item in source if isinstance(source, list) else []:
            if not isinstance(item, dict):
                continue
            name = _first_text(item.get("id"), item.get("name"), item.get("model"), item.get("slug"))
            if name:
                names[name] = None
        return list(names)

    def extract_text(self, payload: Any) -> str:
        """Find the assistant text in a Workers AI run response.

        The envelope differs between models: ``result`` may be a record, a list
        or a bare string, and chat-style models nest the text under
        ``messages``, ``choices`` or ``output``. Raises ``ValueError`` when no
        text can be found.
        """
        if isinstance(payload, str):
            trimmed = payload.strip()
            if not trimmed:
                raise ValueError("Cloudflare AI response payload is empty")
            try:
                return self.extract_text(json.loads(trimmed))
            except ValueError:
                return trimmed

        if isinstance(payload, list):
            text = _text_from_any_result(payload)
            if text:
                return text
            raise ValueError("Cloudflare AI response payload is empty")

        if not isinstance(payload, dict):
            raise ValueError("Cloudflare AI response payload is empty")

        result = payload.get("result")
        if result is not None:
            text = _text_from_any_result(result)
            if text:
                return text

        text = _text_from_any_result(payload)
        if text:
            return text

        if result is None:
            raise ValueError("Cloudflare AI response payload does not include result")
        raise ValueError("Cloudflare AI response did not contain assistant text")


@dataclass(frozen=True)
class GeminiAPI:
    api_key: str
    model: str
    temperature: float = DEFAULT_TEMPERATURE
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"

    name = "gemini"
    trace_header = None

    def build_request(self, system_prompt: str, user_prompt: str, max_tokens: int) -> ProviderRequest:
        return ProviderRequest(
            url=f"{self.base_url}/models/{quote(self.model, safe='')}:generateContent",
            headers={
                "x-goog-api-key": self.api_key,
                "Content-Type": "application/json",
            },
            body={
                "systemInstruction": {"parts": [{"text": system_prompt}]},
                "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
                "generationConfig": {
                    "temperature": self.temperature,
                    "maxOutputTokens": max_tokens,
                    "responseMimeType": "application/json",
                },
            },
        )

    def build_models_request(self) -> ProviderRequest:
        return ProviderRequest(
            url=f"{self.base_url}/models",
            headers={"x-goog-api-key": self.api_key},
            body={},
        )

    def model_names(self, payload: Any) -> list[str]:
        if not isinstance(payload, dict):
            return []
        names = []
        for item in payload.get("models") or []:
            name = item.get("name") if isinstance(item, dict) else None
            if isinstance(name, str) and name.strip():
                names.append(name.strip().removeprefix("models/"))
        return names

    def extract_text(self, payload: Any) -> str:
        if not isinstance(payload, dict):
            raise ValueError("Gemini response payload is empty")
        for candidate in payload.get("candidates") or []:
            if not isinstance(candidate, dict):
                continue
            content = candidate.get("content")
            parts = content.get("parts") if isinstance(content, dict) else None
            text = _normalize_text(parts)
            if text:
                return text
        raise ValueError("Gemini response did not contain candidate text")


class ProviderClient:
    """Bounded-retry HTTP client around one vendor adapter.

    Each attempt is capped by ``timeout_seconds``. 429 and 5xx answers, timeouts
    and transport errors are retried with exponential backoff and jitter until
    ``max_attempts`` is reached; any other 4xx fails immediately.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.adapter = adapter
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.transport = transport
        self.sleep = sleep
        self.rng = rng
        self.clock = clock

    @property
    def provider_name(self) -> str:
        return self.adapter.name

    def backoff_seconds(self, attempt: int) -> float:
        return BACKOFF_BASE_SECONDS * 2 ** (attempt - 1) + self.rng() * BACKOFF_JITTER_SECONDS

    async def generate_text(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        sink: DiagnosticSink | None = None,
    ) -> ProviderResult:
        sink = sink or NullSink()
        request = self.adapter.build_request(system_prompt, user_prompt, max_tokens)

        async with httpx.AsyncClient(
            transport=self.transport, timeout=httpx.Timeout(self.timeout_seconds)
        ) as client:
            for attempt in range(1, self.max_attempts + 1):
                sink.emit(self._event("provider_attempt", attempt=attempt))
                started = self.clock()
                try:
                    response = await asyncio.wait_for(
                        client.post(request.url, headers=request.headers, json=request.body),
                        timeout=self.timeout_seconds,
                    )
                except (asyncio.TimeoutError, httpx.TimeoutException):
                    error = ProviderError(
                        f"{self.adapter.name} provider request timed out",
                        "timeout",
                        provider=self.adapter.name,
                    )
                    self._emit_error(sink, error, attempt, started)
                except httpx.HTTPError as exc:
                    error = ProviderError(
                        str(exc) or f"{self.adapter.name} provider request failed",
                        "request_error",
                        provider=self.adapter.name,
                    )
                    self._emit_error(sink, error, attempt, started)
                else:
                    error = self._classify_failure(response, sink, attempt, started)
                    if error is None:
                        return self._read_success(response, sink, attempt, started)
                    if error.reason == "request_invalid":
                        logger.warning(
                            "%s provider rejected request with status %s", self.adapter.name, error.status
                        )
                        raise error

                if attempt >= self.max_attempts:
                    logger.warning(
                        "%s provider failed after %s attempts: %s",
                        self.adapter.name,
                        attempt,
                        error.reason,
                    )
                    raise error

                delay = self.backoff_seconds(attempt)
                logger.info(
                    "Retrying %s provider after %s (attempt %s/%s, backoff %.2fs)",
                    self.adapter.name,
                    error.reason,
                    attempt,
                    self.max_attempts,
                    delay,
                )
                await self.sleep(delay)

        raise ProviderError(f"{self.adapter.name} provider request failed", "request_error")

    async def check_health(self, sink: DiagnosticSink | None = None) -> ProviderHealth:
        """List the vendor's models once and report whether the configured model is among them."""
        sink = sink or NullSink()
        request = self.adapter.build_models_request()

        async with httpx.AsyncClient(
            transport=self.transport, timeout=httpx.Timeout(self.timeout_seconds)
        ) as client:
            started = self.clock()
            try:
                response = await asyncio.wait_for(
                    client.get(request.url, headers=request.headers),
                    timeout=self.timeout_seconds,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
                error = ProviderError(
                    f"{self.adapter.name} model listing timed out", "timeout", provider=self.adapter.name
                )
                self._emit_error(sink, error, 1, started)
                raise error from exc
            except httpx.HTTPError as exc:
                error = ProviderError(
                    str(exc) or f"{self.adapter.name} model listing failed",
                    "request_error",
                    provider=self.adapter.name,
                )
                self._emit_error(sink, error, 1, started)
                raise error from exc

        latency_ms = self._elapsed_ms(started)
        status = response.status_code
        trace_id = self._trace_id(response)
        payload = _safe_json(response)
        sink.emit(
            self._event(
                "provider_health",
                duration_ms=latency_ms,
                status=status,
                ok=response.is_success,
                trace_id=trace_id,
                detail=None if response.is_success else summarize_detail(response.text),
            )
        )
        if not response.is_success:
            code, message = parse_vendor_error(payload)
            raise ProviderError(
                message or f"{self.adapter.name} model listing failed with status {status}",
                reason_for_status(status),
                status=status,
                trace_id=trace_id,
                retry_after_sec=parse_retry_after(response.headers.get("retry-after")),
                provider_code=code,
                provider=self.adapter.name,
            )

        models = self.adapter.model_names(payload)
        return ProviderHealth(
            provider=self.adapter.name,
            model=self.adapter.model,
            model_exists=self.adapter.model in models,
            models_count=len(models),
            latency_ms=latency_ms,
            status=status,
        )

    def _classify_failure(
        self, response: httpx.Response, sink: DiagnosticSink, attempt: int, started: float
    ) -> ProviderError | None:
        status = response.status_code
        trace_id = self._trace_id(response)
        sink.emit(
            self._event(
                "provider_response",
                attempt=attempt,
                duration_ms=self._elapsed_ms(started),
                status=status,
                ok=response.is_success,
                trace_id=trace_id,
            )
        )
        if response.is_success:
            return None

        code, message = parse_vendor_error(_safe_json(response))
        error = ProviderError(
            message or f"{self.adapter.name} provider returned status {status}",
            reason_for_status(status),
            status=status,
            trace_id=trace_id,
            retry_after_sec=parse_retry_after(response.headers.get("retry-after")),
            provider_code=code,
            provider=self.adapter.name,
        )
        self._emit_error(sink, error, attempt, started)
        return error

    def _read_success(
        self, response: httpx.Response, sink: DiagnosticSink, attempt: int, started: float
    ) -> ProviderResult:
        status = response.status_code
        trace_id = self._trace_id(response)
        try:
            payload = response.json() if response.content else {}
        except ValueError as exc:
            error = ProviderError(
                f"{self.adapter.name} provider returned invalid JSON",
                "response_parse_error",
                status=status,
                trace_id=trace_id,
                provider=self.adapter.name,
            )
            self._emit_error(sink, error, attempt, started, detail=str(exc))
            raise error from exc

        try:
            text = self.adapter.extract_text(payload)
        except ValueError as exc:
            error = ProviderError(
                f"{self.adapter.name} provider did not return assistant text",
                "response_shape_error",
                status=status,
                trace_id=trace_id,
                provider=self.adapter.name,
            )
            self._emit_error(sink, error, attempt, started, detail=str(exc))
            raise error from exc

        return ProviderResult(
            provider=self.adapter.name,
            model=self.adapter.model,
            status=status,
            trace_id=trace_id,
            text=text,
        )

    def _emit_error(
        self,
        sink: DiagnosticSink,
        error: ProviderError,
        attempt: int,
        started: float,
        detail: str | None = None,
    ) -> None:
        sink.emit(
            self._event(
                "provider_error",
                attempt=attempt,
                duration_ms=self._elapsed_ms(started),
                status=error.status,
                ok=False,
                reason=error.reason,
                detail=summarize_detail(detail or str(error)),
                trace_id=error.trace_id,
                retry_after_sec=error.retry_after_sec,
            )
        )

    def _event(self, stage: str, **fields: Any) -> DiagnosticEvent:
        return DiagnosticEvent(stage=stage, provider=self.adapter.name, **fields)

    def _trace_id(self, response: httpx.Response) -> str | None:
        if not self.adapter.trace_header:
            return None
        return response.headers.get(self.adapter.trace_header)

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int(round((self.clock() - started) * 1000)))


def build_provider_client(settings: AdvisorSettings, **client_options: Any) -> ProviderClient | None:
    """Return a client for the configured vendor, or None when credentials are missing."""
    if not settings.provider_configured:
        return None
    if settings.provider == "gemini":
        adapter: ProviderAdapter = GeminiAPI(api_key=settings.gemini_api_key, model=settings.gemini_model)
    else:
        adapter = CloudflareWorkersAI(
            api_token=settings.cloudflare_api_token,
            account_id=settings.cloudflare_account_id,
            model=settings.cloudflare_model,
        )
    return ProviderClient(
        adapter,
        timeout_seconds=settings.http_timeout_seconds,
        max_attempts=settings.max_attempts,
        **client_options,
    )


def reason_for_status(status: int) -> str:
    if status == 429:
        return "rate_limited"
    if 400 <= status < 500:
        return "request_invalid"
    return "http_error"


def parse_retry_after(value: str | None, now: datetime | None = None) -> int | None:
    """Parse a Retry-After header given either as seconds or as an HTTP date."""
    if not value:
        return None
    stripped = value.strip()
    if stripped.isdigit():
        return int(stripped)
    try:
        retry_at = parsedate_to_datetime(stripped)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    remaining = (retry_at - current).total_seconds()
    if remaining <= 0:
        return 0
    return math.ceil(remaining)


def parse_vendor_error(payload: Any) -> tuple[str | None, str | None]:
    if not isinstance(payload, dict):
        return None, None
    errors = payload.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        first = errors[0]
    elif isinstance(payload.get("error"), dict):
        first = payload["error"]
    else:
        return None, None
    code = first.get("code")
    message = first.get("message")
    return (
        None if code is None else str(code),
        message if isinstance(message, str) else None,
    )


def summarize_detail(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    trimmed = value.strip()
    if len(trimmed) <= MAX_DETAIL_LENGTH:
        return trimmed
    return f"{trimmed[:MAX_DETAIL_LENGTH]}..."


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


# Workers AI text extraction


def _normalize_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None

    if isinstance(value, dict):
        for key in ("text", "content", "value", "output_text", "generated_text", "completion"):
            field_value = value.get(key)
            if isinstance(field_value, str) and field_value.strip():
                return field_value.strip()
        for key in ("parts", "content", "output", "messages", "choices", "response", "message", "delta", "data"):
            nested = _normalize_text(value.get(key))
            if nested:
                return nested
        return None

    if isinstance(value, list):
        segments = [_normalize_text(item) for item in value]
        joined = [segment for segment in segments if segment]
        if joined:
            return "\n".join(joined)

    return None


def _text_from_any_result(result: Any) -> str | None:
    if isinstance(result, dict):
        return _text_from_result_record(result, depth=0)
    if isinstance(result, list):
        segments = []
        for item in result:
            text = _text_from_result_record(item, depth=0) if isinstance(item, dict) else _normalize_text(item)
            if text:
                segments.append(text)
        if segments:
            return "\n".join(segments)
    return _normalize_text(result)


def _text_from_result_record(record: dict, depth: int) -> str | None:
    response_value = record.get("response")
    if not isinstance(response_value, dict):
        text = _normalize_text(response_value)
        if text:
            return text

    text = _normalize_text(record.get("output_text"))
    if text:
        return text

    nested = record.get("result")
    if depth == 0 and isinstance(nested, dict):
        text = _text_from_result_record(nested, depth=1)
        if text:
            return text

    for key in ("generated_text", "text", "completion"):
        text = _normalize_text(record.get(key))
        if text:
            return text

    for extractor in (_text_from_output, _text_from_messages, _text_from_choices):
        text = extractor(record)
        if text:
            return text

    if isinstance(response_value, dict):
        return _normalize_text(response_value)
    return None


def _text_from_output(record: dict) -> str | None:
    output = record.get("output")
    if not isinstance(output, list):
        return None
    for entry in reversed(output):
        text = _normalize_text(entry)
        if text:
            return text
        if isinstance(entry, dict) and _role(entry) in ("assistant", "model", ""):
            text = _first_text(entry.get("content"), entry.get("text"), entry.get("message"))
            if text:
                return text
    return None


def _text_from_messages(record: dict) -> str | None:
    messages = record.get("messages")
    if not isinstance(messages, list):
        return None
    for message in reversed(messages):
        if not isinstance(message, dict) or _role(message) not in ("assistant", "model"):
            continue
        text = _normalize_text(message.get("content") or message.get("text") or message.get("message"))
        if text:
            return text
    return None


def _text_from_choices(record: dict) -> str | None:
    choices = record.get("choices")
    if not isinstance(choices, list):
        return None
    for choice in reversed(choices):
        if not isinstance(choice, dict):
            continue
        for key in ("message", "delta"):
            inner = choice.get(key)
            if isinstance(inner, dict):
                text = _first_text(inner.get("content"), inner.get("text"))
                if text:
                    return text
        text = _first_text(choice.get("content"), choice.get("text"))
        if text:
            return text
    return None


def _first_text(*values: Any) -> str | None:
    for value in values:
        text = _normalize_text(value)
        if text:
            return text
    return None


def _role(entry: dict) -> str:
    role = entry.get("role")
    return role.lower() if isinstance(role, str) else ""
