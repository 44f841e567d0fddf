"""Async HTTP client for the M31 model-serving API."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence, cast

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

try:  # pragma: no cover - optional dependency used when installed
    import tiktoken  # type: ignore
except Exception:  # pragma: no cover - optional fallback when package missing
    tiktoken = None

from .ai_types import (
    ChatMessage,
    CompletionRequest,
    CompletionResponse,
    ModelInfo,
    Result,
    TokenCounterProtocol,
)

LOGGER = logging.getLogger(__name__)
DEFAULT_BASE_URL = "https://api.m31-agents.io/v1"
_DEFAULT_BYTES_PER_TOKEN = 4
_TIKTOKEN_WARNING_EMITTED = False
_RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

API_ERROR = "API_ERROR"
NETWORK_ERROR = "NETWORK_ERROR"
REQUEST_SETUP_ERROR = "REQUEST_SETUP_ERROR"
INVALID_RESPONSE = "INVALID_RESPONSE"


class ApproxByteCounter(TokenCounterProtocol):
    """Deterministic fallback counter that estimates tokens via byte length."""

    def __init__(self, *, model_name: str | None = None, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by the cl100k_base tiktoken encoding."""

    def __init__(self, model_name: str, *, encoding_name: str = "cl100k_base") -> None:
        if tiktoken is None:  # pragma: no cover - depends on optional dependency
            raise RuntimeError("tiktoken is not installed")
        self.model_name = model_name
        self._encoding = cast(Any, tiktoken).get_encoding(encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding.encode(text))
        except Exception:  # pragma: no cover - defensive guard
            LOGGER.debug("tiktoken encode failed; falling back to approximation", exc_info=True)
            return self._fallback.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    def count(self, model_name: str | None, text: str) -> int:
        if not text:
            return 0
        key = self._normalize_key(model_name)
        if key and key not in self._counters:
            counter = self._register_default(key)
        else:
            counter = self.get(model_name)
        try:
            return counter.count(text)
        except Exception:  # pragma: no cover - defensive guard
            LOGGER.debug("Token counter failed; falling back to estimate", exc_info=True)
            return counter.estimate(text)

    def _register_default(self, key: str) -> TokenCounterProtocol:
        if tiktoken is None:
            _log_tiktoken_warning_once()
            counter: TokenCounterProtocol = ApproxByteCounter(model_name=key)
        else:
            try:
                counter = TiktokenCounter(key)
            except Exception as exc:  # pragma: no cover - defensive logging
                LOGGER.debug("Failed to initialize tiktoken counter for %s: %s", key, exc)
                counter = ApproxByteCounter(model_name=key)
        self._counters[key] = counter
        return counter

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


def _log_tiktoken_warning_once() -> None:
    global _TIKTOKEN_WARNING_EMITTED
    if _TIKTOKEN_WARNING_EMITTED:
        return
    _TIKTOKEN_WARNING_EMITTED = True
    LOGGER.warning(
        "tiktoken is not installed; using approximate byte counter for token estimates. Install the optional "
        "[tokenizers] dependency group for exact counts."
    )


@dataclass(slots=True, frozen=True)
class ApiError:
    """Normalized failure returned by :class:`ApiClient`."""

    status: int
    code: str
    message: str
    details: Any = None

    @property
    def is_network_error(self) -> bool:
        return self.code == NETWORK_ERROR


ApiResult = Result[Any, ApiError]


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the API client."""

    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""
    session_id: str = ""
    client_version: str = "0.0.0"
    request_timeout: float = 30.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] = field(default_factory=dict)
    debug_logging: bool = False


class _RetryableStatus(Exception):
    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


class ApiClient:
    """Async client wrapping the REST endpoints with retry semantics."""

    def __init__(
        self,
        settings: ClientSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._client = self._build_client(settings, transport)
        self._token_registry = token_registry or TokenCounterRegistry()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def session_id(self) -> str:
        return self._settings.session_id

    def update_credentials(self, *, api_key: str | None = None, base_url: str | None = None) -> None:
        """Apply changed connection settings to subsequent requests."""

        if api_key is not None:
            self._settings.api_key = api_key
        if base_url:
            self._settings.base_url = base_url
            self._client.base_url = httpx.URL(_normalize_base_url(base_url))

    def reconfigure(self, *, request_timeout: float | None = None, max_retries: int | None = None) -> None:
        """Apply changed timeout or retry budget to subsequent requests."""

        if request_timeout is not None:
            self._settings.request_timeout = float(request_timeout)
            self._client.timeout = httpx.Timeout(self._settings.request_timeout)
        if max_retries is not None:
            self._settings.max_retries = max(1, int(max_retries))

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Generic verbs
    # ------------------------------------------------------------------
    async def post(
        self,
        endpoint: str,
        payload: Mapping[str, Any] | None = None,
        *,
        attempts: int | None = None,
    ) -> ApiResult:
        """POST ``payload``; ``attempts`` overrides the configured retry budget."""

        return await self._request("POST", endpoint, json_body=payload, attempts=attempts)

    async def get(self, endpoint: str, params: Mapping[str, Any] | None = None) -> ApiResult:
        return await self._request("GET", endpoint, params=params)

    # ------------------------------------------------------------------
    # Typed endpoints
    # ------------------------------------------------------------------
    async def get_completion(self, request: CompletionRequest) -> Result[CompletionResponse, ApiError]:
        # Single attempt: each completion request is reported by exactly one CODE_COMPLETED event.
        result = await self.post("/completions", request.to_payload(), attempts=1)
        if not result.success:
            return Result.fail(cast(ApiError, result.error))
        try:
            response = CompletionResponse.from_payload(_require_mapping(result.value))
        except ValueError as exc:
            return Result.fail(ApiError(status=0, code=INVALID_RESPONSE, message=str(exc), details=result.value))
        if not response.tokens:
            tokens = self._token_registry.count(request.model_id, response.text)
            response = CompletionResponse(
                text=response.text,
                tokens=tokens,
                model=response.model,
                finish_reason=response.finish_reason,
            )
        return Result.ok(response)

    async def get_chat_completion(self, messages: Sequence[ChatMessage], *, model: str) -> Result[str, ApiError]:
        payload = {"messages": [message.to_payload() for message in messages], "model": model}
        result = await self.post("/chat/completions", payload)
        return self._extract_text(result, "message", "content")

    async def generate_code(self, payload: Mapping[str, Any]) -> Result[str, ApiError]:
        return self._extract_text(await self.post("/code/generate", payload), "code")

    async def explain_code(self, payload: Mapping[str, Any]) -> Result[str, ApiError]:
        return self._extract_text(await self.post("/code/explain", payload), "explanation")

    async def generate_commit_message(self, payload: Mapping[str, Any]) -> Result[str, ApiError]:
        return self._extract_text(await self.post("/code/commit-message", payload), "message")

    async def add_logging(self, payload: Mapping[str, Any]) -> Result[str, ApiError]:
        return self._extract_text(await self.post("/code/add-logging", payload), "code")

    async def list_models(self, *, capability: str | None = None) -> Result[List[ModelInfo], ApiError]:
        params = {"capability": capability} if capability else None
        result = await self.get("/models", params)
        if not result.success:
            return Result.fail(cast(ApiError, result.error))
        try:
            entries = _require_mapping(result.value).get("models") or []
            return Result.ok([ModelInfo.from_payload(entry) for entry in entries])
        except (ValueError, AttributeError, TypeError) as exc:
            return Result.fail(ApiError(status=0, code=INVALID_RESPONSE, message=str(exc), details=result.value))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _build_client(self, settings: ClientSettings, transport: httpx.AsyncBaseTransport | None) -> httpx.AsyncClient:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-M31-Session-ID": settings.session_id,
            "X-M31-Client-Version": settings.client_version,
        }
        headers.update(settings.default_headers or {})
        return httpx.AsyncClient(
            base_url=_normalize_base_url(settings.base_url),
            timeout=settings.request_timeout,
            headers=headers,
            transport=transport,
        )

    def _retrying(self, attempts: int | None = None) -> AsyncRetrying:
        budget = self._settings.max_retries if attempts is None else attempts
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, budget)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(_is_retryable),
        )

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        json_body: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        attempts: int | None = None,
    ) -> ApiResult:
        headers = {}
        if self._settings.api_key:
            headers["Authorization"] = f"Bearer {self._settings.api_key}"
        if self._settings.debug_logging:
            LOGGER.debug("API %s %s payload=%s", method, endpoint, _preview(json_body or params))
        try:
            request = self._client.build_request(method, endpoint, json=json_body, params=params, headers=headers)
        except (httpx.InvalidURL, TypeError, ValueError) as exc:
            LOGGER.error("API request setup failed for %s %s: %s", method, endpoint, exc)
            return Result.fail(ApiError(status=0, code=REQUEST_SETUP_ERROR, message=str(exc) or "Error setting up the request"))

        try:
            response = await self._send(request, attempts)
        except _RetryableStatus as exc:
            return Result.fail(self._status_error(exc.response))
        except httpx.TransportError as exc:
            LOGGER.error("API request %s %s received no response: %s", method, endpoint, exc)
            return Result.fail(
                ApiError(
                    status=0,
                    code=NETWORK_ERROR,
                    message="No response received from the server",
                    details={"reason": str(exc) or exc.__class__.__name__},
                )
            )

        if response.is_error:
            return Result.fail(self._status_error(response))
        LOGGER.debug("API response %s %s status=%s", method, endpoint, response.status_code)
        return self._unwrap(response)

    async def _send(self, request: httpx.Request, attempts: int | None = None) -> httpx.Response:
        async for attempt in self._retrying(attempts):
            with attempt:
                response = await self._client.send(request)
                if response.status_code in _RETRYABLE_STATUSES:
                    raise _RetryableStatus(response)
                return response
        raise AssertionError("unreachable")  # pragma: no cover

    def _status_error(self, response: httpx.Response) -> ApiError:
        LOGGER.error("API response error url=%s status=%s", response.request.url, response.status_code)
        return ApiError(
            status=response.status_code,
            code=API_ERROR,
            message="An error occurred while communicating with the API",
            details=_decode_body(response),
        )

    def _unwrap(self, response: httpx.Response) -> ApiResult:
        body = _decode_body(response)
        if isinstance(body, Mapping) and "success" in body:
            if body.get("success"):
                return Result.ok(body.get("value"))
            error = body.get("error") or {}
            if not isinstance(error, Mapping):
                error = {"message": str(error)}
            return Result.fail(
                ApiError(
                    status=int(error.get("status") or response.status_code),
                    code=str(error.get("code") or API_ERROR),
                    message=str(error.get("message") or "Request failed"),
                    details=error.get("details"),
                )
            )
        return Result.ok(body)

    @staticmethod
    def _extract_text(result: ApiResult, *path: str) -> Result[str, ApiError]:
        if not result.success:
            return Result.fail(cast(ApiError, result.error))
        value: Any = result.value
        for key in path:
            value = value.get(key) if isinstance(value, Mapping) else None
        if not isinstance(value, str):
            return Result.fail(
                ApiError(
                    status=0,
                    code=INVALID_RESPONSE,
                    message=f"Response is missing '{'.'.join(path)}'",
                    details=result.value,
                )
            )
        return Result.ok(value)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, (_RetryableStatus, httpx.TransportError))


def _normalize_base_url(base_url: str) -> str:
    return base_url.rstrip("/") + "/"


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return response.text


def _require_mapping(value: Any) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValueError("Expected a JSON object in the response")
    return value


def _preview(payload: Any, limit: int = 400) -> str:
    try:
        text = json.dumps(payload, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        text = repr(payload)
    return text if len(text) <= limit else text[:limit] + "…"


__all__ = [
    "API_ERROR",
    "ApiClient",
    "ApiError",
    "ApiResult",
    "ApproxByteCounter",
    "ClientSettings",
    "DEFAULT_BASE_URL",
    "INVALID_RESPONSE",
    "NETWORK_ERROR",
    "REQUEST_SETUP_ERROR",
    "TiktokenCounter",
    "TokenCounterRegistry",
]
