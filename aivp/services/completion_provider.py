"""
Completion provider interfaces and implementations.
Produces the next simulated patient utterance from an OpenAI-compatible chat API.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from aivp.exceptions import CompletionProviderError
from aivp.utils.logging import get_logger
from config.config import config

logger = get_logger(__name__)


@dataclass
class CompletionRequest:
    """Request for the next simulated patient message."""

    messages: list[dict[str, str]]
    model: str
    temperature: float = 0.7
    max_tokens: int = 300
    stop: list[str] = field(default_factory=list)
    request_id: str | None = None

    def __post_init__(self):
        if self.request_id is None:
            self.request_id = str(uuid4())


@dataclass
class CompletionResponse:
    """Response from a completion provider."""

    text: str
    model: str
    tokens_used: int | None = None
    latency_ms: int | None = None
    request_id: str | None = None
    metadata: dict[str, Any] | None = None


class CompletionProvider(ABC):
    """Abstract base class for completion providers."""

    @abstractmethod
    def generate(self, request: CompletionRequest) -> CompletionResponse:
        """
        Generate the next message of the conversation.

        Args:
            request: Chat messages and sampling parameters

        Returns:
            CompletionResponse: Generated text

        Raises:
            CompletionProviderError: If generation fails
        """
        pass

    @abstractmethod
    def health_check(self) -> bool:
        """
        Check if the completion service is reachable.

        Returns:
            bool: True if service is healthy
        """
        pass


class OpenAICompatibleProvider(CompletionProvider):
    """Chat-completions provider over plain HTTP."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: int | None = None,
        max_retries: int | None = None,
    ):
        """
        Initialize the provider.

        Args:
            base_url: API root, e.g. https://api.openai.com/v1 (defaults to config)
            api_key: Bearer token (defaults to config)
            timeout: Request timeout in seconds (defaults to config)
            max_retries: Transport-level retries for 429/5xx (defaults to config)
        """
        self.base_url = (base_url or config.completion.base_url).rstrip("/")
        self.api_key = api_key or config.completion.api_key
        self.timeout = timeout or config.completion.timeout_seconds
        self.max_retries = max_retries if max_retries is not None else config.completion.max_retries

        self.session = requests.Session()
        retry_strategy = Retry(
            total=self.max_retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "POST"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)
        if self.api_key:
            self.session.headers["Authorization"] = f"Bearer {self.api_key}"

        logger.info(
            f"Initialized OpenAICompatibleProvider with base_url={self.base_url}, "
            f"timeout={self.timeout}s, max_retries={self.max_retries}"
        )

    def generate(self, request: CompletionRequest) -> CompletionResponse:
        start_time = time.time()
        payload = {
            "model": request.model,
            "messages": request.messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if request.stop:
            payload["stop"] = request.stop

        try:
            data = self._make_request("/chat/completions", payload)
        except requests.exceptions.Timeout as e:
            raise CompletionProviderError(f"Request timed out after {self.timeout}s", cause=e) from e
        except requests.exceptions.ConnectionError as e:
            raise CompletionProviderError(f"Failed to connect to {self.base_url}: {e}", cause=e) from e
        except requests.exceptions.RequestException as e:
            raise CompletionProviderError(f"Request failed: {e}", cause=e) from e

        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise CompletionProviderError("Malformed completion response", cause=e) from e

        latency_ms = int((time.time() - start_time) * 1000)
        usage = data.get("usage") or {}
        logger.info(f"Generated completion: model={request.model}, latency={latency_ms}ms")
        return CompletionResponse(
            text=text,
            model=data.get("model", request.model),
            tokens_used=usage.get("total_tokens"),
            latency_ms=latency_ms,
            request_id=request.request_id,
            metadata={"finish_reason": data["choices"][0].get("finish_reason")},
        )

    def health_check(self) -> bool:
        try:
            self._make_request("/models", method="GET")
            return True
        except Exception as e:
            logger.warning(f"Completion provider health check failed: {e}")
            return False

    def _make_request(
        self, endpoint: str, payload: dict[str, Any] | None = None, method: str = "POST"
    ) -> dict[str, Any]:
        """Make HTTP request to the completion API."""
        url = f"{self.base_url}{endpoint}"

        if method.upper() == "GET":
            response = self.session.get(url, timeout=self.timeout)
        else:
            response = self.session.post(url, json=payload, timeout=self.timeout)

        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise CompletionProviderError(f"HTTP error {response.status_code}: {e}", cause=e) from e
        try:
            return response.json()
        except requests.exceptions.JSONDecodeError as e:
            raise CompletionProviderError("Invalid JSON response", cause=e) from e


class MockCompletionProvider(CompletionProvider):
    """Mock completion provider for testing."""

    def __init__(self, responses: list[str] | None = None, error: Exception | None = None):
        """
        Args:
            responses: Replies returned in order; the last one repeats
            error: If set, every call raises it
        """
        self.responses = responses or ["Virtual Patient: I have had a fever for three days."]
        self.error = error
        self.call_count = 0
        self.last_request: CompletionRequest | None = None

    def generate(self, request: CompletionRequest) -> CompletionResponse:
        self.call_count += 1
        self.last_request = request
        if self.error is not None:
            raise self.error
        text = self.responses[min(self.call_count - 1, len(self.responses) - 1)]
        return CompletionResponse(
            text=text,
            model=request.model,
            tokens_used=len(text.split()),
            latency_ms=0,
            request_id=request.request_id,
            metadata={"mock": True, "call_count": self.call_count},
        )

    def health_check(self) -> bool:
        return self.error is None
