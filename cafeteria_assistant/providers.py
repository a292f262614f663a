"""
Generative-AI provider adapters.

Every adapter exposes the same `attempt(request, *, deadline, log)` call and
returns a ProviderAttemptResult; none of them raise. One network call per
attempt (Hugging Face walks its model candidates inside the one slot), no
retries. Payload shapes follow each provider's public HTTP contract.
"""

from __future__ import annotations

import json
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple, Type

import httpx
from openai import APIConnectionError, APIStatusError, OpenAI
from pydantic import BaseModel, Field

from .config import LOCAL_PROVIDER_NAME
from .models import ChatTurn
from .prompts import build_chat_messages, build_gemini_prompt, build_prompt_with_history
from .provider_schema import AttemptOutcome, ProviderAttemptResult, ProviderConfig
from .utils import DebugLog, Deadline, _truncate

CHAT_TEMPERATURE = 0.8
CHAT_MAX_TOKENS = 1000

HUGGINGFACE_MODELS = (
    "microsoft/DialoGPT-medium",
    "gpt2",
    "distilgpt2",
    "facebook/blenderbot-400M-distill",
)
HUGGINGFACE_PARAMETERS = {
    "max_length": 200,
    "temperature": 0.7,
    "do_sample": True,
    "top_p": 0.9,
    "repetition_penalty": 1.2,
}
HUGGINGFACE_MIN_ANSWER = 5
HUGGINGFACE_USER_AGENT = "Mozilla/5.0 (compatible; AI-Assistant/1.0)"

OLLAMA_OPTIONS = {"temperature": 0.8, "top_p": 0.9, "repeat_penalty": 1.1}

SIMPLE_TIMEOUT_MS = 60_000
SIMPLE_CONNECT_TIMEOUT_MS = 10_000


class ProviderRequest(BaseModel):
    message: str
    system_prompt: str = ""
    history: List[ChatTurn] = Field(default_factory=list)
    # Sampling overrides for chat-completion providers; None keeps the chat defaults.
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class ProviderError(Exception):
    """Internal failure signal raised inside an adapter; never leaves attempt()."""

    def __init__(
        self,
        outcome: AttemptOutcome,
        message: str,
        *,
        status_code: Optional[int] = None,
        payload: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.outcome = outcome
        self.status_code = status_code
        self.payload = payload


class DeadlineExceeded(ProviderError):
    def __init__(self, message: str = "chain deadline exceeded") -> None:
        super().__init__("transport-error", message)


def _classify_exception(exc: Exception) -> Tuple[AttemptOutcome, Optional[int], Optional[Any]]:
    """Map a failure from any transport or SDK onto (outcome, status_code, payload)."""
    if isinstance(exc, ProviderError):
        return exc.outcome, exc.status_code, exc.payload

    if isinstance(exc, APIStatusError):
        return "http-error", exc.status_code, exc.body

    # APITimeoutError is a subclass of APIConnectionError.
    if isinstance(exc, (APIConnectionError, httpx.TransportError)):
        return "transport-error", None, None

    # Anything else means the body could not be interpreted (missing keys,
    # wrong types, undecodable JSON).
    return "invalid-response", None, None


def _response_payload(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return _truncate(resp.text)


def _require_str(value: Any, where: str) -> str:
    if not isinstance(value, str):
        raise ProviderError("invalid-response", f"no text at {where}")
    return value


@contextmanager
def openai_client(
    config: ProviderConfig, timeout: httpx.Timeout, http_client: Optional[httpx.Client] = None
) -> Iterator[OpenAI]:
    """SDK client for one call. An injected http_client stays open for its owner."""
    client = OpenAI(
        api_key=config.credential,
        base_url=config.endpoint or None,
        max_retries=0,
        timeout=timeout,
        http_client=http_client,
    )
    try:
        yield client
    finally:
        if http_client is None:
            client.close()


class ProviderAdapter:
    """
    Base adapter: skip checks, timeout budget, latency measurement and error
    classification. Subclasses implement `_call(request, timeout) -> str`, or
    `_invoke(request, deadline)` when one attempt spans several calls.
    """

    def __init__(self, config: ProviderConfig, http_client: Optional[httpx.Client] = None) -> None:
        self.config = config
        self.http_client = http_client

    @property
    def name(self) -> str:
        return self.config.name

    def skip_reason(self) -> Optional[Tuple[AttemptOutcome, str]]:
        if not self.config.enabled:
            return "skipped-disabled", "provider disabled"
        if self.config.requires_credential and not self.config.has_credential:
            return "skipped-no-credential", "API key not set"
        return None

    def timeout(self, deadline: Optional[Deadline] = None) -> httpx.Timeout:
        total = self.config.timeout_ms / 1000.0
        remaining = deadline.remaining_s() if deadline is not None else None
        if remaining is not None:
            total = min(total, remaining)
        connect = min(self.config.connect_timeout_ms / 1000.0, total)
        return httpx.Timeout(total, connect=connect)

    def attempt(
        self,
        request: ProviderRequest,
        *,
        deadline: Optional[Deadline] = None,
        log: Optional[DebugLog] = None,
    ) -> ProviderAttemptResult:
        skip = self.skip_reason()
        if skip is not None:
            outcome, reason = skip
            if log is not None:
                log.add(f"{self.name}: skipped ({reason})")
            return ProviderAttemptResult(provider_name=self.name, outcome=outcome, error_message=reason)

        if deadline is not None and deadline.expired():
            if log is not None:
                log.add(f"{self.name}: chain deadline exceeded before call")
            return ProviderAttemptResult(
                provider_name=self.name,
                outcome="transport-error",
                error_type="DeadlineExceeded",
                error_message="chain deadline exceeded",
            )

        if log is not None:
            log.add(f"{self.name}: calling model {self.config.model}")

        started = time.perf_counter()
        try:
            text = self._invoke(request, deadline)
        except Exception as e:
            latency_ms = (time.perf_counter() - started) * 1000.0
            outcome, status_code, payload = _classify_exception(e)
            message = _truncate(str(e))
            if log is not None:
                detail = f"HTTP {status_code}" if status_code is not None else e.__class__.__name__
                log.add(f"{self.name}: {outcome} ({detail}) {message}")
            return ProviderAttemptResult(
                provider_name=self.name,
                outcome=outcome,
                latency_ms=latency_ms,
                status_code=status_code,
                error_type=e.__class__.__name__,
                error_message=message,
                error_payload=payload,
            )

        latency_ms = (time.perf_counter() - started) * 1000.0
        if log is not None:
            log.add(f"{self.name}: response received ({len(text)} chars, {latency_ms:.0f} ms)")
        return ProviderAttemptResult(
            provider_name=self.name,
            outcome="success",
            latency_ms=latency_ms,
            response_text=text,
        )

    def _invoke(self, request: ProviderRequest, deadline: Optional[Deadline]) -> str:
        return self._call(request, self.timeout(deadline))

    def _call(self, request: ProviderRequest, timeout: httpx.Timeout) -> str:
        raise NotImplementedError

    def _post(
        self,
        url: str,
        payload: Any,
        timeout: httpx.Timeout,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        all_headers = {"Content-Type": "application/json"}
        all_headers.update(headers or {})
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        if self.http_client is not None:
            return self.http_client.post(url, content=body, headers=all_headers, params=params, timeout=timeout)
        with httpx.Client() as client:
            return client.post(url, content=body, headers=all_headers, params=params, timeout=timeout)

    def _post_json(
        self,
        url: str,
        payload: Any,
        timeout: httpx.Timeout,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        resp = self._post(url, payload, timeout, headers=headers, params=params)
        if resp.status_code >= 400:
            raise ProviderError(
                "http-error",
                f"HTTP {resp.status_code}",
                status_code=resp.status_code,
                payload=_response_payload(resp),
            )
        return resp.json()


class OpenAIChatProvider(ProviderAdapter):
    """Chat-completion endpoint through the openai SDK."""

    # OpenAI completions may answer in choices[0].text instead of message.content.
    accepts_text_field = True

    def _call(self, request: ProviderRequest, timeout: httpx.Timeout) -> str:
        with openai_client(self.config, timeout, self.http_client) as client:
            raw = client.chat.completions.with_raw_response.create(
                model=self.config.model,
                messages=build_chat_messages(request.system_prompt, request.history, request.message),
                temperature=CHAT_TEMPERATURE if request.temperature is None else request.temperature,
                max_tokens=CHAT_MAX_TOKENS if request.max_tokens is None else request.max_tokens,
            )
            # Read the JSON ourselves so malformed bodies classify as invalid-response.
            data = raw.http_response.json()
        choice = data["choices"][0]
        message = choice.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if content is None and self.accepts_text_field:
            content = choice.get("text")
        return _require_str(content, "choices[0].message.content")


class GroqChatProvider(OpenAIChatProvider):
    accepts_text_field = False


class GeminiProvider(ProviderAdapter):
    def _call(self, request: ProviderRequest, timeout: httpx.Timeout) -> str:
        prompt = build_gemini_prompt(request.system_prompt, request.history, request.message)
        url = f"{self.config.endpoint.rstrip('/')}/models/{self.config.model}:generateContent"
        data = self._post_json(
            url,
            {"contents": [{"parts": [{"text": prompt}]}]},
            timeout,
            params={"key": self.config.credential or ""},
        )
        text = data["candidates"][0]["content"]["parts"][0]["text"]
        return _require_str(text, "candidates[0].content.parts[0].text")


class HuggingFaceProvider(ProviderAdapter):
    """
    Free inference API. Tries each model candidate in turn inside this one
    provider slot; a loading model (503), an error body or a too-short
    answer moves on to the next candidate.
    """

    def candidates(self) -> List[str]:
        out: List[str] = []
        for m in (self.config.model, *HUGGINGFACE_MODELS):
            if m and m not in out:
                out.append(m)
        return out

    def _headers(self) -> Dict[str, str]:
        headers = {"User-Agent": HUGGINGFACE_USER_AGENT}
        if self.config.has_credential:
            headers["Authorization"] = f"Bearer {self.config.credential}"
        return headers

    def _candidate_timeout(self, slot: Deadline, deadline: Optional[Deadline]) -> httpx.Timeout:
        clipped = self.timeout(deadline)
        total = min(clipped.read, slot.remaining_s())
        return httpx.Timeout(total, connect=min(clipped.connect, total))

    def _invoke(self, request: ProviderRequest, deadline: Optional[Deadline]) -> str:
        prompt = build_prompt_with_history(request.system_prompt, request.history, request.message)
        payload = {"inputs": prompt, "parameters": dict(HUGGINGFACE_PARAMETERS)}
        base = self.config.endpoint.rstrip("/")

        # The provider timeout bounds the whole candidate walk, not each call.
        slot = Deadline(self.config.timeout_ms)
        last_error: Optional[Exception] = None
        for model in self.candidates():
            if slot.expired() or (deadline is not None and deadline.expired()):
                raise DeadlineExceeded(f"time budget exhausted before trying {model}")
            try:
                resp = self._post(
                    f"{base}/{model}", payload, self._candidate_timeout(slot, deadline), headers=self._headers()
                )
            except httpx.TransportError as e:
                last_error = e
                continue

            if resp.status_code >= 400:
                last_error = ProviderError(
                    "http-error",
                    f"HTTP {resp.status_code} ({model})",
                    status_code=resp.status_code,
                    payload=_response_payload(resp),
                )
                continue

            try:
                data = resp.json()
            except ValueError as e:
                last_error = e
                continue

            if isinstance(data, dict) and "error" in data:
                last_error = ProviderError("invalid-response", f"{model}: {data['error']}", payload=data)
                continue

            try:
                generated = data[0]["generated_text"]
            except (KeyError, IndexError, TypeError) as e:
                last_error = e
                continue
            if not isinstance(generated, str):
                last_error = ProviderError("invalid-response", f"{model}: generated_text is not text")
                continue

            answer = generated.replace(prompt, "").strip()
            if len(answer) > HUGGINGFACE_MIN_ANSWER:
                return answer
            last_error = ProviderError("invalid-response", f"{model}: empty answer")

        if last_error is None:
            raise ProviderError("invalid-response", "no model candidates")
        raise last_error


class OllamaChatProvider(ProviderAdapter):
    """Ollama /api/chat, used for both the self-hosted instance and the local daemon."""

    def skip_reason(self) -> Optional[Tuple[AttemptOutcome, str]]:
        skip = super().skip_reason()
        if skip is not None:
            return skip
        if not self.config.endpoint.strip():
            return "skipped-no-credential", "Ollama URL not set"
        return None

    def _headers(self) -> Dict[str, str]:
        if self.config.has_credential:
            return {"Authorization": f"Bearer {self.config.credential}"}
        return {}

    def _payload(self, request: ProviderRequest) -> Dict[str, Any]:
        return {
            "model": self.config.model,
            "messages": build_chat_messages(request.system_prompt, request.history, request.message),
            "stream": False,
            "options": dict(OLLAMA_OPTIONS),
        }

    def _call(self, request: ProviderRequest, timeout: httpx.Timeout) -> str:
        url = f"{self.config.endpoint.rstrip('/')}/api/chat"
        data = self._post_json(url, self._payload(request), timeout, headers=self._headers())
        message = data.get("message")
        if isinstance(message, dict) and message.get("content") is not None:
            return _require_str(message["content"], "message.content")
        return _require_str(data.get("response"), "message.content")


class SimpleOllamaProvider(OllamaChatProvider):
    """
    Last-chance local call: user message only, no system prompt, no history,
    no sampling options, with a shorter timeout budget.
    """

    def __init__(self, config: ProviderConfig, http_client: Optional[httpx.Client] = None) -> None:
        super().__init__(
            config.model_copy(
                update={"timeout_ms": SIMPLE_TIMEOUT_MS, "connect_timeout_ms": SIMPLE_CONNECT_TIMEOUT_MS}
            ),
            http_client,
        )

    def _payload(self, request: ProviderRequest) -> Dict[str, Any]:
        return {
            "model": self.config.model,
            "messages": [{"role": "user", "content": request.message}],
            "stream": False,
        }


PROVIDER_TYPES: Dict[str, Type[ProviderAdapter]] = {
    "openai": OpenAIChatProvider,
    "gemini": GeminiProvider,
    "groq": GroqChatProvider,
    "huggingface": HuggingFaceProvider,
    "ollama": OllamaChatProvider,
    LOCAL_PROVIDER_NAME: OllamaChatProvider,
}


def build_providers(configs: List[ProviderConfig], http_client: Optional[httpx.Client] = None) -> List[ProviderAdapter]:
    """Adapters in the same order as `configs`. Unknown names are rejected."""
    adapters: List[ProviderAdapter] = []
    for cfg in configs:
        cls = PROVIDER_TYPES.get(cfg.name)
        if cls is None:
            raise ValueError(f"Unknown provider: {cfg.name}")
        adapters.append(cls(cfg, http_client=http_client))
    return adapters
