import json

import httpx
import pytest

from cafeteria_assistant.models import ChatTurn
from cafeteria_assistant.provider_schema import ProviderConfig
from cafeteria_assistant.providers import (
    GeminiProvider,
    GroqChatProvider,
    HuggingFaceProvider,
    OllamaChatProvider,
    OpenAIChatProvider,
    ProviderRequest,
    SimpleOllamaProvider,
    build_providers,
)
from cafeteria_assistant.utils import DebugLog, Deadline

ANSWER = "こんにちは！今日はどんなことをお手伝いしましょうか？"


_DEFAULTS = {
    "openai": dict(endpoint="https://api.openai.com/v1", model="gpt-3.5-turbo", credential="sk-test"),
    "groq": dict(endpoint="https://api.groq.com/openai/v1", model="llama-3.1-8b-instant", credential="gsk-test"),
    "gemini": dict(endpoint="https://generativelanguage.googleapis.com/v1beta", model="gemini-1.5-flash", credential="g-key"),
    "huggingface": dict(
        endpoint="https://api-inference.huggingface.co/models",
        model="microsoft/DialoGPT-medium",
        requires_credential=False,
    ),
    "ollama": dict(endpoint="http://ollama.example:11434", model="llama3", requires_credential=False),
}


def _cfg(name, **kw):
    values = dict(_DEFAULTS[name], enabled=True)
    values.update(kw)
    return ProviderConfig(name=name, **values)


@pytest.fixture
def request_with_history():
    return ProviderRequest(
        message="数学の勉強方法は？",
        system_prompt="SYSTEM",
        history=[
            ChatTurn(role="user", content="こんにちは"),
            ChatTurn(role="assistant", content="こんにちは、何でも聞いてください"),
        ],
    )


class Recorder:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        r = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(r, Exception):
            raise r
        return r

    def client(self):
        return httpx.Client(transport=httpx.MockTransport(self))


def _body(request):
    return json.loads(request.content.decode("utf-8"))


def test_openai_wire_shape(request_with_history):
    rec = Recorder(httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": ANSWER}}]}))
    adapter = OpenAIChatProvider(_cfg("openai"), http_client=rec.client())

    result = adapter.attempt(request_with_history)

    assert result.outcome == "success"
    assert result.response_text == ANSWER
    req = rec.requests[0]
    assert req.method == "POST"
    assert req.url.path == "/v1/chat/completions"
    assert req.headers["authorization"] == "Bearer sk-test"
    body = _body(req)
    assert body["model"] == "gpt-3.5-turbo"
    assert body["temperature"] == 0.8
    assert body["max_tokens"] == 1000
    assert body["messages"] == [
        {"role": "system", "content": "SYSTEM"},
        {"role": "user", "content": "こんにちは"},
        {"role": "assistant", "content": "こんにちは、何でも聞いてください"},
        {"role": "user", "content": "数学の勉強方法は？"},
    ]


def test_openai_accepts_text_field_but_groq_does_not(request_with_history):
    payload = {"choices": [{"text": ANSWER}]}

    openai_rec = Recorder(httpx.Response(200, json=payload))
    ok = OpenAIChatProvider(_cfg("openai"), http_client=openai_rec.client()).attempt(request_with_history)
    assert ok.outcome == "success"
    assert ok.response_text == ANSWER

    groq_rec = Recorder(httpx.Response(200, json=payload))
    bad = GroqChatProvider(_cfg("groq"), http_client=groq_rec.client()).attempt(request_with_history)
    assert bad.outcome == "invalid-response"
    assert groq_rec.requests[0].url.host == "api.groq.com"
    assert groq_rec.requests[0].url.path == "/openai/v1/chat/completions"


def test_openai_http_error_keeps_status_and_payload(request_with_history):
    err = {"error": {"message": "You exceeded your current quota", "type": "insufficient_quota", "code": "insufficient_quota"}}
    rec = Recorder(httpx.Response(429, json=err))
    result = OpenAIChatProvider(_cfg("openai"), http_client=rec.client()).attempt(request_with_history)

    assert result.outcome == "http-error"
    assert result.status_code == 429
    assert "insufficient_quota" in json.dumps(result.error_payload)
    assert len(rec.requests) == 1


def test_openai_transport_error(request_with_history):
    rec = Recorder(httpx.ConnectError("connection refused"))
    result = OpenAIChatProvider(_cfg("openai"), http_client=rec.client()).attempt(request_with_history)
    assert result.outcome == "transport-error"
    assert result.status_code is None
    assert len(rec.requests) == 1


def test_openai_malformed_body_is_invalid_response(request_with_history):
    rec = Recorder(httpx.Response(200, json={"unexpected": True}))
    result = OpenAIChatProvider(_cfg("openai"), http_client=rec.client()).attempt(request_with_history)
    assert result.outcome == "invalid-response"


def test_gemini_wire_shape(request_with_history):
    rec = Recorder(httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": ANSWER}]}}]}))
    result = GeminiProvider(_cfg("gemini"), http_client=rec.client()).attempt(request_with_history)

    assert result.outcome == "success"
    assert result.response_text == ANSWER
    req = rec.requests[0]
    assert req.url.path == "/v1beta/models/gemini-1.5-flash:generateContent"
    assert req.url.params["key"] == "g-key"
    prompt = _body(req)["contents"][0]["parts"][0]["text"]
    assert prompt == (
        "SYSTEM\n\n"
        "ユーザー: こんにちは\n"
        "アシスタント: こんにちは、何でも聞いてください\n"
        "ユーザー: 数学の勉強方法は？\n"
        "アシスタント:"
    )


def test_gemini_http_error_and_bad_shape(request_with_history):
    rec = Recorder(httpx.Response(403, json={"error": {"status": "PERMISSION_DENIED"}}))
    result = GeminiProvider(_cfg("gemini"), http_client=rec.client()).attempt(request_with_history)
    assert result.outcome == "http-error"
    assert result.status_code == 403

    rec = Recorder(httpx.Response(200, json={"candidates": []}))
    result = GeminiProvider(_cfg("gemini"), http_client=rec.client()).attempt(request_with_history)
    assert result.outcome == "invalid-response"


def test_huggingface_moves_past_loading_model(request_with_history):
    def handler(request):
        if request.url.path.endswith("/microsoft/DialoGPT-medium"):
            return httpx.Response(503, json={"error": "Model is currently loading"})
        prompt = _body(request)["inputs"]
        return httpx.Response(200, json=[{"generated_text": prompt + " 毎日少しずつ問題を解きましょう。"}])

    seen = []

    def recording(request):
        seen.append(request)
        return handler(request)

    client = httpx.Client(transport=httpx.MockTransport(recording))
    result = HuggingFaceProvider(_cfg("huggingface"), http_client=client).attempt(request_with_history)

    assert result.outcome == "success"
    assert result.response_text == "毎日少しずつ問題を解きましょう。"
    assert [r.url.path for r in seen] == ["/models/microsoft/DialoGPT-medium", "/models/gpt2"]
    body = _body(seen[1])
    assert body["parameters"] == {
        "max_length": 200,
        "temperature": 0.7,
        "do_sample": True,
        "top_p": 0.9,
        "repetition_penalty": 1.2,
    }
    assert body["inputs"].endswith("現在の質問: 数学の勉強方法は？\n回答:")
    assert seen[1].headers["user-agent"] == "Mozilla/5.0 (compatible; AI-Assistant/1.0)"
    assert "authorization" not in seen[1].headers


def test_huggingface_all_candidates_fail(request_with_history):
    rec = Recorder(httpx.Response(200, json={"error": "busy"}))
    result = HuggingFaceProvider(_cfg("huggingface"), http_client=rec.client()).attempt(request_with_history)
    assert result.outcome == "invalid-response"
    assert len(rec.requests) == 4


def test_huggingface_candidate_walk_stops_at_chain_deadline(request_with_history):
    now = [0.0]
    deadline = Deadline(500, clock=lambda: now[0])
    paths = []
    read_timeouts = []

    def slow_loading(request):
        paths.append(request.url.path)
        read_timeouts.append(request.extensions["timeout"]["read"])
        now[0] += 0.4
        return httpx.Response(503, json={"error": "Model is currently loading"})

    client = httpx.Client(transport=httpx.MockTransport(slow_loading))
    result = HuggingFaceProvider(_cfg("huggingface"), http_client=client).attempt(
        request_with_history, deadline=deadline
    )

    assert result.outcome == "transport-error"
    assert result.error_type == "DeadlineExceeded"
    assert paths == ["/models/microsoft/DialoGPT-medium", "/models/gpt2"]
    assert read_timeouts[0] == pytest.approx(0.5)
    assert read_timeouts[1] == pytest.approx(0.1)


def test_ollama_wire_shape_with_bearer(request_with_history):
    rec = Recorder(httpx.Response(200, json={"message": {"role": "assistant", "content": ANSWER}}))
    cfg = _cfg("ollama", credential="ollama-token")
    result = OllamaChatProvider(cfg, http_client=rec.client()).attempt(request_with_history)

    assert result.outcome == "success"
    req = rec.requests[0]
    assert str(req.url) == "http://ollama.example:11434/api/chat"
    assert req.headers["authorization"] == "Bearer ollama-token"
    body = _body(req)
    assert body["stream"] is False
    assert body["options"] == {"temperature": 0.8, "top_p": 0.9, "repeat_penalty": 1.1}
    assert body["messages"][0] == {"role": "system", "content": "SYSTEM"}
    assert body["messages"][-1] == {"role": "user", "content": "数学の勉強方法は？"}


def test_ollama_falls_back_to_response_field(request_with_history):
    rec = Recorder(httpx.Response(200, json={"response": ANSWER}))
    result = OllamaChatProvider(_cfg("ollama"), http_client=rec.client()).attempt(request_with_history)
    assert result.outcome == "success"
    assert result.response_text == ANSWER
    assert "authorization" not in rec.requests[0].headers


def test_ollama_without_endpoint_is_skipped(request_with_history):
    rec = Recorder(httpx.Response(200, json={"response": ANSWER}))
    result = OllamaChatProvider(_cfg("ollama", endpoint=""), http_client=rec.client()).attempt(request_with_history)
    assert result.outcome == "skipped-no-credential"
    assert rec.requests == []


def test_simple_ollama_sends_user_message_only(request_with_history):
    rec = Recorder(httpx.Response(200, json={"message": {"content": ANSWER}}))
    adapter = SimpleOllamaProvider(_cfg("ollama"), http_client=rec.client())
    result = adapter.attempt(request_with_history)

    assert result.outcome == "success"
    assert _body(rec.requests[0]) == {
        "model": "llama3",
        "messages": [{"role": "user", "content": "数学の勉強方法は？"}],
        "stream": False,
    }
    t = adapter.timeout()
    assert t.read == 60.0
    assert t.connect == 10.0


def test_disabled_and_missing_credential_skip_without_network(request_with_history):
    rec = Recorder(httpx.Response(200, json={}))
    log = DebugLog()

    disabled = OpenAIChatProvider(_cfg("openai", enabled=False), http_client=rec.client()).attempt(request_with_history, log=log)
    no_key = GeminiProvider(_cfg("gemini", credential=None), http_client=rec.client()).attempt(request_with_history, log=log)
    blank_key = GroqChatProvider(_cfg("groq", credential="   "), http_client=rec.client()).attempt(request_with_history)

    assert disabled.outcome == "skipped-disabled"
    assert no_key.outcome == "skipped-no-credential"
    assert blank_key.outcome == "skipped-no-credential"
    assert not disabled.attempted
    assert rec.requests == []
    assert log.contains("openai: skipped")


def test_timeout_is_clipped_by_chain_deadline():
    adapter = OpenAIChatProvider(_cfg("openai", timeout_ms=120_000, connect_timeout_ms=15_000))
    full = adapter.timeout()
    assert full.read == 120.0
    assert full.connect == 15.0

    clipped = adapter.timeout(Deadline(total_ms=2_000))
    assert clipped.read <= 2.0
    assert clipped.connect <= 2.0


def test_expired_deadline_records_transport_error(request_with_history):
    rec = Recorder(httpx.Response(200, json={}))
    clock = iter([0.0, 10.0, 10.0, 10.0]).__next__
    deadline = Deadline(total_ms=1_000, clock=clock)
    result = OpenAIChatProvider(_cfg("openai"), http_client=rec.client()).attempt(request_with_history, deadline=deadline)
    assert result.outcome == "transport-error"
    assert rec.requests == []


def test_build_providers_preserves_order_and_rejects_unknown():
    configs = [_cfg("gemini"), _cfg("openai"), _cfg("ollama")]
    adapters = build_providers(configs)
    assert [a.name for a in adapters] == ["gemini", "openai", "ollama"]
    assert isinstance(adapters[0], GeminiProvider)

    with pytest.raises(ValueError):
        build_providers([ProviderConfig(name="mystery")])


class _ClosingOpenAI:
    """Stands in for the SDK client and remembers whether it was closed."""

    made = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.closed = False
        self.chat = self
        self.completions = self
        self.with_raw_response = self
        _ClosingOpenAI.made.append(self)

    def create(self, **kwargs):
        raise httpx.ConnectError("offline")

    def close(self):
        self.closed = True


def test_openai_client_closed_only_when_owned(request_with_history, monkeypatch):
    _ClosingOpenAI.made = []
    monkeypatch.setattr("cafeteria_assistant.providers.OpenAI", _ClosingOpenAI)

    owned = OpenAIChatProvider(_cfg("openai")).attempt(request_with_history)
    assert owned.outcome == "transport-error"
    assert _ClosingOpenAI.made[0].closed is True

    shared = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    OpenAIChatProvider(_cfg("openai"), http_client=shared).attempt(request_with_history)
    assert _ClosingOpenAI.made[1].kwargs["http_client"] is shared
    assert _ClosingOpenAI.made[1].closed is False
    assert not shared.is_closed
