import datetime as dt
import json

import httpx
import pytest

from cafeteria_assistant.chat import FALLBACK_TEXT, MESSAGE_SIZE_ERROR, answer, answer_with_meta
from cafeteria_assistant.config import EngineSettings
from cafeteria_assistant.provider_schema import ProviderConfig

TODAY = dt.date(2024, 5, 1)
LONG_ANSWER = "二次方程式は解の公式を使うと解けます。まずは係数を確認しましょう。"


@pytest.fixture
def data_dir(tmp_path):
    (tmp_path / "daily-menu.json").write_text(json.dumps([{"date": "2024-05-01", "food": "カレー"}], ensure_ascii=False), encoding="utf-8")
    (tmp_path / "allergies.json").write_text(
        json.dumps({"allergies": [{"menu": "カレー", "allergens": ["小麦", "乳"]}]}, ensure_ascii=False), encoding="utf-8"
    )
    return tmp_path


@pytest.fixture
def settings(data_dir):
    return EngineSettings(data_dir=str(data_dir), run_probes=False)


def _openai(enabled=True):
    return ProviderConfig(
        name="openai", enabled=enabled, credential="sk-test", endpoint="https://api.openai.com/v1", model="gpt-3.5-turbo"
    )


def _all_disabled():
    return [ProviderConfig(name=n, enabled=False) for n in ("openai", "gemini", "groq", "huggingface", "ollama")]


def _no_network(request):
    raise AssertionError(f"unexpected network call to {request.url}")


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def _completion(text):
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": text}}]})


@pytest.mark.parametrize("message", ["", "   ", "あ" * 3001])
def test_message_guard(settings, message):
    resp = answer_with_meta(message, settings=settings, provider_configs=[_openai()], http_client=_client(_no_network))
    assert resp.text == MESSAGE_SIZE_ERROR
    assert resp.source == "guard"


def test_message_is_trimmed_before_guard_and_provider(settings):
    captured = []

    def handler(request):
        captured.append(json.loads(request.content))
        return _completion(LONG_ANSWER)

    padded = "  " + "あ" * 2999 + "\n\n  "
    resp = answer_with_meta(padded, settings=settings, provider_configs=[_openai()], today=TODAY, http_client=_client(handler))

    assert resp.source == "provider"
    assert captured[0]["messages"][-1] == {"role": "user", "content": "あ" * 2999}


def test_knowledge_answer_skips_providers(settings):
    resp = answer_with_meta(
        "今日の定食は？", settings=settings, provider_configs=[_openai()], today=TODAY, http_client=_client(_no_network)
    )
    assert resp.source == "knowledge"
    assert "カレー" in resp.text
    assert "営業予定" in resp.text
    assert resp.attempts == []


def test_provider_answer_with_bounded_history(settings):
    captured = []

    def handler(request):
        captured.append(json.loads(request.content))
        return _completion(LONG_ANSWER)

    history = [{"role": "user" if i % 2 == 0 else "assistant", "content": f"turn {i}"} for i in range(9)]
    resp = answer_with_meta(
        "二次方程式の解き方を教えて",
        history=history,
        settings=settings,
        provider_configs=[_openai()],
        today=TODAY,
        http_client=_client(handler),
    )

    assert resp.source == "provider"
    assert resp.provider == "openai"
    assert resp.text == LONG_ANSWER
    assert [a.outcome for a in resp.attempts] == ["success"]
    assert resp.debug_logs

    messages = captured[0]["messages"]
    assert messages[0]["role"] == "system"
    assert "- カレー：小麦、乳" in messages[0]["content"]
    assert [m["content"] for m in messages[1:-1]] == [f"turn {i}" for i in range(3, 9)]
    assert messages[-1] == {"role": "user", "content": "二次方程式の解き方を教えて"}


def test_provider_answer_is_sanitized(settings):
    resp = answer_with_meta(
        "雑談しよう",
        settings=settings,
        provider_configs=[_openai()],
        today=TODAY,
        http_client=_client(lambda request: _completion("こんにちは\x00、今日は\x07いい天気ですね。\n散歩日和です。")),
    )
    assert resp.text == "こんにちは、今日はいい天気ですね。\n散歩日和です。"


def test_exhaustion_returns_diagnostic_report(settings):
    resp = answer_with_meta(
        "雑談しよう", settings=settings, provider_configs=_all_disabled(), today=TODAY, http_client=_client(_no_network)
    )
    assert resp.source == "diagnostics"
    assert resp.provider is None
    assert "AI API呼び出しが失敗しました" in resp.text
    assert resp.diagnostics is not None
    assert [d.name for d in resp.diagnostics.providers] == ["openai", "gemini", "groq", "huggingface", "ollama"]


def test_quota_exhaustion_message(settings):
    err = {"error": {"message": "You exceeded your current quota", "type": "insufficient_quota", "code": "insufficient_quota"}}
    resp = answer_with_meta(
        "雑談しよう",
        settings=settings,
        provider_configs=[_openai()],
        today=TODAY,
        http_client=_client(lambda request: httpx.Response(429, json=err)),
    )
    assert resp.source == "diagnostics"
    assert resp.diagnostics.quota_exceeded
    assert "クォータが超過しました" in resp.text
    assert resp.attempts[0].status_code == 429


def test_use_ai_off(settings):
    resp = answer_with_meta(
        "雑談しよう", settings=settings, provider_configs=[_openai()], use_ai=False, today=TODAY, http_client=_client(_no_network)
    )
    assert resp.source == "diagnostics"
    assert "AI APIが利用できません" in resp.text


def test_local_mode_tries_local_daemon_first(settings):
    seen = []

    def handler(request):
        seen.append(f"{request.method} {request.url.host}{request.url.path}")
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "mistral:7b"}, {"name": "llama3:8b"}]})
        if request.url.path == "/api/chat":
            assert json.loads(request.content)["model"] == "llama3:8b"
            return httpx.Response(200, json={"message": {"content": LONG_ANSWER}})
        raise AssertionError("hosted provider must not be called")

    local = settings.model_copy(update={"hosted": False})
    resp = answer_with_meta(
        "雑談しよう", settings=local, provider_configs=[_openai()], today=TODAY, http_client=_client(handler)
    )

    assert resp.provider == "ollama-local"
    assert seen == ["GET localhost/api/tags", "POST localhost/api/chat"]


def test_local_probe_failure_runs_hosted_chain_unchanged(settings):
    def handler(request):
        if request.url.host == "localhost":
            raise httpx.ConnectError("refused")
        return _completion(LONG_ANSWER)

    local = settings.model_copy(update={"hosted": False})
    resp = answer_with_meta("雑談しよう", settings=local, provider_configs=[_openai()], today=TODAY, http_client=_client(handler))

    assert resp.provider == "openai"
    assert [a.provider_name for a in resp.attempts] == ["openai"]


def test_local_simple_retry_after_chain_fails(settings):
    chats = []

    def handler(request):
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "llama3"}]})
        body = json.loads(request.content)
        chats.append(body)
        if "options" in body:
            return httpx.Response(200, json={"message": {"content": "短い"}})
        return httpx.Response(200, json={"message": {"content": LONG_ANSWER}})

    local = settings.model_copy(update={"hosted": False})
    resp = answer_with_meta("雑談しよう", settings=local, provider_configs=_all_disabled(), today=TODAY, http_client=_client(handler))

    assert resp.source == "provider"
    assert resp.text == LONG_ANSWER
    assert resp.attempts[0].outcome == "validation-rejected"
    assert resp.attempts[-1].outcome == "success"
    assert chats[-1]["messages"] == [{"role": "user", "content": "雑談しよう"}]


def test_never_raises(settings, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr("cafeteria_assistant.chat.load_knowledge_facts", boom)
    resp = answer_with_meta("今日の定食は？", settings=settings, provider_configs=[])
    assert resp.text == FALLBACK_TEXT
    assert resp.source == "error"


def test_answer_returns_text_and_debug_traces(settings, capsys):
    text = answer("今日の定食は？", settings=settings, provider_configs=[], today=TODAY, debug=True)
    assert "カレー" in text
    err = capsys.readouterr().err
    assert "[trace] matcher.result" in err
