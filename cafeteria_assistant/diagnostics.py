"""
Diagnostic reporter, used only once every provider has failed.

Collects per-provider configuration state, the outcome of this request's
attempt, and a short live probe for the providers that support one (OpenAI
model listing, a tiny Gemini generateContent). The rendered report is
returned to the user as the chat answer.
"""

from __future__ import annotations

import json
from typing import Dict, List, Optional, Sequence, Tuple

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError

from .config import LOCAL_PROVIDER_NAME
from .provider_schema import (
    DiagnosticReport,
    ProbeResult,
    ProviderAttemptResult,
    ProviderConfig,
    ProviderDiagnostic,
)
from .providers import openai_client
from .utils import DebugLog, _truncate

QUOTA_SIGNATURE = "insufficient_quota"
QUOTA_LOG_MARKER = "クォータ超過"
PROBE_TIMEOUT_S = 5.0

DISPLAY_NAMES: Dict[str, str] = {
    "openai": "OpenAI",
    "gemini": "Gemini",
    "groq": "Groq",
    "huggingface": "Hugging Face",
    "ollama": "Ollama",
    LOCAL_PROVIDER_NAME: "Ollama (ローカル)",
}

OUTCOME_LABELS: Dict[str, str] = {
    "success": "成功",
    "skipped-disabled": "無効のためスキップ",
    "skipped-no-credential": "APIキー未設定のためスキップ",
    "transport-error": "接続エラー",
    "invalid-response": "不正な応答",
    "http-error": "HTTPエラー",
    "validation-rejected": "応答が短すぎるため不採用",
}


def _mentions_quota(value: object) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return QUOTA_SIGNATURE in value
    try:
        text = json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        text = str(value)
    return QUOTA_SIGNATURE in text


def detect_quota_exhaustion(
    attempts: Sequence[ProviderAttemptResult],
    log: Optional[DebugLog] = None,
) -> Tuple[bool, Optional[str]]:
    """
    (quota_exceeded, provider_name). The provider name is None when the
    signature was only seen in the debug log.
    """
    for a in attempts:
        if _mentions_quota(a.error_payload) or _mentions_quota(a.error_message):
            return True, a.provider_name
    if log is not None and (log.contains(QUOTA_SIGNATURE) or log.contains(QUOTA_LOG_MARKER)):
        return True, None
    return False, None


def probe_openai(config: ProviderConfig, *, http_client: Optional[httpx.Client] = None) -> ProbeResult:
    """GET {base}/models with the configured key."""
    try:
        with openai_client(config, httpx.Timeout(PROBE_TIMEOUT_S), http_client) as client:
            client.models.with_raw_response.list()
    except APITimeoutError as e:
        return ProbeResult(provider_name=config.name, status="timeout", detail=_truncate(str(e), 50))
    except APIConnectionError as e:
        return ProbeResult(provider_name=config.name, status="connect-error", detail=_truncate(str(e), 50))
    except APIStatusError as e:
        return ProbeResult(provider_name=config.name, status="http-status", status_code=e.status_code)
    return ProbeResult(provider_name=config.name, status="success", status_code=200)


def probe_gemini(config: ProviderConfig, *, http_client: Optional[httpx.Client] = None) -> ProbeResult:
    """A one-word generateContent call."""
    url = f"{config.endpoint.rstrip('/')}/models/{config.model}:generateContent"
    body = {"contents": [{"parts": [{"text": "test"}]}]}
    kwargs = dict(json=body, params={"key": config.credential or ""}, timeout=httpx.Timeout(PROBE_TIMEOUT_S))
    try:
        if http_client is not None:
            resp = http_client.post(url, **kwargs)
        else:
            with httpx.Client() as client:
                resp = client.post(url, **kwargs)
    except httpx.TimeoutException as e:
        return ProbeResult(provider_name=config.name, status="timeout", detail=_truncate(str(e), 50))
    except httpx.TransportError as e:
        return ProbeResult(provider_name=config.name, status="connect-error", detail=_truncate(str(e), 50))

    if 200 <= resp.status_code < 300:
        return ProbeResult(provider_name=config.name, status="success", status_code=resp.status_code)
    return ProbeResult(provider_name=config.name, status="http-status", status_code=resp.status_code)


PROBES = {
    "openai": probe_openai,
    "gemini": probe_gemini,
}


def _last_attempt(attempts: Sequence[ProviderAttemptResult], name: str) -> Optional[ProviderAttemptResult]:
    found = None
    for a in attempts:
        if a.provider_name == name:
            found = a
    return found


def build_report(
    configs: Sequence[ProviderConfig],
    attempts: Sequence[ProviderAttemptResult],
    *,
    hosted: bool,
    log: Optional[DebugLog] = None,
    http_client: Optional[httpx.Client] = None,
    run_probes: bool = True,
) -> DiagnosticReport:
    providers: List[ProviderDiagnostic] = []
    seen = set()

    for cfg in configs:
        seen.add(cfg.name)
        attempt = _last_attempt(attempts, cfg.name)
        probe = None
        probe_fn = PROBES.get(cfg.name)
        if run_probes and probe_fn is not None and cfg.enabled and cfg.has_credential:
            probe = probe_fn(cfg, http_client=http_client)
            if log is not None:
                log.add(f"{cfg.name}: probe {probe.status}" + (f" ({probe.status_code})" if probe.status_code else ""))
        providers.append(
            ProviderDiagnostic(
                name=cfg.name,
                enabled=cfg.enabled,
                credential_present=cfg.has_credential,
                requires_credential=cfg.requires_credential,
                outcome=attempt.outcome if attempt else None,
                status_code=attempt.status_code if attempt else None,
                probe=probe,
            )
        )

    # Attempts for providers outside `configs` (the local daemon).
    for a in attempts:
        if a.provider_name in seen:
            continue
        seen.add(a.provider_name)
        providers.append(
            ProviderDiagnostic(
                name=a.provider_name,
                enabled=True,
                credential_present=False,
                requires_credential=False,
                outcome=a.outcome,
                status_code=a.status_code,
            )
        )

    quota_exceeded, quota_provider = detect_quota_exhaustion(attempts, log)
    return DiagnosticReport(
        hosted=hosted,
        providers=providers,
        quota_exceeded=quota_exceeded,
        quota_provider=quota_provider,
        notes={"attempted": sum(1 for a in attempts if a.attempted)},
    )


def _yes_no(flag: bool) -> str:
    return "はい" if flag else "いいえ"


def _probe_label(probe: Optional[ProbeResult]) -> str:
    if probe is None:
        return "未テスト"
    if probe.status == "success":
        return "✅ 接続成功"
    if probe.status == "timeout":
        return "❌ 接続タイムアウト"
    if probe.status == "connect-error":
        return f"❌ 接続エラー: {probe.detail or ''}".rstrip(": ")
    return f"⚠️ HTTP {probe.status_code}"


def _outcome_label(d: ProviderDiagnostic) -> str:
    if d.outcome is None:
        return "未試行"
    if d.outcome == "http-error" and d.status_code is not None:
        return f"HTTP {d.status_code}"
    return OUTCOME_LABELS.get(d.outcome, d.outcome)


def _provider_line(d: ProviderDiagnostic) -> str:
    display = DISPLAY_NAMES.get(d.name, d.name)
    if d.requires_credential:
        key = "設定済み" if d.credential_present else "未設定"
    else:
        key = "不要"
    return (
        f"{display} (有効: {_yes_no(d.enabled)}, APIキー: {key}, "
        f"結果: {_outcome_label(d)}, テスト: {_probe_label(d.probe)})"
    )


def render_report(report: DiagnosticReport) -> str:
    providers = "\n- ".join(_provider_line(d) for d in report.providers) or "なし"

    if report.quota_exceeded:
        who = DISPLAY_NAMES.get(report.quota_provider or "openai", report.quota_provider or "OpenAI")
        return (
            f"❌ **{who} APIのクォータが超過しました**\n\n"
            "**エラー詳細**:\n"
            "- APIの無料クレジットが使い切られました\n"
            "- または、APIキーにクレジットが残っていません\n\n"
            f"**試行されたAPI**:\n- {providers}\n\n"
            "**解決策**:\n"
            "1. プロバイダーの管理画面（OpenAIの場合は https://platform.openai.com/ ）でクレジットを追加する\n"
            "2. 新しいAPIキーを取得する\n"
            "3. 他のAPI（Gemini、Groq、Hugging Face）を有効にする\n\n"
            "**デバッグ情報**:\n"
            "- デバッグログで詳細を確認してください"
        )

    return (
        "❌ **AI API呼び出しが失敗しました**\n\n"
        "**システム情報**:\n"
        f"- 本番環境: {_yes_no(report.hosted)}\n\n"
        f"**試行されたAPI**:\n- {providers}\n\n"
        "**考えられる原因**:\n"
        "1. ホスティング環境で外部APIへの接続が制限されている\n"
        "2. APIキーが無効または期限切れ\n"
        "3. ネットワーク接続の問題\n"
        "4. APIサービスの一時的な障害\n\n"
        "**デバッグ情報**:\n"
        "- 上記の「テスト」結果を確認してください\n"
        "- 「接続タイムアウト」や「接続エラー」が表示されている場合、外部接続の制限が原因の可能性が高いです"
    )


def render_ai_unavailable(use_ai: bool, available: bool) -> str:
    return (
        "❌ **AI APIが利用できません**\n\n"
        "設定状況:\n"
        f"- AI API使用: {'✅ 有効' if use_ai else '❌ 無効'}\n"
        f"- AI API利用可能: {'✅ はい' if available else '❌ いいえ'}\n\n"
        "**デバッグ情報**: AI APIが正しく設定されていないか、接続に失敗しています。\n"
        "プロバイダー設定（環境変数または設定ファイル）を確認してください。"
    )
