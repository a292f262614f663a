from __future__ import annotations

import datetime as dt
import logging
import os
import random
from pathlib import Path
from typing import Any, Iterable, List, Optional, Union

import httpx

from .chain import run_chain
from .config import (
    LOCAL_PROVIDER_NAME,
    EngineSettings,
    load_engine_settings,
    load_provider_configs,
    local_provider_config,
)
from .diagnostics import build_report, render_ai_unavailable, render_report
from .knowledge import load_knowledge_facts
from .local import probe_local_provider
from .matcher import match_with_rules
from .models import ChatResponse
from .prompts import build_system_prompt, coerce_history, recent_history
from .provider_schema import ProviderAttemptResult, ProviderConfig
from .providers import OllamaChatProvider, ProviderRequest, SimpleOllamaProvider, build_providers
from .utils import DebugLog, Deadline, _trace, _truncate, sanitize_text

logger = logging.getLogger(__name__)

MESSAGE_SIZE_ERROR = "メッセージサイズが不適切です"
FALLBACK_TEXT = "申し訳ございません。現在回答を生成できません。しばらくしてからもう一度お試しください。"


def answer_with_meta(
    message: str,
    *,
    history: Optional[Iterable[Any]] = None,
    data_dir: Optional[Union[str, Path]] = None,
    settings: Optional[EngineSettings] = None,
    provider_configs: Optional[List[ProviderConfig]] = None,
    use_ai: bool = True,
    debug: bool = False,
    today: Optional[dt.date] = None,
    rng: Optional[random.Random] = None,
    http_client: Optional[httpx.Client] = None,
) -> ChatResponse:
    """
    Resolve one chat message: knowledge facts first, then the provider
    chain, then a diagnostic report. Must never raise for normal user input.
    """
    try:
        trace_enabled = bool(debug or os.getenv("DEBUG_TRACE") == "1")
        settings = settings or load_engine_settings()
        data_dir = data_dir or settings.data_dir
        log = DebugLog(limit=settings.debug_log_limit)
        meta = {"hosted": settings.hosted}

        text = message.strip() if isinstance(message, str) else ""
        if not text or len(text) > settings.max_message_length:
            _trace(trace_enabled, "chat.guard", {"length": len(text), "max": settings.max_message_length})
            return ChatResponse(text=MESSAGE_SIZE_ERROR, source="guard", meta=meta)

        facts = load_knowledge_facts(data_dir, today=today)
        ruled = match_with_rules(
            text,
            facts,
            rng=rng,
            busy_at=settings.congestion_busy_at,
            very_busy_at=settings.congestion_very_busy_at,
        )

        _trace(
            trace_enabled,
            "matcher.result",
            {
                "matched": ruled is not None,
                "today": facts.today,
                "holiday": facts.today_holiday.reason if facts.today_holiday else None,
                "reservations": facts.total_reservation_count,
                "allergy_entries": len(facts.allergy_table),
            },
        )

        if ruled is not None:
            return ChatResponse(text=sanitize_text(ruled), source="knowledge", meta=meta)

        configs = provider_configs if provider_configs is not None else load_provider_configs()
        if not use_ai:
            available = any(c.enabled for c in configs) or not settings.hosted
            return ChatResponse(text=render_ai_unavailable(False, available), source="diagnostics", meta=meta)

        request = ProviderRequest(
            message=text,
            system_prompt=build_system_prompt(facts.allergy_table),
            history=recent_history(coerce_history(history), settings.history_turns),
        )

        adapters = build_providers(configs, http_client=http_client)
        local_config = None
        if not settings.hosted:
            model = probe_local_provider(
                settings.local_url,
                preference=settings.local_model_preference,
                http_client=http_client,
                log=log,
            )
            if model is not None:
                local_config = local_provider_config(settings, model)
                adapters.insert(0, OllamaChatProvider(local_config, http_client=http_client))

        deadline = Deadline(settings.chain_deadline_ms)
        result = run_chain(
            adapters,
            request,
            min_length=settings.min_response_length,
            deadline=deadline,
            log=log,
            trace=trace_enabled,
        )
        attempts: List[ProviderAttemptResult] = list(result.attempts)

        if result.exhausted and local_config is not None:
            log.add(f"{LOCAL_PROVIDER_NAME}: retrying with a minimal prompt")
            retry = run_chain(
                [SimpleOllamaProvider(local_config, http_client=http_client)],
                request,
                min_length=settings.min_response_length,
                deadline=deadline,
                log=log,
                trace=trace_enabled,
            )
            attempts.extend(retry.attempts)
            if not retry.exhausted:
                result = retry

        _trace(
            trace_enabled,
            "chain.result",
            {
                "provider": result.provider,
                "attempts": [f"{a.provider_name}:{a.outcome}" for a in attempts],
                "preview": _truncate(result.response_text or "", 200) or None,
            },
        )

        if not result.exhausted:
            return ChatResponse(
                text=sanitize_text(result.response_text or ""),
                source="provider",
                provider=result.provider,
                attempts=attempts,
                debug_logs=log.entries,
                meta=meta,
            )

        report = build_report(
            configs,
            attempts,
            hosted=settings.hosted,
            log=log,
            http_client=http_client,
            run_probes=settings.run_probes,
        )
        _trace(
            trace_enabled,
            "diagnostics.report",
            {"quota_exceeded": report.quota_exceeded, "quota_provider": report.quota_provider},
        )
        return ChatResponse(
            text=sanitize_text(render_report(report)),
            source="diagnostics",
            attempts=attempts,
            diagnostics=report,
            debug_logs=log.entries,
            meta=meta,
        )
    except Exception:
        logger.exception("Unexpected failure while answering a chat message")
        return ChatResponse(text=FALLBACK_TEXT, source="error", meta={})


def answer(message: str, **kwargs: Any) -> str:
    """
    Main entrypoint used by the CLI.
    Must never raise for normal user input.
    """
    return answer_with_meta(message, **kwargs).text
