from __future__ import annotations

from typing import List, Optional, Sequence

from .provider_schema import ChainResult, ProviderAttemptResult
from .providers import ProviderAdapter, ProviderRequest
from .response_validator import DEFAULT_MIN_LENGTH, is_acceptable
from .utils import DebugLog, Deadline, _trace, _truncate


def run_chain(
    providers: Sequence[ProviderAdapter],
    request: ProviderRequest,
    *,
    min_length: int = DEFAULT_MIN_LENGTH,
    deadline: Optional[Deadline] = None,
    log: Optional[DebugLog] = None,
    trace: bool = False,
) -> ChainResult:
    """
    Try providers strictly in order and stop at the first answer the
    validator accepts. Providers after the winner are never invoked.

    A provider that answered but failed validation is recorded as
    `validation-rejected`. Never raises.
    """
    attempts: List[ProviderAttemptResult] = []

    for adapter in providers:
        result = adapter.attempt(request, deadline=deadline, log=log)

        if result.outcome == "success" and not is_acceptable(result.response_text, min_length):
            if log is not None:
                log.add(f"{adapter.name}: response rejected by validator")
            result = result.model_copy(
                update={"outcome": "validation-rejected", "error_message": "response too short or empty"}
            )

        attempts.append(result)

        _trace(
            trace,
            "provider.attempt",
            {
                "provider": result.provider_name,
                "outcome": result.outcome,
                "status_code": result.status_code,
                "latency_ms": round(result.latency_ms, 1),
                "error": _truncate(result.error_message or "", 120) or None,
            },
        )

        if result.outcome == "success":
            return ChainResult(response_text=result.response_text, provider=adapter.name, attempts=attempts)

    return ChainResult(attempts=attempts)
