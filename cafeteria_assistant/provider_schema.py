from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

AttemptOutcome = Literal[
    "success",
    "skipped-disabled",
    "skipped-no-credential",
    "transport-error",
    "invalid-response",
    "http-error",
    "validation-rejected",
]

SKIPPED_OUTCOMES = frozenset({"skipped-disabled", "skipped-no-credential"})

ProbeStatus = Literal["connect-error", "timeout", "http-status", "success"]


class ProviderConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    enabled: bool = False
    credential: Optional[str] = None
    endpoint: str = ""
    model: str = ""
    timeout_ms: int = 120_000
    connect_timeout_ms: int = 15_000
    requires_credential: bool = True

    @property
    def has_credential(self) -> bool:
        return bool((self.credential or "").strip())


class ProviderAttemptResult(BaseModel):
    provider_name: str
    outcome: AttemptOutcome
    latency_ms: float = 0.0
    response_text: Optional[str] = None
    status_code: Optional[int] = None  # set for http-error
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    error_payload: Optional[Any] = None

    @property
    def attempted(self) -> bool:
        return self.outcome not in SKIPPED_OUTCOMES


class ChainResult(BaseModel):
    response_text: Optional[str] = None
    provider: Optional[str] = None
    attempts: List[ProviderAttemptResult] = Field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.provider is None


class ProbeResult(BaseModel):
    provider_name: str
    status: ProbeStatus
    status_code: Optional[int] = None
    detail: Optional[str] = None


class ProviderDiagnostic(BaseModel):
    name: str
    enabled: bool
    credential_present: bool
    requires_credential: bool = True
    outcome: Optional[AttemptOutcome] = None
    status_code: Optional[int] = None
    probe: Optional[ProbeResult] = None


class DiagnosticReport(BaseModel):
    hosted: bool
    providers: List[ProviderDiagnostic] = Field(default_factory=list)
    quota_exceeded: bool = False
    quota_provider: Optional[str] = None
    notes: Dict[str, Any] = Field(default_factory=dict)
