from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

GENESIS_HASH = "0" * 64

ScoreSource = Literal["local", "heuristic", "server"]
RiskLabel = Literal["trusted domain", "phishing", "review", "legitimate", "error"]


class _CamelModel(BaseModel):
    # Wire and persisted form is camelCase; both spellings are accepted on input.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FormInfo(_CamelModel):
    input_count: int = 0
    sensitive: bool = False


class AnalysisPayload(_CamelModel):
    url: str = ""
    text: str = ""
    title: str = ""
    lang: str = ""
    links: list[str] = Field(default_factory=list)
    forms: list[FormInfo] = Field(default_factory=list)
    # What triggered the scan (auto, navigation, manual, ...).
    source: str = "page"


class ScoreRecord(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    score: float
    label: str
    signals: list[str] = Field(default_factory=list)
    source: ScoreSource
    url_score: float | None = None
    url_label: str | None = None
    text_score: float | None = None
    text_label: str | None = None


class FusedResult(_CamelModel):
    risk_score: float
    label: RiskLabel
    signals: list[str] = Field(default_factory=list)
    engine: str
    url_score: float | None = None
    url_label: str | None = None
    text_score: float | None = None
    text_label: str | None = None
    text_error: str | None = None
    threshold: float
    ledger_count: int = 0
    at: int
    url: str = ""


class Settings(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    ml_base_url: str = "http://localhost:8000"
    ml_path: str = "/predict"
    ml_health_path: str = "/health"
    api_key: str = ""
    auto_scan: bool = True
    deep_scan: bool = False
    global_threshold: float = Field(0.7, ge=0.0, le=1.0)
    store_history: bool = False
    ledger_enabled: bool = True
    ledger_boost: float = Field(0.18, ge=0.0, le=1.0)
    trusted_domains: list[str] = Field(default_factory=list)
    # File a ledger report automatically when a scan comes back "phishing".
    auto_report: bool = False


class LedgerEntry(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    hash: str
    domain: str
    at: int
    source: str
    prev_hash: str
    chain_hash: str


class DomainRecord(_CamelModel):
    count: int = 0
    last_at: int | None = None


class LedgerState(_CamelModel):
    head: str = GENESIS_HASH
    chain: list[LedgerEntry] = Field(default_factory=list)
    domains: dict[str, DomainRecord] = Field(default_factory=dict)


class LedgerInfo(_CamelModel):
    hash: str
    count: int
    last_at: int | None = None


class ReportResult(_CamelModel):
    ok: bool
    hash: str | None = None
    domain: str | None = None
    count: int | None = None
    last_at: int | None = None
    error: str | None = None


class ReportStatus(_CamelModel):
    count: int
    last_at: int | None = None


class ChainVerification(_CamelModel):
    ok: bool
    checked: int
    # Index into the most-recent-first chain of the first entry that fails.
    broken_at: int | None = None


class PingResult(_CamelModel):
    ok: bool
    latency: str


class ReportRequest(_CamelModel):
    url: str = Field(..., min_length=1)
    source: str = "manual"


class StatusResponse(_CamelModel):
    ok: bool
    settings: Settings | None = None
