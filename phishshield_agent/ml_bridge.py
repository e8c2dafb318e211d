"""
Client for the remote phishing prediction service.

The service has shipped several response shapes over time. A response is
tried against an ordered chain of parsers (combined url/text models, a single
flat model, an HTML results page); the first that recognizes it wins. Any
failure along the way (transport error, non-2xx, timeout, unknown shape)
degrades to the local URL and page-content heuristics so callers always get
a ScoreRecord.
"""

from __future__ import annotations

import asyncio
import json
import math
import re
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from .config import HEALTH_TIMEOUT_S, REQUEST_TIMEOUT_S
from .errors import RemoteModelError
from .local_model import local_content_score, local_url_score
from .log import get_logger
from .models import AnalysisPayload, PingResult, ScoreRecord, Settings

logger = get_logger(__name__)

TEXT_MODEL_OFFLINE = "Text model offline"
FALLBACK_SIGNAL = "fallback: server"

# Calibrated stand-ins when a model reports a class but no probability.
PHISHING_CLASS_SCORE = 0.85
LEGITIMATE_CLASS_SCORE = 0.15

_PROBABILITY_KEYS = ("probability", "phishing_probability", "risk_score", "riskScore", "score")
_CLASS_KEYS = ("prediction", "label")
_SIGNAL_KEYS = ("signals", "reasons")

_PHISHING_CLASSES = {"phishing", "phish", "malicious", "bad", "unsafe", "1", "true"}
_LEGITIMATE_CLASSES = {"legitimate", "legit", "benign", "good", "safe", "0", "false"}

_HTML_RE = re.compile(r"<\s*(?:!doctype|html|body|div|p|span|h[1-6]|table)\b", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_LABELED_PERCENT_RE = re.compile(
    r"(?:probab\w*|confidence|risk|score)[^0-9%<>]{0,40}?(\d{1,3}(?:\.\d+)?)\s*%",
    re.IGNORECASE,
)
_ANY_PERCENT_RE = re.compile(r"(\d{1,3}(?:\.\d+)?)\s*%")
_LABELED_VERDICT_RE = re.compile(
    r"(?:result|prediction|verdict|classified as|class)\W{0,20}(phish\w*|legit\w*)",
    re.IGNORECASE,
)
_ANY_VERDICT_RE = re.compile(r"\b(phish\w*|legit\w*)\b", re.IGNORECASE)


def join_url(base: str, path: str) -> str:
    if not base:
        return path
    trimmed_base = base[:-1] if base.endswith("/") else base
    trimmed_path = path if (path or "").startswith("/") else f"/{path or ''}"
    return f"{trimmed_base}{trimmed_path}"


def _label_for(score: float) -> str:
    return "phishing" if score >= 0.5 else "legitimate"


def _as_probability(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(v):
        return None
    if 1 < v <= 100:
        v = v / 100
    if v < 0 or v > 1:
        return None
    return v


def _class_score(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        value = int(value)
    key = str(value).strip().lower()
    if key in _PHISHING_CLASSES:
        return PHISHING_CLASS_SCORE
    if key in _LEGITIMATE_CLASSES:
        return LEGITIMATE_CLASS_SCORE
    return None


def _model_score(obj: dict[str, Any]) -> float | None:
    """Probability of the phishing class for one model's output."""
    for key in _PROBABILITY_KEYS:
        p = _as_probability(obj.get(key))
        if p is not None:
            return p
    for key in _CLASS_KEYS:
        s = _class_score(obj.get(key))
        if s is not None:
            return s
    return None


def _signals_from(data: dict[str, Any]) -> list[str]:
    for key in _SIGNAL_KEYS:
        value = data.get(key)
        if isinstance(value, list):
            return [str(v).strip() for v in value if v is not None and str(v).strip()]
    return []


@dataclass(frozen=True)
class ModelResponse:
    data: Any
    text: str

    @classmethod
    def from_httpx(cls, res: httpx.Response) -> "ModelResponse":
        text = res.text or ""
        try:
            data = res.json()
        except (ValueError, json.JSONDecodeError):
            data = None
        return cls(data=data, text=text)


def parse_combined(resp: ModelResponse) -> ScoreRecord | None:
    data = resp.data
    if not isinstance(data, dict):
        return None
    url_model = data.get("url_model")
    text_model = data.get("text_model")
    if not isinstance(url_model, dict) and not isinstance(text_model, dict):
        return None

    url_score = _model_score(url_model) if isinstance(url_model, dict) else None
    text_score = _model_score(text_model) if isinstance(text_model, dict) else None
    present = [s for s in (url_score, text_score) if s is not None]
    if not present:
        return None

    # max, not mean: one confident "phishing" must surface on its own.
    score = max(present)
    return ScoreRecord(
        score=score,
        label=_label_for(score),
        signals=_signals_from(data),
        source="server",
        url_score=url_score,
        url_label=_label_for(url_score) if url_score is not None else None,
        text_score=text_score,
        text_label=_label_for(text_score) if text_score is not None else None,
    )


def parse_single(resp: ModelResponse) -> ScoreRecord | None:
    data = resp.data
    if not isinstance(data, dict):
        return None
    score = _model_score(data)
    if score is None:
        return None
    label = _label_for(score)
    return ScoreRecord(
        score=score,
        label=label,
        signals=_signals_from(data),
        source="server",
        url_score=score,
        url_label=label,
    )


def parse_html(resp: ModelResponse) -> ScoreRecord | None:
    if resp.data is not None or not _HTML_RE.search(resp.text or ""):
        return None
    body = re.sub(r"\s+", " ", _TAG_RE.sub(" ", resp.text))

    percent: float | None = None
    m = _LABELED_PERCENT_RE.search(body) or _ANY_PERCENT_RE.search(body)
    if m:
        value = float(m.group(1))
        if 0 <= value <= 100:
            percent = value / 100

    verdict: str | None = None
    v = _LABELED_VERDICT_RE.search(body) or _ANY_VERDICT_RE.search(body)
    if v:
        verdict = "phishing" if v.group(1).lower().startswith("phish") else "legitimate"

    if verdict is None and percent is None:
        return None
    if verdict == "phishing":
        score = percent if percent is not None else PHISHING_CLASS_SCORE
    elif verdict == "legitimate":
        # The page reports confidence in the predicted class.
        score = 1 - percent if percent is not None else LEGITIMATE_CLASS_SCORE
    else:
        score = percent

    label = _label_for(score)
    return ScoreRecord(score=score, label=label, signals=[], source="server", url_score=score, url_label=label)


RESPONSE_PARSERS: tuple[tuple[str, Callable[[ModelResponse], ScoreRecord | None]], ...] = (
    ("combined", parse_combined),
    ("single", parse_single),
    ("html", parse_html),
)


def normalize_response(resp: ModelResponse) -> tuple[str, ScoreRecord] | None:
    for variant, parser in RESPONSE_PARSERS:
        record = parser(resp)
        if record is not None:
            return variant, record
    return None


def local_fallback(payload: AnalysisPayload) -> ScoreRecord:
    local = local_url_score(payload)
    # Page content stands in for the text model; URL-only payloads leave
    # the text side empty.
    content = local_content_score(payload)
    return local.model_copy(update={
        "url_score": local.score,
        "url_label": local.label,
        "text_score": content.score if content is not None else None,
        "text_label": TEXT_MODEL_OFFLINE,
        "signals": [*local.signals, *(content.signals if content is not None else []), FALLBACK_SIGNAL],
    })


class RemoteModelClient:
    def __init__(
        self,
        *,
        timeout_s: float = REQUEST_TIMEOUT_S,
        health_timeout_s: float = HEALTH_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout_s = timeout_s
        self.health_timeout_s = health_timeout_s
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, follow_redirects=True, transport=self._transport)

    async def _predict(self, payload: AnalysisPayload, settings: Settings) -> ScoreRecord:
        endpoint = join_url(settings.ml_base_url, settings.ml_path)
        text = payload.text.strip() if settings.deep_scan else ""
        form = {"url": payload.url, "model_type": "combined" if text else "url"}
        if text:
            form["text"] = text

        headers = {"accept": "application/json, text/html;q=0.9"}
        if settings.api_key:
            headers["authorization"] = f"Bearer {settings.api_key}"

        async with self._client(self.timeout_s) as client:
            res = await client.post(endpoint, data=form, headers=headers)

        if not res.is_success:
            raise RemoteModelError(f"model responded {res.status_code}")

        normalized = normalize_response(ModelResponse.from_httpx(res))
        if normalized is None:
            raise RemoteModelError("unrecognized model response")
        variant, record = normalized
        logger.debug("remote_model_scored", variant=variant, score=record.score, label=record.label)
        return record

    async def analyze_text(self, payload: AnalysisPayload, settings: Settings) -> ScoreRecord:
        try:
            # Whichever of the response or the deadline comes first wins.
            return await asyncio.wait_for(self._predict(payload, settings), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            logger.warning("remote_model_fallback", reason="timeout", timeout_s=self.timeout_s)
        except Exception as e:
            logger.warning("remote_model_fallback", reason=str(e) or type(e).__name__)
        return local_fallback(payload)

    async def ping_backend(self, settings: Settings) -> PingResult:
        endpoint = join_url(settings.ml_base_url, settings.ml_health_path)
        started = time.perf_counter()
        try:
            async with self._client(self.health_timeout_s) as client:
                res = await asyncio.wait_for(client.get(endpoint), timeout=self.health_timeout_s)
        except Exception as e:
            logger.info("remote_model_ping_failed", endpoint=endpoint, reason=str(e) or type(e).__name__)
            return PingResult(ok=False, latency="--")
        latency_ms = int(round((time.perf_counter() - started) * 1000))
        return PingResult(ok=res.is_success, latency=f"{latency_ms}ms")
