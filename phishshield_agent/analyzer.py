from __future__ import annotations

import asyncio
from typing import Callable

from .config import WATCHDOG_S
from .domains import is_trusted_domain
from .fusion import apply_ledger_boost, derive_label, error_result, fuse_scores, trusted_result
from .ledger import ReportLedger, now_ms
from .log import get_logger
from .ml_bridge import TEXT_MODEL_OFFLINE, RemoteModelClient
from .models import AnalysisPayload, FusedResult, ReportResult, ReportStatus
from .storage import StateStore

logger = get_logger(__name__)

AUTO_REPORT_SOURCE = "auto"


class Analyzer:
    """Runs one risk assessment per call.

    Order within a call is fixed: trusted-domain check, remote model (with
    local fallback), ledger lookup, fusion, ledger boost, label, auto-report,
    then the last-scan write.
    """

    def __init__(
        self,
        state: StateStore,
        ledger: ReportLedger,
        remote: RemoteModelClient,
        *,
        watchdog_s: float = WATCHDOG_S,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.state = state
        self.ledger = ledger
        self.remote = remote
        self.watchdog_s = watchdog_s
        self.clock = clock or now_ms

    async def analyze(self, payload: AnalysisPayload) -> FusedResult:
        settings = await self.state.get_settings()
        threshold = float(settings.global_threshold)

        if is_trusted_domain(payload.url, settings.trusted_domains):
            result = trusted_result(payload.url, threshold, self.clock())
            await self.state.set_last_scan(result, settings)
            logger.info("analysis_trusted", url=payload.url)
            return result

        record = await self.remote.analyze_text(payload, settings)
        url_score = record.url_score if record.url_score is not None else record.score
        text_score = record.text_score

        ledger_count = 0
        if settings.ledger_enabled:
            ledger_count = (await self.ledger.get_ledger_info(payload.url)).count

        risk_score, fusion_signals = fuse_scores(url_score, text_score)
        signals = [*record.signals, *fusion_signals]

        if settings.ledger_enabled:
            risk_score, boost_signals = apply_ledger_boost(risk_score, ledger_count, settings.ledger_boost)
            signals.extend(boost_signals)

        label = derive_label(risk_score, url_score, text_score, threshold)

        reported = False
        try:
            if settings.auto_report and settings.ledger_enabled and label == "phishing":
                if await self.ledger.should_auto_report(payload.url):
                    reported = True
                    report = await self.ledger.add_ledger_entry(payload.url, AUTO_REPORT_SOURCE)
                    if report.ok and report.count is not None:
                        ledger_count = report.count

            result = FusedResult(
                risk_score=risk_score,
                label=label,
                signals=signals,
                engine=record.source,
                url_score=url_score,
                url_label=record.url_label or record.label,
                text_score=text_score,
                text_label=record.text_label,
                text_error=TEXT_MODEL_OFFLINE if record.text_label == TEXT_MODEL_OFFLINE else None,
                threshold=threshold,
                ledger_count=ledger_count,
                at=self.clock(),
                url=payload.url,
            )
            await self.state.set_last_scan(result, settings)
        except asyncio.CancelledError:
            # A ledger entry already written is kept; the caller sees an error result.
            if reported:
                logger.warning("auto_report_outlived_analysis", url=payload.url, ledger_count=ledger_count)
            raise
        logger.info(
            "analysis_complete",
            url=payload.url,
            engine=result.engine,
            risk_score=round(result.risk_score, 4),
            label=result.label,
            ledger_count=ledger_count,
        )
        return result

    async def analyze_safely(self, payload: AnalysisPayload, watchdog_s: float | None = None) -> FusedResult:
        """analyze() bounded by the watchdog; never raises.

        On timeout the inner call is cancelled, so a late model response is
        dropped instead of overwriting the last scan.
        """
        timeout = self.watchdog_s if watchdog_s is None else watchdog_s
        try:
            return await asyncio.wait_for(self.analyze(payload), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("analysis_timed_out", url=payload.url, watchdog_s=timeout)
            return error_result("analysis timed out", payload.url, self.clock())
        except Exception as e:
            logger.exception("analysis_failed", url=payload.url)
            return error_result(str(e) or "analysis failed", payload.url, self.clock())

    async def add_report(self, url: str, source: str = "manual") -> ReportResult:
        return await self.ledger.add_ledger_entry(url, source)

    async def report_status(self, url: str) -> ReportStatus:
        info = await self.ledger.get_ledger_info(url)
        return ReportStatus(count=info.count, last_at=info.last_at)
