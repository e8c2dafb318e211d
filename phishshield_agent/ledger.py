"""
Hash-chained ledger of abuse reports.

Every entry's chainHash is sha256 over "prevHash|hash|at|source", so each
entry commits to the full history before it. The chain keeps only the
newest LEDGER_CHAIN_LIMIT entries while the per-domain counters are never
truncated: a domain's count may exceed the number of its entries still in
the chain.
"""

from __future__ import annotations

import hashlib
import time
from typing import Callable

from pydantic import ValidationError

from .config import AUTO_REPORT_COOLDOWN_MS, LEDGER_CHAIN_LIMIT
from .domains import normalize_domain
from .errors import StorageError
from .log import get_logger
from .models import (
    GENESIS_HASH,
    ChainVerification,
    DomainRecord,
    LedgerEntry,
    LedgerInfo,
    LedgerState,
    ReportResult,
)
from .storage import STORAGE_KEYS, KeyValueStore, WriteLock

logger = get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_domain(raw: str | None) -> tuple[str, str]:
    domain = normalize_domain(raw)
    if not domain:
        return "", ""
    return domain, sha256_hex(domain)


def compute_chain_hash(prev_hash: str, domain_hash: str, at: int, source: str) -> str:
    return sha256_hex(f"{prev_hash}|{domain_hash}|{at}|{source}")


def verify_entries(head: str, chain: list[LedgerEntry]) -> ChainVerification:
    """Check a most-recent-first chain against its head.

    Entry i must hash to its stored chainHash and must link to entry i+1.
    The oldest retained entry's prevHash cannot be checked once older
    entries have been truncated away.
    """
    if not chain:
        ok = head == GENESIS_HASH
        return ChainVerification(ok=ok, checked=0, broken_at=None if ok else 0)
    if head != chain[0].chain_hash:
        return ChainVerification(ok=False, checked=0, broken_at=0)
    for i, entry in enumerate(chain):
        expected = compute_chain_hash(entry.prev_hash, entry.hash, entry.at, entry.source)
        if expected != entry.chain_hash:
            return ChainVerification(ok=False, checked=i, broken_at=i)
        if i + 1 < len(chain) and entry.prev_hash != chain[i + 1].chain_hash:
            return ChainVerification(ok=False, checked=i, broken_at=i)
    return ChainVerification(ok=True, checked=len(chain))


class ReportLedger:
    def __init__(self, store: KeyValueStore, clock: Callable[[], int] | None = None) -> None:
        self.store = store
        self.clock = clock or now_ms
        # Serializes read-modify-write of the persisted ledger object.
        self._write_lock = WriteLock()

    async def load(self) -> LedgerState:
        stored = await self.store.get([STORAGE_KEYS["ledger"]])
        raw = stored.get(STORAGE_KEYS["ledger"])
        if not raw:
            return LedgerState()
        try:
            return LedgerState.model_validate(raw)
        except ValidationError as e:
            raise StorageError(f"Stored ledger is invalid: {e}") from e

    async def save(self, ledger: LedgerState) -> None:
        await self.store.set({STORAGE_KEYS["ledger"]: ledger.model_dump(by_alias=True)})

    async def get_ledger_info(self, raw: str | None) -> LedgerInfo:
        _, domain_hash = hash_domain(raw)
        if not domain_hash:
            return LedgerInfo(hash="", count=0, last_at=None)
        ledger = await self.load()
        record = ledger.domains.get(domain_hash)
        if record is None:
            return LedgerInfo(hash=domain_hash, count=0, last_at=None)
        return LedgerInfo(hash=domain_hash, count=record.count, last_at=record.last_at)

    async def add_ledger_entry(self, raw: str | None, source: str = "manual") -> ReportResult:
        domain, domain_hash = hash_domain(raw)
        if not domain_hash:
            return ReportResult(ok=False, error="Invalid domain.")

        async with self._write_lock:
            try:
                ledger = await self.load()
                at = self.clock()
                prev_hash = ledger.head or GENESIS_HASH
                entry = LedgerEntry(
                    hash=domain_hash,
                    domain=domain,
                    at=at,
                    source=source,
                    prev_hash=prev_hash,
                    chain_hash=compute_chain_hash(prev_hash, domain_hash, at, source),
                )

                record = ledger.domains.get(domain_hash) or DomainRecord()
                record = DomainRecord(count=record.count + 1, last_at=at)
                updated = LedgerState(
                    head=entry.chain_hash,
                    chain=[entry, *ledger.chain][:LEDGER_CHAIN_LIMIT],
                    domains={**ledger.domains, domain_hash: record},
                )
                await self.save(updated)
            except StorageError as e:
                logger.error("ledger_write_failed", domain=domain, error=str(e))
                return ReportResult(ok=False, error=str(e))

        logger.info("ledger_entry_added", domain=domain, source=source, count=record.count)
        return ReportResult(ok=True, hash=domain_hash, domain=domain, count=record.count, last_at=record.last_at)

    async def should_auto_report(self, raw: str | None, cooldown_ms: int = AUTO_REPORT_COOLDOWN_MS) -> bool:
        info = await self.get_ledger_info(raw)
        if not info.last_at:
            return True
        return self.clock() - info.last_at > cooldown_ms

    async def verify_chain(self) -> ChainVerification:
        ledger = await self.load()
        return verify_entries(ledger.head, ledger.chain)

    async def recent_entries(self, limit: int = 20) -> list[LedgerEntry]:
        ledger = await self.load()
        return ledger.chain[: max(0, limit)]
