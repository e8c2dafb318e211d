"""
Tests for the hash-chained report ledger.
"""

from __future__ import annotations

import asyncio
import hashlib

import pytest

import phishshield_agent.ledger as ledger_mod
from conftest import BrokenStore, FakeClock, YieldingStore, run
from phishshield_agent.ledger import (
    ReportLedger,
    compute_chain_hash,
    hash_domain,
    verify_entries,
)
from phishshield_agent.models import GENESIS_HASH, LedgerState

HOUR_MS = 60 * 60 * 1000


def test_hash_domain_normalizes_first():
    domain, digest = hash_domain("https://WWW.Phish.example/login")
    assert domain == "phish.example"
    assert digest == hashlib.sha256(b"phish.example").hexdigest()
    assert len(digest) == 64
    assert hash_domain("   ") == ("", "")


def test_info_for_unknown_domain(ledger):
    info = run(ledger.get_ledger_info("never.example"))
    assert info.count == 0
    assert info.last_at is None
    assert info.hash == hash_domain("never.example")[1]


def test_invalid_domain_is_rejected(ledger, store):
    res = run(ledger.add_ledger_entry("", "manual"))
    assert res.ok is False
    assert res.error == "Invalid domain."
    assert run(store.get(["ledger"])) == {}


def test_add_entries_builds_linked_chain(ledger, clock):
    first = run(ledger.add_ledger_entry("phish.example", "manual"))
    clock.advance(1000)
    second = run(ledger.add_ledger_entry("https://www.phish.example/a", "auto"))
    clock.advance(1000)
    run(ledger.add_ledger_entry("other.example"))

    assert first.ok and first.count == 1
    assert second.ok and second.count == 2
    assert second.last_at == clock.now - 1000

    state = run(ledger.load())
    assert len(state.chain) == 3
    assert state.head == state.chain[0].chain_hash
    oldest = state.chain[-1]
    assert oldest.prev_hash == GENESIS_HASH
    assert oldest.chain_hash == hashlib.sha256(
        f"{GENESIS_HASH}|{oldest.hash}|{oldest.at}|{oldest.source}".encode()
    ).hexdigest()
    for newer, older in zip(state.chain, state.chain[1:]):
        assert newer.prev_hash == older.chain_hash
    assert state.chain[0].domain == "other.example"
    assert state.chain[0].source == "manual"


def test_recomputed_hashes_match_stored(ledger, clock):
    for i in range(5):
        run(ledger.add_ledger_entry(f"site{i}.example"))
        clock.advance(7)
    state = run(ledger.load())
    for e in state.chain:
        assert compute_chain_hash(e.prev_hash, e.hash, e.at, e.source) == e.chain_hash
    assert run(ledger.verify_chain()).ok is True
    assert run(ledger.verify_chain()).checked == 5


def test_tampering_is_detected(ledger, store, clock):
    for i in range(5):
        run(ledger.add_ledger_entry(f"site{i}.example"))
        clock.advance(10)

    raw = store._data["ledger"]
    raw["chain"][3]["source"] = "forged"

    result = run(ledger.verify_chain())
    assert result.ok is False
    assert result.broken_at == 3


def test_tampering_breaks_every_later_link(ledger, store, clock):
    for i in range(5):
        run(ledger.add_ledger_entry(f"site{i}.example"))
        clock.advance(10)

    raw = store._data["ledger"]
    raw["chain"][3]["at"] += 1
    state = LedgerState.model_validate(raw)

    # Re-chain from the oldest entry using stored fields: from the mutated
    # entry onward no recomputed hash matches what was stored.
    oldest_first = list(reversed(state.chain))
    prev = oldest_first[0].prev_hash
    matches = []
    for e in oldest_first:
        prev = compute_chain_hash(prev, e.hash, e.at, e.source)
        matches.append(prev == e.chain_hash)
    assert matches == [True, False, False, False, False]


def test_forged_head_is_detected(ledger, store):
    run(ledger.add_ledger_entry("a.example"))
    store._data["ledger"]["head"] = "f" * 64
    assert run(ledger.verify_chain()).ok is False


def test_empty_chain_verifies():
    assert verify_entries(GENESIS_HASH, []).ok is True
    assert verify_entries("1" * 64, []).ok is False


def test_count_outlives_truncated_chain(ledger, monkeypatch):
    monkeypatch.setattr(ledger_mod, "LEDGER_CHAIN_LIMIT", 5)
    for _ in range(8):
        run(ledger.add_ledger_entry("phish.example"))

    state = run(ledger.load())
    info = run(ledger.get_ledger_info("phish.example"))
    assert len(state.chain) == 5
    # The count is never truncated, so it exceeds what the chain retains.
    assert info.count == 8
    assert info.count > len(state.chain)
    assert state.head == state.chain[0].chain_hash
    assert run(ledger.verify_chain()).ok is True


def test_should_auto_report_cooldown(ledger, clock):
    assert run(ledger.should_auto_report("phish.example")) is True

    run(ledger.add_ledger_entry("phish.example"))
    run(ledger.add_ledger_entry("phish.example"))

    assert run(ledger.should_auto_report("phish.example")) is False
    assert run(ledger.should_auto_report("phish.example", 0)) is False

    clock.advance(1)
    assert run(ledger.should_auto_report("phish.example", 0)) is True
    assert run(ledger.should_auto_report("phish.example")) is False

    clock.advance(12 * HOUR_MS)
    assert run(ledger.should_auto_report("phish.example")) is True


def test_concurrent_adds_do_not_lose_updates():
    store = YieldingStore()
    ledger = ReportLedger(store, clock=FakeClock())

    async def flood():
        results = await asyncio.gather(
            *(ledger.add_ledger_entry("phish.example", "auto") for _ in range(25)),
            *(ledger.add_ledger_entry("other.example", "manual") for _ in range(5)),
        )
        return results

    results = run(flood())
    assert all(r.ok for r in results)
    assert run(ledger.get_ledger_info("phish.example")).count == 25
    assert run(ledger.get_ledger_info("other.example")).count == 5
    state = run(ledger.load())
    assert len(state.chain) == 30
    assert run(ledger.verify_chain()).ok is True


def test_storage_failure_is_reported_not_swallowed():
    store = BrokenStore()
    ledger = ReportLedger(store, clock=FakeClock())
    res = run(ledger.add_ledger_entry("phish.example"))
    assert res.ok is False
    assert "disk full" in res.error
    assert run(ledger.get_ledger_info("phish.example")).count == 0


def test_recent_entries(ledger, clock):
    for i in range(4):
        run(ledger.add_ledger_entry(f"site{i}.example"))
        clock.advance(1)
    recent = run(ledger.recent_entries(2))
    assert [e.domain for e in recent] == ["site3.example", "site2.example"]


@pytest.mark.parametrize("raw", ["https://Phish.Example", "phish.example/", "www.phish.example"])
def test_equivalent_spellings_share_a_counter(ledger, raw):
    run(ledger.add_ledger_entry("phish.example"))
    assert run(ledger.get_ledger_info(raw)).count == 1


def test_ledger_is_reusable_across_event_loops():
    store = YieldingStore()
    ledger = ReportLedger(store, clock=FakeClock())

    async def burst(n):
        await asyncio.gather(*(ledger.add_ledger_entry("phish.example") for _ in range(n)))

    run(burst(3))
    run(burst(3))
    assert run(ledger.get_ledger_info("phish.example")).count == 6
    assert run(ledger.verify_chain()).ok is True
