"""
Tests for the issue ledger, name cache and run context.
"""

import asyncio
import threading

import pytest

from device_dna._types import CollectionCategory, IssueSeverity
from device_dna.issues import CollectionContext, IssueLedger, NameCache


class TestIssueLedger:
    """Tests for IssueLedger."""

    def test_record_and_snapshot_order(self, ledger):
        """Records come back in append order."""
        ledger.info("Device", "first")
        ledger.warning("Intune", "second")
        ledger.error("SCCM", "third")

        snapshot = ledger.snapshot()
        assert [r.message for r in snapshot] == ["first", "second", "third"]
        assert [r.severity for r in snapshot] == [
            IssueSeverity.INFO, IssueSeverity.WARNING, IssueSeverity.ERROR
        ]

    def test_snapshot_is_a_copy(self, ledger):
        """Mutating a snapshot does not touch the ledger."""
        ledger.info("Device", "kept")
        snapshot = ledger.snapshot()
        snapshot.clear()
        assert len(ledger) == 1

    def test_records_are_immutable(self, ledger):
        """Stored records cannot be changed."""
        record = ledger.error("Device", "boom")
        with pytest.raises(AttributeError):
            record.message = "changed"

    def test_record_accepts_severity_string(self, ledger):
        record = ledger.record("Warning", "Identity", "text")
        assert record.severity == IssueSeverity.WARNING

    def test_counts(self, ledger):
        ledger.info("a", "1")
        ledger.error("a", "2")
        ledger.error("b", "3")
        assert ledger.counts() == {"Info": 1, "Warning": 0, "Error": 2}

    def test_sink_receives_every_record(self):
        """Each record is forwarded to the sink."""
        received = []
        ledger = IssueLedger(sink=lambda severity, phase, message: received.append((severity, phase, message)))
        ledger.warning("Intune", "export job timed out")
        assert received == [(IssueSeverity.WARNING, "Intune", "export job timed out")]

    def test_to_dict_shape(self, ledger):
        data = ledger.error("SCCM", "probe failed").to_dict()
        assert data["severity"] == "Error"
        assert data["phase"] == "SCCM"
        assert data["message"] == "probe failed"
        assert "timestamp" in data

    def test_concurrent_appends_from_threads(self, ledger):
        """No entries are lost under concurrent appends."""
        def worker(n):
            for i in range(200):
                ledger.info(f"t{n}", str(i))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(ledger) == 1600
        for n in range(8):
            messages = [r.message for r in ledger.snapshot() if r.phase == f"t{n}"]
            assert messages == [str(i) for i in range(200)]


class TestNameCache:
    """Tests for NameCache."""

    def test_put_if_absent_keeps_first(self):
        cache = NameCache()
        assert cache.put_if_absent("g1", "Pilot") == "Pilot"
        assert cache.put_if_absent("g1", "Other") == "Pilot"
        assert cache.get("g1") == "Pilot"

    @pytest.mark.asyncio
    async def test_concurrent_resolution_shares_one_lookup(self):
        """Concurrent callers for the same key trigger a single resolver call."""
        cache = NameCache()
        calls = []

        async def resolver(key):
            calls.append(key)
            await asyncio.sleep(0.01)
            return f"name-{key}"

        results = await asyncio.gather(*[cache.get_or_resolve("g1", resolver) for _ in range(5)])

        assert results == ["name-g1"] * 5
        assert calls == ["g1"]
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_cached_value_skips_resolver(self):
        cache = NameCache()
        cache.put_if_absent("g1", "Known")

        async def resolver(key):
            raise AssertionError("should not resolve")

        assert await cache.get_or_resolve("g1", resolver) == "Known"

    @pytest.mark.asyncio
    async def test_failed_resolution_is_not_cached(self):
        """A failing resolver propagates and a later call retries."""
        cache = NameCache()

        async def failing(key):
            raise RuntimeError("lookup failed")

        async def working(key):
            return "Recovered"

        with pytest.raises(RuntimeError):
            await cache.get_or_resolve("g1", failing)
        assert await cache.get_or_resolve("g1", working) == "Recovered"


class TestCollectionContext:

    def test_is_skipped_accepts_enum_or_string(self):
        context = CollectionContext(skip=frozenset({"sccm"}))
        assert context.is_skipped(CollectionCategory.SCCM)
        assert context.is_skipped("sccm")
        assert not context.is_skipped(CollectionCategory.INTUNE)

    def test_contexts_do_not_share_state(self):
        a = CollectionContext()
        b = CollectionContext()
        a.ledger.info("x", "y")
        assert len(b.ledger) == 0
        assert a.names is not b.names
