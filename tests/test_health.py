from __future__ import annotations

import asyncio

from fakes import FakeProvider, FakeVecService
from memory_engine.config import default_plugin_config
from memory_engine.db import DB
from memory_engine.health import REINDEX_NOT_OPERATIONAL, HealthMonitor
from memory_engine.memory import MemoryService
from memory_engine.types import CreateMemoryInput, ModelIdentity


def _run(coro):
    return asyncio.run(coro)


async def _setup(tmp_path, provider):
    db = DB(str(tmp_path / "memory.db"))
    await db.init()
    vec = FakeVecService(db)
    await vec.initialize(provider.dimensions)
    memory = MemoryService(db, provider, vec=vec)
    monitor = HealthMonitor(db, default_plugin_config(str(tmp_path)), provider, str(tmp_path))
    return memory, monitor


class TestHealthMonitor:
    def test_report_before_and_after_reindex(self, tmp_path):
        async def main():
            memory, monitor = await _setup(tmp_path, FakeProvider())
            await memory.create(CreateMemoryInput("proj", "decision", "use sqlite"))
            before = await monitor.check()
            reindex = await monitor.reindex(memory)
            after = await monitor.snapshot()
            text = monitor.format(after)
            await memory.destroy()
            return before, reindex, after, text

        before, reindex, after, text = _run(main())
        assert before.startswith("Memory Plugin Health: OK")
        assert "  Provider: fake:64d (64d)" in before
        assert "  Server running: false" in before
        assert "  Total memories: 1" in before
        assert "  Indexed: none" in before
        assert 'Reindex required - run memory-health with action "reindex"' in before

        assert reindex.splitlines()[:5] == ["Reindex complete", "", "Total memories: 1", "Embedded: 1", "Failed: 0"]
        assert after.current_model == ModelIdentity("all-MiniLM-L6-v2", 384)
        assert not after.needs_reindex
        assert "  In sync" in text

    def test_broken_provider_refuses_reindex(self, tmp_path):
        async def main():
            memory, monitor = await _setup(tmp_path, FakeProvider(fail=True))
            status = await monitor.snapshot()
            out = await monitor.reindex(memory)
            ran = await monitor.auto_validate(memory)
            await memory.destroy()
            return status, out, ran

        status, out, ran = _run(main())
        assert status.overall_status == "degraded"
        assert out == REINDEX_NOT_OPERATIONAL
        assert ran is False

    def test_auto_validate_reindexes_on_drift_only(self, tmp_path):
        async def main():
            memory, monitor = await _setup(tmp_path, FakeProvider())
            await memory.create(CreateMemoryInput("proj", "context", "first"))
            await monitor.metadata.set_embedding_model("old-model", 384)
            drifted = await monitor.auto_validate(memory)
            again = await monitor.auto_validate(memory)
            await memory.destroy()
            return drifted, again

        assert _run(main()) == (True, False)

    def test_malformed_metadata_counts_as_unindexed(self, tmp_path):
        async def main():
            memory, monitor = await _setup(tmp_path, FakeProvider())
            await monitor.metadata.set("embedding_model", "{not json")
            status = await monitor.snapshot()
            await memory.destroy()
            return status

        status = _run(main())
        assert status.current_model is None
        assert status.needs_reindex
