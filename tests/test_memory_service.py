from __future__ import annotations

import asyncio

import pytest

from fakes import FakeProvider, FakeVecService
from memory_engine.db import DB
from memory_engine.memory import MemoryService, clamp_dedup_threshold
from memory_engine.types import CreateMemoryInput, MemoryNotFoundError


def _run(coro):
    return asyncio.run(coro)


async def _service(tmp_path, provider=None, with_vec=True):
    db = DB(str(tmp_path / "memory.db"))
    await db.init()
    provider = provider or FakeProvider()
    service = MemoryService(db, provider)
    if with_vec:
        vec = FakeVecService(db)
        await vec.initialize(provider.dimensions)
        service.set_vec_service(vec)
    return service


def _input(content, project="proj-a", scope="convention"):
    return CreateMemoryInput(project_id=project, scope=scope, content=content)


def test_exact_duplicate_returns_existing_id(tmp_path) -> None:
    async def main():
        service = await _service(tmp_path)
        first = await service.create(_input("Use tabs for indentation in Makefiles"))
        second = await service.create(_input("Use tabs for indentation in Makefiles"))
        count = await service.count_by_project("proj-a")
        await service.destroy()
        return first, second, count

    first, second, count = _run(main())
    assert first.deduplicated is False
    assert second.deduplicated is True
    assert second.id == first.id
    assert count == 1


def test_near_duplicate_is_merged_and_distinct_is_kept(tmp_path) -> None:
    async def main():
        service = await _service(tmp_path)
        a = await service.create(_input("always run the linter before committing code"))
        # Same words, different order and case: identical bag of words.
        b = await service.create(_input("Before committing code always run the linter"))
        c = await service.create(_input("database migrations live under backend/db"))
        count = await service.count_by_project("proj-a")
        await service.destroy()
        return a, b, c, count

    a, b, c, count = _run(main())
    assert b.deduplicated is True and b.id == a.id
    assert c.deduplicated is False and c.id != a.id
    assert count == 2


def test_dedup_never_crosses_projects(tmp_path) -> None:
    async def main():
        service = await _service(tmp_path)
        a = await service.create(_input("prefer httpx over requests", project="proj-a"))
        b = await service.create(_input("prefer httpx over requests", project="proj-b"))
        hits_a = await service.search("httpx requests", "proj-a")
        hits_b = await service.search("httpx requests", "proj-b")
        await service.destroy()
        return a, b, hits_a, hits_b

    a, b, hits_a, hits_b = _run(main())
    assert b.deduplicated is False
    assert a.id != b.id
    assert [r.memory.id for r in hits_a] == [a.id]
    assert [r.memory.id for r in hits_b] == [b.id]


def test_search_ranks_by_distance(tmp_path) -> None:
    async def main():
        service = await _service(tmp_path)
        await service.create(_input("frontend uses react with vite"))
        target = await service.create(_input("backend api written in python with aiosqlite"))
        results = await service.search("python aiosqlite backend", "proj-a", limit=5)
        await service.destroy()
        return target, results

    target, results = _run(main())
    assert results[0].memory.id == target.id
    distances = [r.distance for r in results]
    assert distances == sorted(distances)


def test_noop_store_falls_back_to_recency(tmp_path) -> None:
    async def main():
        service = await _service(tmp_path, with_vec=False)
        first = await service.create(_input("first fact"))
        await asyncio.sleep(0.01)
        second = await service.create(_input("second fact"))
        dup = await service.create(_input("first fact"))
        before = await service.search("anything at all", "proj-a")
        await asyncio.sleep(0.01)
        await service.update(first.id, content="first fact, revised")
        after = await service.search("anything at all", "proj-a")
        await service.destroy()
        return first, second, dup, before, after

    first, second, dup, before, after = _run(main())
    # Exact-content dedup still works without vectors.
    assert dup.deduplicated is True and dup.id == first.id
    assert [r.memory.id for r in before] == [second.id, first.id]
    assert [r.memory.id for r in after] == [first.id, second.id]
    stamps = [r.memory.updated_at for r in after]
    assert stamps == sorted(stamps, reverse=True)
    assert all(r.distance == 1.0 for r in before + after)


def test_failed_embedding_is_not_indexed_and_search_degrades(tmp_path) -> None:
    async def main():
        provider = FakeProvider(fail=True)
        service = await _service(tmp_path, provider=provider)
        created = await service.create(_input("stored while the model was down"))
        results = await service.search("model", "proj-a")
        missing = await service.count_memories_without_embeddings("proj-a")
        inserted = list(service.vec.inserted)
        await service.destroy()
        return created, results, missing, inserted

    created, results, missing, inserted = _run(main())
    assert created.deduplicated is False
    assert inserted == []
    assert missing == 1
    assert [r.memory.id for r in results] == [created.id]
    assert results[0].distance == 1.0


def test_update_and_delete(tmp_path) -> None:
    async def main():
        service = await _service(tmp_path)
        created = await service.create(_input("old wording", scope="decision"))
        service.vec.operations.clear()
        await service.update(created.id, content="new wording", scope="context")
        operations = list(service.vec.operations)
        vectors = await service.vec.count()
        hits = await service.search("new wording", "proj-a")
        updated = await service.get_by_id(created.id)
        await service.delete(created.id)
        gone = await service.get_by_id(created.id)
        left = await service.vec.count()
        with pytest.raises(MemoryNotFoundError):
            await service.update(created.id, content="x")
        with pytest.raises(MemoryNotFoundError):
            await service.delete(created.id)
        await service.destroy()
        return created, operations, vectors, hits, updated, gone, left

    created, operations, vectors, hits, updated, gone, left = _run(main())
    # The old vector is removed before the new one is written.
    assert operations == [("delete", created.id), ("insert", created.id)]
    assert vectors == 1
    assert hits[0].memory.id == created.id
    assert hits[0].distance == pytest.approx(0.0, abs=1e-9)
    assert updated.content == "new wording"
    assert updated.scope == "context"
    assert gone is None
    assert left == 0


def test_stats_are_cached_and_invalidated_on_write(tmp_path) -> None:
    async def main():
        service = await _service(tmp_path)
        await service.create(_input("a convention"))
        before = await service.get_stats("proj-a")
        await service.create(_input("a decision about caching", scope="decision"))
        after = await service.get_stats("proj-a")
        await service.destroy()
        return before, after

    before, after = _run(main())
    assert before.total == 1
    assert after.total == 2
    assert after.by_scope == {"convention": 1, "decision": 1}


def test_reindex_embeds_everything(tmp_path) -> None:
    async def main():
        provider = FakeProvider(fail=True)
        service = await _service(tmp_path, provider=provider)
        await service.create(_input("one"))
        await service.create(_input("two"))
        provider.fail = False
        result = await service.reindex()
        missing = await service.count_memories_without_embeddings()
        await service.destroy()
        return result, missing

    result, missing = _run(main())
    assert (result.total, result.success, result.failed) == (2, 2, 0)
    assert missing == 0


def test_dedup_threshold_is_clamped() -> None:
    assert clamp_dedup_threshold(0.0) == 0.05
    assert clamp_dedup_threshold(0.9) == 0.40
    assert clamp_dedup_threshold(0.2) == 0.2
