from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Mapping, Sequence

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from persona_bot.conversation.common import PendingConsolidation  # noqa: E402
from persona_bot.conversation.consolidation import ConsolidationPipeline, build_memories  # noqa: E402
from persona_bot.memory.models import Memory, MemoryKind, Persona  # noqa: E402
from persona_bot.memory.store import MemoryStore  # noqa: E402


PERSONA = Persona(id="p1", guild_id="g1", name="Nova", persona_prompt="A curious archivist.")


def _job(channel_key: str = "c1") -> PendingConsolidation:
    return PendingConsolidation(
        persona=PERSONA,
        channel_key=channel_key,
        transcript_lines=["Alice: I just adopted a cat named Miso", "Nova: Miso is a wonderful name!"],
        participants={"Alice": "u1"},
    )


class _FakeSummarizer:
    def __init__(self, candidates: list[dict[str, Any]] | None = None, *, fail: bool = False) -> None:
        self.candidates = candidates or []
        self.fail = fail
        self.calls: list[tuple[str, list[str], dict[str, str]]] = []

    async def summarize(
        self,
        persona_name: str,
        transcript_lines: Sequence[str],
        participants: Mapping[str, str],
    ) -> list[dict[str, Any]]:
        self.calls.append((persona_name, list(transcript_lines), dict(participants)))
        if self.fail:
            raise RuntimeError("summarizer offline")
        return self.candidates


class _FakeStore:
    def __init__(self) -> None:
        self.batches: list[list[Memory]] = []

    async def create_memories(self, memories: Sequence[Memory]) -> int:
        self.batches.append(list(memories))
        return len(memories)


def test_build_memories_validates_candidates() -> None:
    candidates = [
        {"user_id": "u1", "memory_type": "fact", "content": "Alice adopted a cat named Miso.", "salience_score": 7},
        {"user_id": "Alice", "memory_type": "preference", "content": "Alice loves cats.", "salience_score": 14},
        {"user_id": "", "memory_type": "interaction_summary", "content": "I chatted about pets.", "salience_score": 2},
        {"user_id": "u999", "memory_type": "fact", "content": "A stranger is mentioned.", "salience_score": 5},
        {"user_id": "u1", "memory_type": "gossip", "content": "Unknown kind.", "salience_score": 5},
        {"user_id": "u1", "memory_type": "fact", "content": "   ", "salience_score": 5},
        {"user_id": "u1", "memory_type": "fact", "content": "Alice adopted a cat named Miso.", "salience_score": 3},
    ]

    memories = build_memories(_job(), candidates)

    assert [(m.kind, m.subject_user_id, m.salience) for m in memories] == [
        (MemoryKind.FACT, "u1", 7),
        (MemoryKind.PREFERENCE, "u1", 10),
        (MemoryKind.INTERACTION_SUMMARY, None, 2),
    ]
    assert all(memory.persona_id == "p1" for memory in memories)


def test_process_persists_one_batch() -> None:
    store = _FakeStore()
    summarizer = _FakeSummarizer(
        [
            {"user_id": "u1", "memory_type": "fact", "content": "Alice has a cat.", "salience_score": 6},
            {"memory_type": "relationship", "content": "Alice and I are becoming friends.", "salience_score": 5},
        ]
    )
    pipeline = ConsolidationPipeline(store, summarizer)

    saved = asyncio.run(pipeline.process(_job()))

    assert saved == 2
    assert len(store.batches) == 1
    assert summarizer.calls == [
        ("Nova", ["Alice: I just adopted a cat named Miso", "Nova: Miso is a wonderful name!"], {"Alice": "u1"})
    ]


def test_worker_drains_queue_and_survives_failures(caplog: pytest.LogCaptureFixture) -> None:
    store = _FakeStore()
    summarizer = _FakeSummarizer(fail=True)
    pipeline = ConsolidationPipeline(store, summarizer, queue_size=4, workers=2)

    async def scenario() -> None:
        pipeline.start()
        assert pipeline.submit(_job("c1"))
        assert pipeline.submit(_job("c2"))
        await asyncio.wait_for(pipeline.queue.join(), timeout=2.0)
        assert pipeline.running
        await pipeline.close()

    with caplog.at_level(logging.ERROR, logger="persona_bot"):
        asyncio.run(scenario())

    assert len(summarizer.calls) == 2
    assert store.batches == []
    assert not pipeline.running
    assert "Memory consolidation failed" in caplog.text


def test_full_queue_drops_oldest_job() -> None:
    pipeline = ConsolidationPipeline(_FakeStore(), _FakeSummarizer(), queue_size=2)

    async def scenario() -> list[str]:
        for key in ("c1", "c2", "c3"):
            pipeline.submit(_job(key))
        return [pipeline.queue.get_nowait().channel_key for _ in range(pipeline.queue.qsize())]

    assert asyncio.run(scenario()) == ["c2", "c3"]
    assert pipeline.dropped == 1


def test_disabled_pipeline_accepts_nothing() -> None:
    pipeline = ConsolidationPipeline(_FakeStore(), _FakeSummarizer(), enabled=False)

    async def scenario() -> bool:
        pipeline.start()
        return pipeline.submit(_job())

    assert asyncio.run(scenario()) is False
    assert pipeline.queue.qsize() == 0
    assert not pipeline.running


def test_consolidation_writes_to_sqlite_store(tmp_path: Path) -> None:
    async def scenario() -> list[Memory]:
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        await store.create_persona(PERSONA)
        summarizer = _FakeSummarizer(
            [{"user_id": "u1", "memory_type": "fact", "content": "Alice has a cat named Miso.", "salience_score": 8}]
        )
        await ConsolidationPipeline(store, summarizer).process(_job())
        return await store.retrieve_memories("p1", {"u1"})

    memories = asyncio.run(scenario())

    assert [(m.content, m.subject_user_id, m.salience) for m in memories] == [("Alice has a cat named Miso.", "u1", 8)]
