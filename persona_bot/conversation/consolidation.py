from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Mapping, Protocol, Sequence

from ..memory.models import Memory, MemoryKind, clamp_salience
from ..memory.storage.utils import sanitize_memory_content
from .common import PendingConsolidation

logger = logging.getLogger("persona_bot")


class Summarizer(Protocol):
    async def summarize(
        self,
        persona_name: str,
        transcript_lines: Sequence[str],
        participants: Mapping[str, str],
    ) -> list[dict[str, Any]]: ...


class MemoryWriter(Protocol):
    async def create_memories(self, memories: Sequence[Memory]) -> int: ...


def _resolve_subject(raw: object, participants: Mapping[str, str]) -> tuple[bool, str | None]:
    """Maps a candidate's subject onto a known participant id.

    Returns ``(ok, subject_id)``; ``ok`` is False when the candidate names someone who
    did not take part in the conversation.
    """
    value = str(raw or "").strip()
    if not value or value.casefold() in {"none", "null", "persona", "self"}:
        return True, None
    known_ids = set(participants.values())
    if value in known_ids:
        return True, value
    by_label = {label.casefold(): user_id for label, user_id in participants.items()}
    mapped = by_label.get(value.lstrip("@").casefold())
    if mapped is not None:
        return True, mapped
    return False, None


def build_memories(job: PendingConsolidation, candidates: Sequence[Mapping[str, Any]]) -> list[Memory]:
    memories: list[Memory] = []
    seen: set[tuple[str | None, str]] = set()
    for candidate in candidates:
        kind = MemoryKind.parse(candidate.get("memory_type") or candidate.get("kind"))
        if kind is None:
            continue
        content = sanitize_memory_content(str(candidate.get("content") or ""))
        if not content:
            continue
        ok, subject = _resolve_subject(candidate.get("user_id"), job.participants)
        if not ok:
            logger.debug("[memory.consolidate] dropped candidate about unknown subject %r", candidate.get("user_id"))
            continue
        key = (subject, content.casefold())
        if key in seen:
            continue
        seen.add(key)
        memories.append(
            Memory(
                persona_id=job.persona.id,
                kind=kind,
                content=content,
                salience=clamp_salience(candidate.get("salience_score", candidate.get("salience"))),
                subject_user_id=subject,
            )
        )
    return memories


class ConsolidationPipeline:
    """Background conversion of finished transcripts into long-term persona memories.

    ``submit`` never blocks the reply path: jobs go to a bounded queue and the oldest
    pending job is dropped when it is full. Each job costs one summarization call; any
    failure is logged and yields no memories.
    """

    def __init__(
        self,
        store: MemoryWriter,
        summarizer: Summarizer,
        *,
        queue_size: int = 200,
        workers: int = 1,
        enabled: bool = True,
    ) -> None:
        self.store = store
        self.summarizer = summarizer
        self.enabled = enabled
        self.worker_count = max(1, int(workers))
        self.queue: asyncio.Queue[PendingConsolidation] = asyncio.Queue(maxsize=max(1, int(queue_size)))
        self._tasks: list[asyncio.Task[None]] = []
        self.dropped = 0

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if not self.enabled or self.running:
            return
        self._tasks = [
            asyncio.create_task(self._worker(), name=f"memory-consolidation-{index}")
            for index in range(self.worker_count)
        ]
        logger.info("[memory.consolidate] started workers=%s", self.worker_count)

    async def close(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def submit(self, job: PendingConsolidation) -> bool:
        if not self.enabled:
            return False
        if not job.transcript_lines:
            return False

        if self.queue.full():
            try:
                dropped = self.queue.get_nowait()
                self.queue.task_done()
                self.dropped += 1
                logger.warning(
                    "[memory.consolidate] queue full, dropped oldest job persona=%s channel=%s",
                    dropped.persona.id,
                    dropped.channel_key,
                )
            except asyncio.QueueEmpty:
                pass

        try:
            self.queue.put_nowait(job)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    async def process(self, job: PendingConsolidation) -> int:
        candidates = await self.summarizer.summarize(job.persona.name, job.transcript_lines, job.participants)
        memories = build_memories(job, candidates)
        if not memories:
            logger.debug("[memory.consolidate] nothing to remember persona=%s", job.persona.id)
            return 0
        saved = await self.store.create_memories(memories)
        logger.info(
            "[memory.consolidate] persona=%s channel=%s candidates=%s saved=%s",
            job.persona.id,
            job.channel_key,
            len(candidates),
            saved,
        )
        return saved

    async def _worker(self) -> None:
        while True:
            job = await self.queue.get()
            try:
                await self.process(job)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Memory consolidation failed for persona=%s channel=%s",
                    getattr(job.persona, "id", ""),
                    job.channel_key,
                )
            finally:
                self.queue.task_done()
