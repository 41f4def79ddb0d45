from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

from .common import ConversationTurn

logger = logging.getLogger("persona_bot")


class HistoryBuffer:
    """Bounded FIFO of conversation turns for one channel."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("history capacity must be >= 1")
        self.capacity = capacity
        self._turns: deque[ConversationTurn] = deque(maxlen=capacity)

    def append(self, turn: ConversationTurn) -> None:
        self._turns.append(turn)

    def snapshot(self) -> tuple[ConversationTurn, ...]:
        return tuple(self._turns)

    def __len__(self) -> int:
        return len(self._turns)


@dataclass(slots=True)
class _ChannelEntry:
    buffer: HistoryBuffer
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Turns holding or waiting on the lock.
    users: int = 0

    @property
    def busy(self) -> bool:
        return self.users > 0 or self.lock.locked()


class ChannelHistory:
    """Per-channel history buffers and turn locks, bounded by least-recently-used channel eviction.

    Entries with a turn in progress or queued behind one are never evicted, so a channel keeps
    both its buffer and its lock until the last waiting turn has finished. Turns must go
    through ``turn()``.
    """

    def __init__(self, capacity: int, max_channels: int) -> None:
        if max_channels < 1:
            raise ValueError("max_channels must be >= 1")
        self.capacity = capacity
        self.max_channels = max_channels
        self._entries: OrderedDict[str, _ChannelEntry] = OrderedDict()

    def _entry(self, channel_key: str) -> _ChannelEntry:
        entry = self._entries.get(channel_key)
        if entry is None:
            entry = _ChannelEntry(buffer=HistoryBuffer(self.capacity))
            self._entries[channel_key] = entry
            self._evict(keep=channel_key)
        else:
            self._entries.move_to_end(channel_key)
        return entry

    def _evict(self, keep: str) -> None:
        overflow = len(self._entries) - self.max_channels
        if overflow <= 0:
            return
        for key in list(self._entries.keys()):
            if overflow <= 0:
                break
            if key == keep or self._entries[key].busy:
                continue
            del self._entries[key]
            overflow -= 1
            logger.debug("[history.evict] channel=%s", key)

    @asynccontextmanager
    async def turn(self, channel_key: str) -> AsyncIterator[None]:
        """Serializes turns for one channel."""
        entry = self._entry(channel_key)
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1

    def append(self, channel_key: str, turn: ConversationTurn) -> None:
        self._entry(channel_key).buffer.append(turn)

    def snapshot(self, channel_key: str) -> tuple[ConversationTurn, ...]:
        entry = self._entries.get(channel_key)
        if entry is None:
            return ()
        self._entries.move_to_end(channel_key)
        return entry.buffer.snapshot()

    def clear(self, channel_key: str) -> None:
        entry = self._entries.get(channel_key)
        if entry is not None and not entry.busy:
            del self._entries[channel_key]

    def __contains__(self, channel_key: object) -> bool:
        return channel_key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
