"""Scrollback cache — bounded per-session output history with replay."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field

from shellkeep.config import BufferConfig
from shellkeep.session.wire import EventType, Wire
from shellkeep.store import BufferRow, SessionStore

logger = logging.getLogger(__name__)

# Device-attribute responses (DA1 ``ESC[?...c`` / DA2 ``ESC[>...c``) echoed
# back after a tmux reattach probes the terminal. The ESC-less forms show up
# when the escape byte was consumed upstream.
_DEVICE_ATTRIBUTE_PATTERNS = [
    re.compile(r"\x1b\[\?[\d;]*c"),
    re.compile(r"\x1b\[>[\d;]*c"),
    re.compile(r"\[\?[\d;]*c"),
    re.compile(r"\[>[\d;]*c"),
]


def filter_device_attribute_responses(output: str) -> str:
    for pattern in _DEVICE_ATTRIBUTE_PATTERNS:
        output = pattern.sub("", output)
    return output


@dataclass
class ScrollbackBuffer:
    """Raw output chunks of one session, in receipt order.

    ``disconnect_index`` is the chunk count at the last disconnect; it
    always stays within ``[0, len(chunks)]``.
    """

    session_id: str
    chunks: list[str] = field(default_factory=list)
    total_chunks: int = 0  # Chunks ever appended, trimmed ones included
    last_flush_at: float = field(default_factory=time.time)
    disconnect_index: int | None = None
    disconnect_time: float | None = None


@dataclass
class BufferSnapshot:
    session_id: str
    output: str
    disconnect_time: float | None
    reconnect_time: float


@dataclass
class BufferStats:
    session_id: str
    chunk_count: int
    max_chunks: int
    usage_percent: float
    total_chunks_written: int
    memory_bytes: int


class ScrollbackCache:
    """In-memory scrollback for every session, flushed to the row store.

    Chunks are stored exactly as received from the process, never split
    into lines, so escape sequences and carriage returns replay verbatim.
    Each append publishes a ``BUFFER_OUTPUT`` event on the cache's wire.
    """

    def __init__(
        self,
        config: BufferConfig | None = None,
        store: SessionStore | None = None,
        wire: Wire | None = None,
    ) -> None:
        self._config = config or BufferConfig()
        self._store = store
        self._wire = wire or Wire()
        self._buffers: dict[str, ScrollbackBuffer] = {}
        self._flush_task: asyncio.Task | None = None

    @property
    def wire(self) -> Wire:
        return self._wire

    @property
    def max_chunks(self) -> int:
        return self._config.max_chunks

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic flush task (when persisting to disk)."""
        if not self._config.persist_to_disk or self._store is None:
            return
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._flush_loop())

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.flush_interval)
            try:
                self.flush()
            except Exception:
                logger.exception("Periodic scrollback flush failed")

    def flush(self) -> None:
        """Persist every buffer now."""
        for session_id in list(self._buffers):
            self._persist_buffer(session_id)

    async def destroy(self) -> None:
        """Stop flushing, write everything once more and drop all buffers."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        if self._config.persist_to_disk:
            self.flush()
        self._buffers.clear()
        logger.info("Scrollback cache destroyed")

    # ------------------------------------------------------------------
    # Buffers
    # ------------------------------------------------------------------

    def create_buffer(self, session_id: str) -> ScrollbackBuffer:
        buffer = self._buffers.get(session_id)
        if buffer is None:
            buffer = ScrollbackBuffer(session_id=session_id)
            self._buffers[session_id] = buffer
            logger.debug("Scrollback buffer created for %s", session_id)
        return buffer

    def load_buffer(self, session_id: str) -> bool:
        """Rehydrate a buffer from the row store as one consolidated chunk.

        Returns True when persisted content was found.
        """
        if self._store is None:
            return False
        try:
            row = self._store.get_buffer(session_id)
        except Exception:
            logger.exception("Failed to load scrollback for %s", session_id)
            return False
        if row is None:
            return False

        self._buffers[session_id] = ScrollbackBuffer(
            session_id=session_id,
            chunks=[row.content] if row.content else [],
            total_chunks=row.total_lines,
            last_flush_at=row.last_flush_at,
        )
        logger.info("Loaded %d chars of scrollback for %s", len(row.content), session_id)
        return True

    def has_buffer(self, session_id: str) -> bool:
        return session_id in self._buffers

    def delete_buffer(self, session_id: str) -> None:
        """Drop the buffer from memory and from the row store."""
        self._buffers.pop(session_id, None)
        if self._store is not None:
            try:
                self._store.delete_buffer(session_id)
            except Exception:
                logger.exception("Failed to delete persisted scrollback for %s", session_id)

    def append_output(self, session_id: str, data: str) -> None:
        buffer = self._buffers.get(session_id)
        if buffer is None:
            logger.warning("Output for unknown scrollback buffer %s dropped", session_id)
            return

        buffer.chunks.append(data)
        buffer.total_chunks += 1

        overflow = len(buffer.chunks) - self._config.max_chunks
        if overflow > 0:
            del buffer.chunks[:overflow]
            if buffer.disconnect_index is not None:
                buffer.disconnect_index = max(0, buffer.disconnect_index - overflow)

        self._wire.send_session_event(EventType.BUFFER_OUTPUT, session_id, data=data)

    def mark_disconnect(self, session_id: str) -> None:
        buffer = self._buffers.get(session_id)
        if buffer is None:
            return
        buffer.disconnect_index = len(buffer.chunks)
        buffer.disconnect_time = time.time()
        logger.debug("Disconnect marked for %s at chunk %d", session_id, buffer.disconnect_index)

    def clear_disconnect(self, session_id: str) -> None:
        buffer = self._buffers.get(session_id)
        if buffer is None:
            return
        buffer.disconnect_index = None
        buffer.disconnect_time = None

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def get_buffer_snapshot(
        self, session_id: str, full_replay: bool = False
    ) -> BufferSnapshot | None:
        """Output to replay to a reconnecting client.

        With ``full_replay`` every retained chunk is returned; otherwise only
        the chunks appended since the disconnect marker (all of them when no
        marker is set). Device-attribute echoes are stripped either way.
        """
        buffer = self._buffers.get(session_id)
        if buffer is None:
            return None

        start = 0 if full_replay else (buffer.disconnect_index or 0)
        output = filter_device_attribute_responses("".join(buffer.chunks[start:]))

        return BufferSnapshot(
            session_id=session_id,
            output=output,
            disconnect_time=buffer.disconnect_time,
            reconnect_time=time.time(),
        )

    def get_full_buffer(self, session_id: str) -> str:
        buffer = self._buffers.get(session_id)
        return "".join(buffer.chunks) if buffer else ""

    def get_last_chunks(self, session_id: str, n: int = 100) -> list[str]:
        buffer = self._buffers.get(session_id)
        if buffer is None or n <= 0:
            return []
        return buffer.chunks[-n:]

    def get_buffer_stats(self, session_id: str) -> BufferStats | None:
        buffer = self._buffers.get(session_id)
        if buffer is None:
            return None
        count = len(buffer.chunks)
        return BufferStats(
            session_id=session_id,
            chunk_count=count,
            max_chunks=self._config.max_chunks,
            usage_percent=count / self._config.max_chunks * 100,
            total_chunks_written=buffer.total_chunks,
            # Rough estimate: two bytes per character
            memory_bytes=sum(len(c) for c in buffer.chunks) * 2,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist_buffer(self, session_id: str) -> None:
        buffer = self._buffers.get(session_id)
        if buffer is None or self._store is None:
            return

        try:
            if not self._store.session_exists(session_id):
                # Parent record is gone (cleaned up after a restart)
                logger.debug("Skipping scrollback persist for removed session %s", session_id)
                return
            now = time.time()
            self._store.upsert_buffer(
                BufferRow(
                    session_id=session_id,
                    content="".join(buffer.chunks),
                    total_lines=buffer.total_chunks,
                    last_flush_at=now,
                )
            )
            buffer.last_flush_at = now
        except Exception:
            logger.exception("Failed to persist scrollback for %s", session_id)
