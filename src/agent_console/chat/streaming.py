"""Correlate gateway push events for one run into a client event stream."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Sequence

from ..gateway.client import GatewayConnection
from ..gateway.events import (
    AGENT_CHANNEL,
    CHAT_CHANNEL,
    AgentEvent,
    ChatEvent,
    ConnectionLost,
    EventSubscription,
    GatewayEvent,
)
from ..schemas.chat import StreamEvent
from .content import MessageContent, extract_images, extract_text, extract_thinking
from .media import (
    MediaLocator,
    extract_file_protocol_paths,
    extract_media_paths,
    mime_type_for,
)

logger = logging.getLogger(__name__)


MEDIA_HISTORY_LIMIT = 50
MEDIA_HISTORY_TIMEOUT = 10.0
MEDIA_HISTORY_SCAN = 10
DEFAULT_STREAM_TIMEOUT = 600.0

SendCallable = Callable[[], Awaitable[Any]]


def _unique(paths: Sequence[str]) -> list[str]:
    return list(dict.fromkeys(paths))


class ChatStreamCorrelator:
    """Relay the events of a single run to one client.

    The gateway streams cumulative snapshots of the assistant message; the
    correlator remembers what it has already emitted and forwards only the
    new suffix. Events for other runs sharing the same gateway connection
    are ignored. The stream always ends after exactly one terminal outcome:
    ``done``, an ``error``, or a timeout error.
    """

    def __init__(
        self,
        client: GatewayConnection,
        *,
        run_id: str,
        session_key: str,
        media: MediaLocator,
        timeout: float = DEFAULT_STREAM_TIMEOUT,
    ) -> None:
        self._client = client
        self.run_id = run_id
        self._session_key = session_key
        self._media = media
        self._timeout = timeout

        self._outbox: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self._pending_reads: set[asyncio.Task[None]] = set()
        self._send_task: asyncio.Task[None] | None = None
        self._last_text = ""
        self._last_thinking = ""
        self._image_count = 0
        self._closed = False
        self._finished = False
        self._terminated = False
        self.completed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: StreamEvent) -> None:
        if self._closed:
            return
        self._outbox.put_nowait(event)

    def _terminate(self, event: StreamEvent) -> None:
        self._finished = True
        if self._terminated:
            return
        self._terminated = True
        self.emit(event)

    async def stream(self, send: SendCallable) -> AsyncIterator[StreamEvent]:
        """Subscribe, fire ``send``, and yield events until the run ends.

        The subscription is taken before ``send`` runs so no early event is
        missed. Leaving the iterator early (client disconnect) drops any
        further events; in-flight image reads are left to finish on their
        own.
        """

        subscription = self._client.events.subscribe((CHAT_CHANNEL, AGENT_CHANNEL))
        pump = asyncio.create_task(self._pump(subscription, send))
        try:
            while True:
                event = await self._outbox.get()
                if event is None:
                    return
                yield event
        finally:
            self._closed = True
            subscription.close()
            if not pump.done():
                pump.cancel()

    async def _pump(self, subscription: EventSubscription, send: SendCallable) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        self._send_task = asyncio.create_task(self._send(send, subscription))
        try:
            while not self._finished:
                remaining = max(deadline - loop.time(), 0.0)
                try:
                    event = await asyncio.wait_for(subscription.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    logger.warning(
                        "Run %s produced no terminal event within %.0fs",
                        self.run_id,
                        self._timeout,
                    )
                    self._terminate(StreamEvent.failure("Timed out waiting for agent response"))
                    break
                if event is None:
                    break
                await self._dispatch(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Relaying run %s failed", self.run_id)
            self._terminate(StreamEvent.failure("Failed to process agent response"))
        finally:
            subscription.close()
            await self._drain_pending_reads()
            self._outbox.put_nowait(None)

    async def _send(self, send: SendCallable, subscription: EventSubscription) -> None:
        try:
            await send()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("chat.send failed for run %s: %s", self.run_id, exc)
            if self._finished:
                return
            self._terminate(StreamEvent.failure(str(exc) or "Failed to send message"))
            subscription.close()

    async def _dispatch(self, event: GatewayEvent) -> None:
        if isinstance(event, ConnectionLost):
            self._terminate(StreamEvent.failure("Gateway connection lost"))
            return
        if event.run_id != self.run_id:
            return
        if isinstance(event, ChatEvent):
            await self._on_chat(event)
        elif isinstance(event, AgentEvent):
            self._on_agent(event)

    async def _on_chat(self, event: ChatEvent) -> None:
        state = event.state
        if state == "delta":
            self._emit_progress(event.content)
        elif state == "final":
            self._finished = True
            self._emit_progress(event.content)
            await self._emit_history_media(extract_text(event.content))
            await self._drain_pending_reads()
            self._terminate(StreamEvent.done())
            self.completed = True
        elif state == "error":
            self._terminate(StreamEvent.failure(event.error_message or "Unknown error"))
        elif state == "aborted":
            self._terminate(StreamEvent.failure("Conversation aborted"))

    def _on_agent(self, event: AgentEvent) -> None:
        if event.stream != "tool":
            return
        data = event.data
        phase = data.get("phase")
        name = data.get("name")
        tool_name = "tool" if name is None else str(name)

        if phase == "start":
            args = data.get("args")
            self.emit(StreamEvent.tool_call(tool_name, args if args is not None else {}))
        elif phase == "result":
            result = data.get("result")
            self.emit(StreamEvent.tool_result(tool_name, result))
            if isinstance(result, str):
                paths = extract_media_paths(result)
                if paths:
                    self._track_read(paths)

    def _emit_progress(self, content: MessageContent) -> None:
        self._last_thinking = self._advance(
            extract_thinking(content), self._last_thinking, StreamEvent.thinking
        )
        self._last_text = self._advance(
            extract_text(content), self._last_text, StreamEvent.text
        )
        images = extract_images(content)
        for image in images[self._image_count:]:
            self.emit(StreamEvent.image(image.url, image.mime_type, image.alt))
        self._image_count = len(images)

    def _advance(
        self,
        current: str,
        last: str,
        factory: Callable[[str], StreamEvent],
    ) -> str:
        """Emit what ``current`` adds to ``last``; return the new cursor."""

        if not current or current == last:
            return last
        if current.startswith(last):
            self.emit(factory(current[len(last):]))
            return current
        # Revised rather than extended: an append-only stream cannot express
        # the edit, so resync the cursor and wait for further growth.
        logger.debug(
            "Run %s revised earlier output (%d -> %d chars)",
            self.run_id,
            len(last),
            len(current),
        )
        return current

    async def _emit_history_media(self, final_text: str) -> None:
        """Surface images the run wrote to disk but never sent inline."""

        paths = extract_file_protocol_paths(final_text)
        try:
            messages = await self._client.chat_history(
                self._session_key,
                limit=MEDIA_HISTORY_LIMIT,
                timeout=MEDIA_HISTORY_TIMEOUT,
            )
        except Exception as exc:
            logger.debug("Media history lookup failed for run %s: %s", self.run_id, exc)
            messages = []

        for message in messages[-MEDIA_HISTORY_SCAN:]:
            role = message.get("role")
            text = extract_text(message.get("content"))
            if role == "toolResult":
                paths.extend(extract_media_paths(text))
            elif role == "assistant":
                paths.extend(extract_file_protocol_paths(text))
                paths.extend(extract_media_paths(text))

        await self._emit_images(_unique(paths))

    def _track_read(self, paths: Sequence[str]) -> None:
        task = asyncio.create_task(self._emit_images(paths))
        self._pending_reads.add(task)
        task.add_done_callback(self._pending_reads.discard)

    async def _emit_images(self, paths: Sequence[str]) -> None:
        for path, data_url in await self._media.load_many(paths):
            self.emit(StreamEvent.image(data_url, mime_type_for(path)))

    async def _drain_pending_reads(self) -> None:
        while self._pending_reads:
            await asyncio.gather(*list(self._pending_reads), return_exceptions=True)


__all__ = ["ChatStreamCorrelator", "DEFAULT_STREAM_TIMEOUT"]
