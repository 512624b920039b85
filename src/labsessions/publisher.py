"""Pub/sub publishing of session and container state to UI subscribers.

Channels are named (``sessions``, ``sessionContainers``, ...) and optionally
parameterized (``{"uuid": session_id}``).  Three message kinds exist:

- snapshot: the full current value of a channel
- delta: an incremental change (``{"type": "add" | "update" | "remove", ...}``)
- event: a transient notification with no state attached

The wire format is the transport's concern; the engine only depends on the
:class:`Publisher` protocol.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from labsessions.logger import logger

SESSIONS = "sessions"
SESSION_CONTAINERS = "sessionContainers"
SESSION_BROWSER_STATE = "sessionBrowserState"

type MessageKind = Literal["snapshot", "delta", "event"]
type Params = dict[str, str]


class Publisher(Protocol):
    def publish_snapshot(self, channel: str, data: Any, params: Params | None = None) -> None: ...
    def publish_delta(self, channel: str, data: Any, params: Params | None = None) -> None: ...
    def publish_event(self, channel: str, data: Any, params: Params | None = None) -> None: ...


@dataclass
class PublishedMessage:
    kind: MessageKind
    channel: str
    data: Any
    params: Params = field(default_factory=dict)


type Listener = Callable[[PublishedMessage], Coroutine[Any, Any, None]]


class LocalPublisher:
    """Fire-and-forget in-process dispatcher.

    Transports (websocket servers, SSE endpoints) subscribe per channel and
    receive every message published on it.  Publishing never blocks.
    """

    def __init__(self) -> None:
        self._listeners: defaultdict[str, list[Listener]] = defaultdict(list)

    def subscribe(self, channel: str, listener: Listener) -> Callable[[], None]:
        """Subscribe to a channel. Returns an unsubscribe function."""
        self._listeners[channel].append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners[channel].remove(listener)

        return _unsubscribe

    def publish_snapshot(self, channel: str, data: Any, params: Params | None = None) -> None:
        self._emit(PublishedMessage("snapshot", channel, data, params or {}))

    def publish_delta(self, channel: str, data: Any, params: Params | None = None) -> None:
        self._emit(PublishedMessage("delta", channel, data, params or {}))

    def publish_event(self, channel: str, data: Any, params: Params | None = None) -> None:
        self._emit(PublishedMessage("event", channel, data, params or {}))

    def _emit(self, message: PublishedMessage) -> None:
        logger.debug(
            "Publishing",
            kind=message.kind,
            channel=message.channel,
            params=message.params or None,
        )
        for listener in self._listeners[message.channel]:
            asyncio.ensure_future(_safe_call(listener, message))


async def _safe_call(listener: Listener, message: PublishedMessage) -> None:
    try:
        await listener(message)
    except Exception as exc:
        logger.warning("Publisher listener error", channel=message.channel, err=str(exc))


class RecordingPublisher:
    """Keeps every published message in order; used to inspect what the engine published."""

    def __init__(self) -> None:
        self.messages: list[PublishedMessage] = []

    def publish_snapshot(self, channel: str, data: Any, params: Params | None = None) -> None:
        self.messages.append(PublishedMessage("snapshot", channel, data, params or {}))

    def publish_delta(self, channel: str, data: Any, params: Params | None = None) -> None:
        self.messages.append(PublishedMessage("delta", channel, data, params or {}))

    def publish_event(self, channel: str, data: Any, params: Params | None = None) -> None:
        self.messages.append(PublishedMessage("event", channel, data, params or {}))

    def on(self, channel: str, kind: MessageKind | None = None) -> list[PublishedMessage]:
        return [
            m
            for m in self.messages
            if m.channel == channel and (kind is None or m.kind == kind)
        ]
