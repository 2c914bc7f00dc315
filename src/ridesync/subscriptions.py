"""Topic subscription registry.

Subscriptions are keyed by :class:`TopicKey`. Subscribing to a key that
already has a handle tears the previous one down first, so a topic is
never delivered twice after a resubscribe. While the connection manager is
not CONNECTED a subscription is recorded and its activation queued; link
loss moves live subscriptions back into the queue.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from ridesync._mqtt import LinkSubscription
from ridesync.exceptions import MalformedMessage, TransportError

if TYPE_CHECKING:
    from ridesync.connection import ConnectionManager

_logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], None]


class TopicKind(StrEnum):
    RIDE_UPDATES = "ride_updates"
    COUNTERPART_LOCATION = "counterpart_location"
    RIDE_LOCATION = "ride_location"
    RIDE_REQUESTS = "ride_requests"
    CHAT = "chat"


@dataclass(frozen=True)
class TopicKey:
    kind: TopicKind
    id: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


@dataclass(eq=False)
class SubscriptionHandle:
    """Registry-side record of one logical subscription."""

    key: TopicKey
    destination: str
    handler: MessageHandler = field(repr=False)
    link_handle: LinkSubscription | None = None

    @property
    def active(self) -> bool:
        return self.link_handle is not None


class SubscriptionRegistry:
    """Maps topic keys to live (or queued) subscriptions."""

    def __init__(self, manager: ConnectionManager) -> None:
        self._manager = manager
        self._handles: dict[TopicKey, SubscriptionHandle] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def __iter__(self) -> Iterator[TopicKey]:
        return iter(list(self._handles))

    def get(self, key: TopicKey) -> SubscriptionHandle | None:
        return self._handles.get(key)

    def subscribe(self, key: TopicKey, destination: str, handler: MessageHandler) -> SubscriptionHandle:
        """Subscribe *handler* to *destination* under *key*, replacing any previous handle."""
        self.unsubscribe(key)
        handle = SubscriptionHandle(key=key, destination=destination, handler=handler)
        self._handles[key] = handle
        if self._manager.is_connected:
            try:
                self._activate(handle)
            except TransportError as exc:
                _logger.debug("Subscribe %s failed, queueing: %s", key, exc)
                self._queue(handle)
        else:
            self._queue(handle)
        return handle

    def unsubscribe(self, key: TopicKey) -> bool:
        """Tear down the subscription for *key*; returns whether one existed."""
        handle = self._handles.pop(key, None)
        self._manager.drop_pending(key)
        if handle is None:
            return False
        self._release(handle)
        _logger.debug("Unsubscribed %s", key)
        return True

    def unsubscribe_all(self) -> None:
        for key in list(self._handles):
            self.unsubscribe(key)

    def unsubscribe_kind(self, *kinds: TopicKind) -> int:
        keys = [key for key in self._handles if key.kind in kinds]
        for key in keys:
            self.unsubscribe(key)
        return len(keys)

    def requeue_live(self) -> None:
        """Mark every active subscription dead and queue its re-activation."""
        for handle in list(self._handles.values()):
            if handle.link_handle is None:
                continue
            handle.link_handle = None
            self._queue(handle)

    def _queue(self, handle: SubscriptionHandle) -> None:
        self._manager.defer("subscribe", handle.destination, lambda: self._activate(handle), key=handle.key)

    def _activate(self, handle: SubscriptionHandle) -> None:
        if self._handles.get(handle.key) is not handle or handle.link_handle is not None:
            return
        handle.link_handle = self._manager.link.subscribe(handle.destination, self._receiver(handle))
        _logger.debug("Subscribed %s -> %s", handle.key, handle.destination)

    def _release(self, handle: SubscriptionHandle) -> None:
        link_handle = handle.link_handle
        handle.link_handle = None
        if link_handle is None:
            return
        try:
            self._manager.link.unsubscribe(link_handle)
        except TransportError:
            _logger.debug("Unsubscribe %s failed", handle.key, exc_info=True)

    def _receiver(self, handle: SubscriptionHandle) -> Callable[[bytes], None]:
        def receive(payload: bytes) -> None:
            # Superseded or released handles never deliver.
            if self._handles.get(handle.key) is not handle or handle.link_handle is None:
                return
            try:
                data = json.loads(payload)
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                _logger.warning("Dropping undecodable message on %s: %s", handle.destination, exc)
                return
            try:
                handle.handler(data)
            except MalformedMessage as exc:
                _logger.warning("Dropping malformed message on %s: %s", handle.destination, exc)
            except Exception:
                _logger.exception("Handler for %s failed", handle.destination)

        return receive
