"""Bounded FIFO of commands waiting for the broker connection."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field

from tesy_bridge.const import OUTBOUND_QUEUE_CAPACITY
from tesy_bridge.exceptions import QueueFullError
from tesy_bridge.structs import DeviceRecord, OnDelivered


@dataclass(slots=True)
class CommandEnvelope:
    """A command addressed to one device, plus who to tell once it is sent."""

    record: DeviceRecord
    command: str
    payload: Mapping[str, object]
    on_delivered: OnDelivered | None = None
    queued_at: float = field(default_factory=time.monotonic)

    def notify(self, error: BaseException | None) -> None:
        if self.on_delivered is not None:
            self.on_delivered(error)


class OutboundQueue:
    """FIFO with a hard capacity. Overflow is rejected, never evicted."""

    def __init__(self, capacity: int = OUTBOUND_QUEUE_CAPACITY) -> None:
        self.capacity: int = capacity
        self._items: deque[CommandEnvelope] = deque()

    def push(self, envelope: CommandEnvelope) -> None:
        """Append an envelope.

        Raises:
            QueueFullError: the queue already holds ``capacity`` envelopes

        """
        if len(self._items) >= self.capacity:
            raise QueueFullError(self.capacity)
        self._items.append(envelope)

    def peek(self) -> CommandEnvelope | None:
        return self._items[0] if self._items else None

    def pop(self) -> CommandEnvelope | None:
        if not self._items:
            return None
        return self._items.popleft()

    def drain(self) -> list[CommandEnvelope]:
        """Remove and return everything, oldest first."""
        items = list(self._items)
        self._items.clear()
        return items

    @property
    def is_full(self) -> bool:
        return len(self._items) >= self.capacity

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __iter__(self) -> Iterator[CommandEnvelope]:
        return iter(self._items)
