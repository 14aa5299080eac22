"""
Inter-partition message channel.

Payloads are bulk blocks produced by DomainMigrationCodec. Delivery must be
reliable and exactly once: a block handed back by receive() is gone from
the channel.
"""

from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, List, Tuple


class Transport(ABC):
    """Message channel between partitions."""

    @abstractmethod
    def send(self, source: int, destination: int, payload: bytes):
        """Queue a block for `destination`."""

    @abstractmethod
    def receive(self, destination: int) -> List[Tuple[int, bytes]]:
        """Take every queued (source, block) for `destination`."""

    @abstractmethod
    def pending(self) -> bool:
        """True while any block is waiting for delivery."""


class LocalTransport(Transport):
    """In-process queues, one per partition."""

    def __init__(self, n_partitions: int):
        if n_partitions < 1:
            raise ValueError(f"Need at least one partition, got {n_partitions}")
        self._queues: List[Deque[Tuple[int, bytes]]] = [deque() for _ in range(n_partitions)]
        self.n_messages = 0
        self.n_bytes = 0

    def _queue(self, partition: int) -> Deque[Tuple[int, bytes]]:
        if not 0 <= partition < len(self._queues):
            raise ValueError(f"Unknown partition {partition}")
        return self._queues[partition]

    def send(self, source: int, destination: int, payload: bytes):
        if not payload:
            return
        self._queue(destination).append((source, payload))
        self.n_messages += 1
        self.n_bytes += len(payload)

    def receive(self, destination: int) -> List[Tuple[int, bytes]]:
        queue = self._queue(destination)
        messages = list(queue)
        queue.clear()
        return messages

    def pending(self) -> bool:
        return any(self._queues)
