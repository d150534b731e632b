# src/aggregator/ring_buffer.py
from collections import deque
from collections.abc import Iterable, Iterator
from typing import Generic, TypeVar

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """固定容量 FIFO, 超出容量时丢弃最旧的元素"""

    def __init__(self, capacity: int, items: Iterable[T] = ()):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._items: deque[T] = deque(items, maxlen=capacity)

    @property
    def capacity(self) -> int:
        assert self._items.maxlen is not None
        return self._items.maxlen

    def append(self, item: T) -> None:
        self._items.append(item)

    def extend(self, items: Iterable[T]) -> None:
        self._items.extend(items)

    def last(self, n: int) -> list[T]:
        if n <= 0:
            return []
        return list(self._items)[-n:]

    def clear(self) -> None:
        self._items.clear()

    def __getitem__(self, index: int) -> T:
        return self._items[index]

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self._items)

    def __repr__(self) -> str:
        return f"RingBuffer(capacity={self.capacity}, items={list(self._items)!r})"
