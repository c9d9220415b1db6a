"""Per-key recency sets used to avoid bridging the same text twice."""

from collections import defaultdict


class DedupCache:
    """Remembers recent values per key.

    Once a key holds more than ``capacity`` values, the oldest
    ``evict_chunk`` of them are dropped in one go.
    """

    def __init__(self, capacity: int = 128, evict_chunk: int = 16):
        if capacity < 1 or evict_chunk < 1:
            raise ValueError("capacity and evict_chunk must be positive")
        self.capacity = capacity
        self.evict_chunk = evict_chunk
        self._items: dict[str, list[str]] = defaultdict(list)

    def push(self, key: str, value: str) -> None:
        items = self._items[key]
        items.append(value)
        if len(items) > self.capacity:
            del items[:self.evict_chunk]

    def contains(self, key: str, value: str) -> bool:
        items = self._items.get(key)
        return items is not None and value in items

    def __len__(self) -> int:
        return sum(len(items) for items in self._items.values())
