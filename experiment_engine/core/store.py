"""
Sharded in-memory keyed store.

Hot-path registries (experiments, assignments, conversion logs) live here
instead of in bare dicts so that concurrent callers only contend on the
shard that owns their key.

Usage:
    store = ShardedStore(shards=16)

    assignment, created = store.get_or_create(
        (experiment_id, participant_id),
        lambda: build_assignment(),
    )
"""

import threading
from typing import Any, Callable, Dict, Generic, Hashable, Iterator, List, Optional, Tuple, TypeVar

V = TypeVar("V")


class _Shard(Generic[V]):
    __slots__ = ("lock", "items")

    def __init__(self):
        self.lock = threading.Lock()
        self.items: Dict[Hashable, V] = {}


class ShardedStore(Generic[V]):
    """Dict-like store split across independently locked shards."""

    def __init__(self, shards: int = 16):
        if shards < 1:
            raise ValueError("shards must be at least 1")
        self._shards: List[_Shard[V]] = [_Shard() for _ in range(shards)]

    def _shard(self, key: Hashable) -> _Shard[V]:
        return self._shards[hash(key) % len(self._shards)]

    def get(self, key: Hashable, default: Optional[V] = None) -> Optional[V]:
        shard = self._shard(key)
        with shard.lock:
            return shard.items.get(key, default)

    def put(self, key: Hashable, value: V) -> None:
        shard = self._shard(key)
        with shard.lock:
            shard.items[key] = value

    def pop(self, key: Hashable, default: Optional[V] = None) -> Optional[V]:
        shard = self._shard(key)
        with shard.lock:
            return shard.items.pop(key, default)

    def __contains__(self, key: Hashable) -> bool:
        shard = self._shard(key)
        with shard.lock:
            return key in shard.items

    def get_or_create(self, key: Hashable, factory: Callable[[], V]) -> Tuple[V, bool]:
        """
        Atomically return the existing value or insert a new one.

        The factory runs while the shard lock is held, so two callers racing
        on the same key cannot both insert. If the factory raises, nothing is
        stored and the exception propagates.

        Returns:
            (value, created) tuple
        """
        shard = self._shard(key)
        with shard.lock:
            if key in shard.items:
                return shard.items[key], False
            value = factory()
            shard.items[key] = value
            return value, True

    def update(self, key: Hashable, fn: Callable[[Optional[V]], V]) -> V:
        """Replace the value for key with fn(current) under the shard lock."""
        shard = self._shard(key)
        with shard.lock:
            value = fn(shard.items.get(key))
            shard.items[key] = value
            return value

    def append(self, key: Hashable, item: Any) -> None:
        """Append to the list stored under key, creating it when missing."""
        shard = self._shard(key)
        with shard.lock:
            shard.items.setdefault(key, []).append(item)  # type: ignore[arg-type]

    def values(self) -> List[V]:
        result: List[V] = []
        for shard in self._shards:
            with shard.lock:
                result.extend(shard.items.values())
        return result

    def items(self) -> Iterator[Tuple[Hashable, V]]:
        snapshot: List[Tuple[Hashable, V]] = []
        for shard in self._shards:
            with shard.lock:
                snapshot.extend(shard.items.items())
        return iter(snapshot)

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.items)
        return total
