from __future__ import annotations

from typing import Callable, Generic, Iterator, TypeVar

from volume_bot.exceptions import StateException

V = TypeVar("V")
Key = tuple[str, str]  # (owner_id, token_mint)


class KeyedRegistry(Generic[V]):
    """In-memory table keyed by (owner_id, token_mint).

    ``claim`` is the only admission path: it checks for a live entry and
    reserves the key in one step, with no await in between.
    """

    def __init__(self) -> None:
        self._items: dict[Key, V] = {}

    def get(self, key: Key) -> V | None:
        return self._items.get(key)

    def put(self, key: Key, value: V) -> None:
        self._items[key] = value

    def pop(self, key: Key) -> V | None:
        return self._items.pop(key, None)

    def claim(
        self,
        key: Key,
        value: V,
        is_live: Callable[[V], bool],
        exc: type[StateException] = StateException,
    ) -> V | None:
        """Store ``value`` unless a live entry exists; returns the replaced entry."""
        existing = self._items.get(key)
        if existing is not None and is_live(existing):
            raise exc("Already active", owner_id=key[0], token_mint=key[1])
        self._items[key] = value
        return existing

    def values_for_owner(self, owner_id: str) -> list[V]:
        return [v for (owner, _), v in self._items.items() if owner == owner_id]

    def items(self) -> list[tuple[Key, V]]:
        return list(self._items.items())

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __iter__(self) -> Iterator[Key]:
        return iter(list(self._items))
