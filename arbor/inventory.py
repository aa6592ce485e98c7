# arbor/inventory.py
"""
Inventory: every node reachable under a root, keyed by location, with
secondary indexes for name, package name and resolved url.
"""

from __future__ import annotations
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

INDEXES = ("name", "package_name", "resolved")


class Inventory:
    def __init__(self):
        self._by_location: Dict[str, Any] = {}
        self._keys: Dict[int, str] = {}
        self._index: Dict[str, Dict[Any, Set[Any]]] = {k: {} for k in INDEXES}
        self._indexed_values: Dict[int, Dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._by_location)

    def __iter__(self) -> Iterator[Any]:
        return iter(list(self._by_location.values()))

    def __contains__(self, node: Any) -> bool:
        return self.has(node)

    def values(self) -> List[Any]:
        return list(self._by_location.values())

    def locations(self) -> List[str]:
        return list(self._by_location.keys())

    def add(self, node: Any) -> None:
        if id(node) in self._keys:
            self.delete(node)
        location = node.location
        current = self._by_location.get(location)
        if current is not None and current is not node:
            raise ValueError(f"inventory already holds a different node at {location!r}")
        self._by_location[location] = node
        self._keys[id(node)] = location
        values = {}
        for key in INDEXES:
            val = getattr(node, key, None)
            values[key] = val
            self._index[key].setdefault(val, set()).add(node)
        self._indexed_values[id(node)] = values

    def delete(self, node: Any) -> None:
        location = self._keys.pop(id(node), None)
        if location is None:
            return
        if self._by_location.get(location) is node:
            del self._by_location[location]
        for key, val in self._indexed_values.pop(id(node), {}).items():
            bucket = self._index[key].get(val)
            if bucket is not None:
                bucket.discard(node)
                if not bucket:
                    del self._index[key][val]

    def has(self, node: Any) -> bool:
        return self._by_location.get(self._keys.get(id(node), "\0")) is node

    def get(self, location: str) -> Optional[Any]:
        return self._by_location.get(location)

    def query(self, key: str, value: Any = None) -> Any:
        """query(key) -> set of indexed values; query(key, value) -> set of nodes."""
        if key not in self._index:
            raise KeyError(f"no inventory index named {key!r}")
        if value is None:
            return set(self._index[key].keys())
        return set(self._index[key].get(value, set()))

    def filter(self, fn: Callable[[Any], bool]) -> List[Any]:
        return [n for n in self._by_location.values() if fn(n)]

    def reindex(self, node: Any) -> None:
        """Refresh secondary index entries after a node's resolution changed."""
        if id(node) in self._keys:
            self.add(node)
