"""
TAGGED SET - Ownership-tagged set of strings with a persisted form

Every set-valued field of a session (extracted identifiers, fact sets,
asked objectives) is a TaggedSet. The owner tag names the field that owns
the values ("intel.upiIds", "facts.asked", ...) so a persisted array can
never be loaded into the wrong field by accident.

Insertion order is kept so reports list identifiers in the order seen.
"""

from typing import Iterable, Iterator, List, Optional


class TaggedSet:
    __slots__ = ("owner", "_items")

    def __init__(self, owner: str, items: Optional[Iterable[str]] = None):
        self.owner = owner
        self._items = {}
        if items:
            self.update(items)

    @staticmethod
    def _clean(value) -> str:
        if value is None:
            return ""
        return str(value).strip()

    def add(self, value: str) -> bool:
        """Add a value; returns True if it was new."""
        value = self._clean(value)
        if not value or value in self._items:
            return False
        self._items[value] = None
        return True

    def update(self, values: Iterable[str]) -> None:
        for value in values:
            self.add(value)

    def union(self, other: "TaggedSet") -> "TaggedSet":
        merged = TaggedSet(self.owner, self)
        merged.update(other)
        return merged

    def to_persisted(self) -> List[str]:
        return list(self._items)

    @classmethod
    def from_persisted(cls, owner: str, raw) -> "TaggedSet":
        """Rebuild from a persisted array; anything that is not a list loads empty."""
        if isinstance(raw, TaggedSet):
            return cls(owner, raw)
        if not isinstance(raw, (list, tuple)):
            return cls(owner)
        return cls(owner, (item for item in raw if isinstance(item, str)))

    def __contains__(self, value) -> bool:
        return self._clean(value) in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __eq__(self, other) -> bool:
        if not isinstance(other, TaggedSet):
            return NotImplemented
        return self.owner == other.owner and set(self._items) == set(other._items)

    def __repr__(self) -> str:
        return f"TaggedSet({self.owner!r}, {self.to_persisted()!r})"
