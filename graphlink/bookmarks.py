"""
Bookmarks - causal sequencing tokens.

A Bookmarks value is an immutable set of opaque server-issued tokens, each
tied to the database that issued it. Values are combined only by union, so
they are safe to share between sessions and tasks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Iterator

from graphlink.exceptions import BookmarkValidationError


@dataclass(frozen=True)
class Bookmarks:
    """
    Immutable set of (database, token) pairs.

    Usage:
        b1 = Bookmarks.from_raw_values(["FB:abc"], database="foo")
        merged = b1 | Bookmarks.from_raw_values(["FB:def"], database="foo")
        merged.raw_values  # frozenset({"FB:abc", "FB:def"})
    """

    entries: frozenset[tuple[str, str]] = field(default_factory=frozenset)

    @classmethod
    def empty(cls) -> "Bookmarks":
        return cls()

    @classmethod
    def from_raw_values(cls, values: Iterable[str], database: str) -> "Bookmarks":
        """Bind raw token strings to the database that issued them."""
        if isinstance(values, str):
            values = [values]
        entries = set()
        for value in values:
            if not isinstance(value, str):
                raise TypeError(f"Bookmark values must be str, got {type(value).__name__}")
            if value:
                entries.add((database, value))
        return cls(frozenset(entries))

    @staticmethod
    def merge(*bookmarks: "Bookmarks") -> "Bookmarks":
        """Union of all inputs. Inputs are left untouched."""
        entries: frozenset[tuple[str, str]] = frozenset()
        for item in bookmarks:
            entries = entries | item.entries
        return Bookmarks(entries)

    def __or__(self, other: "Bookmarks") -> "Bookmarks":
        if not isinstance(other, Bookmarks):
            return NotImplemented
        return Bookmarks.merge(self, other)

    def is_empty(self) -> bool:
        return not self.entries

    def __bool__(self) -> bool:
        return bool(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(token for _, token in self.entries))

    @property
    def databases(self) -> frozenset[str]:
        return frozenset(db for db, _ in self.entries)

    @property
    def raw_values(self) -> frozenset[str]:
        """The opaque tokens, suitable for handing to another process."""
        return frozenset(token for _, token in self.entries)

    def for_database(self, name: str) -> "Bookmarks":
        """Only the tokens issued by ``name``."""
        return Bookmarks(frozenset(e for e in self.entries if e[0] == name))

    def validate_for(self, database: str) -> "Bookmarks":
        """
        Ensure every token belongs to ``database``.

        Raises:
            BookmarkValidationError: if any token was issued by another database
        """
        foreign = sorted(self.databases - {database})
        if foreign:
            raise BookmarkValidationError(
                f"Bookmarks for {foreign} cannot be used with database '{database}'",
                expected=database,
                found=foreign,
            )
        return self

    def __repr__(self) -> str:
        return f"Bookmarks({sorted(self.entries)!r})"


def coerce_bookmarks(
    value: "Bookmarks | Iterable[str] | None",
    database: str,
) -> Bookmarks:
    """Accept a Bookmarks value, raw tokens or None and validate it for ``database``."""
    if value is None:
        return Bookmarks.empty()
    if isinstance(value, Bookmarks):
        return value.validate_for(database)
    return Bookmarks.from_raw_values(value, database)
