"""Hierarchical output buffers with per-scope identifier allocation."""

from __future__ import annotations

import keyword
from typing import Callable, Iterable, Union


class TextEmitter:
    def __init__(self, scope: Scope) -> None:
        self.scope = scope
        self._parts: list[str] = []

    def write(self, text: str) -> TextEmitter:
        self._parts.append(text)
        return self

    def writeln(self, text: str = "") -> TextEmitter:
        self._parts.append(text)
        self._parts.append("\n")
        return self

    def render(self) -> str:
        return "".join(self._parts)


class Scope:
    """A node in the emission tree.

    Buffers and child scopes render in the order they were created, so a leaf
    allocated early keeps its position even when it is written to later.
    Every scope keeps its own table of used names.
    """

    def __init__(self, parent: Scope | None = None) -> None:
        self.parent = parent
        self._entries: list[Union[TextEmitter, Scope]] = []
        self._used_names: set[str] = set()

    @property
    def root(self) -> Scope:
        scope = self
        while scope.parent is not None:
            scope = scope.parent
        return scope

    def leaf(self) -> TextEmitter:
        emitter = TextEmitter(self)
        self._entries.append(emitter)
        return emitter

    def child(self) -> Scope:
        scope = Scope(parent=self)
        self._entries.append(scope)
        return scope

    def reserve_names(self, names: Iterable[str]) -> None:
        self._used_names.update(names)

    def is_used(self, name: str) -> bool:
        return name in self._used_names or keyword.iskeyword(name)

    def get_non_conflicting_name(self, base: str, modify: Callable[[str], str]) -> str:
        name = base
        while self.is_used(name):
            name = modify(name)
        self._used_names.add(name)
        return name

    def render(self) -> str:
        return "".join(entry.render() for entry in self._entries)
