"""Path-local, append-only traversal context."""

from collections.abc import Iterator, Mapping
from types import MappingProxyType
from typing import Any

_EMPTY: Mapping[str, Any] = MappingProxyType({})


class Context(Mapping):
    """Immutable bindings threaded along one traversal path.

    Bindings hold resolved dependencies and produced subjects. `fixtures` are
    shared, read-only handles (contract clients and the like) reachable from
    every path; they are not bindings and do not count towards `len()`.
    """

    __slots__ = ("_bindings", "state", "fixtures")

    def __init__(
        self,
        bindings: Mapping[str, Any] | None = None,
        state: str = "",
        fixtures: Mapping[str, Any] | None = None,
    ) -> None:
        self._bindings = MappingProxyType(dict(bindings or {}))
        self.state = state
        self.fixtures = fixtures if isinstance(fixtures, MappingProxyType) else MappingProxyType(dict(fixtures or {}))

    def __getitem__(self, key: str) -> Any:
        return self._bindings[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._bindings)

    def __len__(self) -> int:
        return len(self._bindings)

    def __getattr__(self, name: str) -> Any:
        # Attribute access mirrors destructuring in graph definitions: bindings
        # first, then fixtures.
        if name.startswith("_"):
            raise AttributeError(name)
        if name in self._bindings:
            return self._bindings[name]
        if name in self.fixtures:
            return self.fixtures[name]
        raise AttributeError(f"context at {self.state!r} has no binding or fixture {name!r}")

    def __repr__(self) -> str:
        return f"Context(state={self.state!r}, bindings={dict(self._bindings)!r})"

    @property
    def bindings(self) -> Mapping[str, Any]:
        return self._bindings

    def lookup(self, name: str, default: Any = None) -> Any:
        """Return a binding, falling back to a fixture, then `default`."""

        if name in self._bindings:
            return self._bindings[name]
        return self.fixtures.get(name, default)

    def extend(self, values: Mapping[str, Any] | None = None, state: str | None = None) -> "Context":
        """Return a new context with `values` merged over the current bindings."""

        merged = dict(self._bindings)
        merged.update(values or {})
        return Context(merged, self.state if state is None else state, self.fixtures)

    def fork(self) -> "Context":
        """Return an independent copy for a probe or sibling branch."""

        return Context(self._bindings, self.state, self.fixtures)


def empty_context(state: str, fixtures: Mapping[str, Any] | None = None) -> Context:
    return Context(_EMPTY, state, fixtures)
