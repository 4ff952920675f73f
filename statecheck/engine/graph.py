"""Declarative state-graph model.

A graph is plain data: a mapping of state name to `StateNode`, built once and
shared read-only by every traversal path.
"""

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from statecheck.common.logging import logger
from statecheck.engine.context import Context
from statecheck.engine.effects import Receipt
from statecheck.engine.errors import GraphDefinitionError

Resolver = Callable[[Context], Awaitable[Any]]
Precondition = Callable[[Context], Awaitable[Any]]
SubjectResolver = Callable[[Context, Receipt], Any]


@dataclass(frozen=True)
class Effect:
    """What a transition action hands back to the executor."""

    operation: Any
    resolve_subject: SubjectResolver | None = None
    subject_key: str = "subject"
    declared_state: str | None = None


Action = Callable[[Context], Awaitable[Effect]]
# (context before, receipt, context after) -> list of checks
Expectation = Callable[[Context, Receipt, Context], Awaitable[list]]


@dataclass(frozen=True)
class TransitionSpec:
    action: Action
    expectation: Expectation | None = None
    precondition: Precondition | None = None
    # Reporting name for the edge; defaults to the successor state name.
    label: str | None = None


@dataclass(frozen=True)
class StateNode:
    name: str
    dependencies: Mapping[str, Resolver] = field(default_factory=dict)
    transitions: Mapping[str, TransitionSpec] = field(default_factory=dict)
    invalid_transitions: Mapping[str, TransitionSpec] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for attr in ("dependencies", "transitions", "invalid_transitions"):
            object.__setattr__(self, attr, MappingProxyType(dict(getattr(self, attr))))

    @property
    def is_terminal(self) -> bool:
        return not self.transitions


class StateGraph:
    """Validated, read-only collection of state nodes with a designated root."""

    def __init__(self, name: str, nodes: Mapping[str, StateNode] | list[StateNode], root: str) -> None:
        if not isinstance(nodes, Mapping):
            nodes = {node.name: node for node in nodes}
        for key, node in nodes.items():
            if key != node.name:
                raise GraphDefinitionError(f"node registered as {key!r} is named {node.name!r}")
        if root not in nodes:
            raise GraphDefinitionError(f"root state {root!r} is not declared")

        self.name = name
        self.root = root
        self.nodes: Mapping[str, StateNode] = MappingProxyType(dict(nodes))
        self.warnings = self._lint()

    def _lint(self) -> list[str]:
        warnings = []
        for node in self.nodes.values():
            labels = [spec.label or successor for successor, spec in node.transitions.items()]
            if len(set(labels)) != len(labels):
                raise GraphDefinitionError(f"state {node.name!r} declares duplicate edge labels {labels}")
            for successor in node.transitions:
                if successor == node.name:
                    warnings.append(f"self_loop_edge state={node.name}")
                elif successor not in self.nodes:
                    warnings.append(f"undeclared_successor state={node.name} successor={successor}")
        for name in sorted(set(self.nodes) - self.reachable()):
            warnings.append(f"unreachable_state state={name}")
        for warning in warnings:
            logger.warning("graph_warning graph=%s %s", self.name, warning)
        return warnings

    def __getitem__(self, name: str) -> StateNode:
        return self.nodes[name]

    def __contains__(self, name: str) -> bool:
        return name in self.nodes

    def node_for(self, name: str) -> StateNode:
        """Return the declared node, or an empty terminal node for undeclared successors."""

        node = self.nodes.get(name)
        if node is None:
            return StateNode(name=name)
        return node

    def reachable(self) -> set[str]:
        """State names reachable from the root, undeclared successors included."""

        seen = {self.root}
        stack = [self.root]
        while stack:
            for successor in self.node_for(stack.pop()).transitions:
                if successor not in seen:
                    seen.add(successor)
                    stack.append(successor)
        return seen
