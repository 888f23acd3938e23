"""Expansion state of discovery trees across snapshot refreshes.

Tree widgets only know which nodes are expanded, not which are collapsed.
To leave the user's choices on known nodes alone, a refresh only ever adds
nodes that did not exist in the previous graph. Collapsing is left to the
user (toggle) and to the explicit bulk actions.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from nsview.models import DiscoveryGraph


class ExpansionPolicy(Enum):
    """Which newly seen nodes get expanded automatically."""

    NEW_ROOTS = "roots"
    ALL_NEW = "all"


class TreeAction(Enum):
    """Bulk expansion commands."""

    EXPAND_ALL = "expand-all"
    COLLAPSE_ALL = "collapse-all"


@dataclass(frozen=True, slots=True)
class NodeRef:
    """A node of the kind a tree displays, as far as expansion is concerned."""

    id: str
    root: bool
    # Sub-nodes opened together with this node when it gets auto-expanded
    # under the ALL_NEW policy.
    companions: tuple[str, ...] = ()


class TreeKind(Protocol):
    """Tells the reconciler which nodes a particular tree displays."""

    def nodes(self, graph: DiscoveryGraph) -> Iterable[NodeRef]: ...

    def expand_all(self, graph: DiscoveryGraph) -> set[str]: ...

    def collapse_all(self, graph: DiscoveryGraph) -> set[str]: ...


def reconcile(
    previous: DiscoveryGraph | None,
    graph: DiscoveryGraph,
    expanded: Iterable[str],
    policy: ExpansionPolicy,
    kind: TreeKind,
) -> frozenset[str]:
    """Return the expanded node ids after a refresh from previous to graph.

    Never removes ids: only nodes absent from the previous graph and matching
    the policy are added to the currently expanded ones.
    """
    known = {node.id for node in kind.nodes(previous)} if previous is not None else set()
    expanding: set[str] = set()
    for node in kind.nodes(graph):
        if node.id in known:
            continue
        if policy is ExpansionPolicy.NEW_ROOTS and not node.root:
            continue
        expanding.add(node.id)
        if policy is ExpansionPolicy.ALL_NEW:
            expanding.update(node.companions)
    return frozenset(expanded) | expanding


@dataclass(frozen=True, slots=True)
class ExpansionState:
    """Expanded node ids plus the graph they were last reconciled with."""

    expanded: frozenset[str] = frozenset()
    previous: DiscoveryGraph | None = None


@dataclass(frozen=True, slots=True)
class Refreshed:
    graph: DiscoveryGraph


@dataclass(frozen=True, slots=True)
class BulkAction:
    action: TreeAction
    graph: DiscoveryGraph


@dataclass(frozen=True, slots=True)
class Toggled:
    """The complete expanded set as reported by the tree widget."""

    expanded: frozenset[str] = field(default_factory=frozenset)


ExpansionEvent = Refreshed | BulkAction | Toggled


def reduce_expansion(
    state: ExpansionState,
    event: ExpansionEvent,
    kind: TreeKind,
    policy: ExpansionPolicy = ExpansionPolicy.NEW_ROOTS,
) -> ExpansionState:
    """Pure reducer: (state, event) -> next state."""
    match event:
        case Refreshed(graph=graph):
            return ExpansionState(
                expanded=reconcile(state.previous, graph, state.expanded, policy, kind),
                previous=graph,
            )
        case BulkAction(action=TreeAction.EXPAND_ALL, graph=graph):
            return ExpansionState(frozenset(kind.expand_all(graph)), state.previous)
        case BulkAction(action=TreeAction.COLLAPSE_ALL, graph=graph):
            return ExpansionState(frozenset(kind.collapse_all(graph)), state.previous)
        case Toggled(expanded=expanded):
            return ExpansionState(frozenset(expanded), state.previous)
    raise TypeError(f"unknown expansion event {event!r}")


class ExpansionReconciler:
    """Expansion state of one displayed tree instance."""

    def __init__(
        self, kind: TreeKind, policy: ExpansionPolicy = ExpansionPolicy.NEW_ROOTS
    ) -> None:
        self.kind = kind
        self.policy = policy
        self._state = ExpansionState()

    @property
    def expanded(self) -> frozenset[str]:
        return self._state.expanded

    @property
    def graph(self) -> DiscoveryGraph | None:
        """The graph last refreshed with, if any."""
        return self._state.previous

    def dispatch(self, event: ExpansionEvent) -> frozenset[str]:
        self._state = reduce_expansion(self._state, event, self.kind, self.policy)
        return self._state.expanded

    def refresh(self, graph: DiscoveryGraph) -> frozenset[str]:
        return self.dispatch(Refreshed(graph))

    def apply(self, action: TreeAction) -> frozenset[str]:
        """Expand or collapse all nodes of the graph last refreshed with."""
        graph = self._state.previous
        if graph is None:
            return self._state.expanded
        return self.dispatch(BulkAction(action, graph))

    def toggle(self, expanded: Iterable[str]) -> frozenset[str]:
        return self.dispatch(Toggled(frozenset(expanded)))
