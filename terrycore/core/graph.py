"""
Resource graph construction.

Turns a set of resource declarations into a validated dependency graph with
a deterministic topological order. Edges come from references nested in
attribute values and from explicit depends_on entries.
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import (
    AbstractSet, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Set, Tuple,
)

from .errors import ConfigurationError, CycleError, DuplicateAddressError, UnresolvedReferenceError
from .values import Attributes, to_attributes
from ..security.sanitizer import InputSanitizer, SecurityError

logger = logging.getLogger(__name__)

MANAGED = "managed"
DATA = "data"


@dataclass
class ResourceDeclaration:
    """
    A resource as declared in configuration.

    Attributes:
        type: Resource type, e.g. "aws_instance"
        name: Resource name, unique per type
        attributes: Desired attributes; plain values are wrapped on creation
        depends_on: Explicit dependency addresses
        mode: "managed" for resources, "data" for data sources
    """
    type: str
    name: str
    attributes: Attributes = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    mode: str = MANAGED

    def __post_init__(self):
        self.attributes = to_attributes(self.attributes)

    @property
    def address(self) -> str:
        if self.mode == DATA:
            return f"data.{self.type}.{self.name}"
        return f"{self.type}.{self.name}"

    def references(self) -> Set[str]:
        """Addresses this declaration depends on."""
        refs = set(self.depends_on)
        for value in self.attributes.values():
            refs.update(ref.address for ref in value.references())
        return refs


@dataclass(frozen=True)
class ResourceNode:
    """A resource in the graph together with its outgoing edges."""
    address: str
    declaration: ResourceDeclaration
    edges: FrozenSet[str]

    @property
    def type(self) -> str:
        return self.declaration.type

    @property
    def attributes(self) -> Attributes:
        return self.declaration.attributes


class ResourceGraph:
    """
    Acyclic dependency graph of resources.

    Iteration yields nodes in topological order: dependencies before
    dependents, ties broken by address.
    """

    def __init__(self, nodes: Dict[str, ResourceNode], order: List[str]):
        self._nodes = nodes
        self._order = order
        self._dependents: Dict[str, Set[str]] = {address: set() for address in nodes}
        for node in nodes.values():
            for dep in node.edges:
                self._dependents[dep].add(node.address)

    @classmethod
    def empty(cls) -> "ResourceGraph":
        return cls({}, [])

    @property
    def order(self) -> List[str]:
        return list(self._order)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, address: str) -> bool:
        return address in self._nodes

    def __iter__(self) -> Iterator[ResourceNode]:
        for address in self._order:
            yield self._nodes[address]

    def get(self, address: str) -> Optional[ResourceNode]:
        return self._nodes.get(address)

    def dependencies(self, address: str) -> List[str]:
        return sorted(self._nodes[address].edges)

    def dependents(self, address: str) -> List[str]:
        return sorted(self._dependents[address])

    def transitive_dependents(self, address: str) -> List[str]:
        """All resources that directly or indirectly depend on address."""
        seen: Set[str] = set()
        stack = [address]
        while stack:
            for dependent in self._dependents[stack.pop()]:
                if dependent not in seen:
                    seen.add(dependent)
                    stack.append(dependent)
        return sorted(seen)


class GraphBuilder:
    """Validates declarations and builds a ResourceGraph."""

    def build(self, declarations: Iterable[ResourceDeclaration]) -> ResourceGraph:
        """
        Build the dependency graph.

        Raises:
            ConfigurationError: For malformed identifiers
            DuplicateAddressError: If two declarations share an address
            UnresolvedReferenceError: If a reference targets an undeclared resource
            CycleError: If the references form a cycle
        """
        declared: Dict[str, ResourceDeclaration] = {}
        for decl in declarations:
            self._validate(decl)
            if decl.address in declared:
                raise DuplicateAddressError(f"Resource declared twice: {decl.address}")
            declared[decl.address] = decl

        nodes: Dict[str, ResourceNode] = {}
        for address in sorted(declared):
            decl = declared[address]
            edges = decl.references()
            for target in sorted(edges):
                if target not in declared:
                    raise UnresolvedReferenceError(address, target)
            nodes[address] = ResourceNode(address, decl, frozenset(edges))

        order = topological_sort({address: node.edges for address, node in nodes.items()})
        logger.debug(f"Built resource graph with {len(nodes)} nodes")
        return ResourceGraph(nodes, order)

    @staticmethod
    def _validate(decl: ResourceDeclaration):
        if decl.mode not in (MANAGED, DATA):
            raise ConfigurationError(f"Unknown resource mode '{decl.mode}' for {decl.type}.{decl.name}")
        try:
            InputSanitizer.sanitize_resource_type(decl.type)
            InputSanitizer.sanitize_resource_name(decl.name)
        except SecurityError as e:
            raise ConfigurationError(str(e)) from e


def topological_sort(edges: Mapping[str, AbstractSet[str]]) -> List[str]:
    """
    Order nodes so every node comes after the nodes it points to.

    Kahn's algorithm with a min-heap, so ties resolve by name and the
    result is reproducible.

    Args:
        edges: node -> nodes it depends on; every target must be a key

    Raises:
        CycleError: Naming the nodes that sit on a cycle
    """
    remaining = {node: len(deps) for node, deps in edges.items()}
    dependents: Dict[str, List[str]] = {node: [] for node in edges}
    for node, deps in edges.items():
        for dep in deps:
            dependents[dep].append(node)

    ready = [node for node, count in remaining.items() if count == 0]
    heapq.heapify(ready)
    order: List[str] = []
    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for dependent in dependents[node]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) != len(edges):
        raise CycleError(_cycle_members(edges))
    return order


def _cycle_members(edges: Mapping[str, AbstractSet[str]]) -> Set[str]:
    """Nodes on a cycle: strongly connected components larger than one, or self loops."""
    index: Dict[str, int] = {}
    lowlink: Dict[str, int] = {}
    on_stack: Set[str] = set()
    stack: List[str] = []
    members: Set[str] = set()

    def enter(node: str):
        index[node] = lowlink[node] = len(index)
        stack.append(node)
        on_stack.add(node)

    # Tarjan's algorithm with an explicit call stack; graphs may be deep
    for root in sorted(edges):
        if root in index:
            continue
        enter(root)
        calls: List[Tuple[str, Iterator[str]]] = [(root, iter(sorted(edges[root])))]
        while calls:
            node, deps = calls[-1]
            for dep in deps:
                if dep not in index:
                    enter(dep)
                    calls.append((dep, iter(sorted(edges[dep]))))
                    break
                if dep in on_stack:
                    lowlink[node] = min(lowlink[node], index[dep])
            else:
                calls.pop()
                if calls:
                    parent = calls[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[node])
                if lowlink[node] != index[node]:
                    continue
                component = []
                while True:
                    top = stack.pop()
                    on_stack.discard(top)
                    component.append(top)
                    if top == node:
                        break
                if len(component) > 1 or node in edges[node]:
                    members.update(component)
    return members
