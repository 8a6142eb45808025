"""
Data Dependency Graph (DDG)

Represents the dataflow of one Iteration Unit.

A unit graph is a DAG where:
- Nodes are unit items (retired instructions or collapsed inner loops)
- Edges are def-use dependencies over registers and memory, last writer
  wins per register name and per resolved byte address
- Register reads with no producer inside the unit are live-ins
- Unknown operations and inner loops order all memory traffic around them

Graphs never span Units. Cross-unit relations are classified separately
by the independence analysis. All nodes of a Region are allocated in one
RegionArena and dropped together with it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterator, Optional

from .errors import RegionTooLarge
from .region import CompositeEvent, IterationUnit, Region, UnitItem
from .trace import MemAccess, OpKind, TraceEvent

if TYPE_CHECKING:
    from .alias_analysis import AddressExpr


class NodeKind(Enum):
    LOAD = "load"
    STORE = "store"
    ARITH = "arith"
    COMPARE = "compare"
    SELECT = "select"
    BRANCH = "branch"
    OTHER = "other"
    LOOP = "loop"


_NODE_KIND = {
    OpKind.LOAD: NodeKind.LOAD,
    OpKind.STORE: NodeKind.STORE,
    OpKind.ARITH: NodeKind.ARITH,
    OpKind.COMPARE: NodeKind.COMPARE,
    OpKind.SELECT: NodeKind.SELECT,
    OpKind.BRANCH: NodeKind.BRANCH,
    OpKind.OTHER: NodeKind.OTHER,
}

# Register moves; value flows through unchanged
COPY_MNEMONICS = frozenset({
    "mov", "movq", "movd", "movsd", "movss", "movaps", "movapd", "movups",
    "movupd", "vmovsd", "vmovss", "vmovaps", "vmovapd", "fmov", "mr",
})

ORDER_LABEL = "order"

Site = tuple[int, int]


@dataclass(eq=False)
class DDGNode:
    """A node in a unit's data dependency graph."""
    id: int
    unit: int
    index: int
    kind: NodeKind
    item: UnitItem
    site: Site
    constants: tuple[int, ...] = ()
    defines: tuple[str, ...] = ()
    # Dependencies, position-aligned with operand_labels; None marks a live-in
    operand_nodes: list[Optional["DDGNode"]] = field(default_factory=list)
    operand_labels: list[str] = field(default_factory=list)
    # Reverse edges: nodes that use this node's result
    user_nodes: list["DDGNode"] = field(default_factory=list)
    # Affine address, filled in once the Region's sites are fitted
    address: Optional["AddressExpr"] = None

    def __hash__(self):
        return self.id

    def __eq__(self, other):
        return isinstance(other, DDGNode) and self.id == other.id

    def __repr__(self):
        return f"DDGNode({self.id}, u{self.unit}[{self.index}], {self.item})"

    @property
    def pc(self) -> int:
        return self.item.pc

    @property
    def mnemonic(self) -> str:
        return self.item.mnemonic

    @property
    def mem(self) -> Optional[MemAccess]:
        if isinstance(self.item, TraceEvent):
            return self.item.mem
        return None

    @property
    def is_memory(self) -> bool:
        """Loads, stores and operations with a folded memory operand."""
        return self.mem is not None and self.kind != NodeKind.OTHER

    @property
    def reads_memory(self) -> bool:
        return self.is_memory and self.kind != NodeKind.STORE

    @property
    def is_unresolved(self) -> bool:
        return self.is_memory and self.mem is not None and not self.mem.resolved

    @property
    def is_copy(self) -> bool:
        return (self.kind == NodeKind.ARITH and self.mnemonic in COPY_MNEMONICS
                and len(self.operand_nodes) == 1 and not self.constants)

    def producers(self) -> list["DDGNode"]:
        """In-unit producers (live-ins excluded)."""
        return [n for n in self.operand_nodes if n is not None]

    def value_operand(self) -> Optional["DDGNode"]:
        """Producer of the stored value (stores list the value register first)."""
        if self.kind != NodeKind.STORE or not self.operand_nodes:
            return None
        return self.operand_nodes[0]


def strip_copies(node: Optional[DDGNode]) -> Optional[DDGNode]:
    """Follow register moves back to the node that computed the value."""
    while node is not None and node.is_copy:
        node = node.operand_nodes[0]
    return node


@dataclass(frozen=True)
class Edge:
    """Directed dependency from producer to consumer."""
    src: DDGNode
    dst: DDGNode
    label: str
    carried: bool = False


@dataclass
class UnitGraph:
    """The dependency graph of one Iteration Unit."""
    unit: IterationUnit
    nodes: list[DDGNode] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)
    # register -> nodes reading the value it held on unit entry
    live_ins: dict[str, list[DDGNode]] = field(default_factory=dict)
    # register -> last node writing it in this unit
    live_outs: dict[str, DDGNode] = field(default_factory=dict)

    @property
    def index(self) -> int:
        return self.unit.index

    def loads(self) -> list[DDGNode]:
        return [n for n in self.nodes if n.kind == NodeKind.LOAD]

    def stores(self) -> list[DDGNode]:
        return [n for n in self.nodes if n.kind == NodeKind.STORE]

    def roots(self) -> list[DDGNode]:
        """Stores and nodes whose results are not used in the unit."""
        return [n for n in self.nodes if n.kind == NodeKind.STORE or not n.user_nodes]

    def defs_of(self, reg: str) -> list[DDGNode]:
        return [n for n in self.nodes if reg in n.defines]


@dataclass
class SiteInfo:
    """All occurrences of one static site (pc, ordinal) across a Region."""
    site: Site
    kind: NodeKind
    nodes: list[DDGNode] = field(default_factory=list)
    address: Optional["AddressExpr"] = None
    unresolved: bool = False
    opaque: bool = False

    @property
    def is_memory(self) -> bool:
        return self.nodes[0].is_memory

    @property
    def reads(self) -> bool:
        return self.nodes[0].reads_memory


@dataclass
class RegionArena:
    """Owns every node, edge and site of one Region's analysis."""
    region: Region
    graphs: list[UnitGraph] = field(default_factory=list)
    sites: dict[Site, SiteInfo] = field(default_factory=dict)
    _next_id: int = 0

    def new_node_id(self) -> int:
        node_id = self._next_id
        self._next_id += 1
        return node_id

    def record_site(self, node: DDGNode) -> None:
        info = self.sites.get(node.site)
        if info is None:
            info = SiteInfo(node.site, node.kind)
            self.sites[node.site] = info
        info.nodes.append(node)

    def iter_nodes(self) -> Iterator[DDGNode]:
        for graph in self.graphs:
            yield from graph.nodes

    @property
    def node_count(self) -> int:
        return self._next_id

    def memory_sites(self) -> list[SiteInfo]:
        return [s for s in self.sites.values() if s.is_memory]


class UnitGraphBuilder:
    """Builds the def-use graph of one Iteration Unit."""

    def __init__(self, max_nodes: Optional[int] = None, barrier_unknown: bool = True):
        self.max_nodes = max_nodes
        self.barrier_unknown = barrier_unknown

    @staticmethod
    def _node_kind(item: UnitItem) -> NodeKind:
        if isinstance(item, CompositeEvent):
            return NodeKind.LOOP
        return _NODE_KIND[item.kind]

    def _is_barrier(self, node: DDGNode) -> bool:
        if node.kind == NodeKind.LOOP:
            return True
        if node.kind == NodeKind.OTHER:
            return self.barrier_unknown
        # A store to an unknown address may clobber anything after it
        return node.kind == NodeKind.STORE and node.is_unresolved

    def build(self, unit: IterationUnit, arena: RegionArena) -> UnitGraph:
        graph = UnitGraph(unit=unit)
        if self.max_nodes is not None and len(unit) > self.max_nodes:
            raise RegionTooLarge(
                arena.region.id,
                f"unit {unit.index} has {len(unit)} nodes > max_nodes_per_unit={self.max_nodes}",
            )

        reg_def: dict[str, DDGNode] = {}
        mem_def: dict[int, DDGNode] = {}
        ordinals: dict[int, int] = {}
        last_barrier: Optional[DDGNode] = None
        pending_mem: list[DDGNode] = []

        def connect(node: DDGNode, producer: Optional[DDGNode], label: str):
            node.operand_nodes.append(producer)
            node.operand_labels.append(label)
            if producer is not None:
                producer.user_nodes.append(node)
                graph.edges.append(Edge(producer, node, label))

        for item in unit:
            ordinal = ordinals.get(item.pc, 0)
            ordinals[item.pc] = ordinal + 1

            if isinstance(item, CompositeEvent):
                reads, writes, constants = item.reads, item.writes, ()
            else:
                reads, writes, constants = item.sources, item.dests, item.immediates

            node = DDGNode(
                id=arena.new_node_id(),
                unit=unit.index,
                index=len(graph.nodes),
                kind=self._node_kind(item),
                item=item,
                site=(item.pc, ordinal),
                constants=tuple(constants),
                defines=tuple(writes),
            )

            # Step 1: register operands
            for reg in reads:
                producer = reg_def.get(reg)
                if producer is None:
                    graph.live_ins.setdefault(reg, []).append(node)
                connect(node, producer, reg)

            # Step 2: memory operands (reads see the last writer of each byte)
            mem = node.mem
            if node.reads_memory and mem is not None and mem.resolved:
                writers: list[DDGNode] = []
                for byte in range(mem.address, mem.address + mem.width):
                    writer = mem_def.get(byte)
                    if writer is not None and writer not in writers:
                        writers.append(writer)
                for writer in writers:
                    connect(node, writer, f"mem[{mem.address:#x}]")

            # Step 3: ordering around barriers
            is_barrier = self._is_barrier(node)
            if is_barrier:
                for prior in pending_mem:
                    connect(node, prior, ORDER_LABEL)
                if last_barrier is not None:
                    connect(node, last_barrier, ORDER_LABEL)
            elif node.is_memory and last_barrier is not None:
                connect(node, last_barrier, ORDER_LABEL)

            # Step 4: definitions
            for reg in writes:
                reg_def[reg] = node
            if node.kind == NodeKind.STORE and mem is not None and mem.resolved:
                for byte in range(mem.address, mem.address + mem.width):
                    mem_def[byte] = node

            if is_barrier:
                last_barrier = node
                pending_mem = []
            elif node.is_memory:
                pending_mem.append(node)

            graph.nodes.append(node)
            arena.record_site(node)

        graph.live_outs = dict(reg_def)
        return graph


# === Utility functions ===

def get_graph_depth(graph: UnitGraph) -> int:
    """Critical path length (in nodes) of a unit graph."""
    depths: dict[int, int] = {}
    for node in graph.nodes:
        # Trace order is a topological order
        children = node.producers()
        depths[node.id] = 0 if not children else 1 + max(depths[c.id] for c in children)
    return max(depths.values(), default=0)


# === Pretty printing ===

def print_unit_graph(graph: UnitGraph, indent: str = "") -> str:
    """Pretty print a unit graph, one node per line with its dependencies."""
    lines = []
    lines.append(f"{indent}Unit {graph.index} ({len(graph.nodes)} nodes, depth: {get_graph_depth(graph)})")
    lines.append(f"{indent}{'=' * 50}")
    for node in graph.nodes:
        addr = f"  @ {node.address}" if node.address is not None else ""
        lines.append(f"{indent}  [{node.index}] {node.item}{addr}")
        deps = ", ".join(
            f"{label}<-{dep.index}" if dep is not None else f"{label}<-in"
            for dep, label in zip(node.operand_nodes, node.operand_labels)
        )
        if deps:
            lines.append(f"{indent}       depends on: [{deps}]")
    if graph.live_ins:
        lines.append(f"{indent}  live-in: {', '.join(sorted(graph.live_ins))}")
    return "\n".join(lines)


def print_unit_graph_dot(graph: UnitGraph, name: str = "unit") -> str:
    """Generate DOT (Graphviz) representation of a unit graph."""
    lines = []
    lines.append(f"digraph {name} {{")
    lines.append("  rankdir=TB;")
    lines.append("  node [shape=box];")

    for node in graph.nodes:
        label = str(node.item).replace('"', '\\"')
        style = "bold" if node.kind == NodeKind.STORE else "solid"
        lines.append(f'  n{node.index} [label="{node.index}: {label}" style="{style}"];')

    for edge in graph.edges:
        style = " style=dashed" if edge.label == ORDER_LABEL else ""
        lines.append(f'  n{edge.src.index} -> n{edge.dst.index} [label="{edge.label}"{style}];')

    lines.append("}")
    return "\n".join(lines)
