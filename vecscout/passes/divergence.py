"""
Divergence Classification Pass

Groups a Region's units into equivalence classes by graph shape.

Two units share a class iff their graphs match node for node: same kinds
and mnemonics, same operand topology, same memory widths and strides,
same constants and the same direction at every non-latch branch. Address
bases are abstracted away and so are immediates that step with the unit
index (induction constants).

Trace order along one control path is the static program order, so the
node-by-node comparison is done on the trace-ordered signature.
"""

from dataclasses import dataclass, field
from typing import Any

from ..alias_analysis import fit_affine
from ..ddg import DDGNode, NodeKind, RegionArena, Site, UnitGraph, strip_copies
from ..pass_manager import PassConfig, RegionContext, RegionPass
from ..verdicts import Divergence

INDUCTION_CONSTANT = "iv"


@dataclass
class EquivalenceClass:
    """Units whose graphs have one shape."""
    index: int
    signature: tuple
    units: list[int] = field(default_factory=list)
    # Graph of the first member unit
    graph: UnitGraph = None
    # (branch pc, taken) for each conditional non-latch branch on this path
    predicate: tuple[tuple[int, bool], ...] = ()
    # Compare nodes feeding those branches, in the representative graph
    predicate_nodes: list[DDGNode] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.units)

    def __repr__(self):
        return f"EquivalenceClass({self.index}, {self.size} units, predicate={self.predicate})"


@dataclass
class DivergenceResult:
    classes: list[EquivalenceClass]

    @property
    def uniform(self) -> bool:
        return len(self.classes) == 1

    @property
    def divergence(self) -> Divergence:
        return Divergence.UNIFORM if self.uniform else Divergence.DIVERGENT

    def class_of(self, unit_index: int) -> EquivalenceClass:
        for cls in self.classes:
            if unit_index in cls.units:
                return cls
        raise KeyError(unit_index)


def induction_constants(arena: RegionArena) -> dict[Site, frozenset[int]]:
    """Per site, the immediate positions that step with the unit index."""
    result: dict[Site, frozenset[int]] = {}
    for site, info in arena.sites.items():
        width = max((len(n.constants) for n in info.nodes), default=0)
        positions = set()
        for pos in range(width):
            points = [(n.unit, n.constants[pos]) for n in info.nodes if len(n.constants) > pos]
            fitted = fit_affine(points)
            if fitted is not None and fitted[1]:
                positions.add(pos)
        if positions:
            result[site] = frozenset(positions)
    return result


def node_label(node: DDGNode, latches: frozenset[int],
               iv_positions: frozenset[int] = frozenset()) -> tuple[Any, ...]:
    """Base- and induction-normalized description of one node."""
    constants = tuple(
        INDUCTION_CONSTANT if pos in iv_positions else value
        for pos, value in enumerate(node.constants)
    )
    memory = None
    if node.mem is not None:
        stride = node.address.stride if node.address is not None else "?"
        memory = (node.mem.width, stride)
    direction = None
    if node.kind == NodeKind.BRANCH and node.pc not in latches:
        direction = node.item.taken
    operands = tuple(
        ("n", dep.index) if dep is not None else ("in", label)
        for dep, label in zip(node.operand_nodes, node.operand_labels)
    )
    return (node.kind.value, node.mnemonic, constants, memory, direction, operands)


def unit_signature(graph: UnitGraph, latches: frozenset[int],
                   iv_sites: dict[Site, frozenset[int]]) -> tuple:
    return tuple(
        node_label(n, latches, iv_sites.get(n.site, frozenset())) for n in graph.nodes
    )


def _predicate(graph: UnitGraph, latches: frozenset[int]) -> tuple[tuple, list[DDGNode]]:
    predicate = []
    compares: list[DDGNode] = []
    for node in graph.nodes:
        if node.kind != NodeKind.BRANCH or node.pc in latches or not node.item.is_conditional:
            continue
        predicate.append((node.pc, node.item.taken))
        for dep in node.producers():
            source = strip_copies(dep)
            if source.kind == NodeKind.COMPARE and source not in compares:
                compares.append(source)
    return tuple(predicate), compares


def classify_units(arena: RegionArena, abstract_induction_constants: bool = True) -> DivergenceResult:
    """Group the arena's unit graphs into equivalence classes (first-seen order)."""
    latches = arena.region.latch_pcs
    iv_sites = induction_constants(arena) if abstract_induction_constants else {}

    by_signature: dict[tuple, EquivalenceClass] = {}
    for graph in arena.graphs:
        signature = unit_signature(graph, latches, iv_sites)
        cls = by_signature.get(signature)
        if cls is None:
            predicate, compares = _predicate(graph, latches)
            cls = EquivalenceClass(
                index=len(by_signature),
                signature=signature,
                graph=graph,
                predicate=predicate,
                predicate_nodes=compares,
            )
            by_signature[signature] = cls
        cls.units.append(graph.index)

    return DivergenceResult(classes=list(by_signature.values()))


class DivergencePass(RegionPass):
    """Equivalence classes of units by graph shape."""

    @property
    def name(self) -> str:
        return "divergence"

    @property
    def input_type(self) -> str:
        return "graphs"

    @property
    def output_type(self) -> str:
        return "classes"

    def run(self, ctx: RegionContext, config: PassConfig) -> RegionContext:
        result = classify_units(
            ctx.arena,
            abstract_induction_constants=config.options.get("abstract_induction_constants", True),
        )
        ctx.divergence = result
        self.metrics(ctx).custom = {
            "classes": len(result.classes),
            "divergence": result.divergence.value,
        }
        if not result.uniform:
            for cls in result.classes:
                self._add_metric_message(
                    ctx, f"class {cls.index}: {cls.size} unit(s), predicate {cls.predicate}"
                )
        return ctx
