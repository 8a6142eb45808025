"""
Independence Analysis Pass

Decides whether a Region's units can run in parallel.

Verdicts:
- Independent: no value or memory location flows between units
- IndependentWithReduction: the only carried values are associative
  accumulations into one scalar (register or fixed memory cell)
- Dependent(reason): anything else, including any doubt about addresses

Checks run in order and the first failing one decides the reason:
unresolved addresses, non-affine address streams, unknown operations,
inner loops, register-carried values, then cross-unit memory overlap.
Induction updates (r = r +/- imm, once per unit with one fixed step) are
carried but never block.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from ..alias_analysis import AliasAnalysis, AliasResult, ConflictKind
from ..ddg import DDGNode, NodeKind, RegionArena, Site, UnitGraph, strip_copies
from ..pass_manager import PassConfig, RegionContext, RegionPass


class DependenceReason(Enum):
    LOOP_CARRIED = "loop-carried"
    MEMORY_OVERLAP = "memory-overlap"
    UNRESOLVED_ADDRESS = "unresolved-address"
    NON_AFFINE_ADDRESS = "non-affine-address"
    OPAQUE_OPERATION = "opaque-operation"
    INNER_LOOP = "inner-loop"


class ReductionOperator(Enum):
    SUM = "sum"
    PRODUCT = "product"
    MIN = "min"
    MAX = "max"
    AND = "and"
    OR = "or"
    XOR = "xor"


def _ops(operator: ReductionOperator, *mnemonics: str) -> dict[str, ReductionOperator]:
    return {m: operator for m in mnemonics}


# Associative and commutative operations, by mnemonic
REDUCTION_OPERATORS: dict[str, ReductionOperator] = {
    **_ops(ReductionOperator.SUM, "add", "addl", "addq", "fadd", "addsd", "addss",
           "vaddsd", "vaddss", "paddd", "paddq"),
    **_ops(ReductionOperator.PRODUCT, "mul", "imul", "fmul", "mulsd", "mulss",
           "vmulsd", "vmulss"),
    **_ops(ReductionOperator.MIN, "min", "fmin", "minsd", "minss", "vminsd", "vminss",
           "pminsd", "umin", "smin"),
    **_ops(ReductionOperator.MAX, "max", "fmax", "maxsd", "maxss", "vmaxsd", "vmaxss",
           "pmaxsd", "umax", "smax"),
    **_ops(ReductionOperator.AND, "and", "andl", "andq", "pand"),
    **_ops(ReductionOperator.OR, "or", "orl", "orq", "orr", "por"),
    **_ops(ReductionOperator.XOR, "xor", "xorl", "xorq", "eor", "pxor"),
}

# r = r +/- imm
INDUCTION_MNEMONICS = frozenset({"add", "sub", "inc", "dec", "lea"})


class CarriedKind(Enum):
    INDUCTION = "induction"
    REDUCTION = "reduction"
    REGISTER = "register"
    MEMORY = "memory"


@dataclass(frozen=True)
class CarriedDependency:
    """A value produced in one unit and consumed in a later one."""
    from_unit: int
    to_unit: int
    label: str
    kind: CarriedKind

    def __str__(self):
        return f"{self.label}: unit {self.from_unit} -> {self.to_unit} ({self.kind.value})"


@dataclass(frozen=True)
class ReductionShape:
    """One recognized accumulation."""
    operator: ReductionOperator
    # Register name, or "mem[0x...]" for an accumulator cell
    carrier: str
    # Site of the accumulating operation
    site: Site

    def __str__(self):
        return f"{self.operator.value}({self.carrier})"


@dataclass(frozen=True)
class Independent:
    def __str__(self):
        return "Independent"


@dataclass(frozen=True)
class IndependentWithReduction:
    reductions: tuple[ReductionShape, ...]

    @property
    def shape(self) -> ReductionShape:
        return self.reductions[0]

    @property
    def operators(self) -> frozenset[ReductionOperator]:
        return frozenset(r.operator for r in self.reductions)

    def __str__(self):
        return f"IndependentWithReduction({', '.join(str(r) for r in self.reductions)})"


@dataclass(frozen=True)
class Dependent:
    reason: DependenceReason
    detail: str = ""

    def __str__(self):
        return f"Dependent({self.reason.value}: {self.detail})"


IndependenceVerdict = Union[Independent, IndependentWithReduction, Dependent]


def _is_induction_update(node: DDGNode, reg: str) -> bool:
    if node.kind != NodeKind.ARITH or node.mnemonic not in INDUCTION_MNEMONICS:
        return False
    if node.reads_memory:
        return False
    if tuple(node.item.sources) != (reg,):
        return False
    return bool(node.constants) or node.mnemonic in ("inc", "dec")


def _reduction_in_unit(graph: UnitGraph, reg: str) -> Optional[tuple[ReductionOperator, DDGNode]]:
    """Operator and accumulating node if ``reg`` is a pure accumulator in this unit."""
    last = graph.live_outs.get(reg)
    readers = graph.live_ins.get(reg, [])
    if last is None or not readers:
        return None
    core = strip_copies(last)
    if core is None or core.kind != NodeKind.ARITH:
        return None
    operator = REDUCTION_OPERATORS.get(core.mnemonic)
    if operator is None:
        return None
    # The incoming value feeds the accumulating operation and nothing else
    if readers != [core]:
        return None
    if any(d is not last and d is not core for d in graph.defs_of(reg)):
        return None
    return operator, core


def _is_induction(graphs: list[UnitGraph], reg: str) -> bool:
    """One update per unit, same site and step, so the value is affine in the unit index."""
    updates = set()
    for graph in graphs:
        defs = graph.defs_of(reg)
        if len(defs) != 1 or not _is_induction_update(defs[0], reg):
            return False
        node = defs[0]
        updates.add((node.site, node.mnemonic, node.constants))
    return len(updates) == 1


class IndependenceAnalyzer:
    """Runs the ordered independence checks on one Region."""

    def __init__(self, arena: RegionArena, allow_memory_reductions: bool = True):
        self.arena = arena
        self.allow_memory_reductions = allow_memory_reductions
        self.alias = AliasAnalysis(arena)
        self.carried: list[CarriedDependency] = []

    def analyze(self) -> IndependenceVerdict:
        verdict = (self._check_addresses()
                   or self._check_opaque_nodes())
        if verdict is not None:
            return verdict

        reductions: list[ReductionShape] = []
        verdict = self._check_registers(reductions)
        if verdict is not None:
            return verdict

        excluded: set[Site] = set()
        if self.allow_memory_reductions:
            for shape, sites in self._memory_reductions():
                reductions.append(shape)
                excluded.update(sites)

        verdict = self._check_memory(frozenset(excluded))
        if verdict is not None:
            return verdict

        if reductions:
            return IndependentWithReduction(tuple(reductions))
        return Independent()

    # === Checks ===

    def _check_addresses(self) -> Optional[Dependent]:
        sites = self.arena.memory_sites()
        for info in sites:
            if info.unresolved:
                return Dependent(DependenceReason.UNRESOLVED_ADDRESS,
                                 f"{info.nodes[0].mnemonic}@{info.site[0]:#x}")
        for info in sites:
            if info.opaque:
                return Dependent(DependenceReason.NON_AFFINE_ADDRESS,
                                 f"{info.nodes[0].mnemonic}@{info.site[0]:#x}")
        return None

    def _check_opaque_nodes(self) -> Optional[Dependent]:
        nodes = list(self.arena.iter_nodes())
        for node in nodes:
            if node.kind == NodeKind.OTHER:
                return Dependent(DependenceReason.OPAQUE_OPERATION, f"{node.mnemonic}@{node.pc:#x}")
        for node in nodes:
            if node.kind == NodeKind.LOOP:
                return Dependent(DependenceReason.INNER_LOOP, node.mnemonic)
        return None

    def _carried_registers(self) -> list[str]:
        """Registers read on entry to some unit and written by an earlier one."""
        written: set[str] = set()
        carried: list[str] = []
        for graph in self.arena.graphs:
            for reg in graph.live_ins:
                if reg in written and reg not in carried:
                    carried.append(reg)
            written.update(graph.live_outs)
        return carried

    def _record_register(self, reg: str, kind: CarriedKind):
        last_writer: Optional[int] = None
        for graph in self.arena.graphs:
            if reg in graph.live_ins and last_writer is not None:
                self.carried.append(CarriedDependency(last_writer, graph.index, reg, kind))
            if reg in graph.live_outs:
                last_writer = graph.index

    def _check_registers(self, reductions: list[ReductionShape]) -> Optional[Dependent]:
        for reg in self._carried_registers():
            if _is_induction(self.arena.graphs, reg):
                self._record_register(reg, CarriedKind.INDUCTION)
                continue

            shape = self._register_reduction(reg)
            if shape is not None:
                self._record_register(reg, CarriedKind.REDUCTION)
                reductions.append(shape)
                continue

            self._record_register(reg, CarriedKind.REGISTER)
            first = next(c for c in self.carried if c.label == reg)
            return Dependent(
                DependenceReason.LOOP_CARRIED,
                f"register {reg} flows from unit {first.from_unit} to unit {first.to_unit}",
            )
        return None

    def _register_reduction(self, reg: str) -> Optional[ReductionShape]:
        operator: Optional[ReductionOperator] = None
        site: Optional[Site] = None
        for graph in self.arena.graphs:
            if reg not in graph.live_ins and reg not in graph.live_outs:
                continue
            found = _reduction_in_unit(graph, reg)
            if found is None:
                return None
            op, core = found
            if operator is not None and op != operator:
                return None
            operator = op
            if site is None:
                site = core.site
        if operator is None:
            return None
        return ReductionShape(operator, reg, site)

    def _memory_reductions(self) -> list[tuple[ReductionShape, set[Site]]]:
        """Stride-0 load/op/store chains accumulating into one memory cell."""
        result = []
        for info in self.arena.memory_sites():
            if info.kind != NodeKind.STORE or info.address is None or not info.address.is_invariant:
                continue
            shape, sites = self._memory_reduction_at(info.nodes)
            if shape is None:
                continue
            # Any other access to the cell makes the partial sums observable
            cell = self.alias.interval(info.nodes[0])
            if any(self._overlaps(n, cell) for n in self.arena.iter_nodes()
                   if n.is_memory and n.site not in sites):
                continue
            for prev, store in zip(info.nodes, info.nodes[1:]):
                self.carried.append(
                    CarriedDependency(prev.unit, store.unit, shape.carrier, CarriedKind.REDUCTION)
                )
            result.append((shape, sites))
        return result

    def _overlaps(self, node: DDGNode, cell: tuple[int, int]) -> bool:
        interval = self.alias.interval(node)
        return interval is not None and interval[0] < cell[1] and cell[0] < interval[1]

    def _memory_reduction_at(self, stores: list[DDGNode]) -> tuple[Optional[ReductionShape], set[Site]]:
        operator: Optional[ReductionOperator] = None
        sites: set[Site] = {stores[0].site}
        op_site: Optional[Site] = None
        for store in stores:
            core = strip_copies(store.value_operand())
            if core is None or core.kind != NodeKind.ARITH:
                return None, set()
            op = REDUCTION_OPERATORS.get(core.mnemonic)
            if op is None or (operator is not None and op != operator):
                return None, set()
            readers = [p for p in core.producers() if p.reads_memory]
            if core.reads_memory:
                readers.append(core)
            loads = [p for p in readers if self.alias.alias(p, store) == AliasResult.MUST_ALIAS]
            if len(loads) != 1:
                return None, set()
            if loads[0] is not core and loads[0].user_nodes != [core]:
                return None, set()
            operator = op
            op_site = op_site or core.site
            sites.add(loads[0].site)
        label = f"mem[{self.alias.interval(stores[0])[0]:#x}]"
        return ReductionShape(operator, label, op_site), sites

    def _check_memory(self, excluded: frozenset[Site]) -> Optional[Dependent]:
        conflicts = self.alias.cross_unit_conflicts(excluded)
        for conflict in conflicts:
            start = self.alias.interval(conflict.earlier)[0]
            self.carried.append(CarriedDependency(
                conflict.earlier.unit, conflict.later.unit, f"mem[{start:#x}]", CarriedKind.MEMORY,
            ))
        if not conflicts:
            return None
        for conflict in conflicts:
            if conflict.kind == ConflictKind.FLOW:
                return Dependent(DependenceReason.LOOP_CARRIED, str(conflict))
        return Dependent(DependenceReason.MEMORY_OVERLAP, str(conflicts[0]))


class IndependencePass(RegionPass):
    """Classifies cross-unit dependences of a Region."""

    @property
    def name(self) -> str:
        return "independence"

    @property
    def input_type(self) -> str:
        return "classes"

    @property
    def output_type(self) -> str:
        return "independence"

    def run(self, ctx: RegionContext, config: PassConfig) -> RegionContext:
        analyzer = IndependenceAnalyzer(
            ctx.arena,
            allow_memory_reductions=config.options.get("allow_memory_reductions", True),
        )
        verdict = analyzer.analyze()
        ctx.independence = verdict
        ctx.carried = analyzer.carried

        metrics = self.metrics(ctx)
        metrics.custom = {
            "verdict": type(verdict).__name__,
            "carried": len(analyzer.carried),
            "alias_queries": analyzer.alias.alias_queries,
            "alias_cache_hits": analyzer.alias.alias_cache_hits,
        }
        if isinstance(verdict, Dependent):
            self._add_metric_message(ctx, f"{verdict.reason.value}: {verdict.detail}")
        elif isinstance(verdict, IndependentWithReduction):
            for shape in verdict.reductions:
                self._add_metric_message(ctx, f"reduction {shape}")
        return ctx
