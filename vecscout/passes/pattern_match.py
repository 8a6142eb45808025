"""
Pattern Matching Pass

Matches a Region's equivalence classes and independence verdict against
an ordered registry of SIMD idioms and emits the Region's verdict record.

Default priority (most specific first):
    reduction > masked-select > strided-gather > strided-scatter > map

A pattern fires only when its structural matcher accepts the Region AND
the independence verdict is of the kind the pattern requires. The first
enabled pattern that fires produces the Region's single Opportunity.
"""

from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional

from ..alias_analysis import fit_affine
from ..ddg import DDGNode, NodeKind, RegionArena, strip_copies
from ..pass_manager import PassConfig, RegionContext, RegionPass
from ..verdicts import (
    NoOpportunity, NoOpportunityReason, Opportunity, PatternKind,
)
from .divergence import DivergenceResult
from .independence import (
    REDUCTION_OPERATORS, DependenceReason, Dependent, Independent,
    IndependentWithReduction, IndependenceVerdict,
)


@dataclass
class MatchContext:
    """What a structural matcher gets to look at."""
    arena: RegionArena
    divergence: DivergenceResult
    independence: IndependenceVerdict

    @property
    def uniform(self) -> bool:
        return self.divergence.uniform


@dataclass(frozen=True)
class PatternMatch:
    kind: PatternKind
    element_width: Optional[int]
    detail: str = ""


Matcher = Callable[[MatchContext], Optional[PatternMatch]]


@dataclass(frozen=True)
class Pattern:
    """A SIMD idiom: structural matcher plus required independence verdict."""
    kind: PatternKind
    requires: type
    matcher: Matcher

    def try_match(self, ctx: MatchContext) -> Optional[PatternMatch]:
        if not isinstance(ctx.independence, self.requires):
            return None
        return self.matcher(ctx)


class PatternRegistry:
    """Ordered, open collection of patterns."""

    def __init__(self, patterns: Iterable[Pattern] = ()):
        self._patterns: list[Pattern] = list(patterns)

    def register(self, pattern: Pattern, before: Optional[PatternKind] = None) -> None:
        """Append ``pattern``, or insert it ahead of the pattern of kind ``before``."""
        if before is not None:
            for i, existing in enumerate(self._patterns):
                if existing.kind == before:
                    self._patterns.insert(i, pattern)
                    return
        self._patterns.append(pattern)

    def enabled(self, kinds: frozenset[PatternKind]) -> list[Pattern]:
        return [p for p in self._patterns if p.kind in kinds]

    def __iter__(self) -> Iterator[Pattern]:
        return iter(self._patterns)

    def __len__(self):
        return len(self._patterns)


# === Structural matchers ===

def _memory_nodes(ctx: MatchContext, kind: NodeKind) -> list[DDGNode]:
    return [n for n in ctx.arena.iter_nodes() if n.kind == kind]


def _width(nodes: Iterable[DDGNode]) -> Optional[int]:
    widths = [n.mem.width for n in nodes if n.mem is not None]
    return min(widths) if widths else None


def _loads_feeding(node: DDGNode) -> list[DDGNode]:
    """Memory reads reachable backwards from ``node`` through register dependences."""
    seen: set[int] = set()
    stack = [node]
    loads = []
    while stack:
        n = stack.pop()
        for dep in n.producers():
            if dep.id in seen:
                continue
            seen.add(dep.id)
            if dep.reads_memory:
                loads.append(dep)
            stack.append(dep)
    return loads


def match_reduction(ctx: MatchContext) -> Optional[PatternMatch]:
    verdict = ctx.independence
    for shape in verdict.reductions:
        for cls in ctx.divergence.classes:
            for node in cls.graph.nodes:
                if node.site != shape.site:
                    continue
                if REDUCTION_OPERATORS.get(node.mnemonic) != shape.operator:
                    continue
                width = _width(_loads_feeding(node))
                if width is None and node.mem is not None:
                    width = node.mem.width
                return PatternMatch(PatternKind.REDUCTION, width, str(shape))
    return None


def _select_gated_store(ctx: MatchContext) -> Optional[DDGNode]:
    """A store fed by a select whose condition comes from a compare."""
    for store in ctx.divergence.classes[0].graph.stores():
        value = strip_copies(store.value_operand())
        if value is None or value.kind != NodeKind.SELECT or not value.operand_nodes:
            continue
        cond = strip_copies(value.operand_nodes[0])
        if cond is not None and cond.kind == NodeKind.COMPARE:
            return store
    return None


def _stores_follow_streams(ctx: MatchContext) -> Optional[list[DDGNode]]:
    """Per-unit store streams, position by position, are affine across units."""
    per_unit = [g.stores() for g in ctx.arena.graphs]
    storing = [s for s in per_unit if s]
    if len(storing) < 2 or len({len(s) for s in storing}) != 1:
        return None
    for position in range(len(storing[0])):
        column = [s[position] for s in storing]
        if len({n.mem.width for n in column}) != 1:
            return None
        fitted = fit_affine([(n.unit, n.mem.address) for n in column])
        if fitted is None or not fitted[1]:
            return None
    return [s[0] for s in storing]


def match_masked_select(ctx: MatchContext) -> Optional[PatternMatch]:
    if ctx.uniform:
        store = _select_gated_store(ctx)
        if store is None:
            return None
        return PatternMatch(PatternKind.MASKED_SELECT, store.mem.width, "select gated by compare")

    classes = ctx.divergence.classes
    if not all(cls.predicate_nodes for cls in classes):
        return None
    stores = _stores_follow_streams(ctx)
    if stores is None:
        return None
    return PatternMatch(
        PatternKind.MASKED_SELECT, _width(stores),
        f"{len(classes)} paths selected by {len(classes[0].predicate)} predicate(s)",
    )


def _strided(ctx: MatchContext, reads: bool, pattern: PatternKind) -> Optional[PatternMatch]:
    if not ctx.uniform or not _memory_nodes(ctx, NodeKind.STORE):
        return None
    for info in ctx.arena.memory_sites():
        if info.reads == reads and info.address is not None and info.address.is_strided:
            return PatternMatch(pattern, info.address.width, f"stride {info.address.stride}")
    return None


def match_strided_gather(ctx: MatchContext) -> Optional[PatternMatch]:
    return _strided(ctx, True, PatternKind.STRIDED_GATHER)


def match_strided_scatter(ctx: MatchContext) -> Optional[PatternMatch]:
    return _strided(ctx, False, PatternKind.STRIDED_SCATTER)


def match_map(ctx: MatchContext) -> Optional[PatternMatch]:
    if not ctx.uniform:
        return None
    stores = [s for s in ctx.arena.memory_sites() if s.kind == NodeKind.STORE]
    if not stores:
        return None
    for info in ctx.arena.memory_sites():
        address = info.address
        if address is None:
            return None
        if info.kind == NodeKind.STORE and not address.is_contiguous:
            return None
        if info.reads and not (address.is_contiguous or address.is_invariant):
            return None
    return PatternMatch(PatternKind.MAP, min(s.address.width for s in stores),
                        f"{len(stores)} contiguous store stream(s)")


def default_registry() -> PatternRegistry:
    """Built-in patterns in priority order."""
    return PatternRegistry([
        Pattern(PatternKind.REDUCTION, IndependentWithReduction, match_reduction),
        Pattern(PatternKind.MASKED_SELECT, Independent, match_masked_select),
        Pattern(PatternKind.STRIDED_GATHER, Independent, match_strided_gather),
        Pattern(PatternKind.STRIDED_SCATTER, Independent, match_strided_scatter),
        Pattern(PatternKind.MAP, Independent, match_map),
    ])


class PatternMatchPass(RegionPass):
    """Emits the Region's verdict record."""

    def __init__(self, registry: Optional[PatternRegistry] = None):
        self.registry = registry if registry is not None else default_registry()

    @property
    def name(self) -> str:
        return "pattern-match"

    @property
    def input_type(self) -> str:
        return "independence"

    @property
    def output_type(self) -> str:
        return "verdict"

    def run(self, ctx: RegionContext, config: PassConfig) -> RegionContext:
        region = ctx.region
        independence = ctx.independence

        if isinstance(independence, Dependent):
            reason = NoOpportunityReason.DEPENDENT
            if independence.reason == DependenceReason.OPAQUE_OPERATION:
                reason = NoOpportunityReason.UNKNOWN_INSTRUCTION
            ctx.verdict = NoOpportunity(
                region.id, reason, f"{independence.reason.value}: {independence.detail}"
            )
            return ctx

        match_ctx = MatchContext(ctx.arena, ctx.divergence, independence)
        tried = []
        for pattern in self.registry.enabled(ctx.config.enabled_patterns):
            tried.append(pattern.kind.value)
            match = pattern.try_match(match_ctx)
            if match is None:
                continue
            ctx.verdict = Opportunity(
                region=region.id,
                pattern=match.kind,
                unit_count=region.unit_count,
                element_width=match.element_width,
                divergence=ctx.divergence.divergence,
                class_count=len(ctx.divergence.classes),
                detail=match.detail,
            )
            self.metrics(ctx).custom = {"pattern": match.kind.value, "tried": tried}
            return ctx

        self.metrics(ctx).custom = {"pattern": None, "tried": tried}
        ctx.verdict = NoOpportunity(
            region.id, NoOpportunityReason.NO_MATCHING_PATTERN,
            f"{independence}; tried {', '.join(tried) or 'nothing'}",
        )
        return ctx
