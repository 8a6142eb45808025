"""
Alias analysis over a Region's memory sites.

Every memory access site (pc, ordinal) is fitted across the Region's
units to an affine form ``base + stride*i + offset``, where ``i`` is the
unit index. Sites that do not fit are opaque (alias-unknown). Cross-unit
queries then work on the concrete intervals each unit touches.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from .ddg import DDGNode, NodeKind, RegionArena, Site


@dataclass(frozen=True)
class AddressExpr:
    """Affine address: base + stride*i + offset, ``width`` bytes wide.

    ``stride`` is None when the site was observed in a single unit.
    """
    base: int
    stride: Optional[int]
    width: int
    offset: int = 0
    base_register: Optional[str] = None

    def at(self, i: int) -> int:
        return self.base + self.offset + (self.stride or 0) * i

    @property
    def is_invariant(self) -> bool:
        return self.stride == 0

    @property
    def is_contiguous(self) -> bool:
        return self.stride is not None and abs(self.stride) == self.width

    @property
    def is_strided(self) -> bool:
        return self.stride is not None and abs(self.stride) > self.width

    def __str__(self):
        base = f"{self.base_register}@entry" if self.base_register else f"{self.base:#x}"
        stride = "?" if self.stride is None else str(self.stride)
        text = f"{base} + {stride}*i"
        if self.offset:
            text += f" + {self.offset}"
        return f"{text} ({self.width}B)"


class AliasResult(Enum):
    MUST_ALIAS = 1
    NO_ALIAS = 2
    MAY_ALIAS = 3


class ConflictKind(Enum):
    """Cross-unit memory dependence, named by the earlier unit's access."""
    FLOW = "flow"      # store then load (read after write)
    ANTI = "anti"      # load then store (write after read)
    OUTPUT = "output"  # store then store


@dataclass(frozen=True)
class MemoryConflict:
    """Overlapping accesses in two distinct units; ``earlier.unit < later.unit``."""
    earlier: DDGNode
    later: DDGNode
    kind: ConflictKind

    def __str__(self):
        return (f"{self.kind.value}: {self.earlier.mnemonic}@{self.earlier.pc:#x} (unit {self.earlier.unit})"
                f" -> {self.later.mnemonic}@{self.later.pc:#x} (unit {self.later.unit})")


def fit_affine(points: Sequence[tuple[int, int]]) -> Optional[tuple[int, Optional[int]]]:
    """Fit ``value = base + step*i`` exactly through (i, value) points.

    Returns (base, step), with step None when every point shares one i,
    or None when the points are not affine.
    """
    if not points:
        return None
    i0, v0 = points[0]
    second = next(((i, v) for i, v in points if i != i0), None)
    if second is None:
        if any(v != v0 for _, v in points):
            return None
        return v0, None

    i1, v1 = second
    delta, span = v1 - v0, i1 - i0
    if delta % span:
        return None
    step = delta // span
    base = v0 - step * i0
    for i, v in points:
        if base + step * i != v:
            return None
    return base, step


def fit_sites(arena: RegionArena) -> None:
    """Attach an AddressExpr to every memory node whose site is affine."""
    for info in arena.memory_sites():
        mems = [n.mem for n in info.nodes]
        if any(m is None or not m.resolved for m in mems):
            info.unresolved = True
            continue
        widths = {m.width for m in mems}
        fitted = fit_affine([(n.unit, n.mem.address) for n in info.nodes])
        if fitted is None or len(widths) != 1:
            info.opaque = True
            continue
        first = mems[0]
        base, stride = fitted
        info.address = AddressExpr(
            base=base - first.disp,
            stride=stride,
            width=first.width,
            offset=first.disp,
            base_register=first.base,
        )
        for node in info.nodes:
            node.address = info.address


class AliasAnalysis:
    """
    Cross-unit alias queries on fitted addresses.

    - identical interval => MUST_ALIAS
    - overlapping intervals => MAY_ALIAS
    - disjoint intervals => NO_ALIAS
    - unresolved or opaque addresses => MAY_ALIAS
    """

    def __init__(self, arena: RegionArena):
        self._arena = arena
        self._alias_cache: dict[tuple[int, int], AliasResult] = {}
        self.alias_queries = 0
        self.alias_cache_hits = 0

    @staticmethod
    def interval(node: DDGNode) -> Optional[tuple[int, int]]:
        """[start, end) touched by ``node`` in its own unit."""
        if node.address is None:
            return None
        start = node.address.at(node.unit)
        return start, start + node.address.width

    def alias(self, a: DDGNode, b: DDGNode) -> AliasResult:
        self.alias_queries += 1
        cache_key = (a.id, b.id)
        cached = self._alias_cache.get(cache_key)
        if cached is not None:
            self.alias_cache_hits += 1
            return cached

        a_range, b_range = self.interval(a), self.interval(b)
        if a_range is None or b_range is None:
            res = AliasResult.MAY_ALIAS
        elif a_range[1] <= b_range[0] or b_range[1] <= a_range[0]:
            res = AliasResult.NO_ALIAS
        elif a_range == b_range:
            res = AliasResult.MUST_ALIAS
        else:
            res = AliasResult.MAY_ALIAS

        # Cache symmetric results
        self._alias_cache[cache_key] = res
        self._alias_cache[(b.id, a.id)] = res
        return res

    def cross_unit_conflicts(self, exclude_sites: frozenset[Site] = frozenset()) -> list[MemoryConflict]:
        """All overlaps between accesses of distinct units where one side is a store.

        Accesses at excluded sites (recognized reductions) are ignored.
        Sites without an affine address are the caller's responsibility.
        """
        accesses = [
            n for n in self._arena.iter_nodes()
            if n.is_memory and n.address is not None and n.site not in exclude_sites
        ]

        # byte -> unit -> first store of that unit; units inserted in order
        writers: dict[int, dict[int, DDGNode]] = {}
        for node in accesses:
            if node.kind != NodeKind.STORE:
                continue
            start, end = self.interval(node)
            for byte in range(start, end):
                writers.setdefault(byte, {}).setdefault(node.unit, node)

        found: dict[tuple[int, int], MemoryConflict] = {}
        for node in accesses:
            start, end = self.interval(node)
            for byte in range(start, end):
                conflict = self._first_conflict(node, writers.get(byte))
                if conflict is not None:
                    found.setdefault((conflict.earlier.id, conflict.later.id), conflict)
                    break

        return sorted(found.values(),
                      key=lambda c: (c.later.unit, c.earlier.unit, c.later.index, c.earlier.index))

    @staticmethod
    def _first_conflict(node: DDGNode, unit_writers: Optional[dict[int, DDGNode]]) -> Optional[MemoryConflict]:
        if not unit_writers:
            return None
        for unit, writer in unit_writers.items():
            if unit == node.unit:
                continue
            if unit < node.unit:
                kind = ConflictKind.OUTPUT if node.kind == NodeKind.STORE else ConflictKind.FLOW
                return MemoryConflict(writer, node, kind)
            kind = ConflictKind.OUTPUT if node.kind == NodeKind.STORE else ConflictKind.ANTI
            return MemoryConflict(node, writer, kind)
        return None
