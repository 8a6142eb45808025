"""
Region Segmenter

Splits a normalized trace into Regions made of Iteration Units.

Loops are recognized from backward control transfers: a taken branch whose
target pc is less than or equal to its own pc. A static loop spans the pc
range [head, latch], where head is the back-edge target and latch is the
highest back-edge branch pc for that head.

Segmentation is a single sequential pass in trace order:
- top-level loop instances become LOOP Regions, one Unit per iteration;
  a Unit starts at each execution of the loop head, so events of the loop
  range seen before the head is first reached (the condition block of a
  loop entered at its bottom test) stay in the preceding straight-line code
- inner loops collapse into one CompositeEvent inside the outer Unit and
  are then segmented into their own Regions (outer Region first)
- everything else becomes single-Unit STRAIGHT_LINE Regions
"""

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional, Sequence, Union

from .trace import MemAccess, OpKind, TraceEvent

logger = logging.getLogger(__name__)


class RegionKind(Enum):
    LOOP = "loop"
    STRAIGHT_LINE = "straight-line"


@dataclass(frozen=True, order=True)
class RegionId:
    """Static entry pc plus the dynamic instance number at that pc."""
    entry_pc: int
    instance: int = 0

    def __str__(self):
        return f"{self.entry_pc:#x}#{self.instance}"


@dataclass(frozen=True)
class StaticLoop:
    """A loop recognized from its back edges."""
    head: int
    latch: int
    latches: frozenset[int]
    observations: int

    def contains_pc(self, pc: int) -> bool:
        return self.head <= pc <= self.latch

    def encloses(self, other: "StaticLoop") -> bool:
        """True if ``other`` is a distinct loop nested inside this one."""
        if (self.head, self.latch) == (other.head, other.latch):
            return False
        return (self.head <= other.head and other.latch <= self.latch
                and other.latch not in self.latches)

    def __repr__(self):
        return f"StaticLoop({self.head:#x}..{self.latch:#x}, seen={self.observations})"


@dataclass(frozen=True)
class CompositeEvent:
    """One run of an inner loop, kept opaque inside the enclosing Unit."""
    loop: StaticLoop
    events: tuple[TraceEvent, ...]

    @property
    def seq(self) -> int:
        return self.events[0].seq

    @property
    def last_seq(self) -> int:
        return self.events[-1].seq

    @property
    def pc(self) -> int:
        return self.loop.head

    @property
    def mnemonic(self) -> str:
        return f"loop@{self.loop.head:#x}"

    @property
    def reads(self) -> tuple[str, ...]:
        """Registers read before being written inside the run."""
        written: set[str] = set()
        reads: list[str] = []
        for ev in self.events:
            for reg in ev.sources:
                if reg not in written and reg not in reads:
                    reads.append(reg)
            written.update(ev.dests)
        return tuple(reads)

    @property
    def writes(self) -> tuple[str, ...]:
        writes: list[str] = []
        for ev in self.events:
            for reg in ev.dests:
                if reg not in writes:
                    writes.append(reg)
        return tuple(writes)

    @property
    def memory(self) -> tuple[MemAccess, ...]:
        return tuple(ev.mem for ev in self.events if ev.mem is not None)

    def __repr__(self):
        return f"{self.mnemonic} ({len(self.events)} events)"


UnitItem = Union[TraceEvent, CompositeEvent]


def _item_last_seq(item: UnitItem) -> int:
    return item.last_seq if isinstance(item, CompositeEvent) else item.seq


@dataclass(frozen=True)
class IterationUnit:
    """The events of one dynamic execution of a Region body."""
    index: int
    items: tuple[UnitItem, ...]

    @property
    def first_seq(self) -> int:
        return self.items[0].seq

    @property
    def last_seq(self) -> int:
        return _item_last_seq(self.items[-1])

    def __len__(self):
        return len(self.items)

    def __iter__(self) -> Iterator[UnitItem]:
        return iter(self.items)


@dataclass
class Region:
    """A contiguous trace span for one static code location."""
    id: RegionId
    kind: RegionKind
    units: list[IterationUnit] = field(default_factory=list)
    loop: Optional[StaticLoop] = None
    depth: int = 0
    parent: Optional[RegionId] = None
    # Events outside any complete iteration: ahead of the first head
    # execution, or a trailing iteration that never reached a latch
    dropped_events: int = 0

    @property
    def unit_count(self) -> int:
        return len(self.units)

    @property
    def latch_pcs(self) -> frozenset[int]:
        return self.loop.latches if self.loop is not None else frozenset()

    def __repr__(self):
        return f"Region({self.id}, {self.kind.value}, {self.unit_count} units, depth={self.depth})"


def find_static_loops(events: Sequence[TraceEvent], min_observations: int = 2) -> list[StaticLoop]:
    """Find loops whose back edges were taken at least ``min_observations`` times."""
    back_edges: Counter[tuple[int, int]] = Counter(
        (ev.target, ev.pc) for ev in events if ev.is_back_edge
    )
    by_head: dict[int, dict[int, int]] = defaultdict(dict)
    for (head, branch_pc), count in back_edges.items():
        by_head[head][branch_pc] = count

    loops = []
    for head in sorted(by_head):
        latches = by_head[head]
        observations = sum(latches.values())
        if observations < min_observations:
            continue
        loops.append(StaticLoop(
            head=head,
            latch=max(latches),
            latches=frozenset(latches),
            observations=observations,
        ))
    return loops


def _outermost(loops: Sequence[StaticLoop]) -> list[StaticLoop]:
    """Loops not enclosed by any other loop of the set."""
    return [l for l in loops if not any(o.encloses(l) for o in loops)]


def _loop_containing(loops: Sequence[StaticLoop], pc: int) -> Optional[StaticLoop]:
    for loop in loops:
        if loop.contains_pc(pc):
            return loop
    return None


def _first_head(events: Sequence[TraceEvent], start: int, end: int, loop: StaticLoop) -> Optional[int]:
    for j in range(start, end):
        if events[j].pc == loop.head:
            return j
    return None


def _closes_iteration(loop: StaticLoop, item: UnitItem) -> bool:
    return isinstance(item, TraceEvent) and item.kind == OpKind.BRANCH and item.pc in loop.latches


def _loop_extent(events: Sequence[TraceEvent], start: int, loop: StaticLoop) -> int:
    """End index (exclusive) of the loop instance starting at ``start``."""
    j = start
    while j < len(events) and loop.contains_pc(events[j].pc):
        ev = events[j]
        j += 1
        if ev.pc == loop.latch and ev.kind == OpKind.BRANCH and not ev.taken:
            break
    return j


class RegionSegmenter:
    """Sequential segmentation of a trace into Regions."""

    def __init__(self, min_back_edge_observations: int = 2):
        self.min_back_edge_observations = min_back_edge_observations
        self._instances: Counter[int] = Counter()

    def _new_id(self, entry_pc: int) -> RegionId:
        instance = self._instances[entry_pc]
        self._instances[entry_pc] += 1
        return RegionId(entry_pc, instance)

    def segment(self, events: Sequence[TraceEvent]) -> list[Region]:
        self._instances.clear()
        loops = find_static_loops(events, self.min_back_edge_observations)
        top = _outermost(loops)
        logger.debug("found %d static loop(s), %d top-level", len(loops), len(top))

        regions: list[Region] = []
        straight_start: Optional[int] = None
        i = 0
        while i < len(events):
            loop = _loop_containing(top, events[i].pc)
            if loop is None:
                if straight_start is None:
                    straight_start = i
                i += 1
                continue
            end = _loop_extent(events, i, loop)
            head = _first_head(events, i, end, loop)
            if head is None:
                # The body never ran: nothing but straight-line code
                if straight_start is None:
                    straight_start = i
                i = end
                continue
            if straight_start is None and head > i:
                straight_start = i
            if straight_start is not None:
                regions.append(self._straight_line(events[straight_start:head]))
                straight_start = None
            regions.extend(self._loop_regions(events[head:end], loop, loops, depth=0, parent=None))
            i = end

        if straight_start is not None:
            regions.append(self._straight_line(events[straight_start:]))
        return regions

    def _straight_line(self, events: Sequence[TraceEvent]) -> Region:
        unit = IterationUnit(0, tuple(events))
        return Region(self._new_id(events[0].pc), RegionKind.STRAIGHT_LINE, [unit])

    def _loop_regions(self, span: Sequence[TraceEvent], loop: StaticLoop,
                      loops: Sequence[StaticLoop], depth: int,
                      parent: Optional[RegionId]) -> list[Region]:
        inner_top = _outermost([l for l in loops if loop.encloses(l)])

        units: list[IterationUnit] = []
        current: list[UnitItem] = []
        nested: list[tuple[Sequence[TraceEvent], StaticLoop]] = []

        j = 0
        while j < len(span) and span[j].pc != loop.head:
            j += 1
        leading = j

        while j < len(span):
            ev = span[j]
            if ev.pc == loop.head and current:
                units.append(IterationUnit(len(units), tuple(current)))
                current = []
            inner = _loop_containing(inner_top, ev.pc)
            if inner is not None:
                end = _loop_extent(span, j, inner)
                run = span[j:end]
                current.append(CompositeEvent(inner, tuple(run)))
                nested.append((run, inner))
                j = end
                continue
            current.append(ev)
            j += 1

        if current and _closes_iteration(loop, current[-1]):
            units.append(IterationUnit(len(units), tuple(current)))
            current = []
        dropped = leading + sum(len(it.events) if isinstance(it, CompositeEvent) else 1 for it in current)
        region = Region(
            id=self._new_id(loop.head),
            kind=RegionKind.LOOP,
            units=units,
            loop=loop,
            depth=depth,
            parent=parent,
            dropped_events=dropped,
        )
        logger.debug("%r (dropped %d events)", region, dropped)

        regions = [region]
        for run, inner in nested:
            regions.extend(self._loop_regions(run, inner, loops, depth + 1, region.id))
        return regions


def segment_trace(events: Sequence[TraceEvent], min_back_edge_observations: int = 2) -> list[Region]:
    """Segment a normalized trace into Regions (outer Regions before inner ones)."""
    return RegionSegmenter(min_back_edge_observations).segment(events)
