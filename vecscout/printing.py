"""
Printing Utilities

Pretty-printing for verdicts, Regions and their unit graphs.
"""

import json
from typing import Sequence

from .ddg import RegionArena, print_unit_graph, print_unit_graph_dot
from .passes.divergence import DivergenceResult
from .region import Region
from .verdicts import (
    InsufficientSamples, NoOpportunity, Opportunity, Skipped, Verdict, verdict_to_dict,
)


def format_verdict(verdict: Verdict) -> str:
    """One line per verdict."""
    if isinstance(verdict, Opportunity):
        width = f"{verdict.element_width}B" if verdict.element_width is not None else "?"
        text = (f"{verdict.region}: opportunity {verdict.pattern.value} "
                f"units={verdict.unit_count} element={width} {verdict.divergence.value}")
        if verdict.class_count > 1:
            text += f" classes={verdict.class_count}"
        if verdict.detail:
            text += f" ({verdict.detail})"
        return text
    if isinstance(verdict, (NoOpportunity, Skipped)):
        kind = "no-opportunity" if isinstance(verdict, NoOpportunity) else "skipped"
        text = f"{verdict.region}: {kind} {verdict.reason.value}"
        if verdict.detail:
            text += f" ({verdict.detail})"
        return text
    if isinstance(verdict, InsufficientSamples):
        return f"{verdict.region}: insufficient-samples units={verdict.unit_count}"
    raise TypeError(f"not a verdict: {verdict!r}")


def print_verdicts(verdicts: Sequence[Verdict], as_json: bool = False):
    """Print verdicts as text lines or as one JSON array."""
    if as_json:
        print(json.dumps([verdict_to_dict(v) for v in verdicts], indent=2))
        return
    for v in verdicts:
        print(format_verdict(v))


def print_region(region: Region):
    """Print a Region's units, one event per line."""
    print(f"=== {region!r} ===")
    if region.loop is not None:
        print(f"loop: {region.loop!r}")
    for unit in region.units:
        print(f"  unit {unit.index}:")
        for item in unit:
            print(f"    {item!r}")
    if region.dropped_events:
        print(f"  dropped {region.dropped_events} trailing event(s)")
    print()


def format_classes(result: DivergenceResult) -> str:
    lines = [f"{result.divergence.value}: {len(result.classes)} class(es)"]
    for cls in result.classes:
        units = ", ".join(str(u) for u in cls.units)
        lines.append(f"  class {cls.index}: units [{units}]")
        for pc, taken in cls.predicate:
            lines.append(f"    when branch {pc:#x} {'taken' if taken else 'not taken'}")
    return "\n".join(lines)


def print_arena(arena: RegionArena, dot: bool = False):
    """Print every unit graph of a Region (text or DOT)."""
    for graph in arena.graphs:
        if dot:
            print(print_unit_graph_dot(graph, name=f"unit{graph.index}"))
        else:
            print(print_unit_graph(graph))
        print()
