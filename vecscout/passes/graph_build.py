"""
Graph Build Pass

Builds the per-Unit dependency graphs of a Region inside a fresh
RegionArena, then fits every memory site to an affine address form.

Raises RegionTooLarge when a unit exceeds max_nodes_per_unit.
"""

from ..alias_analysis import fit_sites
from ..ddg import RegionArena, UnitGraphBuilder, get_graph_depth
from ..pass_manager import PassConfig, RegionContext, RegionPass


class GraphBuildPass(RegionPass):
    """Per-unit def-use graphs plus address fitting."""

    @property
    def name(self) -> str:
        return "graph-build"

    @property
    def input_type(self) -> str:
        return "region"

    @property
    def output_type(self) -> str:
        return "graphs"

    def run(self, ctx: RegionContext, config: PassConfig) -> RegionContext:
        builder = UnitGraphBuilder(
            max_nodes=ctx.config.max_nodes_per_unit,
            barrier_unknown=config.options.get("barrier_unknown", True),
        )
        arena = RegionArena(region=ctx.region)
        for unit in ctx.region.units:
            arena.graphs.append(builder.build(unit, arena))
        fit_sites(arena)
        ctx.arena = arena

        memory_sites = arena.memory_sites()
        self.metrics(ctx).custom = {
            "units": len(arena.graphs),
            "nodes": arena.node_count,
            "edges": sum(len(g.edges) for g in arena.graphs),
            "max_depth": max((get_graph_depth(g) for g in arena.graphs), default=0),
            "memory_sites": len(memory_sites),
            "affine_sites": sum(1 for s in memory_sites if s.address is not None),
        }
        for info in memory_sites:
            if info.unresolved:
                self._add_metric_message(ctx, f"unresolved address at {info.site[0]:#x}")
            elif info.opaque:
                self._add_metric_message(ctx, f"non-affine address stream at {info.site[0]:#x}")
        return ctx
