"""
Missed-Vectorization Trace Analyzer

Finds loop and straight-line Regions of an instruction-level execution
trace whose dataflow is SIMD-parallel but which ran as scalar code.

Analysis pipeline: trace -> Regions of Iteration Units -> per-unit
dependency graphs -> equivalence classes -> independence verdict ->
pattern match -> one verdict per Region
"""

# Errors
from .errors import TraceAnalysisError, MalformedTraceError, ConfigError, RegionTooLarge

# Trace model
from .trace import OpKind, MemAccess, TraceEvent, normalize_trace, parse_record, load_trace

# Trace builder
from .trace_builder import TraceBuilder

# Regions
from .region import (
    RegionKind,
    RegionId,
    StaticLoop,
    CompositeEvent,
    IterationUnit,
    Region,
    RegionSegmenter,
    find_static_loops,
    segment_trace,
)

# Data Dependency Graph
from .ddg import (
    NodeKind,
    DDGNode,
    Edge,
    UnitGraph,
    RegionArena,
    UnitGraphBuilder,
    get_graph_depth,
    print_unit_graph,
    print_unit_graph_dot,
)

# Alias analysis
from .alias_analysis import AddressExpr, AliasAnalysis, AliasResult, MemoryConflict, fit_affine

# Verdicts
from .verdicts import (
    PatternKind,
    Divergence,
    NoOpportunityReason,
    SkipReason,
    Opportunity,
    NoOpportunity,
    Skipped,
    InsufficientSamples,
    Verdict,
    verdict_to_dict,
)

# Pass infrastructure
from .pass_manager import (
    PassConfig,
    PassMetrics,
    AnalysisConfig,
    RegionContext,
    RegionPass,
    VerdictCollector,
    AnalysisPipeline,
)

# Passes
from .passes import GraphBuildPass, DivergencePass, IndependencePass, PatternMatchPass
from .passes.independence import (
    Independent,
    IndependentWithReduction,
    Dependent,
    DependenceReason,
    ReductionOperator,
    CarriedDependency,
)
from .passes.pattern_match import Pattern, PatternRegistry, default_registry

# Main entry points
from .analyze import analyze_trace, analyze_file, analyze_events, build_pipeline, load_default_config

# Printing utilities
from .printing import format_verdict, print_verdicts


__all__ = [
    # Errors
    'TraceAnalysisError', 'MalformedTraceError', 'ConfigError', 'RegionTooLarge',
    # Trace
    'OpKind', 'MemAccess', 'TraceEvent', 'normalize_trace', 'parse_record', 'load_trace',
    'TraceBuilder',
    # Regions
    'RegionKind', 'RegionId', 'StaticLoop', 'CompositeEvent', 'IterationUnit', 'Region',
    'RegionSegmenter', 'find_static_loops', 'segment_trace',
    # Data Dependency Graph
    'NodeKind', 'DDGNode', 'Edge', 'UnitGraph', 'RegionArena', 'UnitGraphBuilder',
    'get_graph_depth', 'print_unit_graph', 'print_unit_graph_dot',
    # Alias analysis
    'AddressExpr', 'AliasAnalysis', 'AliasResult', 'MemoryConflict', 'fit_affine',
    # Verdicts
    'PatternKind', 'Divergence', 'NoOpportunityReason', 'SkipReason', 'Opportunity',
    'NoOpportunity', 'Skipped', 'InsufficientSamples', 'Verdict', 'verdict_to_dict',
    # Pass infrastructure
    'PassConfig', 'PassMetrics', 'AnalysisConfig', 'RegionContext', 'RegionPass',
    'VerdictCollector', 'AnalysisPipeline',
    # Passes
    'GraphBuildPass', 'DivergencePass', 'IndependencePass', 'PatternMatchPass',
    'Independent', 'IndependentWithReduction', 'Dependent', 'DependenceReason',
    'ReductionOperator', 'CarriedDependency',
    'Pattern', 'PatternRegistry', 'default_registry',
    # Entry points
    'analyze_trace', 'analyze_file', 'analyze_events', 'build_pipeline', 'load_default_config',
    # Printing
    'format_verdict', 'print_verdicts',
]
