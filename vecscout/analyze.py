"""
Main Analysis Entry Point

Provides analyze_trace / analyze_file, which run the full pipeline from
raw trace records to the ordered list of per-Region verdicts.
"""

import logging
import os
from typing import Any, Iterable, Optional, Union

from .pass_manager import AnalysisConfig, AnalysisPipeline
from .passes import DivergencePass, GraphBuildPass, IndependencePass, PatternMatchPass
from .region import Region, segment_trace
from .trace import TraceEvent, load_trace, normalize_trace
from .verdicts import Verdict

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(__file__), "pass_config.json")


def load_default_config() -> AnalysisConfig:
    """Read the analysis defaults shipped with the package."""
    return AnalysisConfig.load(DEFAULT_CONFIG_PATH)


def build_pipeline(config: AnalysisConfig, print_metrics: bool = False) -> AnalysisPipeline:
    """Create the Region pipeline with all passes in order."""
    pipeline = AnalysisPipeline(config=config, print_metrics=print_metrics)
    pipeline.add_pass(GraphBuildPass())     # region -> graphs
    pipeline.add_pass(DivergencePass())     # graphs -> classes
    pipeline.add_pass(IndependencePass())   # classes -> independence
    pipeline.add_pass(PatternMatchPass())   # independence -> verdict
    return pipeline


def analyze_regions(regions: list[Region], config: Optional[AnalysisConfig] = None,
                    print_metrics: bool = False) -> list[Verdict]:
    if config is None:
        config = load_default_config()
    return build_pipeline(config, print_metrics).run(regions)


def analyze_events(events: list[TraceEvent], config: Optional[AnalysisConfig] = None,
                   print_metrics: bool = False) -> list[Verdict]:
    """Segment normalized events and analyze every Region."""
    if config is None:
        config = load_default_config()
    regions = segment_trace(events, config.min_back_edge_observations)
    logger.info("segmented %d events into %d region(s)", len(events), len(regions))
    return analyze_regions(regions, config, print_metrics)


def analyze_trace(
    records: Iterable[Union[dict[str, Any], TraceEvent]],
    config: Optional[AnalysisConfig] = None,
    print_metrics: bool = False,
) -> list[Verdict]:
    """
    Full analysis from raw trace records to verdicts.

    Args:
        records: Raw trace records (mappings) or TraceEvents, in trace order
        config: Analysis options; the packaged defaults when None
        print_metrics: If True, print pass metrics and diagnostics per Region

    Returns:
        One verdict per Region, in Region order

    Raises:
        MalformedTraceError: the trace cannot be normalized
    """
    return analyze_events(normalize_trace(records), config, print_metrics)


def analyze_file(path: str, config: Optional[AnalysisConfig] = None,
                 print_metrics: bool = False) -> list[Verdict]:
    """Load a JSON / JSON-lines trace file and analyze it."""
    return analyze_events(load_trace(path), config, print_metrics)
