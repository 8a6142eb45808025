"""
Command-line driver.

    python -m vecscout trace.json [--config cfg.json] [--workers N] [--json]
"""

import argparse
import dataclasses
import logging
import sys

from .analyze import analyze_regions, load_default_config
from .errors import ConfigError, MalformedTraceError, RegionTooLarge
from .pass_manager import AnalysisConfig, RegionContext
from .passes import DivergencePass, GraphBuildPass
from .printing import format_classes, print_arena, print_region, print_verdicts
from .region import segment_trace
from .trace import load_trace

logger = logging.getLogger("vecscout")


def dump_regions(regions, config: AnalysisConfig, dot: bool = False) -> None:
    """Print every Region with its unit graphs and equivalence classes."""
    for region in regions:
        print_region(region)
        if not region.units:
            continue
        ctx = RegionContext(region=region, config=config)
        try:
            for p in (GraphBuildPass(), DivergencePass()):
                ctx = p.run(ctx, config.pass_config(p.name))
        except RegionTooLarge as exc:
            print(f"  (graphs not built: {exc.detail})")
            continue
        print_arena(ctx.arena, dot=dot)
        print(format_classes(ctx.divergence))
        print()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="vecscout",
        description="Report missed vectorization opportunities in an execution trace",
    )
    parser.add_argument("trace", help="Trace file (JSON array or JSON lines)")
    parser.add_argument("--config", help="Analysis config JSON (default: packaged pass_config.json)")
    parser.add_argument("--workers", type=int, help="Analyze Regions on N worker threads")
    parser.add_argument("--json", action="store_true", help="Print verdicts as JSON")
    parser.add_argument("--print-metrics", action="store_true",
                        help="Print pass metrics and diagnostics per Region")
    parser.add_argument("--dump-graphs", action="store_true",
                        help="Print Regions, unit graphs and classes before the verdicts")
    parser.add_argument("--dot", action="store_true",
                        help="With --dump-graphs, print unit graphs as DOT")
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level (default: WARNING)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level),
                        format="%(levelname)s %(name)s: %(message)s")

    try:
        config = AnalysisConfig.load(args.config) if args.config else load_default_config()
        if args.workers is not None:
            config = dataclasses.replace(config, workers=args.workers)
        events = load_trace(args.trace)
    except (ConfigError, MalformedTraceError) as exc:
        logger.error("%s", exc)
        return 2
    except OSError as exc:
        logger.error("cannot read %s", exc.filename)
        return 2

    regions = segment_trace(events, config.min_back_edge_observations)
    if args.dump_graphs:
        dump_regions(regions, config, dot=args.dot)

    verdicts = analyze_regions(regions, config, print_metrics=args.print_metrics)
    print_verdicts(verdicts, as_json=args.json)
    return 0


if __name__ == "__main__":
    sys.exit(main())
