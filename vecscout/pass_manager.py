"""
Pass Manager Infrastructure

Provides the framework for running the per-Region analysis passes.
Includes AnalysisPipeline for the full Region -> verdict analysis and the
worker pool that scatters Regions and gathers their verdicts.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Optional, Sequence

from .errors import ConfigError, RegionTooLarge
from .region import Region
from .verdicts import (
    InsufficientSamples, Opportunity, PatternKind, SkipReason, Skipped, Verdict,
)

if TYPE_CHECKING:
    from .ddg import RegionArena
    from .passes.divergence import DivergenceResult
    from .passes.independence import CarriedDependency, IndependenceVerdict

logger = logging.getLogger(__name__)

ALL_PATTERNS = frozenset(PatternKind)


@dataclass
class PassConfig:
    """Configuration for a single pass."""
    name: str
    enabled: bool = True
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class PassMetrics:
    """Metrics collected by a pass for one Region."""
    custom: dict[str, Any] = field(default_factory=dict)
    messages: list[str] = field(default_factory=list)


def _parse_patterns(names: Iterable[Any]) -> frozenset[PatternKind]:
    kinds = set()
    for name in names:
        if isinstance(name, PatternKind):
            kinds.add(name)
            continue
        try:
            kinds.add(PatternKind(name))
        except ValueError:
            known = ", ".join(k.value for k in PatternKind)
            raise ConfigError(f"unknown pattern '{name}' (known: {known})") from None
    return frozenset(kinds)


@dataclass
class AnalysisConfig:
    """Run-wide analysis options."""
    max_units_per_region: int = 4096
    max_nodes_per_unit: int = 4096
    enabled_patterns: frozenset[PatternKind] = ALL_PATTERNS
    min_units_for_report: int = 2
    min_back_edge_observations: int = 2
    workers: int = 1
    passes: dict[str, PassConfig] = field(default_factory=dict)

    def __post_init__(self):
        self.enabled_patterns = _parse_patterns(self.enabled_patterns)
        for name in ("max_units_per_region", "max_nodes_per_unit",
                     "min_units_for_report", "min_back_edge_observations", "workers"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")

    def pass_config(self, name: str) -> PassConfig:
        return self.passes.get(name, PassConfig(name=name))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnalysisConfig":
        """Build from ``{"analysis": {...}, "passes": {name: {enabled, options}}}``."""
        options = dict(data.get("analysis", {}))
        known = {f for f in cls.__dataclass_fields__ if f != "passes"}
        unknown = set(options) - known
        if unknown:
            raise ConfigError(f"unknown analysis option(s): {', '.join(sorted(unknown))}")
        passes = {}
        for pass_name, opts in data.get("passes", {}).items():
            passes[pass_name] = PassConfig(
                name=pass_name,
                enabled=opts.get("enabled", True),
                options=opts.get("options", {})
            )
        return cls(passes=passes, **options)

    @classmethod
    def load(cls, config_path: str) -> "AnalysisConfig":
        """Load analysis and pass configs from a JSON file."""
        with open(config_path) as f:
            data = json.load(f)
        return cls.from_dict(data)


@dataclass
class RegionContext:
    """Everything known about one Region while its passes run."""
    region: Region
    config: AnalysisConfig
    stage: str = "region"
    arena: Optional["RegionArena"] = None
    divergence: Optional["DivergenceResult"] = None
    independence: Optional["IndependenceVerdict"] = None
    carried: list["CarriedDependency"] = field(default_factory=list)
    verdict: Optional[Verdict] = None
    metrics: dict[str, PassMetrics] = field(default_factory=dict)


class RegionPass(ABC):
    """Base class for all per-Region analysis passes.

    Passes keep no per-run state on the instance: one pass object serves
    every worker, and metrics go to the RegionContext.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the pass name for config matching."""
        pass

    @property
    @abstractmethod
    def input_type(self) -> str:
        """Stage this pass consumes: 'region', 'graphs', 'classes' or 'independence'."""
        pass

    @property
    @abstractmethod
    def output_type(self) -> str:
        """Stage this pass produces."""
        pass

    @abstractmethod
    def run(self, ctx: RegionContext, config: PassConfig) -> RegionContext:
        """Analyze the Region and return the updated context."""
        pass

    def metrics(self, ctx: RegionContext) -> PassMetrics:
        """Metrics for this pass on this Region."""
        return ctx.metrics.setdefault(self.name, PassMetrics())

    def _add_metric_message(self, ctx: RegionContext, msg: str):
        """Add a diagnostic message to metrics."""
        self.metrics(ctx).messages.append(msg)


class VerdictCollector:
    """Append-only verdict sink; the single serialization point for workers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[int, Verdict] = {}

    def add(self, order: int, verdict: Verdict) -> None:
        with self._lock:
            if order in self._entries:
                raise RuntimeError(f"verdict for region #{order} already recorded")
            self._entries[order] = verdict

    def verdicts(self) -> list[Verdict]:
        """Verdicts in Region order."""
        with self._lock:
            return [self._entries[k] for k in sorted(self._entries)]

    def __len__(self):
        with self._lock:
            return len(self._entries)


@dataclass
class AnalysisPipeline:
    """
    Runs the Region passes in order and validates stage compatibility
    between adjacent passes.
    """
    config: AnalysisConfig = field(default_factory=AnalysisConfig)
    passes: list[RegionPass] = field(default_factory=list)
    print_metrics: bool = False

    def add_pass(self, p: RegionPass) -> None:
        """Register a pass in the pipeline."""
        self.passes.append(p)

    def _print_region_metrics(self, ctx: RegionContext):
        """Print per-pass metrics for one Region."""
        lines = [f"\n=== Region {ctx.region.id} ({ctx.region.unit_count} units) ==="]
        for p in self.passes:
            metrics = ctx.metrics.get(p.name)
            if metrics is None:
                continue
            lines.append(f"--- Pass: {p.name} ---")
            if metrics.custom:
                lines.append(f"Custom metrics: {metrics.custom}")
            if metrics.messages:
                lines.append("Diagnostics:")
                for msg in metrics.messages:
                    lines.append(f"  - {msg}")
        lines.append(f"Verdict: {ctx.verdict}")
        print("\n".join(lines))

    def run_region(self, region: Region) -> Verdict:
        """Run every pass on one Region. Region-local failures become verdicts."""
        if region.unit_count < self.config.min_units_for_report:
            logger.debug("region %s: %d unit(s), insufficient samples", region.id, region.unit_count)
            return InsufficientSamples(region.id, region.unit_count)

        ctx = RegionContext(region=region, config=self.config)
        try:
            if region.unit_count > self.config.max_units_per_region:
                raise RegionTooLarge(
                    region.id,
                    f"{region.unit_count} units > max_units_per_region={self.config.max_units_per_region}",
                )
            for p in self.passes:
                cfg = self.config.pass_config(p.name)
                if not cfg.enabled:
                    logger.debug("region %s: pass %s disabled", region.id, p.name)
                    continue

                # Validate type compatibility
                if p.input_type != ctx.stage:
                    raise TypeError(
                        f"Pass '{p.name}' expects input type '{p.input_type}' "
                        f"but current state is '{ctx.stage}'"
                    )
                ctx = p.run(ctx, cfg)
                ctx.stage = p.output_type
        except RegionTooLarge as exc:
            logger.warning("skipping region %s: %s", region.id, exc.detail)
            return Skipped(region.id, SkipReason.TOO_LARGE, exc.detail)

        if ctx.stage != "verdict" or ctx.verdict is None:
            raise RuntimeError(
                f"Pipeline did not produce a verdict for region {region.id}, "
                f"stopped at '{ctx.stage}'"
            )
        if self.print_metrics:
            self._print_region_metrics(ctx)
        logger.debug("region %s: %s", region.id, ctx.verdict)
        return ctx.verdict

    def run(self, regions: Sequence[Region]) -> list[Verdict]:
        """Analyze all Regions; one verdict per Region, in Region order."""
        collector = VerdictCollector()
        workers = self.config.workers

        if workers <= 1 or len(regions) <= 1:
            for order, region in enumerate(regions):
                collector.add(order, self.run_region(region))
        else:
            with ThreadPoolExecutor(max_workers=workers) as ex:
                futures = {ex.submit(self.run_region, region): order
                           for order, region in enumerate(regions)}
                for fut in as_completed(futures):
                    collector.add(futures[fut], fut.result())

        verdicts = collector.verdicts()
        opportunities = sum(1 for v in verdicts if isinstance(v, Opportunity))
        logger.info("analyzed %d region(s): %d opportunity(ies)", len(verdicts), opportunities)
        return verdicts
