"""
Region Passes

This module contains the per-Region analysis passes, in pipeline order:
- Graph build (Region -> unit dependency graphs, fitted addresses)
- Divergence classification (graphs -> equivalence classes)
- Independence analysis (classes -> independence verdict)
- Pattern matching (independence verdict -> Region verdict)
"""

from .graph_build import GraphBuildPass
from .divergence import DivergencePass
from .independence import IndependencePass
from .pattern_match import PatternMatchPass

__all__ = [
    'GraphBuildPass',
    'DivergencePass',
    'IndependencePass',
    'PatternMatchPass',
]
