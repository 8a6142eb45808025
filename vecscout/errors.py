"""
Error taxonomy.

Only trace-level structural errors are fatal. Region-level conditions are
caught at the Region boundary and turned into verdict records.
"""

from typing import Optional


class TraceAnalysisError(ValueError):
    """Base class for analysis errors."""


class MalformedTraceError(TraceAnalysisError):
    """The raw trace cannot be normalized (ordering or missing fields)."""

    def __init__(self, message: str, record_index: Optional[int] = None):
        if record_index is not None:
            message = f"record {record_index}: {message}"
        super().__init__(message)
        self.record_index = record_index


class ConfigError(TraceAnalysisError):
    """Invalid analysis configuration."""


class RegionTooLarge(TraceAnalysisError):
    """A Region exceeds the configured unit or graph-size bound."""

    def __init__(self, region, detail: str):
        super().__init__(f"region {region} too large: {detail}")
        self.region = region
        self.detail = detail
