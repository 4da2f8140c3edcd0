"""
Analysis options.

One AnalysisOptions instance is threaded through every component. The CLI
builds it from its flags; library users construct it directly.
"""

from dataclasses import dataclass, asdict
from typing import Optional


ENGINES = ("spacer", "pdr")

# 30 minutes per query
DEFAULT_QUERY_TIMEOUT_MS = 30 * 60 * 1000


@dataclass
class AnalysisOptions:
    """Configuration of one analysis run"""

    # Width of every register value and heap field, in bits
    bitvector_size: int = 64

    # Track array indices in the global heap instead of collapsing to index 0
    arrays: bool = False

    # Fixed-point engine used by z3
    engine: str = "spacer"

    # Budget per query, in milliseconds
    query_timeout: int = DEFAULT_QUERY_TIMEOUT_MS

    # Stop after this many queries (None runs all of them)
    max_queries: Optional[int] = None

    # Stop as soon as one query is reachable
    stop_at_first_leak: bool = False

    # Replace the generic summary of unresolved calls with an identity edge
    skip_unknown: bool = False

    # Only methods that call a sink get local-heap allocation sites
    sink_methods_heap_only: bool = False

    # Emit the ReachLH / CFilter relations
    reachability: bool = False

    # Worker threads compiling methods
    workers: int = 1

    # Keep one query per argument register instead of merging them
    verbose_results: bool = False

    def validate(self) -> "AnalysisOptions":
        """Check option ranges, returning self for chaining"""
        if self.bitvector_size <= 0:
            raise ValueError(f"bitvector_size must be positive, got {self.bitvector_size}")
        if self.query_timeout <= 0:
            raise ValueError(f"query_timeout must be positive, got {self.query_timeout}")
        if self.workers <= 0:
            raise ValueError(f"workers must be positive, got {self.workers}")
        if self.max_queries is not None and self.max_queries <= 0:
            raise ValueError(f"max_queries must be positive, got {self.max_queries}")
        if self.engine not in ENGINES:
            raise ValueError(f"Unknown engine '{self.engine}', expected one of {ENGINES}")
        return self

    def to_dict(self) -> dict:
        return asdict(self)
