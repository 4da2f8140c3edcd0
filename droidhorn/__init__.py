"""
Horn clause taint analysis for Dalvik programs.

droidhorn compiles every instruction of an Android application into
constrained Horn clauses over fixed-width bit-vectors and asks the z3
fixed-point engine whether a value read from a source can reach the
argument of a sink call.

The library is organized into modules:
- core: identifiers, register and heap state, symbolic variables
- dalvik: opcodes, instructions, the program model and its JSON loader
- specs: sources and sinks
- heap: library field layouts and local-heap allocation sites
- encoding: the Horn engine, its relations and leak queries
- translation: per-instruction semantics, lifting and call linkage
- analysis: the orchestrator and the leak report
"""

from droidhorn.errors import (
    AnalysisError, ModelError, UnsupportedInstructionError, PayloadError,
    AllocationConsistencyError, RelationArityError, SpecFormatError,
)
from droidhorn.options import AnalysisOptions
from droidhorn.core.state import java_hash
from droidhorn.dalvik import Program, load_program, program_from_dict
from droidhorn.specs import SourceSinkSpec, default_android_spec, load_sources_sinks
from droidhorn.encoding import HornEngine, LeakQuery, QueryResult, QueryStatus
from droidhorn.analysis import Analyzer, Leak, LeakReport, analyze_program

__version__ = "0.0.1"
__all__ = [
    # Errors
    "AnalysisError", "ModelError", "UnsupportedInstructionError", "PayloadError",
    "AllocationConsistencyError", "RelationArityError", "SpecFormatError",
    # Configuration
    "AnalysisOptions",
    # Program model
    "java_hash", "Program", "load_program", "program_from_dict",
    "SourceSinkSpec", "default_android_spec", "load_sources_sinks",
    # Encoding
    "HornEngine", "LeakQuery", "QueryResult", "QueryStatus",
    # Analysis
    "Analyzer", "Leak", "LeakReport", "analyze_program",
]
