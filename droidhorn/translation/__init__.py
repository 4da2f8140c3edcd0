"""
Translation of Dalvik methods into Horn clauses: the per-instruction clause
builder, opcode semantics, escape and lifting, call linkage and library
summaries.
"""

from droidhorn.translation.context import TranslationContext
from droidhorn.translation.builder import ClauseBuilder
from droidhorn.translation.lifting import EscapeEngine
from droidhorn.translation.library import LibrarySummaries
from droidhorn.translation.linkage import CallLinker
from droidhorn.translation.compiler import InstructionCompiler

__all__ = [
    "TranslationContext", "ClauseBuilder", "EscapeEngine", "LibrarySummaries",
    "CallLinker", "InstructionCompiler",
]
