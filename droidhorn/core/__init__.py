"""
Core symbolic state: hashing, program points, register and heap-slot
tuples, and the shared variable pool.
"""

from droidhorn.core.state import java_hash, ProgramPoint, MethodFrame, RegisterState, HeapSlot
from droidhorn.core.variables import SymbolicVariables

__all__ = ["java_hash", "ProgramPoint", "MethodFrame", "RegisterState", "HeapSlot", "SymbolicVariables"]
