"""
Shared state of one compilation run.
"""

import threading
from typing import Optional, Set, Tuple

from droidhorn.core.state import MethodFrame
from droidhorn.dalvik.program import DalvikClass, DalvikMethod, Program
from droidhorn.encoding.engine import HornEngine
from droidhorn.heap.allocation import AllocationMap
from droidhorn.options import AnalysisOptions


MethodKey = Tuple[str, str]


class TranslationContext:
    """
    Everything the per-instruction compilers share: the program, the
    engine, the frozen allocation map, and the set of methods found to
    call a sink.

    local_heap_methods is None when every method may allocate on the local
    heap; otherwise it holds the (class, signature) pairs that may.
    """

    def __init__(self, program: Program, engine: HornEngine, allocations: AllocationMap,
                 options: Optional[AnalysisOptions] = None,
                 local_heap_methods: Optional[Set[MethodKey]] = None):
        self.program = program
        self.engine = engine
        self.vars = engine.vars
        self.allocations = allocations
        self.options = options or engine.options
        self.local_heap_methods = local_heap_methods
        self._sink_methods: Set[MethodKey] = set()
        self._lock = threading.Lock()

    @staticmethod
    def frame_of(cls: DalvikClass, method: DalvikMethod) -> MethodFrame:
        return MethodFrame(cls.name, method.signature, method.num_registers, method.num_args)

    def uses_local_heap(self, frame: MethodFrame) -> bool:
        if self.local_heap_methods is None:
            return True
        return (frame.class_name, frame.signature) in self.local_heap_methods

    def add_sink_method(self, frame: MethodFrame) -> None:
        with self._lock:
            self._sink_methods.add((frame.class_name, frame.signature))

    @property
    def sink_methods(self) -> Set[MethodKey]:
        with self._lock:
            return set(self._sink_methods)
