"""
Analysis orchestrator.

Runs the whole pipeline on a program model:

    Program -> pre-pass (instances, allocation sites) -> per-method
    compilation on a worker pool -> entry points -> fixed-point queries
    -> LeakReport

The pre-pass sizes the local heap: every new-instance site (except
intents, which live in HI) gets a slot range and the allocation map is
frozen before any method is compiled.

Usage:
    from droidhorn.analysis import Analyzer

    report = Analyzer(program, AnalysisOptions(query_timeout=60000)).analyze()
    for leak in report.leaks:
        print(leak.description)
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Set, Tuple

import z3

from droidhorn.core.state import RegisterState, java_hash
from droidhorn.dalvik.opcodes import Family
from droidhorn.dalvik.program import DalvikClass, DalvikMethod, Program
from droidhorn.encoding.engine import HornEngine
from droidhorn.errors import AllocationConsistencyError, AnalysisError, RelationArityError
from droidhorn.heap.allocation import AllocationMap
from droidhorn.heap.reachability import add_reachability_rules
from droidhorn.options import AnalysisOptions
from droidhorn.translation.compiler import InstructionCompiler
from droidhorn.translation.context import TranslationContext
from droidhorn.translation.library import INTENT
from droidhorn.analysis.report import LeakReport


logger = logging.getLogger(__name__)

FATAL_ERRORS = (AllocationConsistencyError, RelationArityError)


class Analyzer:
    """
    Compiles a program into Horn clauses and decides its leak queries.

    prepare() may be called on its own to inspect the allocation map and the
    encoding before solving; analyze() prepares on demand.
    """

    def __init__(self, program: Program, options: Optional[AnalysisOptions] = None):
        self.program = program
        self.options = (options or AnalysisOptions()).validate()
        self.allocations = AllocationMap()
        self.engine: Optional[HornEngine] = None
        self.ctx: Optional[TranslationContext] = None
        self.errors: List[str] = []
        self.methods_compiled = 0
        self.instructions_compiled = 0
        self.compile_time_ms = 0.0
        self._compiled = False

    # =========================================================================
    # Pre-pass
    # =========================================================================

    def prepare(self) -> TranslationContext:
        """Register instances and allocation sites, then build the engine"""
        if self.ctx is not None:
            return self.ctx

        self._register_framework_instances()
        self._register_instances()
        local_heap_methods = self._local_heap_methods() if self.options.sink_methods_heap_only else None
        self._register_sites(local_heap_methods)
        self.allocations.freeze()
        logger.info("Pre-pass: %d allocation sites, local heap of %d slots",
                    len(self.allocations), self.allocations.size)

        self.engine = HornEngine(self.options, local_heap_size=self.allocations.size)
        self.ctx = TranslationContext(self.program, self.engine, self.allocations,
                                      self.options, local_heap_methods)
        return self.ctx

    def _register_framework_instances(self) -> None:
        components = {cls.name for cls, _ in self.program.entry_methods()}
        components.update(cls.name for cls in self.program.launcher_classes())
        for name in sorted(components):
            self.program.register_instance(name, Program.framework_instance(name))

    def _new_instances(self):
        for cls, method in self.program.methods():
            for insn in method.instructions:
                if insn.family == Family.NEW_INSTANCE and insn.reference:
                    yield cls, method, insn

    def _register_instances(self) -> None:
        for cls, method, insn in self._new_instances():
            alloc_id = Program.allocation_id(cls.class_id, method.method_id, insn.address)
            self.program.register_instance(insn.reference, alloc_id)

    def _local_heap_methods(self) -> Set[Tuple[str, str]]:
        """Methods that call a sink directly"""
        found = set()
        for cls, method in self.program.methods():
            for insn in method.instructions:
                if insn.family != Family.INVOKE:
                    continue
                ref = insn.method_ref()
                if self.program.is_sink(ref.class_name, ref.signature):
                    found.add((cls.name, method.signature))
                    break
        logger.info("%d methods call a sink and keep a local heap", len(found))
        return found

    def _register_sites(self, local_heap_methods: Optional[Set[Tuple[str, str]]]) -> None:
        for cls, method, insn in self._new_instances():
            if insn.reference == INTENT:
                continue
            if local_heap_methods is not None and (cls.name, method.signature) not in local_heap_methods:
                continue
            self.allocations.register(
                cls.class_id, method.method_id, insn.address,
                insn.reference, java_hash(insn.reference),
                Program.allocation_id(cls.class_id, method.method_id, insn.address),
                self.program.field_layout(insn.reference),
            )

    # =========================================================================
    # Compilation
    # =========================================================================

    def compile(self) -> int:
        """Compile every method once; returns the number of instructions compiled"""
        if self._compiled:
            return self.instructions_compiled
        ctx = self.prepare()
        start = time.time()
        compiler = InstructionCompiler(ctx)
        methods = list(self.program.methods())
        logger.info("Compiling %d methods with %d worker(s)", len(methods), self.options.workers)

        with ThreadPoolExecutor(max_workers=self.options.workers) as pool:
            futures = [(cls, method, pool.submit(compiler.compile_method, cls, method))
                       for cls, method in methods]
            for cls, method, future in futures:
                try:
                    self.instructions_compiled += future.result()
                    self.methods_compiled += 1
                except FATAL_ERRORS:
                    raise
                except AnalysisError as e:
                    message = f"{cls.name}->{method.signature}: {e}"
                    logger.warning("Compilation failed: %s", message)
                    self.errors.append(message)

        self.add_entry_points()
        if self.options.reachability:
            added = add_reachability_rules(self.engine, self.allocations)
            logger.info("Added %d reachability rules", added)
        self._compiled = True
        self.compile_time_ms = (time.time() - start) * 1000
        return self.instructions_compiled

    def add_entry_points(self) -> None:
        """Initial facts of entry methods and launcher components"""
        ctx = self.prepare()
        engine, variables = self.engine, ctx.vars
        f = z3.BoolVal(False)
        with engine.lock:
            for cls, method in self.program.entry_methods():
                engine.add_fact(self._entry_fact(cls, method))
                logger.debug("Entry point %s->%s", cls.name, method.signature)
            for cls in self.program.launcher_classes():
                engine.add_fact(engine.h(cls.class_id, Program.framework_instance(cls.name),
                                         variables.scalar("f"), variables.scalar("val"), f, True))

    def _entry_fact(self, cls: DalvikClass, method: DalvikMethod) -> z3.BoolRef:
        frame = self.ctx.frame_of(cls, method)
        variables = self.ctx.vars
        f = z3.BoolVal(False)
        regs = [variables.zero_register() for _ in range(frame.slot_count)]
        for i in range(frame.num_args):
            register = frame.argument_register(i)
            canonical = variables.register(register)
            state = RegisterState(canonical.value, f, f, canonical.global_)
            regs[register] = state
            regs[frame.argument_copy(i)] = state
        heap = [variables.empty_slot(free=True) for _ in range(self.engine.local_heap_size)]
        return self.engine.point(frame, 0, regs, heap)

    # =========================================================================
    # Running
    # =========================================================================

    def analyze(self, name: str = "<program>") -> LeakReport:
        """Compile the program and decide every leak query"""
        report = LeakReport(program=name, classes_analyzed=len(self.program.classes))

        self.compile()
        report.compile_time_ms = self.compile_time_ms
        report.methods_compiled = self.methods_compiled
        report.instructions_compiled = self.instructions_compiled
        report.errors.extend(self.errors)
        report.statistics = self.engine.statistics()
        if not self.engine.queries:
            report.warnings.append("No sink call reachable from the compiled methods")

        start = time.time()
        report.results = self.engine.execute_queries()
        report.solve_time_ms = (time.time() - start) * 1000

        logger.info("Analysis of %s done: %d leak(s) in %d queries",
                    name, len(report.leaks), len(report.results))
        return report


def analyze_program(program: Program, options: Optional[AnalysisOptions] = None,
                    name: str = "<program>") -> LeakReport:
    """Convenience function to analyse a program model"""
    return Analyzer(program, options).analyze(name)
