"""
Call linkage.

An invoke is compiled one of three ways:

- resolved callee: entry clause into the callee's R_<c'>_<m'>_0 and exit
  clause from its RES_<c'>_<m'> back to the caller's successor, guarded by
  the receiver's instance id for virtual calls
- library call with a hand-written summary (droidhorn.translation.library)
- any other unresolved call: the generic summary, where the result is
  tainted when the callee is a source or any argument is tainted, and
  taint flows into mutable global arguments

Sink calls additionally produce one leak query per argument register.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import z3

from droidhorn.core.state import HeapSlot, MethodFrame, RegisterState, java_hash
from droidhorn.dalvik.instructions import Instruction, MethodRef
from droidhorn.dalvik.opcodes import Dispatch
from droidhorn.dalvik.program import DalvikClass, DalvikMethod, Program
from droidhorn.encoding.query import LeakQuery
from droidhorn.translation.builder import ClauseBuilder, any_of
from droidhorn.translation.context import TranslationContext
from droidhorn.translation.library import LibrarySummaries
from droidhorn.translation.lifting import EscapeEngine


logger = logging.getLogger(__name__)

RUNNABLE = "Ljava/lang/Runnable;"
RUN = "run()V"


@dataclass
class CallTarget:
    """A (class, signature) to dispatch on and the registers passed to it"""
    class_name: str
    signature: str
    arguments: List[int]


def virtual_targets(ref: MethodRef, arguments: List[int]) -> List[CallTarget]:
    """Dispatch targets of a virtual call, with the asynchronous-execution redirections"""
    signature = ref.signature
    if (ref.class_name == "Ljava/util/concurrent/ExecutorService;"
            and signature == "execute(Ljava/lang/Runnable;)V"):
        return [CallTarget(RUNNABLE, RUN, arguments[1:2])]
    if signature == "start()V":
        return [CallTarget(ref.class_name, RUN, arguments)]
    if signature == "execute([Ljava/lang/Object;)Landroid/os/AsyncTask;":
        return [CallTarget(ref.class_name,
                           "doInBackground([Ljava/lang/Object;)Ljava/lang/Object;", arguments)]
    return [CallTarget(ref.class_name, signature, arguments)]


class CallLinker:
    """Compiles invoke instructions"""

    def __init__(self, ctx: TranslationContext, escape: EscapeEngine):
        self.ctx = ctx
        self.engine = ctx.engine
        self.vars = ctx.vars
        self.program: Program = ctx.program
        self.escape = escape
        self.library = LibrarySummaries(ctx, escape)

    def compile_invoke(self, b: ClauseBuilder, method: DalvikMethod, insn: Instruction) -> None:
        ref = insn.method_ref()
        arguments = list(insn.registers)

        if insn.info.dispatch == Dispatch.VIRTUAL:
            resolved = False
            for target in virtual_targets(ref, arguments):
                impls = self.program.resolve_virtual(target.class_name, target.signature)
                if impls is None:
                    continue
                resolved = True
                for impl in impls:
                    self._link(b, insn, impl.dalvik_class, impl.method, target.arguments,
                               impl.instances)
            if resolved:
                return
        else:
            if (insn.info.dispatch == Dispatch.DIRECT
                    and ref.class_name == "Ljava/lang/Thread;"
                    and ref.signature == "<init>(Ljava/lang/Runnable;)V"
                    and len(arguments) > 1):
                self._bind_runnable(b, insn, arguments[1])
            found = self.program.resolve_static(ref.class_name, ref.signature)
            if found is not None:
                for cls, callee in found:
                    self._link(b, insn, cls, callee, arguments, None)
                return

        self._unresolved(b, method, insn, ref, arguments)

    # =========================================================================
    # Resolved callees
    # =========================================================================

    def _bind_runnable(self, b: ClauseBuilder, insn: Instruction, runnable: int) -> None:
        impls = self.program.resolve_virtual(RUNNABLE, RUN)
        for impl in impls or []:
            self._link(b, insn, impl.dalvik_class, impl.method, [runnable], impl.instances)

    def _link(self, b: ClauseBuilder, insn: Instruction, cls: DalvikClass,
              callee: DalvikMethod, arguments: List[int],
              instances: Optional[List[int]]) -> None:
        """Entry and exit clauses for one callee, per receiver instance when given"""
        if self.program.is_sink(cls.name, callee.signature):
            self.add_sink_queries(b, f"{cls.name}->{callee.signature}", arguments)

        frame = self.ctx.frame_of(cls, callee)
        is_source = self.program.is_source(cls.name, callee.signature)
        guards: List[Optional[z3.BoolRef]] = [None]
        if instances is not None and arguments:
            receiver = b.value(arguments[0])
            guards = [receiver == self.vars.literal(inst) for inst in instances]

        for guard in guards:
            extra = [guard] if guard is not None else []
            b.emit_fact(self._callee_entry(b, frame, arguments), *extra)
            self._callee_exit(b, insn, frame, callee, arguments, is_source, extra)

    def _callee_entry(self, b: ClauseBuilder, callee: MethodFrame,
                      arguments: List[int]) -> z3.BoolRef:
        regs = [self.vars.zero_register() for _ in range(callee.slot_count)]
        for i, register in enumerate(arguments[:callee.num_args]):
            state = b.reg(register)
            regs[callee.argument_register(i)] = state
            regs[callee.argument_copy(i)] = state
        heap = [b.slot(j) for j in range(self.engine.local_heap_size)]
        return self.engine.point(callee, 0, regs, heap)

    def _callee_exit(self, b: ClauseBuilder, insn: Instruction, callee: MethodFrame,
                     method: DalvikMethod, arguments: List[int], is_source: bool,
                     guards: List[z3.BoolRef]) -> None:
        v = self.vars.scalar
        size = self.engine.local_heap_size
        result = RegisterState(v("rez"), v("hrez"), v("lrez"), v("grez"))

        exit_regs = []
        for i in range(callee.num_args):
            if i < len(arguments):
                exit_regs.append(b.reg(arguments[i]))
            else:
                exit_regs.append(self.vars.zero_register())
        exit_regs.append(result)
        callee_heap = [self.vars.callee_slot(j) for j in range(size)]
        returned = self.engine.exit(callee.class_id, callee.method_id, exit_regs, callee_heap)

        after = b.fork()
        sites = list(self.ctx.allocations)
        for i in range(b.frame.num_registers + 1):
            reg = b.reg(i)
            escaped = any_of([
                z3.And(callee_heap[site.offset].free, reg.value == self.vars.literal(site.alloc_id))
                for site in sites
            ])
            after.set(i, reg.with_(global_=z3.Or(reg.global_, z3.And(reg.local, escaped))))
        if method.returns_value:
            label = z3.BoolVal(True) if is_source else result.high
            after.set(b.frame.return_slot, result.with_(high=label))
        for j in range(size):
            mine, theirs = b.slot(j), callee_heap[j]
            after.set_slot(j, HeapSlot(theirs.value, theirs.high, theirs.local, theirs.global_,
                                       z3.Or(mine.free, theirs.free)))
        after.emit(insn.next_address, returned, *guards)

    # =========================================================================
    # Unresolved callees
    # =========================================================================

    def _unresolved(self, b: ClauseBuilder, method: DalvikMethod, insn: Instruction,
                    ref: MethodRef, arguments: List[int]) -> None:
        if self.program.is_sink(ref.class_name, ref.signature):
            self.add_sink_queries(b, str(ref), arguments)
        if self.library.apply(b, insn, ref, arguments):
            return
        if self.ctx.options.skip_unknown:
            b.emit(insn.next_address)
            return
        self.generic_summary(b, insn, ref, arguments)

    def generic_summary(self, b: ClauseBuilder, insn: Instruction, ref: MethodRef,
                        arguments: List[int]) -> None:
        v = self.vars.scalar
        f, t = z3.BoolVal(False), z3.BoolVal(True)
        highs = [b.high(r) for r in arguments]
        if self.program.is_source(ref.class_name, ref.signature):
            label = t
        else:
            label = any_of(highs)

        after = b.fork()
        for position, register in enumerate(arguments):
            reg = b.reg(register)
            others = any_of([h for k, h in enumerate(highs) if k != position])
            after.set(register, reg.with_(high=z3.Or(reg.high, z3.And(reg.global_, others))))

        ret = ref.return_type
        ret_slot = b.frame.return_slot
        alloc_id = Program.allocation_id(b.frame.class_id, b.frame.method_id, b.pc)
        if ret == "Ljava/lang/String;":
            after.set(ret_slot, RegisterState(v("f"), label, f, t))
        elif ret.startswith("L"):
            type_id = java_hash(ret)
            layout = self.program.field_layout(ret)
            if layout is None:
                b.emit_fact(self.engine.h(type_id, alloc_id, v("fld"), v("f"), label, v("bf")))
            else:
                for field_id, is_prim in layout.items():
                    b.emit_fact(self.engine.h(type_id, alloc_id, field_id, v("f"), label, is_prim))
            after.set(ret_slot, RegisterState(v("fpp"), label, f, t))
        elif ret.startswith("["):
            b.emit_fact(self.engine.h(java_hash(ret), alloc_id, v("f"), v("buf"), label, v("bf")))
            after.set(ret_slot, RegisterState(self.vars.literal(alloc_id), label, f, t))
        elif ret != "V":
            after.set(ret_slot, RegisterState(v("f"), label, f, f))

        self.escape.continue_with_escape(after, insn.next_address, arguments)

    # =========================================================================
    # Sinks
    # =========================================================================

    def add_sink_queries(self, b: ClauseBuilder, sink: str, arguments: List[int]) -> None:
        """One query per argument register: can a tainted value reach it here"""
        frame = b.frame
        self.ctx.add_sink_method(frame)
        pre = b.pre()
        for register in arguments:
            self.engine.add_query(LeakQuery(
                expr=z3.And(pre, b.high(register) == z3.BoolVal(True)),
                class_name=frame.class_name,
                method_name=frame.signature,
                pc=b.pc,
                sink=sink,
                registers=[register],
            ))
