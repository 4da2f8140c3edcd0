"""
Opcode semantics compiler.

Every instruction at P = (c, m, pc) becomes Horn clauses
R(P) /\\ guard => R(P') or R(P) /\\ guard => heap fact. One handler per
instruction family; the arithmetic, comparison and branch operators of a
family are looked up in the operator tables below.

Numeric values are fixed-width bit-vectors. Orderings, division and
remainder are unsigned; shr is arithmetic and ushr logical.
"""

import logging
from typing import Callable, Dict, List

import z3

from droidhorn.core.state import MethodFrame, RegisterState, java_hash
from droidhorn.dalvik.instructions import ArrayPayload, Instruction, SwitchPayload
from droidhorn.dalvik.opcodes import Family
from droidhorn.dalvik.program import DalvikClass, DalvikMethod, Program
from droidhorn.errors import AllocationConsistencyError, ModelError
from droidhorn.translation.builder import ClauseBuilder, any_of
from droidhorn.translation.context import TranslationContext
from droidhorn.translation.library import INTENT
from droidhorn.translation.lifting import EscapeEngine
from droidhorn.translation.linkage import CallLinker


logger = logging.getLogger(__name__)


# =============================================================================
# Operator tables
# =============================================================================

UNARY_OPERATORS: Dict[str, Callable] = {
    "neg": lambda a: -a,
    "not": lambda a: ~a,
    "convert": lambda a: a,
}

BINARY_OPERATORS: Dict[str, Callable] = {
    "add": lambda a, b: a + b,
    "sub": lambda a, b: a - b,
    "rsub": lambda a, b: b - a,
    "mul": lambda a, b: a * b,
    "div": z3.UDiv,
    "rem": z3.URem,
    "and": lambda a, b: a & b,
    "or": lambda a, b: a | b,
    "xor": lambda a, b: a ^ b,
    "shl": lambda a, b: a << b,
    "shr": lambda a, b: a >> b,
    "ushr": z3.LShR,
}

BRANCH_TESTS: Dict[str, Callable] = {
    "eq": lambda a, b: a == b,
    "ne": lambda a, b: a != b,
    "lt": z3.ULT,
    "ge": z3.UGE,
    "gt": z3.UGT,
    "le": z3.ULE,
}


class InstructionCompiler:
    """Compiles methods instruction by instruction into the context's engine"""

    def __init__(self, ctx: TranslationContext):
        self.ctx = ctx
        self.engine = ctx.engine
        self.vars = ctx.vars
        self.program: Program = ctx.program
        self.escape = EscapeEngine(ctx)
        self.linker = CallLinker(ctx, self.escape)
        self._handlers: Dict[Family, Callable[[ClauseBuilder, DalvikMethod, Instruction], None]] = {
            Family.NOP: self._identity,
            Family.MONITOR: self._identity,
            Family.THROW: self._identity,
            Family.MOVE: self._move,
            Family.MOVE_RESULT: self._move_result,
            Family.MOVE_EXCEPTION: self._move_exception,
            Family.RETURN_VOID: self._return_void,
            Family.RETURN: self._return,
            Family.CONST: self._const,
            Family.CONST_STRING: self._const_reference,
            Family.CONST_CLASS: self._const_reference,
            Family.CHECK_CAST: self._check_cast,
            Family.INSTANCE_OF: self._instance_of,
            Family.ARRAY_LENGTH: self._array_length,
            Family.NEW_INSTANCE: self._new_instance,
            Family.NEW_ARRAY: self._new_array,
            Family.FILLED_NEW_ARRAY: self._filled_new_array,
            Family.FILL_ARRAY_DATA: self._fill_array_data,
            Family.GOTO: self._goto,
            Family.PACKED_SWITCH: self._switch,
            Family.SPARSE_SWITCH: self._switch,
            Family.CMP: self._cmp,
            Family.IF_TEST: self._if_test,
            Family.IF_TESTZ: self._if_test,
            Family.AGET: self._aget,
            Family.APUT: self._aput,
            Family.IGET: self._iget,
            Family.IPUT: self._iput,
            Family.SGET: self._sget,
            Family.SPUT: self._sput,
            Family.INVOKE: self._invoke,
            Family.UNARY: self._unary,
            Family.BINARY: self._binary,
            Family.BINARY_2ADDR: self._binary_2addr,
            Family.BINARY_LIT: self._binary_lit,
            Family.PAYLOAD: self._identity,
            Family.ODEX: self._unsupported,
        }

    # =========================================================================
    # Entry points
    # =========================================================================

    def compile_method(self, cls: DalvikClass, method: DalvikMethod) -> int:
        """Compile every instruction of method; returns the number compiled"""
        frame = self.ctx.frame_of(cls, method)
        compiled = 0
        for insn in method.instructions:
            try:
                self.compile_instruction(frame, method, insn)
                compiled += 1
            except ModelError as e:
                logger.warning("%s->%s: skipping %s: %s", cls.name, method.signature, insn, e)
        logger.debug("Compiled %s->%s (%d instructions)", cls.name, method.signature, compiled)
        return compiled

    def compile_instruction(self, frame: MethodFrame, method: DalvikMethod,
                            insn: Instruction) -> None:
        handler = self._handlers[insn.family]
        with self.engine.lock:
            handler(ClauseBuilder(self.engine, frame, insn.address), method, insn)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _lit(self, value: int) -> z3.BitVecRef:
        return self.vars.literal(value)

    def _plain(self, value) -> RegisterState:
        """A non-reference value: (value, F, F, F)"""
        f = z3.BoolVal(False)
        return RegisterState(self._lit(value) if isinstance(value, int) else value, f, f, f)

    def _alloc_id(self, b: ClauseBuilder) -> int:
        return Program.allocation_id(b.frame.class_id, b.frame.method_id, b.pc)

    def _index(self, b: ClauseBuilder, register: int):
        return b.value(register) if self.ctx.options.arrays else 0

    # =========================================================================
    # Control and moves
    # =========================================================================

    def _identity(self, b, method, insn):
        b.emit(insn.next_address)

    def _unsupported(self, b, method, insn):
        logger.warning("%s->%s: %s is not supported, compiled as nop",
                       b.frame.class_name, b.frame.signature, insn.opcode.value)
        b.emit(insn.next_address)

    def _move(self, b, method, insn):
        b.set(insn.reg(0), b.reg(insn.reg(1)))
        b.emit(insn.next_address)

    def _move_result(self, b, method, insn):
        b.set(insn.reg(0), b.reg(b.frame.return_slot))
        b.emit(insn.next_address)

    def _move_exception(self, b, method, insn):
        for pred in method.fallthrough_predecessors(insn.address):
            ClauseBuilder(self.engine, b.frame, pred.address).emit(insn.address)
        b.emit(insn.next_address)

    def _exit_registers(self, b: ClauseBuilder, returned: RegisterState) -> List[RegisterState]:
        frame = b.frame
        copies = [b.reg(frame.argument_copy(i)) for i in range(frame.num_args)]
        return copies + [returned]

    def _return_void(self, b, method, insn):
        regs = self._exit_registers(b, b.reg(b.frame.return_slot))
        b.emit_fact(self.engine.exit(b.frame.class_id, b.frame.method_id, regs,
                                     [b.slot(j) for j in range(self.engine.local_heap_size)]))

    def _return(self, b, method, insn):
        regs = self._exit_registers(b, b.reg(insn.reg(0)))
        b.emit_fact(self.engine.exit(b.frame.class_id, b.frame.method_id, regs,
                                     [b.slot(j) for j in range(self.engine.local_heap_size)]))

    def _goto(self, b, method, insn):
        b.emit(insn.branch_target)

    def _if_test(self, b, method, insn):
        test = BRANCH_TESTS[insn.info.operator]
        left = b.value(insn.reg(0))
        if insn.family == Family.IF_TESTZ:
            right = self._lit(0)
        else:
            right = b.value(insn.reg(1))
        cond = test(left, right)
        b.emit(insn.branch_target, cond)
        b.emit(insn.next_address, z3.Not(cond))

    def _switch(self, b, method, insn):
        payload = insn.payload
        if not isinstance(payload, SwitchPayload):
            logger.warning("%s->%s: %s has no switch payload, only the fallthrough is compiled",
                           b.frame.class_name, b.frame.signature, insn)
            b.emit(insn.next_address)
            return
        if payload.mismatched:
            logger.warning("%s->%s: %s: sparse switch has %d keys but %d targets, "
                           "targets without a key are always taken",
                           b.frame.class_name, b.frame.signature, insn,
                           len(payload.keys), len(payload.targets))
        selector = b.value(insn.reg(0))
        conditions = []
        for key, target in payload.cases():
            cond = selector == self._lit(key)
            conditions.append(cond)
            b.emit(insn.address + target, cond)
        for target in payload.unkeyed_targets:
            b.emit(insn.address + target)
        if conditions:
            b.emit(insn.next_address, z3.Not(any_of(conditions)))
        else:
            b.emit(insn.next_address)

    # =========================================================================
    # Constants, casts and arithmetic
    # =========================================================================

    def _const(self, b, method, insn):
        if insn.literal is None:
            raise ModelError(f"{insn} has no literal")
        b.set(insn.reg(0), self._plain(insn.literal))
        b.emit(insn.next_address)

    def _const_reference(self, b, method, insn):
        b.set(insn.reg(0), self._plain(java_hash(insn.reference or "")))
        b.emit(insn.next_address)

    def _check_cast(self, b, method, insn):
        reg = b.reg(insn.reg(0))
        positive = z3.UGT(reg.value, self._lit(0))
        b.emit(insn.next_address, reg.global_, positive)
        b.emit(insn.next_address, reg.local, positive)

    def _instance_of(self, b, method, insn):
        for outcome in (0, 1):
            b.fork().set(insn.reg(0), self._plain(outcome)).emit(insn.next_address)

    def _array_length(self, b, method, insn):
        f = z3.BoolVal(False)
        b.set(insn.reg(0), RegisterState(self.vars.scalar("f"), self.vars.scalar("lf"), f, f))
        b.emit(insn.next_address)

    def _unary(self, b, method, insn):
        op = UNARY_OPERATORS[insn.info.operator]
        src = b.reg(insn.reg(1))
        f = z3.BoolVal(False)
        b.set(insn.reg(0), RegisterState(op(src.value), src.high, f, f))
        b.emit(insn.next_address)

    def _cmp(self, b, method, insn):
        left, right = b.reg(insn.reg(1)), b.reg(insn.reg(2))
        value = z3.If(left.value == right.value, self._lit(0),
                      z3.If(z3.UGT(left.value, right.value), self._lit(1), self._lit(-1)))
        f = z3.BoolVal(False)
        b.set(insn.reg(0), RegisterState(value, z3.Or(left.high, right.high), f, f))
        b.emit(insn.next_address)

    def _binary(self, b, method, insn):
        self._arith(b, insn, insn.reg(0), b.reg(insn.reg(1)), b.reg(insn.reg(2)))

    def _binary_2addr(self, b, method, insn):
        self._arith(b, insn, insn.reg(0), b.reg(insn.reg(0)), b.reg(insn.reg(1)))

    def _binary_lit(self, b, method, insn):
        if insn.literal is None:
            raise ModelError(f"{insn} has no literal")
        self._arith(b, insn, insn.reg(0), b.reg(insn.reg(1)), self._plain(insn.literal))

    def _arith(self, b, insn, dest: int, left: RegisterState, right: RegisterState):
        op = BINARY_OPERATORS[insn.info.operator]
        f = z3.BoolVal(False)
        b.set(dest, RegisterState(op(left.value, right.value),
                                  z3.Or(left.high, right.high), f, f))
        b.emit(insn.next_address)

    # =========================================================================
    # Allocation
    # =========================================================================

    def _new_instance(self, b, method, insn):
        type_name = insn.reference
        if type_name == INTENT:
            b.emit(insn.next_address)
            return
        frame = b.frame
        self._static_initializer_edge(b, type_name)

        alloc_id = self._alloc_id(b)
        site = self.ctx.allocations.get(frame.class_id, frame.method_id, b.pc)
        if site is None:
            if self.ctx.uses_local_heap(frame):
                raise AllocationConsistencyError(
                    f"new-instance at {frame.class_name}->{frame.signature}@{b.pc} "
                    f"has no registered allocation site"
                )
            self._global_allocation(b, insn, alloc_id)
            return
        if site.alloc_id != alloc_id:
            raise AllocationConsistencyError(
                f"Allocation site at {frame.class_name}->{frame.signature}@{b.pc} "
                f"registered with id {site.alloc_id}, expected {alloc_id}"
            )

        f, t = z3.BoolVal(False), z3.BoolVal(True)
        dest = {insn.reg(0): RegisterState(self._lit(alloc_id), f, t, f)}
        fresh = {j: self.vars.empty_slot(free=False) for j in site.slots}

        marker_free = b.slot(site.marker).free
        fresh_path = b.fork()
        for i, state in dest.items():
            fresh_path.set(i, state)
        for j, slot in fresh.items():
            fresh_path.set_slot(j, slot)
        fresh_path.emit(insn.next_address, marker_free)

        self.escape.lift(b, insn.next_address, [z3.Not(marker_free)],
                         registers=dest, slots=fresh)

    def _global_allocation(self, b, insn, alloc_id: int):
        type_name = insn.reference
        type_id = java_hash(type_name)
        layout = self.program.field_layout(type_name)
        if layout is None:
            b.emit_fact(self.engine.h(type_id, alloc_id, self.vars.scalar("fld"), 0,
                                      False, self.vars.scalar("bf")))
        else:
            for field_id, is_prim in layout.items():
                b.emit_fact(self.engine.h(type_id, alloc_id, field_id, 0, False, is_prim))
        f, t = z3.BoolVal(False), z3.BoolVal(True)
        b.set(insn.reg(0), RegisterState(self._lit(alloc_id), f, f, t))
        b.emit(insn.next_address)

    def _static_initializer_edge(self, b: ClauseBuilder, type_name: str):
        found = self.program.static_initializer(type_name)
        if found is None:
            return
        cls, clinit = found
        callee = self.ctx.frame_of(cls, clinit)
        regs = [self.vars.zero_register() for _ in range(callee.slot_count)]
        heap = [b.slot(j) for j in range(self.engine.local_heap_size)]
        b.emit_fact(self.engine.point(callee, 0, regs, heap))

    def _new_array(self, b, method, insn):
        alloc_id = self._alloc_id(b)
        type_id = java_hash(insn.reference or "")
        if self.ctx.options.arrays:
            index = self.vars.scalar("fld")
            b.emit_fact(self.engine.h(type_id, alloc_id, index, 0, False, False),
                        z3.ULT(index, b.value(insn.reg(1))))
        else:
            b.emit_fact(self.engine.h(type_id, alloc_id, 0, 0, False, False))
        f, t = z3.BoolVal(False), z3.BoolVal(True)
        b.set(insn.reg(0), RegisterState(self._lit(alloc_id), f, f, t))
        b.emit(insn.next_address)

    def _filled_new_array(self, b, method, insn):
        alloc_id = self._alloc_id(b)
        type_id = java_hash(insn.reference or "")
        f, t = z3.BoolVal(False), z3.BoolVal(True)
        result = RegisterState(self._lit(alloc_id), f, f, t)
        for position, register in enumerate(insn.registers):
            element = b.reg(register)
            index = position if self.ctx.options.arrays else 0
            b.emit_fact(self.engine.h(type_id, alloc_id, index, element.value,
                                      element.high, element.blocked))
        b.set(b.frame.return_slot, result)
        self.escape.continue_with_escape(b, insn.next_address, insn.registers)

    def _fill_array_data(self, b, method, insn):
        payload = insn.payload
        if not isinstance(payload, ArrayPayload):
            logger.warning("%s->%s: %s has no array payload",
                           b.frame.class_name, b.frame.signature, insn)
            b.emit(insn.next_address)
            return
        array = b.value(insn.reg(0))
        cn, lf, bf = self.vars.scalar("cn"), self.vars.scalar("lf"), self.vars.scalar("bf")
        initialized = self.engine.h(cn, array, 0, 0, lf, bf)
        for position, element in enumerate(payload.elements):
            index = position if self.ctx.options.arrays else 0
            b.emit_fact(self.engine.h(cn, array, index, element, False, False), initialized)
        b.emit(insn.next_address)

    # =========================================================================
    # Arrays and fields
    # =========================================================================

    def _aget(self, b, method, insn):
        v = self.vars.scalar
        value = self.engine.h(v("cn"), b.value(insn.reg(1)), self._index(b, insn.reg(2)),
                              v("val"), v("lval"), v("bval"))
        b.set(insn.reg(0), RegisterState(v("val"), v("lval"), z3.BoolVal(False), v("bval")))
        b.emit(insn.next_address, value)

    def _aput(self, b, method, insn):
        v = self.vars.scalar
        src, array = b.reg(insn.reg(0)), b.reg(insn.reg(1))
        b.emit_fact(
            self.engine.h(v("cn"), array.value, self._index(b, insn.reg(2)),
                          src.value, src.high, src.blocked),
            self.engine.h(v("cn"), array.value, 0, 0, v("lf"), v("bf")),
        )
        b.set(insn.reg(1), array.with_(high=z3.Or(array.high, src.high)))
        self.escape.continue_with_escape(b, insn.next_address, [insn.reg(0)])

    def _iget(self, b, method, insn):
        v = self.vars.scalar
        field_id = java_hash(insn.field_ref().key)
        dest, obj = insn.reg(0), b.reg(insn.reg(1))
        f = z3.BoolVal(False)

        read = b.fork()
        read.set(dest, RegisterState(v("val"), v("lval"), f, v("bval")))
        read.emit(insn.next_address,
                  self.engine.h(v("cn"), obj.value, field_id, v("val"), v("lval"), v("bval")))

        for site, slot_index in self.ctx.allocations.sites_with_field(field_id):
            slot = b.slot(slot_index)
            on_site = [obj.local, obj.value == self._lit(site.alloc_id)]
            local_read = b.fork()
            local_read.set(dest, RegisterState(slot.value, slot.high, f, slot.global_))
            local_read.emit(insn.next_address, *on_site, z3.Not(slot.local))
            # a pointer into the local heap is only read after the heap is lifted
            self.escape.lift(b, insn.next_address, on_site + [slot.local],
                             registers={dest: RegisterState(slot.value, slot.high,
                                                            slot.local, slot.global_)},
                             lift_updates=True)

    def _iput(self, b, method, insn):
        v = self.vars.scalar
        field_id = java_hash(insn.field_ref().key)
        src, obj = b.reg(insn.reg(0)), b.reg(insn.reg(1))
        tainted_obj = obj.with_(high=z3.Or(obj.high, src.high))

        b.emit_fact(
            self.engine.h(v("cn"), obj.value, field_id, src.value, src.high, src.blocked),
            obj.global_,
            self.engine.h(v("cn"), obj.value, v("fld"), 0, v("lf"), v("bf")),
        )

        propagate = b.fork().set(insn.reg(1), tainted_obj)
        if self.engine.local_heap_size:
            escaping = z3.And(obj.global_, src.local)
            propagate.emit(insn.next_address, z3.Not(escaping))
            self.escape.lift(b, insn.next_address, [escaping],
                             registers={insn.reg(1): tainted_obj}, lift_updates=True)
        else:
            propagate.emit(insn.next_address)

        for site, slot_index in self.ctx.allocations.sites_with_field(field_id):
            write = b.fork().set(insn.reg(1), tainted_obj)
            write.set_slot(slot_index, b.slot(slot_index).with_(
                value=src.value, high=src.high, local=src.local,
                global_=src.global_, free=z3.BoolVal(False)))
            write.emit(insn.next_address, obj.local, obj.value == self._lit(site.alloc_id))

    def _static_field(self, insn: Instruction):
        ref = insn.field_ref()
        owner = self.program.static_field_owner(ref.class_name, ref.key)
        return java_hash(owner), java_hash(ref.key)

    def _sget(self, b, method, insn):
        v = self.vars.scalar
        owner_id, field_id = self._static_field(insn)
        dest = insn.reg(0)
        b.fork().set(dest, self._plain(0)).emit(insn.next_address)
        read = b.fork()
        read.set(dest, RegisterState(v("f"), v("lf"), z3.BoolVal(False), v("bf")))
        read.emit(insn.next_address, self.engine.s(owner_id, field_id, v("f"), v("lf"), v("bf")))

    def _sput(self, b, method, insn):
        owner_id, field_id = self._static_field(insn)
        src = b.reg(insn.reg(0))
        b.emit_fact(self.engine.s(owner_id, field_id, src.value, src.high, src.blocked))
        self.escape.continue_with_escape(b, insn.next_address, [insn.reg(0)])

    # =========================================================================
    # Calls
    # =========================================================================

    def _invoke(self, b, method, insn):
        self.linker.compile_invoke(b, method, insn)
