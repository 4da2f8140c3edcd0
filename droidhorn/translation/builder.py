"""
Per-instruction clause builder.

A ClauseBuilder describes one transition out of R(pc). Reads always see the
pre-state: the canonical variables of R(pc). Writes are overrides that end
up in the head relation. Builders are cheap and short-lived; fork() copies
the overrides so several clauses can share a common update.
"""

from typing import Dict, List

import z3

from droidhorn.core.state import HeapSlot, MethodFrame, RegisterState
from droidhorn.encoding.engine import HornEngine


class ClauseBuilder:
    """Overrides of one transition from R(pc)"""

    def __init__(self, engine: HornEngine, frame: MethodFrame, pc: int):
        self.engine = engine
        self.vars = engine.vars
        self.frame = frame
        self.pc = pc
        self.registers: Dict[int, RegisterState] = {}
        self.slots: Dict[int, HeapSlot] = {}

    def fork(self) -> "ClauseBuilder":
        other = ClauseBuilder(self.engine, self.frame, self.pc)
        other.registers = dict(self.registers)
        other.slots = dict(self.slots)
        return other

    # -------------------------------------------------------------------------
    # Pre-state
    # -------------------------------------------------------------------------

    def reg(self, index: int) -> RegisterState:
        return self.vars.register(index)

    def slot(self, index: int) -> HeapSlot:
        return self.vars.slot(index)

    def value(self, index: int) -> z3.BitVecRef:
        return self.reg(index).value

    def high(self, index: int) -> z3.BoolRef:
        return self.reg(index).high

    def pre(self) -> z3.BoolRef:
        """R(pc) over the canonical variables"""
        regs = [self.vars.register(i) for i in range(self.frame.slot_count)]
        heap = [self.vars.slot(j) for j in range(self.engine.local_heap_size)]
        return self.engine.point(self.frame, self.pc, regs, heap)

    # -------------------------------------------------------------------------
    # Post-state
    # -------------------------------------------------------------------------

    def set(self, index: int, state: RegisterState) -> "ClauseBuilder":
        self.registers[index] = state
        return self

    def set_slot(self, index: int, slot: HeapSlot) -> "ClauseBuilder":
        self.slots[index] = slot
        return self

    def current(self, index: int) -> RegisterState:
        return self.registers.get(index, self.vars.register(index))

    def current_slot(self, index: int) -> HeapSlot:
        return self.slots.get(index, self.vars.slot(index))

    def post_registers(self) -> List[RegisterState]:
        return [self.current(i) for i in range(self.frame.slot_count)]

    def post_heap(self) -> List[HeapSlot]:
        return [self.current_slot(j) for j in range(self.engine.local_heap_size)]

    def post(self, pc: int) -> z3.BoolRef:
        return self.engine.point(self.frame, pc, self.post_registers(), self.post_heap())

    # -------------------------------------------------------------------------
    # Emission
    # -------------------------------------------------------------------------

    def body(self, *guards: z3.BoolRef) -> z3.BoolRef:
        if not guards:
            return self.pre()
        return z3.And(self.pre(), *guards)

    def emit(self, target_pc: int, *guards: z3.BoolRef) -> None:
        """R(pc) /\\ guards => R(target_pc) with the overrides"""
        self.engine.add_rule(self.post(target_pc), self.body(*guards))

    def emit_fact(self, head: z3.BoolRef, *guards: z3.BoolRef) -> None:
        """R(pc) /\\ guards => head, for heap facts and call entries"""
        self.engine.add_rule(head, self.body(*guards))


def any_of(terms: List[z3.BoolRef]) -> z3.BoolRef:
    if not terms:
        return z3.BoolVal(False)
    if len(terms) == 1:
        return terms[0]
    return z3.Or(*terms)
