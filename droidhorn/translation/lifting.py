"""
Escape and lifting.

When a local object may become reachable from outside the method (stored
into a global object, a static field, an array or an intent; reused
allocation site; passed to unknown code) the whole local heap is lifted
to the global heap under the escape guard:

1. every register slot 0..numRegisters: global := global or local,
   local := false
2. every allocation site: one H fact per field of its layout, read from
   the pre-lift slots (unknown layouts give a wildcard fact)
3. every local-heap slot becomes (0, F, F, F, free=T)
4. the caller's register and slot updates are applied
5. the guarded transition to the successor is emitted

Lifting is whole-heap and conservative; lifting twice without an
allocation in between produces the same global facts.
"""

import logging
from typing import Dict, Optional, Sequence

import z3

from droidhorn.core.state import HeapSlot, RegisterState
from droidhorn.translation.builder import ClauseBuilder, any_of
from droidhorn.translation.context import TranslationContext


logger = logging.getLogger(__name__)


class EscapeEngine:
    """Emits lifting clauses for a translation context"""

    def __init__(self, ctx: TranslationContext):
        self.ctx = ctx
        self.engine = ctx.engine
        self.vars = ctx.vars

    def lift(self, builder: ClauseBuilder, target_pc: int, guards: Sequence[z3.BoolRef],
             registers: Optional[Dict[int, RegisterState]] = None,
             slots: Optional[Dict[int, HeapSlot]] = None,
             lift_updates: bool = False) -> None:
        """
        Emit the lifting clauses of builder's point under guards.

        registers and slots are applied after the reset; with lift_updates
        the register updates are promoted to global like every other register.
        """
        lifted = ClauseBuilder(self.engine, builder.frame, builder.pc)
        for i in range(builder.frame.num_registers + 1):
            lifted.set(i, promote(lifted.reg(i)))

        self.lift_objects(lifted, guards)

        for j in range(self.engine.local_heap_size):
            lifted.set_slot(j, self.vars.empty_slot(free=True))
        for i, state in (registers or {}).items():
            lifted.set(i, promote(state) if lift_updates else state)
        for j, slot in (slots or {}).items():
            lifted.set_slot(j, slot)

        lifted.emit(target_pc, *guards)

    def lift_objects(self, builder: ClauseBuilder, guards: Sequence[z3.BoolRef]) -> int:
        """H facts for every allocation site's fields; returns the number emitted"""
        emitted = 0
        for site in self.ctx.allocations:
            if site.layout is None:
                builder.emit_fact(
                    self.engine.h(site.type_id, site.alloc_id, self.vars.scalar("fld"),
                                  0, False, self.vars.scalar("bf")),
                    *guards,
                )
                emitted += 1
                continue
            for field_id, slot_index, _ in site.field_slots():
                slot = builder.slot(slot_index)
                builder.emit_fact(
                    self.engine.h(site.type_id, site.alloc_id, field_id, slot.value,
                                  slot.high, z3.Or(slot.local, slot.global_)),
                    *guards,
                )
                emitted += 1
        return emitted

    def continue_with_escape(self, builder: ClauseBuilder, target_pc: int,
                             escaping: Sequence[int], *guards: z3.BoolRef) -> None:
        """
        Emit builder's transition; when one of the escaping registers holds a
        local reference the transition lifts first.
        """
        if not escaping or self.engine.local_heap_size == 0:
            builder.emit(target_pc, *guards)
            return
        any_local = any_of([builder.reg(r).local for r in escaping])
        builder.emit(target_pc, *guards, z3.Not(any_local))
        self.lift(builder, target_pc, list(guards) + [any_local],
                  registers=builder.registers, slots=builder.slots, lift_updates=True)


def promote(reg: RegisterState) -> RegisterState:
    """A register after lifting: local references become global"""
    return reg.with_(global_=z3.Or(reg.global_, reg.local), local=z3.BoolVal(False))
