"""
Symbolic state of a Dalvik method at one program point.

- java_hash: Java's String.hashCode, used for every class, method, field
  and string identifier in the encoding
- ProgramPoint: (classId, methodId, pc) naming one point relation
- RegisterState: the 4-tuple tracked per register slot
- HeapSlot: the 5-tuple tracked per local-heap slot
"""

from dataclasses import dataclass, replace
from typing import Tuple

import z3


def java_hash(text: str) -> int:
    """
    Compute Java's String.hashCode of text.

    Java hashes UTF-16 code units, so characters outside the BMP contribute
    their surrogate pair. The result is a signed 32-bit integer.
    """
    h = 0
    data = text.encode("utf-16-be")
    for i in range(0, len(data), 2):
        unit = (data[i] << 8) | data[i + 1]
        h = (31 * h + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


@dataclass(frozen=True)
class ProgramPoint:
    """A (class, method, pc) triple; one point relation per distinct triple"""
    class_id: int
    method_id: int
    pc: int

    @property
    def relation_name(self) -> str:
        return f"R_{self.class_id}_{self.method_id}_{self.pc}"

    def at(self, pc: int) -> "ProgramPoint":
        return ProgramPoint(self.class_id, self.method_id, pc)

    def __str__(self) -> str:
        return f"({self.class_id}, {self.method_id}, {self.pc})"


@dataclass(frozen=True, eq=False)
class RegisterState:
    """
    Value, taint label and heap classification of one register slot.

    local and global_ are mutually exclusive for a live reference; both
    false means the register holds a primitive or null.
    """
    value: z3.BitVecRef
    high: z3.BoolRef
    local: z3.BoolRef
    global_: z3.BoolRef

    def with_(self, **changes) -> "RegisterState":
        return replace(self, **changes)

    def columns(self) -> Tuple[z3.ExprRef, ...]:
        return (self.value, self.high, self.local, self.global_)

    @property
    def blocked(self) -> z3.BoolRef:
        """Blocked flag of a heap write of this register"""
        return z3.Or(self.local, self.global_)


@dataclass(frozen=True, eq=False)
class HeapSlot:
    """One local-heap cell. free means not written in the current epoch."""
    value: z3.BitVecRef
    high: z3.BoolRef
    local: z3.BoolRef
    global_: z3.BoolRef
    free: z3.BoolRef

    def with_(self, **changes) -> "HeapSlot":
        return replace(self, **changes)

    def columns(self) -> Tuple[z3.ExprRef, ...]:
        return (self.value, self.high, self.local, self.global_, self.free)


@dataclass(frozen=True)
class MethodFrame:
    """
    Register layout of one method's relations.

    Slots 0..num_registers-1 are the method's registers, slot num_registers
    is the return slot read by move-result, and slots num_registers+1+i
    keep the incoming value of argument i.
    """
    class_name: str
    signature: str
    num_registers: int
    num_args: int

    @property
    def class_id(self) -> int:
        return java_hash(self.class_name)

    @property
    def method_id(self) -> int:
        return java_hash(self.signature)

    @property
    def return_slot(self) -> int:
        return self.num_registers

    @property
    def slot_count(self) -> int:
        return self.num_registers + 1 + self.num_args

    def argument_register(self, index: int) -> int:
        return self.num_registers - self.num_args + index

    def argument_copy(self, index: int) -> int:
        return self.num_registers + 1 + index

    def point(self, pc: int) -> ProgramPoint:
        return ProgramPoint(self.class_id, self.method_id, pc)
