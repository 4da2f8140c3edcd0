"""
Dalvik instruction definitions.

- Instruction: one decoded instruction with its address in code units
- MethodRef / FieldRef: parsed smali references (Lcls;->name(args)ret,
  Lcls;->name:Type)
- SwitchPayload / ArrayPayload: data attached to packed/sparse-switch and
  fill-array-data

Descriptors follow the dex type grammar: primitives ZBSCIJFD, V for void,
L...; for classes and a leading [ per array dimension.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from droidhorn.core.descriptors import is_primitive, split_descriptors
from droidhorn.dalvik.opcodes import Opcode, Family, OpcodeInfo, info
from droidhorn.errors import ModelError


@dataclass(frozen=True)
class MethodRef:
    """A method reference Lcls;->name(params)ret"""
    class_name: str
    name: str
    descriptor: str

    @classmethod
    def parse(cls, reference: str) -> "MethodRef":
        try:
            owner, rest = reference.split("->", 1)
            name, descriptor = rest.split("(", 1)
        except ValueError:
            raise ModelError(f"Malformed method reference '{reference}'")
        return cls(owner.strip(), name.strip(), "(" + descriptor.strip())

    @property
    def signature(self) -> str:
        """Name and descriptor, the string hashed into a method id"""
        return self.name + self.descriptor

    @property
    def return_type(self) -> str:
        return self.descriptor[self.descriptor.index(")") + 1:]

    @property
    def parameter_types(self) -> List[str]:
        inner = self.descriptor[1:self.descriptor.index(")")]
        return split_descriptors(inner)

    def __str__(self) -> str:
        return f"{self.class_name}->{self.signature}"


@dataclass(frozen=True)
class FieldRef:
    """A field reference Lcls;->name:Type"""
    class_name: str
    name: str
    type: str

    @classmethod
    def parse(cls, reference: str) -> "FieldRef":
        try:
            owner, rest = reference.split("->", 1)
            name, typ = rest.split(":", 1)
        except ValueError:
            raise ModelError(f"Malformed field reference '{reference}'")
        return cls(owner.strip(), name.strip(), typ.strip())

    @property
    def key(self) -> str:
        """name:Type, the string hashed into a field id"""
        return f"{self.name}:{self.type}"

    @property
    def is_primitive(self) -> bool:
        return is_primitive(self.type)


# =============================================================================
# Payloads
# =============================================================================

@dataclass
class SwitchPayload:
    """
    Case table of a packed or sparse switch.

    Packed payloads give first_key and one target per consecutive key;
    sparse payloads list keys explicitly. Targets are relative to the
    address of the switch instruction.
    """
    targets: List[int]
    first_key: Optional[int] = None
    keys: List[int] = field(default_factory=list)

    def cases(self) -> List[Tuple[int, int]]:
        """(key, target) pairs; sparse keys without a target and targets
        without a key are left out"""
        if self.first_key is not None:
            return [(self.first_key + i, t) for i, t in enumerate(self.targets)]
        return list(zip(self.keys, self.targets))

    @property
    def unkeyed_targets(self) -> List[int]:
        """Sparse targets past the last key"""
        if self.first_key is not None:
            return []
        return self.targets[len(self.keys):]

    @property
    def mismatched(self) -> bool:
        return self.first_key is None and len(self.keys) != len(self.targets)

    @property
    def units(self) -> int:
        if self.first_key is not None:
            return 4 + 2 * len(self.targets)
        return 2 + 4 * len(self.targets)


@dataclass
class ArrayPayload:
    """Element table of fill-array-data"""
    element_width: int
    elements: List[int]

    @property
    def units(self) -> int:
        return (len(self.elements) * self.element_width + 1) // 2 + 4


Payload = Union[SwitchPayload, ArrayPayload]


# =============================================================================
# Instruction
# =============================================================================

@dataclass
class Instruction:
    """
    One Dalvik instruction.

    registers lists the operand registers in smali order (A, B, C ...);
    for invokes and filled-new-array it is the expanded argument list.
    offset is the relative branch target of goto/if/switch and the payload
    offset of switches and fill-array-data.
    """
    opcode: Opcode
    address: int = 0
    registers: List[int] = field(default_factory=list)
    literal: Optional[int] = None
    reference: Optional[str] = None
    offset: Optional[int] = None
    payload: Optional[Payload] = None

    @property
    def info(self) -> OpcodeInfo:
        return info(self.opcode)

    @property
    def family(self) -> Family:
        return self.info.family

    @property
    def units(self) -> int:
        if self.family == Family.PAYLOAD:
            return self.payload.units if self.payload is not None else 1
        return self.info.units

    @property
    def next_address(self) -> int:
        return self.address + self.units

    @property
    def branch_target(self) -> int:
        if self.offset is None:
            raise ModelError(f"{self.opcode.value} at {self.address} has no branch offset")
        return self.address + self.offset

    def reg(self, index: int) -> int:
        """Register operand by position (0 is A, 1 is B ...)"""
        try:
            return self.registers[index]
        except IndexError:
            raise ModelError(
                f"{self.opcode.value} at {self.address} is missing operand {index}"
            )

    def method_ref(self) -> MethodRef:
        return MethodRef.parse(self._require_reference())

    def field_ref(self) -> FieldRef:
        return FieldRef.parse(self._require_reference())

    def _require_reference(self) -> str:
        if not self.reference:
            raise ModelError(f"{self.opcode.value} at {self.address} has no reference")
        return self.reference

    def __str__(self) -> str:
        regs = ", ".join(f"v{r}" for r in self.registers)
        extra = ""
        if self.reference is not None:
            extra = f", {self.reference}"
        elif self.literal is not None:
            extra = f", {self.literal:#x}"
        elif self.offset is not None:
            extra = f", {self.offset:+d}"
        return f"{self.address:04x}: {self.opcode.value} {regs}{extra}"
