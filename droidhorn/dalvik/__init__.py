"""
Dalvik program representation: opcodes, instructions, the application
model and its JSON loader.
"""

from droidhorn.dalvik.opcodes import Opcode, Family, Dispatch, OpcodeInfo, from_mnemonic
from droidhorn.dalvik.instructions import (
    Instruction, MethodRef, FieldRef, SwitchPayload, ArrayPayload,
)
from droidhorn.dalvik.program import (
    DalvikClass, DalvikMethod, DalvikField, Implementation, Program,
)
from droidhorn.dalvik.loader import load_program, program_from_dict

__all__ = [
    "Opcode", "Family", "Dispatch", "OpcodeInfo", "from_mnemonic",
    "Instruction", "MethodRef", "FieldRef", "SwitchPayload", "ArrayPayload",
    "DalvikClass", "DalvikMethod", "DalvikField", "Implementation", "Program",
    "load_program", "program_from_dict",
]
