"""
Dalvik opcode enumeration.

Opcodes are a closed enumeration. Each one maps to an OpcodeInfo carrying
its family (which selects the compiler handler), its size in 16-bit code
units, and, for arithmetic, comparison and branch families, the operator
name looked up in the compiler's operator tables. The invoke family also
records the dispatch kind and whether the register list is a range.
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Dict, List, Optional, Tuple


# =============================================================================
# Families
# =============================================================================

class Family(Enum):
    """Instruction families; one compiler handler per family"""
    NOP = auto()
    MOVE = auto()
    MOVE_RESULT = auto()
    MOVE_EXCEPTION = auto()
    RETURN_VOID = auto()
    RETURN = auto()
    CONST = auto()
    CONST_STRING = auto()
    CONST_CLASS = auto()
    MONITOR = auto()
    CHECK_CAST = auto()
    INSTANCE_OF = auto()
    ARRAY_LENGTH = auto()
    NEW_INSTANCE = auto()
    NEW_ARRAY = auto()
    FILLED_NEW_ARRAY = auto()
    FILL_ARRAY_DATA = auto()
    THROW = auto()
    GOTO = auto()
    PACKED_SWITCH = auto()
    SPARSE_SWITCH = auto()
    CMP = auto()
    IF_TEST = auto()
    IF_TESTZ = auto()
    AGET = auto()
    APUT = auto()
    IGET = auto()
    IPUT = auto()
    SGET = auto()
    SPUT = auto()
    INVOKE = auto()
    UNARY = auto()
    BINARY = auto()
    BINARY_2ADDR = auto()
    BINARY_LIT = auto()
    PAYLOAD = auto()
    ODEX = auto()


class Dispatch(Enum):
    """How an invoke selects its callee"""
    VIRTUAL = "virtual"      # virtual, super, interface
    DIRECT = "direct"        # direct (constructors, private methods)
    STATIC = "static"


@dataclass(frozen=True)
class OpcodeInfo:
    """Static description of one opcode"""
    mnemonic: str
    family: Family
    units: int
    operator: Optional[str] = None
    dispatch: Optional[Dispatch] = None
    is_range: bool = False


# =============================================================================
# Opcode table
# =============================================================================

def _typed(base: str, suffixes: Tuple[str, ...]) -> List[str]:
    return [base + s for s in suffixes]


_FIELD_SUFFIXES = ("", "-wide", "-object", "-boolean", "-byte", "-char", "-short")
_ARITH_TYPES = ("int", "long", "float", "double")
_BITWISE_TYPES = ("int", "long")
_ARITH_OPS = ("add", "sub", "mul", "div", "rem")
_BITWISE_OPS = ("and", "or", "xor", "shl", "shr", "ushr")
_CONVERSIONS = (
    "int-to-long", "int-to-float", "int-to-double",
    "long-to-int", "long-to-float", "long-to-double",
    "float-to-int", "float-to-long", "float-to-double",
    "double-to-int", "double-to-long", "double-to-float",
    "int-to-byte", "int-to-char", "int-to-short",
)
_ODEX = (
    "iget-quick", "iget-wide-quick", "iget-object-quick",
    "iput-quick", "iput-wide-quick", "iput-object-quick",
    "iput-boolean-quick", "iput-byte-quick", "iput-char-quick", "iput-short-quick",
    "iget-boolean-quick", "iget-byte-quick", "iget-char-quick", "iget-short-quick",
    "invoke-virtual-quick", "invoke-virtual-quick/range",
    "invoke-super-quick", "invoke-super-quick/range",
    "execute-inline", "execute-inline/range", "invoke-direct-empty",
    "invoke-object-init/range", "return-void-barrier", "return-void-no-barrier",
    "throw-verification-error",
    "iget-volatile", "iput-volatile", "sget-volatile", "sput-volatile",
    "iget-object-volatile", "iput-object-volatile",
    "sget-object-volatile", "sput-object-volatile",
    "iget-wide-volatile", "iput-wide-volatile",
    "sget-wide-volatile", "sput-wide-volatile",
    "invoke-polymorphic", "invoke-polymorphic/range",
    "invoke-custom", "invoke-custom/range",
    "const-method-handle", "const-method-type",
)


def _build_table() -> List[OpcodeInfo]:
    table: List[OpcodeInfo] = []

    def add(mnemonic, family, units, operator=None, dispatch=None, is_range=False):
        table.append(OpcodeInfo(mnemonic, family, units, operator, dispatch, is_range))

    add("nop", Family.NOP, 1)
    for kind in ("move", "move-wide", "move-object"):
        add(kind, Family.MOVE, 1)
        add(kind + "/from16", Family.MOVE, 2)
        add(kind + "/16", Family.MOVE, 3)
    for kind in ("move-result", "move-result-wide", "move-result-object"):
        add(kind, Family.MOVE_RESULT, 1)
    add("move-exception", Family.MOVE_EXCEPTION, 1)
    add("return-void", Family.RETURN_VOID, 1)
    for kind in ("return", "return-wide", "return-object"):
        add(kind, Family.RETURN, 1)

    add("const/4", Family.CONST, 1)
    add("const/16", Family.CONST, 2)
    add("const", Family.CONST, 3)
    add("const/high16", Family.CONST, 2)
    add("const-wide/16", Family.CONST, 2)
    add("const-wide/32", Family.CONST, 3)
    add("const-wide", Family.CONST, 5)
    add("const-wide/high16", Family.CONST, 2)
    add("const-string", Family.CONST_STRING, 2)
    add("const-string/jumbo", Family.CONST_STRING, 3)
    add("const-class", Family.CONST_CLASS, 2)

    add("monitor-enter", Family.MONITOR, 1)
    add("monitor-exit", Family.MONITOR, 1)
    add("check-cast", Family.CHECK_CAST, 2)
    add("instance-of", Family.INSTANCE_OF, 2)
    add("array-length", Family.ARRAY_LENGTH, 1)
    add("new-instance", Family.NEW_INSTANCE, 2)
    add("new-array", Family.NEW_ARRAY, 2)
    add("filled-new-array", Family.FILLED_NEW_ARRAY, 3)
    add("filled-new-array/range", Family.FILLED_NEW_ARRAY, 3, is_range=True)
    add("fill-array-data", Family.FILL_ARRAY_DATA, 3)
    add("throw", Family.THROW, 1)
    add("goto", Family.GOTO, 1)
    add("goto/16", Family.GOTO, 2)
    add("goto/32", Family.GOTO, 3)
    add("packed-switch", Family.PACKED_SWITCH, 3)
    add("sparse-switch", Family.SPARSE_SWITCH, 3)

    for kind in ("cmpl-float", "cmpg-float", "cmpl-double", "cmpg-double", "cmp-long"):
        add(kind, Family.CMP, 2, operator="cmp")
    for test in ("eq", "ne", "lt", "ge", "gt", "le"):
        add("if-" + test, Family.IF_TEST, 2, operator=test)
    for test in ("eq", "ne", "lt", "ge", "gt", "le"):
        add("if-" + test + "z", Family.IF_TESTZ, 2, operator=test)

    for mnemonic in _typed("aget", _FIELD_SUFFIXES):
        add(mnemonic, Family.AGET, 2)
    for mnemonic in _typed("aput", _FIELD_SUFFIXES):
        add(mnemonic, Family.APUT, 2)
    for mnemonic in _typed("iget", _FIELD_SUFFIXES):
        add(mnemonic, Family.IGET, 2)
    for mnemonic in _typed("iput", _FIELD_SUFFIXES):
        add(mnemonic, Family.IPUT, 2)
    for mnemonic in _typed("sget", _FIELD_SUFFIXES):
        add(mnemonic, Family.SGET, 2)
    for mnemonic in _typed("sput", _FIELD_SUFFIXES):
        add(mnemonic, Family.SPUT, 2)

    for kind, dispatch in (("virtual", Dispatch.VIRTUAL), ("super", Dispatch.VIRTUAL),
                           ("direct", Dispatch.DIRECT), ("static", Dispatch.STATIC),
                           ("interface", Dispatch.VIRTUAL)):
        add("invoke-" + kind, Family.INVOKE, 3, operator=kind, dispatch=dispatch)
        add("invoke-" + kind + "/range", Family.INVOKE, 3, operator=kind,
            dispatch=dispatch, is_range=True)

    for t in _BITWISE_TYPES:
        add("not-" + t, Family.UNARY, 1, operator="not")
    for t in _ARITH_TYPES:
        add("neg-" + t, Family.UNARY, 1, operator="neg")
    for conversion in _CONVERSIONS:
        add(conversion, Family.UNARY, 1, operator="convert")

    for t in _ARITH_TYPES:
        for op in _ARITH_OPS:
            add(f"{op}-{t}", Family.BINARY, 2, operator=op)
    for t in _BITWISE_TYPES:
        for op in _BITWISE_OPS:
            add(f"{op}-{t}", Family.BINARY, 2, operator=op)
    for t in _ARITH_TYPES:
        for op in _ARITH_OPS:
            add(f"{op}-{t}/2addr", Family.BINARY_2ADDR, 1, operator=op)
    for t in _BITWISE_TYPES:
        for op in _BITWISE_OPS:
            add(f"{op}-{t}/2addr", Family.BINARY_2ADDR, 1, operator=op)

    lit16 = ("add", "rsub", "mul", "div", "rem", "and", "or", "xor")
    for op in lit16:
        name = "rsub-int" if op == "rsub" else f"{op}-int/lit16"
        add(name, Family.BINARY_LIT, 2, operator=op)
    for op in lit16 + ("shl", "shr", "ushr"):
        add(f"{op}-int/lit8", Family.BINARY_LIT, 2, operator=op)

    add("packed-switch-payload", Family.PAYLOAD, 0)
    add("sparse-switch-payload", Family.PAYLOAD, 0)
    add("array-payload", Family.PAYLOAD, 0)

    for mnemonic in _ODEX:
        if mnemonic.startswith(("invoke", "execute")):
            units = 3
        elif mnemonic.startswith("return"):
            units = 1
        else:
            units = 2
        add(mnemonic, Family.ODEX, units)
    return table


def _enum_name(mnemonic: str) -> str:
    return mnemonic.upper().replace("-", "_").replace("/", "_")


_TABLE = _build_table()

Opcode = Enum("Opcode", [(_enum_name(info.mnemonic), info.mnemonic) for info in _TABLE])
Opcode.__doc__ = "Every Dalvik mnemonic; the value is the smali spelling"

OPCODE_INFO: Dict["Opcode", OpcodeInfo] = {
    Opcode(info.mnemonic): info for info in _TABLE
}


def info(opcode: "Opcode") -> OpcodeInfo:
    return OPCODE_INFO[opcode]


def from_mnemonic(mnemonic: str) -> Optional["Opcode"]:
    """Look up an opcode by its smali spelling, None when unknown"""
    try:
        return Opcode(mnemonic.strip().lower())
    except ValueError:
        return None
