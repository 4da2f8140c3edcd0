"""
Pool of named symbolic variables.

Every clause is written over the same canonical variables: register slot i
is (v_i, h_i, l_i, g_i), local-heap slot j is (lhv_j, lhh_j, lhl_j, lhg_j,
lhf_j) and the callee's copy of slot j is (lhcv_j, ..., lhcf_j). A body
R(pc) always uses the canonical names; heads substitute overrides.

The fixed-point engine quantifies rules over declared variables, so the
pool remembers every variable it hands out.
"""

import threading
from typing import Dict, List

import z3

from droidhorn.core.state import RegisterState, HeapSlot


# Scalar helpers used by heap reads, call results and summaries
BV_SCALARS = ("f", "fpp", "vfp", "rez", "val", "cn", "buf", "fld")
BOOL_SCALARS = ("hrez", "lrez", "grez", "lval", "bval", "lf", "bf", "lfp", "bfp")


class SymbolicVariables:
    """Thread-safe cache of z3 constants by name"""

    def __init__(self, bv_size: int = 64):
        self.bv_size = bv_size
        self.bv_sort = z3.BitVecSort(bv_size)
        self._cache: Dict[str, z3.ExprRef] = {}
        self._lock = threading.RLock()

    def _const(self, name: str, sort) -> z3.ExprRef:
        with self._lock:
            var = self._cache.get(name)
            if var is None:
                var = z3.Const(name, sort)
                self._cache[name] = var
            return var

    def bv(self, name: str) -> z3.BitVecRef:
        return self._const(name, self.bv_sort)

    def bool(self, name: str) -> z3.BoolRef:
        return self._const(name, z3.BoolSort())

    def scalar(self, name: str) -> z3.ExprRef:
        if name in BV_SCALARS:
            return self.bv(name)
        if name in BOOL_SCALARS:
            return self.bool(name)
        raise KeyError(f"Unknown scalar variable '{name}'")

    def register(self, index: int) -> RegisterState:
        return RegisterState(
            self.bv(f"v_{index}"),
            self.bool(f"h_{index}"),
            self.bool(f"l_{index}"),
            self.bool(f"g_{index}"),
        )

    def slot(self, index: int) -> HeapSlot:
        return HeapSlot(
            self.bv(f"lhv_{index}"),
            self.bool(f"lhh_{index}"),
            self.bool(f"lhl_{index}"),
            self.bool(f"lhg_{index}"),
            self.bool(f"lhf_{index}"),
        )

    def callee_slot(self, index: int) -> HeapSlot:
        return HeapSlot(
            self.bv(f"lhcv_{index}"),
            self.bool(f"lhch_{index}"),
            self.bool(f"lhcl_{index}"),
            self.bool(f"lhcg_{index}"),
            self.bool(f"lhcf_{index}"),
        )

    def filter(self, index: int) -> z3.BoolRef:
        return self.bool(f"cf_{index}")

    def literal(self, value: int) -> z3.BitVecRef:
        return z3.BitVecVal(value, self.bv_size)

    def zero_register(self) -> RegisterState:
        f = z3.BoolVal(False)
        return RegisterState(self.literal(0), f, f, f)

    def empty_slot(self, free: bool = True) -> HeapSlot:
        f = z3.BoolVal(False)
        return HeapSlot(self.literal(0), f, f, f, z3.BoolVal(free))

    def all(self) -> List[z3.ExprRef]:
        with self._lock:
            return list(self._cache.values())

    def __len__(self) -> int:
        return len(self._cache)
