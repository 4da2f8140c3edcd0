"""
Tests for identifiers and frame layout (droidhorn/core/state.py, droidhorn/core/variables.py)
"""

import pytest
import z3

from droidhorn.core.state import MethodFrame, ProgramPoint, RegisterState, java_hash
from droidhorn.core.variables import SymbolicVariables


class TestJavaHash:
    """Java String.hashCode compatibility"""

    def test_known_values(self):
        """Hashes match the values the JVM computes"""
        assert java_hash("") == 0
        assert java_hash("a") == 97
        assert java_hash("hello") == 99162322
        assert java_hash("Hello") == 69609650

    def test_signed_wraparound(self):
        """Results wrap to signed 32 bits"""
        assert java_hash("hello world") == 1794106052
        assert java_hash("polygenelubricants") == -2147483648

    def test_range(self):
        """Every hash fits in a signed int"""
        for text in ("Lcom/example/Main;", "onCreate(Landroid/os/Bundle;)V", "x" * 200):
            assert -2 ** 31 <= java_hash(text) < 2 ** 31

    def test_supplementary_characters(self):
        """Characters outside the BMP hash as their surrogate pair"""
        high, low = 0xD83D, 0xDE00
        assert java_hash("\U0001F600") == 31 * high + low


class TestMethodFrame:
    """Register slot layout of a method"""

    def test_slots(self):
        """Registers, then the return slot, then one copy per argument"""
        frame = MethodFrame("Lcom/example/A;", "f(I)V", 3, 2)
        assert frame.return_slot == 3
        assert frame.slot_count == 6
        assert frame.argument_register(0) == 1
        assert frame.argument_register(1) == 2
        assert frame.argument_copy(0) == 4
        assert frame.argument_copy(1) == 5

    def test_ids(self):
        """Class and method ids hash the descriptor and the signature"""
        frame = MethodFrame("Lcom/example/A;", "f(I)V", 3, 2)
        assert frame.class_id == java_hash("Lcom/example/A;")
        assert frame.method_id == java_hash("f(I)V")

    def test_relation_name(self):
        """Point relations are named after (class, method, pc)"""
        frame = MethodFrame("LA;", "m()V", 1, 0)
        point = frame.point(4)
        assert point == ProgramPoint(frame.class_id, frame.method_id, 4)
        assert point.relation_name == f"R_{frame.class_id}_{frame.method_id}_4"
        assert point.at(6).pc == 6


class TestSymbolicVariables:
    """Canonical variable pool"""

    def test_same_name_same_variable(self):
        """Asking twice returns the same constant"""
        pool = SymbolicVariables(32)
        assert pool.register(3).value is pool.register(3).value
        assert z3.eq(pool.slot(1).free, z3.Bool("lhf_1"))

    def test_bit_width(self):
        """Values and literals use the configured width"""
        pool = SymbolicVariables(16)
        assert pool.register(0).value.size() == 16
        assert pool.literal(-1).as_long() == 0xFFFF

    def test_scalars(self):
        """Scalar helpers have fixed sorts; unknown names are rejected"""
        pool = SymbolicVariables()
        assert z3.is_bv(pool.scalar("rez"))
        assert z3.is_bool(pool.scalar("hrez"))
        with pytest.raises(KeyError):
            pool.scalar("nope")

    def test_zero_register_and_empty_slot(self):
        """Zero registers are untainted non-references"""
        pool = SymbolicVariables()
        zero = pool.zero_register()
        assert zero.value.as_long() == 0
        assert all(z3.is_false(c) for c in zero.columns()[1:])
        assert z3.is_true(pool.empty_slot(free=True).free)
        assert z3.is_false(pool.empty_slot(free=False).free)

    def test_all_tracks_created_variables(self):
        """The pool remembers every variable it handed out"""
        pool = SymbolicVariables()
        pool.register(0)
        pool.slot(0)
        assert len(pool) == 9
        assert len(pool.all()) == 9


class TestRegisterState:
    """The per-register 4-tuple"""

    def test_blocked_is_local_or_global(self):
        """Heap writes are blocked for any reference"""
        f, t = z3.BoolVal(False), z3.BoolVal(True)
        reg = RegisterState(z3.BitVecVal(1, 8), f, t, f)
        assert z3.is_true(z3.simplify(reg.blocked))

    def test_with_replaces_fields(self):
        """with_ returns a modified copy"""
        f, t = z3.BoolVal(False), z3.BoolVal(True)
        reg = RegisterState(z3.BitVecVal(1, 8), f, f, f)
        tainted = reg.with_(high=t)
        assert z3.is_true(tainted.high)
        assert z3.is_false(reg.high)
