"""
Tests for opcodes and instructions (droidhorn/dalvik/opcodes.py, droidhorn/dalvik/instructions.py)
"""

import pytest

from droidhorn.dalvik.instructions import (
    ArrayPayload, FieldRef, Instruction, MethodRef, SwitchPayload,
)
from droidhorn.dalvik.opcodes import Dispatch, Family, Opcode, from_mnemonic, info
from droidhorn.errors import ModelError


class TestOpcodeTable:
    """Opcode families, sizes and operators"""

    def test_lookup_by_mnemonic(self):
        """Mnemonics map to opcodes, case and whitespace insensitive"""
        assert from_mnemonic("const/4") is Opcode("const/4")
        assert from_mnemonic(" ADD-INT ") is Opcode("add-int")
        assert from_mnemonic("frobnicate") is None

    def test_arithmetic_operators(self):
        """Arithmetic families carry their operator"""
        assert info(Opcode("add-int/lit8")).family == Family.BINARY_LIT
        assert info(Opcode("add-int/lit8")).operator == "add"
        assert info(Opcode("rsub-int")).operator == "rsub"
        assert info(Opcode("ushr-long/2addr")).family == Family.BINARY_2ADDR
        assert info(Opcode("neg-float")).family == Family.UNARY
        assert info(Opcode("int-to-long")).operator == "convert"

    def test_invoke_dispatch(self):
        """Invokes record dispatch and range form"""
        virtual = info(Opcode("invoke-virtual/range"))
        assert virtual.family == Family.INVOKE
        assert virtual.dispatch == Dispatch.VIRTUAL
        assert virtual.is_range
        assert info(Opcode("invoke-interface")).dispatch == Dispatch.VIRTUAL
        assert info(Opcode("invoke-direct")).dispatch == Dispatch.DIRECT
        assert info(Opcode("invoke-static")).dispatch == Dispatch.STATIC

    def test_branches(self):
        """if-test and if-testz share their operator names"""
        assert info(Opcode("if-lt")).family == Family.IF_TEST
        assert info(Opcode("if-ltz")).family == Family.IF_TESTZ
        assert info(Opcode("if-ltz")).operator == "lt"

    def test_units(self):
        """Instruction sizes in code units"""
        assert info(Opcode("const/4")).units == 1
        assert info(Opcode("const-wide")).units == 5
        assert info(Opcode("invoke-static")).units == 3
        assert info(Opcode("iget-object")).units == 2

    def test_every_opcode_has_info(self):
        """The enumeration and the table agree"""
        for opcode in Opcode:
            assert info(opcode).mnemonic == opcode.value


class TestReferences:
    """Method and field reference parsing"""

    def test_method_ref(self):
        """Owner, signature, return and parameter types"""
        ref = MethodRef.parse("Landroid/util/Log;->d(Ljava/lang/String;Ljava/lang/String;)I")
        assert ref.class_name == "Landroid/util/Log;"
        assert ref.signature == "d(Ljava/lang/String;Ljava/lang/String;)I"
        assert ref.return_type == "I"
        assert ref.parameter_types == ["Ljava/lang/String;", "Ljava/lang/String;"]
        assert str(ref) == "Landroid/util/Log;->d(Ljava/lang/String;Ljava/lang/String;)I"

    def test_field_ref(self):
        """Field ids hash name:Type"""
        ref = FieldRef.parse("Lcom/example/Box;->value:Ljava/lang/String;")
        assert ref.key == "value:Ljava/lang/String;"
        assert not ref.is_primitive
        assert FieldRef.parse("LA;->n:I").is_primitive

    def test_malformed(self):
        """Malformed references are model errors"""
        with pytest.raises(ModelError):
            MethodRef.parse("Lcom/example/A;.f()V")
        with pytest.raises(ModelError):
            FieldRef.parse("Lcom/example/A;->f")


class TestInstruction:
    """Addresses, branch targets and operands"""

    def test_next_address(self):
        """The successor follows the instruction's size"""
        assert Instruction(Opcode("invoke-static"), address=4).next_address == 7

    def test_branch_target_is_relative(self):
        """Offsets are relative to the branch"""
        goto = Instruction(Opcode("goto"), address=10, offset=-6)
        assert goto.branch_target == 4

    def test_missing_offset(self):
        """A branch without offset is a model error"""
        with pytest.raises(ModelError):
            Instruction(Opcode("goto"), address=0).branch_target

    def test_missing_operand(self):
        """Operands are checked when read"""
        with pytest.raises(ModelError):
            Instruction(Opcode("move"), registers=[0]).reg(1)

    def test_payload_sizes(self):
        """Payload pseudo-instructions take their table's size"""
        packed = SwitchPayload([2, 4, 6], first_key=0)
        assert Instruction(Opcode("packed-switch-payload"), payload=packed).units == 10
        assert SwitchPayload([2, 4], keys=[1, 9]).units == 10
        assert ArrayPayload(4, [1, 2, 3]).units == 10


class TestSwitchPayload:
    """Case tables"""

    def test_packed_cases(self):
        """Packed keys are consecutive from first_key"""
        assert SwitchPayload([5, 9], first_key=3).cases() == [(3, 5), (4, 9)]

    def test_sparse_cases(self):
        """Sparse keys pair with targets"""
        assert SwitchPayload([5, 9], keys=[10, 20]).cases() == [(10, 5), (20, 9)]

    def test_sparse_extra_targets(self):
        """Keys pair with the leading targets, the rest have no key"""
        payload = SwitchPayload([5, 9], keys=[10])
        assert payload.cases() == [(10, 5)]
        assert payload.unkeyed_targets == [9]
        assert payload.mismatched

    def test_sparse_extra_keys(self):
        """Keys without a target are dropped"""
        payload = SwitchPayload([5], keys=[10, 20])
        assert payload.cases() == [(10, 5)]
        assert payload.unkeyed_targets == []
        assert payload.mismatched

    def test_packed_never_mismatched(self):
        """Packed tables derive their keys"""
        payload = SwitchPayload([5, 9], first_key=0)
        assert not payload.mismatched
        assert payload.unkeyed_targets == []
