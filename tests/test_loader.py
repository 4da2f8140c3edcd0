"""
Tests for the JSON program model loader (droidhorn/dalvik/loader.py)
"""

import json

import pytest

from droidhorn.dalvik.instructions import ArrayPayload, SwitchPayload
from droidhorn.dalvik.loader import load_program, parse_class, parse_method, program_from_dict
from droidhorn.dalvik.opcodes import Opcode
from droidhorn.errors import ModelError, PayloadError


ON_CREATE = {
    "name": "onCreate",
    "descriptor": "(Landroid/os/Bundle;)V",
    "registers": 4,
    "entry": True,
    "code": [
        {"op": "const-string", "regs": ["v0"], "ref": "hello"},
        {"op": "invoke-static", "regs": ["v0", "p1"],
         "ref": "Landroid/util/Log;->d(Ljava/lang/String;Ljava/lang/String;)I"},
        {"op": "return-void"},
    ],
}

MODEL = {
    "classes": [
        {"type": "Lcom/example/Main;", "super": "Landroid/app/Activity;", "launcher": True,
         "fields": [{"name": "secret", "type": "Ljava/lang/String;"},
                    {"name": "count:I", "static": True}],
         "methods": [ON_CREATE]},
    ]
}


class TestParseMethod:
    """Method records"""

    def test_argument_registers(self):
        """p registers count back from the last register"""
        method = parse_method(ON_CREATE)
        assert method.num_args == 2
        assert method.instructions[1].registers == [0, 3]

    def test_addresses_are_running_sums(self):
        """Addresses default to the sum of preceding code units"""
        method = parse_method(ON_CREATE)
        assert [i.address for i in method.instructions] == [0, 2, 5]

    def test_explicit_address(self):
        """An explicit addr wins over the running sum"""
        method = parse_method({
            "name": "f", "descriptor": "()V", "registers": 1, "static": True,
            "code": [{"op": "nop", "addr": 10}, {"op": "return-void"}],
        })
        assert [i.address for i in method.instructions] == [10, 11]

    def test_range_invoke(self):
        """range gives the first and last register of the list"""
        method = parse_method({
            "name": "f", "descriptor": "()V", "registers": 5, "static": True,
            "code": [{"op": "invoke-static/range", "range": ["v1", "v3"],
                      "ref": "LA;->g(III)V"}],
        })
        assert method.instructions[0].registers == [1, 2, 3]

    def test_unknown_mnemonic_becomes_nop(self):
        """Unknown instructions keep their address and compile as nop"""
        method = parse_method({
            "name": "f", "descriptor": "()V", "registers": 1, "static": True,
            "code": [{"op": "frobnicate"}, {"op": "return-void"}],
        })
        assert method.instructions[0].opcode is Opcode("nop")
        assert method.instructions[1].address == 1

    def test_payloads(self):
        """Switch and array payloads are decoded"""
        method = parse_method({
            "name": "f", "descriptor": "(I)V", "registers": 2, "static": True,
            "code": [
                {"op": "packed-switch", "regs": ["p0"], "offset": 6,
                 "payload": {"first_key": 1, "targets": [3, 4]}},
                {"op": "fill-array-data", "regs": ["v0"], "offset": 8,
                 "payload": {"width": 4, "elements": [7, 8]}},
            ],
        })
        switch, fill = method.instructions
        assert isinstance(switch.payload, SwitchPayload)
        assert switch.payload.cases() == [(1, 3), (2, 4)]
        assert isinstance(fill.payload, ArrayPayload)
        assert fill.payload.elements == [7, 8]

    def test_bad_register(self):
        """Unparseable register operands are model errors"""
        with pytest.raises(ModelError):
            parse_method({
                "name": "f", "descriptor": "()V", "registers": 1, "static": True,
                "code": [{"op": "const/4", "regs": ["r0"], "literal": 1}],
            })

    def test_missing_key(self):
        """A method without registers is malformed"""
        with pytest.raises(ModelError):
            parse_method({"name": "f", "descriptor": "()V"})

    @pytest.mark.parametrize("record", [
        {"op": "goto", "addr": "start", "offset": 2},
        {"op": "const/4", "regs": ["v0"], "literal": "five"},
        {"op": "goto", "offset": "next"},
        {"op": "invoke-static/range", "range": ["v0"], "ref": "LA;->f()V"},
    ])
    def test_bad_numbers(self, record):
        """Unparseable numeric fields are model errors"""
        with pytest.raises(ModelError):
            parse_method({"name": "f", "descriptor": "()V", "registers": 1, "static": True,
                          "code": [record]})

    @pytest.mark.parametrize("payload", [
        {"first_key": "one", "targets": [3]},
        {"keys": [1], "targets": ["x"]},
        {"width": 4, "elements": 7},
        "table",
    ])
    def test_bad_payload(self, payload):
        """Malformed payloads are payload errors"""
        with pytest.raises(PayloadError):
            parse_method({"name": "f", "descriptor": "(I)V", "registers": 1, "static": True,
                          "code": [{"op": "sparse-switch", "regs": ["p0"], "offset": 3,
                                    "payload": payload}]})


class TestParseClass:
    """Class records"""

    def test_fields_in_both_forms(self):
        """Fields accept name and type, or a single name:Type"""
        cls = parse_class(MODEL["classes"][0])
        assert [(f.name, f.type, f.is_static) for f in cls.fields] == [
            ("secret", "Ljava/lang/String;", False),
            ("count", "I", True),
        ]

    def test_field_without_type(self):
        """A field needs a type"""
        with pytest.raises(ModelError):
            parse_class({"type": "LA;", "fields": [{"name": "x"}]})

    def test_defaults(self):
        """Classes extend Object and are not launchers by default"""
        cls = parse_class({"type": "LA;"})
        assert cls.super_name == "Ljava/lang/Object;"
        assert not cls.is_launcher


class TestProgramFromDict:
    """Whole models"""

    def test_load(self):
        """Classes and methods are indexed by descriptor and signature"""
        program = program_from_dict(MODEL)
        cls = program.classes["Lcom/example/Main;"]
        assert cls.is_launcher
        assert "onCreate(Landroid/os/Bundle;)V" in cls.methods

    def test_malformed_class_is_skipped(self):
        """One bad class does not stop the load"""
        data = {"classes": [{"super": "LA;"}] + MODEL["classes"]}
        program = program_from_dict(data)
        assert list(program.classes) == ["Lcom/example/Main;"]

    def test_load_file(self, tmp_path):
        """Models load from JSON files"""
        path = tmp_path / "app.json"
        path.write_text(json.dumps(MODEL))
        program = load_program(path)
        assert program.method_count() == 1

    def test_bad_payload_skips_class(self):
        """A class with a malformed payload is skipped and the rest still load"""
        broken = {"type": "Lcom/example/Broken;", "methods": [{
            "name": "f", "descriptor": "(I)V", "registers": 1, "static": True,
            "code": [{"op": "packed-switch", "regs": ["p0"], "offset": 3,
                      "payload": {"first_key": "one", "targets": [3]}}],
        }]}
        program = program_from_dict({"classes": [broken] + MODEL["classes"]})
        assert list(program.classes) == ["Lcom/example/Main;"]

    def test_bad_address_skips_class(self):
        """A class with a malformed address is skipped"""
        broken = {"type": "Lcom/example/Broken;", "methods": [{
            "name": "f", "descriptor": "()V", "registers": 1, "static": True,
            "code": [{"op": "return-void", "addr": "0x?"}],
        }]}
        program = program_from_dict({"classes": [broken]})
        assert program.classes == {}
