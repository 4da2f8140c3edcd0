"""
JSON program model loader.

Input layout:

    {"classes": [
        {"type": "Lcom/example/Main;", "super": "Landroid/app/Activity;",
         "interfaces": [], "launcher": true,
         "fields": [{"name": "secret", "type": "Ljava/lang/String;", "static": false}],
         "methods": [
            {"name": "onCreate", "descriptor": "(Landroid/os/Bundle;)V",
             "registers": 4, "static": false, "entry": true,
             "code": [
                {"op": "const-string", "regs": ["v0"], "ref": "hello"},
                {"op": "invoke-static", "regs": ["v0", "v0"],
                 "ref": "Landroid/util/Log;->d(Ljava/lang/String;Ljava/lang/String;)I"},
                {"op": "return-void"}]}]}]}

Fields give "name" and "type", or a single "name:Type". Registers are
integers or smali names (v3, p0). Range invokes may give
"range": [first, last] instead of "regs". Instruction addresses default to
the running sum of code units. Malformed classes are skipped and unknown
mnemonics become nops, both with a warning.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from droidhorn.dalvik.instructions import Instruction, SwitchPayload, ArrayPayload
from droidhorn.dalvik.opcodes import Opcode, from_mnemonic
from droidhorn.dalvik.program import DalvikClass, DalvikField, DalvikMethod, Program
from droidhorn.errors import ModelError, PayloadError, UnsupportedInstructionError
from droidhorn.specs.sources_sinks import SourceSinkSpec


logger = logging.getLogger(__name__)


def _parse_register(token: Union[int, str], method: DalvikMethod) -> int:
    if isinstance(token, int):
        return token
    text = str(token).strip().lower()
    try:
        if text.startswith("v"):
            return int(text[1:])
        if text.startswith("p"):
            return method.num_registers - method.num_args + int(text[1:])
        return int(text)
    except ValueError:
        raise ModelError(f"Bad register operand '{token}'")


def _int(value: Any, what: str, error=ModelError) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise error(f"Bad {what} '{value}'")


def _ints(values: Any, what: str) -> List[int]:
    if not isinstance(values, list):
        raise PayloadError(f"Payload {what} must be a list, got {values!r}")
    return [_int(v, f"payload {what[:-1]}", PayloadError) for v in values]


def _parse_payload(data: Optional[Dict[str, Any]]):
    if data is None:
        return None
    if not isinstance(data, dict):
        raise PayloadError(f"Payload must be an object, got {data!r}")
    if "elements" in data:
        return ArrayPayload(_int(data.get("width", 4), "payload width", PayloadError),
                            _ints(data["elements"], "elements"))
    targets = _ints(data.get("targets", []), "targets")
    if "first_key" in data:
        return SwitchPayload(targets, first_key=_int(data["first_key"], "payload first_key",
                                                     PayloadError))
    return SwitchPayload(targets, keys=_ints(data.get("keys", []), "keys"))


def parse_instruction(data: Dict[str, Any], method: DalvikMethod, address: int) -> Instruction:
    """Decode one instruction record; raises UnsupportedInstructionError for unknown ops"""
    mnemonic = data.get("op")
    if not mnemonic:
        raise ModelError(f"Instruction at {address} has no 'op'")
    opcode = from_mnemonic(mnemonic)
    if opcode is None:
        raise UnsupportedInstructionError(mnemonic, f"{method.signature}@{address}")

    if "range" in data:
        bounds = data["range"]
        if not isinstance(bounds, list) or len(bounds) != 2:
            raise ModelError(f"Register range at {address} must be [first, last], "
                             f"got {bounds!r}")
        first, last = (_parse_register(r, method) for r in bounds)
        registers = list(range(first, last + 1))
    else:
        registers = [_parse_register(r, method) for r in data.get("regs", [])]

    literal, offset = data.get("literal"), data.get("offset")
    return Instruction(
        opcode=opcode,
        address=_int(data.get("addr", address), "address"),
        registers=registers,
        literal=_int(literal, "literal") if literal is not None else None,
        reference=data.get("ref"),
        offset=_int(offset, "branch offset") if offset is not None else None,
        payload=_parse_payload(data.get("payload")),
    )


def parse_method(data: Dict[str, Any]) -> DalvikMethod:
    try:
        method = DalvikMethod(
            name=data["name"],
            descriptor=data["descriptor"],
            num_registers=int(data["registers"]),
            num_args=data.get("args"),
            is_static=bool(data.get("static", False)),
            is_entry=bool(data.get("entry", False)),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ModelError(f"Malformed method record: {e}")

    address = 0
    for record in data.get("code", []):
        try:
            insn = parse_instruction(record, method, address)
        except UnsupportedInstructionError as e:
            logger.warning("%s, compiled as nop", e)
            insn = Instruction(Opcode("nop"), address=_int(record.get("addr", address), "address"))
        method.instructions.append(insn)
        address = insn.next_address
    return method


def parse_class(data: Dict[str, Any]) -> DalvikClass:
    try:
        cls = DalvikClass(
            name=data["type"],
            super_name=data.get("super", "Ljava/lang/Object;"),
            interfaces=list(data.get("interfaces", [])),
            is_launcher=bool(data.get("launcher", False)),
        )
        for f in data.get("fields", []):
            name, typ = f["name"], f.get("type")
            if typ is None:
                name, typ = name.split(":", 1)
            cls.fields.append(DalvikField(name, typ, bool(f.get("static", False))))
    except KeyError as e:
        raise ModelError(f"Malformed class record, missing {e}")
    except ValueError:
        raise ModelError(f"Field of {data.get('type')} has no type")
    for m in data.get("methods", []):
        cls.add_method(parse_method(m))
    return cls


def program_from_dict(data: Dict[str, Any], spec: Optional[SourceSinkSpec] = None) -> Program:
    program = Program(spec=spec)
    for record in data.get("classes", []):
        try:
            program.add_class(parse_class(record))
        except ModelError as e:
            logger.warning("Skipping class %s: %s", record.get("type", "?"), e)
    logger.info("Loaded %d classes, %d methods", len(program.classes), program.method_count())
    return program


def load_program(path: Union[str, Path], spec: Optional[SourceSinkSpec] = None) -> Program:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    return program_from_dict(data, spec)
