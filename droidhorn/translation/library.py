"""
Library-call summaries.

Framework methods that are not part of the analysed program but move taint
through the heap in ways the generic summary would miss get a hand-written
summary here. Summaries are registered with the @summary decorator, keyed by
class and signature; a class of None matches any receiver class, and a
prefix entry matches every signature starting with the prefix.

Argument registers follow the invoke's register list: C is the receiver
(or first argument of a static call), D, E, F the ones after it.
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple

import z3

from droidhorn.core.state import RegisterState, java_hash
from droidhorn.dalvik.instructions import Instruction, MethodRef
from droidhorn.dalvik.program import Program
from droidhorn.translation.builder import ClauseBuilder
from droidhorn.translation.context import TranslationContext
from droidhorn.translation.lifting import EscapeEngine


logger = logging.getLogger(__name__)

INTENT = "Landroid/content/Intent;"
PARCEL = "Landroid/os/Parcel;"
RUNTIME_EXCEPTION = "Ljava/lang/RuntimeException;"
SMS_MANAGER = "Landroid/telephony/SmsManager;"
POINT_F = "Landroid/graphics/PointF;"
MAP = "Ljava/util/Map;"
HASH_MAP = "Ljava/util/HashMap;"
STRING = "Ljava/lang/String;"
FORMATTER = "Ljava/util/Formatter;"
STRING_BUFFER = "Ljava/lang/StringBuffer;"
SYSTEM = "Ljava/lang/System;"
BUTTON = "Landroid/widget/Button;"
OBJECT = "Ljava/lang/Object;"
CHAR_ARRAY = "[C"

Summary = Callable[..., None]

# (class or None, signature) -> summary
_SUMMARIES: Dict[Tuple[Optional[str], str], Tuple[Summary, int]] = {}
# (class or None, signature prefix, summary, arity), checked in order
_PREFIX_SUMMARIES: List[Tuple[Optional[str], str, Summary, int]] = []


def summary(class_name: Optional[str], *signatures: str, arity: int = 0, prefix: bool = False):
    """Register the decorated method as the summary of class_name->signatures"""
    def register(fn: Summary) -> Summary:
        for signature in signatures:
            if prefix:
                _PREFIX_SUMMARIES.append((class_name, signature, fn, arity))
            else:
                _SUMMARIES[(class_name, signature)] = (fn, arity)
        return fn
    return register


def lookup(class_name: str, signature: str) -> Optional[Tuple[Summary, int]]:
    """The summary for class_name->signature, or None"""
    found = _SUMMARIES.get((class_name, signature)) or _SUMMARIES.get((None, signature))
    if found is not None:
        return found
    for owner, start, fn, arity in _PREFIX_SUMMARIES:
        if owner in (None, class_name) and signature.startswith(start):
            return fn, arity
    return None


class LibrarySummaries:
    """Applies the registered summaries to invoke instructions"""

    def __init__(self, ctx: TranslationContext, escape: EscapeEngine):
        self.ctx = ctx
        self.engine = ctx.engine
        self.vars = ctx.vars
        self.program: Program = ctx.program
        self.escape = escape

    def apply(self, b: ClauseBuilder, insn: Instruction, ref: MethodRef,
              arguments: List[int]) -> bool:
        """Compile insn with its library summary; False when there is none"""
        class_name = MAP if ref.class_name == HASH_MAP else ref.class_name
        found = lookup(class_name, ref.signature)
        if found is None:
            return False
        fn, arity = found
        if len(arguments) < arity:
            logger.debug("%s: %d argument registers, summary needs %d", ref, len(arguments), arity)
            return False
        fn(self, b, insn, ref, arguments)
        return True

    # =========================================================================
    # Helpers
    # =========================================================================

    def _site(self, b: ClauseBuilder) -> int:
        return Program.allocation_id(b.frame.class_id, b.frame.method_id, b.pc)

    def _owner(self, b: ClauseBuilder, ref: MethodRef) -> int:
        """The component a framework call acts on"""
        if ref.class_name in self.program.classes:
            return java_hash(ref.class_name)
        return b.frame.class_id

    def _store(self, b: ClauseBuilder, type_id, instance, field, register: int):
        src = b.reg(register)
        b.emit_fact(self.engine.h(type_id, instance, field, src.value, src.high, src.blocked))

    def _result(self, b: ClauseBuilder, state: RegisterState) -> ClauseBuilder:
        return b.fork().set(b.frame.return_slot, state)

    def _heap_read(self, b: ClauseBuilder, insn: Instruction, type_id, instance, field) -> None:
        """result := H(type_id, instance, field, ...)"""
        v = self.vars.scalar
        read = self._result(b, RegisterState(v("f"), v("lf"), z3.BoolVal(False), v("bf")))
        read.emit(insn.next_address,
                  self.engine.h(type_id, instance, field, v("f"), v("lf"), v("bf")))

    def _fresh_global(self, b: ClauseBuilder, insn: Instruction, type_name: str) -> None:
        v = self.vars.scalar
        site = self._site(b)
        b.emit_fact(self.engine.h(java_hash(type_name), site, v("f"), v("vfp"), False, v("bf")))
        f, t = z3.BoolVal(False), z3.BoolVal(True)
        self._result(b, RegisterState(self.vars.literal(site), f, f, t)).emit(insn.next_address)

    # =========================================================================
    # Parcels, exceptions, collections
    # =========================================================================

    @summary(PARCEL, "writeValue(Ljava/lang/Object;)V", arity=2)
    def _parcel_write(self, b, insn, ref, args):
        self._store(b, java_hash(PARCEL), b.value(args[0]), 0, args[1])
        self.escape.continue_with_escape(b, insn.next_address, [args[1]])

    @summary(PARCEL, "marshall()[B", arity=1)
    def _parcel_marshall(self, b, insn, ref, args):
        self._result(b, b.reg(args[0])).emit(insn.next_address)

    @summary(PARCEL, "unmarshall([BII)V", arity=2)
    def _parcel_unmarshall(self, b, insn, ref, args):
        b.fork().set(args[0], b.reg(args[1])).emit(insn.next_address)

    @summary(PARCEL, "readValue(Ljava/lang/ClassLoader;)Ljava/lang/Object;", arity=1)
    def _parcel_read(self, b, insn, ref, args):
        self._heap_read(b, insn, java_hash(PARCEL), b.value(args[0]), 0)

    @summary(RUNTIME_EXCEPTION, "<init>(Ljava/lang/String;)V", arity=2)
    def _exception_init(self, b, insn, ref, args):
        self._store(b, java_hash(RUNTIME_EXCEPTION), b.value(args[0]), java_hash("message"), args[1])
        self.escape.continue_with_escape(b, insn.next_address, [args[1]])

    @summary(RUNTIME_EXCEPTION, "getMessage()Ljava/lang/String;", arity=1)
    def _exception_message(self, b, insn, ref, args):
        self._heap_read(b, insn, java_hash(RUNTIME_EXCEPTION), b.value(args[0]),
                        java_hash("message"))

    @summary(SMS_MANAGER, "getDefault()Landroid/telephony/SmsManager;")
    def _sms_manager(self, b, insn, ref, args):
        self._fresh_global(b, insn, SMS_MANAGER)

    @summary(None, "getSystemService(Ljava/lang/String;)Ljava/lang/Object;")
    def _system_service(self, b, insn, ref, args):
        self._fresh_global(b, insn, OBJECT)

    @summary(POINT_F, "<init>(FF)V", arity=3)
    def _point_init(self, b, insn, ref, args):
        type_id, point = java_hash(POINT_F), b.value(args[0])
        for field, register in (("x:F", args[1]), ("y:F", args[2])):
            src = b.reg(register)
            b.emit_fact(self.engine.h(type_id, point, java_hash(field), src.value, src.high, False))
        b.emit(insn.next_address)

    @summary(MAP, "put(Ljava/lang/Object;Ljava/lang/Object;)Ljava/lang/Object;", arity=3)
    def _map_put(self, b, insn, ref, args):
        self._store(b, java_hash(MAP), b.value(args[0]), b.value(args[1]), args[2])
        self.escape.continue_with_escape(b, insn.next_address, [args[2]])

    @summary(MAP, "get(Ljava/lang/Object;)Ljava/lang/Object;", arity=2)
    def _map_get(self, b, insn, ref, args):
        self._heap_read(b, insn, java_hash(MAP), b.value(args[0]), b.value(args[1]))

    # =========================================================================
    # Strings and buffers
    # =========================================================================

    @summary(STRING, "getChars(II[CI)V", arity=4)
    def _get_chars(self, b, insn, ref, args):
        v = self.vars.scalar
        type_id, dest = java_hash(CHAR_ARRAY), b.value(args[3])
        b.emit_fact(self.engine.h(type_id, dest, 0, v("f"), b.high(args[0]), False),
                    self.engine.h(type_id, dest, 0, v("val"), v("lf"), v("bf")))
        b.emit(insn.next_address)

    @summary(FORMATTER, "<init>(Ljava/lang/Appendable;)V", arity=2)
    def _formatter_init(self, b, insn, ref, args):
        b.emit_fact(self.engine.h(java_hash(STRING_BUFFER), b.value(args[1]), 0,
                                  b.value(args[0]), False, True))
        self.escape.continue_with_escape(b, insn.next_address, [args[0]])

    @summary(FORMATTER, "format(Ljava/lang/String;[Ljava/lang/Object;)Ljava/util/Formatter;", arity=3)
    def _formatter_format(self, b, insn, ref, args):
        v = self.vars.scalar
        type_id, formatter = java_hash(STRING_BUFFER), b.value(args[0])
        b.emit_fact(
            self.engine.h(type_id, v("f"), 0, formatter, z3.Or(b.high(args[1]), b.high(args[2])), True),
            self.engine.h(type_id, v("f"), 0, formatter, False, True),
        )
        self._result(b, b.reg(args[0])).emit(insn.next_address)

    @summary(STRING_BUFFER, "toString()Ljava/lang/String;", arity=1)
    def _buffer_to_string(self, b, insn, ref, args):
        self._heap_read(b, insn, java_hash(STRING_BUFFER), b.value(args[0]), 0)

    @summary(SYSTEM, "arraycopy(Ljava/lang/Object;ILjava/lang/Object;II)V", arity=3)
    def _arraycopy(self, b, insn, ref, args):
        v = self.vars.scalar
        index = v("fld") if self.ctx.options.arrays else 0
        b.emit_fact(
            self.engine.h(v("cn"), b.value(args[2]), index, v("val"), v("lf"), v("bf")),
            self.engine.h(v("cn"), b.value(args[0]), index, v("val"), v("lf"), v("bf")),
        )
        b.emit(insn.next_address)

    # =========================================================================
    # Widgets
    # =========================================================================

    @summary(BUTTON, "getHint()Ljava/lang/CharSequence;", arity=1)
    def _get_hint(self, b, insn, ref, args):
        self._heap_read(b, insn, java_hash(BUTTON), b.value(args[0]), java_hash("hint"))
        f, t = z3.BoolVal(False), z3.BoolVal(True)
        self._result(b, RegisterState(self.vars.literal(0), f, f, t)).emit(insn.next_address)

    @summary(BUTTON, "setHint(Ljava/lang/CharSequence;)V", arity=2)
    def _set_hint(self, b, insn, ref, args):
        self._store(b, java_hash(BUTTON), b.value(args[0]), java_hash("hint"), args[1])
        self.escape.continue_with_escape(b, insn.next_address, [args[1]])

    # =========================================================================
    # Intents and inter-component communication
    # =========================================================================

    @summary(INTENT, "setComponent(Landroid/content/ComponentName;)Landroid/content/Intent;", arity=2)
    def _set_component(self, b, insn, ref, args):
        v = self.vars.scalar
        intent = b.value(args[0])
        b.emit_fact(self.engine.hi(b.value(args[1]), intent, v("val"), v("lf"), v("bf")),
                    self.engine.hi(v("cn"), intent, v("val"), v("lf"), v("bf")))
        self._result(b, b.reg(args[0])).emit(insn.next_address)

    @summary(INTENT, "<init>()V", "<init>(Ljava/lang/String;)V",
             "<init>(Landroid/content/Context;Ljava/lang/Class;)V", arity=1)
    def _intent_init(self, b, insn, ref, args):
        site = self._site(b)
        if ref.signature.startswith("<init>(Landroid/content/Context;") and len(args) > 2:
            target = b.value(args[2])
        else:
            target = self.vars.scalar("f")
        b.emit_fact(self.engine.hi(target, site, 0, False, False))
        layout = self.program.field_layout(INTENT)
        for field_id, is_prim in (layout or {}).items():
            b.emit_fact(self.engine.h(java_hash(INTENT), site, field_id, 0, False, is_prim))
        f, t = z3.BoolVal(False), z3.BoolVal(True)
        b.fork().set(args[0], RegisterState(self.vars.literal(site), f, f, t)).emit(insn.next_address)

    @summary(INTENT, "putExtra", arity=3, prefix=True)
    def _put_extra(self, b, insn, ref, args):
        v = self.vars.scalar
        intent, extra = b.reg(args[0]), b.reg(args[2])
        b.emit_fact(self.engine.hi(v("cn"), intent.value, extra.value, extra.high, extra.blocked),
                    self.engine.hi(v("cn"), intent.value, v("val"), v("lf"), v("bf")))
        tainted = intent.with_(high=z3.Or(intent.high, extra.high))
        after = b.fork().set(args[0], tainted).set(b.frame.return_slot, tainted)
        self.escape.continue_with_escape(after, insn.next_address, [args[2]])

    @summary(INTENT, "getAction()Ljava/lang/String;")
    def _get_action(self, b, insn, ref, args):
        v = self.vars.scalar
        self._result(b, RegisterState(v("val"), z3.BoolVal(False), z3.BoolVal(False), v("bf"))) \
            .emit(insn.next_address)

    @summary(INTENT, "get", arity=1, prefix=True)
    def _intent_get(self, b, insn, ref, args):
        v = self.vars.scalar
        f = z3.BoolVal(False)
        if self.program.is_source(ref.class_name, ref.signature):
            self._result(b, RegisterState(v("val"), z3.BoolVal(True), f, v("bf"))) \
                .emit(insn.next_address)
            return
        read = self._result(b, RegisterState(v("val"), v("lf"), f, v("bf")))
        read.emit(insn.next_address,
                  self.engine.hi(v("cn"), b.value(args[0]), v("val"), v("lf"), v("bf")))

    @summary(None, "startActivity(Landroid/content/Intent;)V", arity=2)
    @summary(None, "startActivityForResult", arity=2, prefix=True)
    def _start_activity(self, b, insn, ref, args):
        v = self.vars.scalar
        owner = self._owner(b, ref)
        intent_in = java_hash(f"{args[1]}{owner}")
        sent = self.engine.hi(v("cn"), b.value(args[1]), v("val"), v("lf"), v("bf"))
        b.emit_fact(self.engine.i(v("cn"), owner, v("val"), v("lf"), v("bf")), sent)
        b.emit_fact(self.engine.hi(v("cn"), intent_in, v("val"), v("lf"), v("bf")), sent)
        b.emit_fact(self.engine.h(v("cn"), v("cn"), java_hash("parent"), owner, False, True), sent)
        b.emit_fact(self.engine.h(v("cn"), v("cn"), java_hash("intent"), intent_in, False, True), sent)
        b.emit(insn.next_address)

    @summary(None, "setResult(ILandroid/content/Intent;)V", arity=3)
    def _set_result(self, b, insn, ref, args):
        v = self.vars.scalar
        owner = self._owner(b, ref)
        intent = b.reg(args[2])
        b.emit_fact(
            self.engine.h(owner, owner, java_hash("result"), intent.value, intent.high, intent.blocked),
            self.engine.hi(v("cn"), intent.value, v("val"), v("lf"), v("bf")),
        )
        self.escape.continue_with_escape(b, insn.next_address, [args[2]])

    @summary(None, "getIntent()Landroid/content/Intent;")
    def _get_intent(self, b, insn, ref, args):
        owner = self._owner(b, ref)
        self._heap_read(b, insn, owner, owner, java_hash("intent"))
