"""
In-memory model of a Dalvik application.

This module defines:
- DalvikField, DalvikMethod, DalvikClass: the loaded application classes
- Implementation: one dispatch target with the allocation ids of its receivers
- Program: the class table plus the queries the compiler makes on it
  (dispatch, static resolution, field layouts, source/sink lookup)

Dispatch results are memoized. Compilation runs on several threads, so
every cache is guarded by a lock; cache writes are idempotent.
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set, Tuple

from droidhorn.core.descriptors import is_array, is_primitive, register_width, split_descriptors
from droidhorn.core.state import java_hash
from droidhorn.dalvik.instructions import Instruction
from droidhorn.heap.layouts import library_layout
from droidhorn.specs.sources_sinks import SourceSinkSpec


logger = logging.getLogger(__name__)

CLINIT = "<clinit>()V"

# Lifecycle callbacks used as entry points when the model flags none
LIFECYCLE_CALLBACKS = (
    "onCreate", "onStart", "onResume", "onReceive", "onStartCommand",
    "onBind", "run", "onClick", "handleMessage",
)


# =============================================================================
# Classes, methods, fields
# =============================================================================

@dataclass
class DalvikField:
    """A declared field"""
    name: str
    type: str
    is_static: bool = False

    @property
    def key(self) -> str:
        return f"{self.name}:{self.type}"

    @property
    def field_id(self) -> int:
        return java_hash(self.key)

    @property
    def is_primitive(self) -> bool:
        return is_primitive(self.type)


@dataclass
class DalvikMethod:
    """
    A method body.

    num_registers counts every register of the frame; the last num_args of
    them hold the incoming arguments (the receiver first for instance
    methods, wide values taking two registers).
    """
    name: str
    descriptor: str
    num_registers: int
    num_args: Optional[int] = None
    is_static: bool = False
    is_entry: bool = False
    instructions: List[Instruction] = field(default_factory=list)

    def __post_init__(self):
        if self.num_args is None:
            self.num_args = self.count_argument_registers()
        self._by_address = None

    def count_argument_registers(self) -> int:
        inner = self.descriptor[1:self.descriptor.index(")")]
        count = sum(register_width(t) for t in split_descriptors(inner))
        return count if self.is_static else count + 1

    @property
    def signature(self) -> str:
        return self.name + self.descriptor

    @property
    def method_id(self) -> int:
        return java_hash(self.signature)

    @property
    def return_type(self) -> str:
        return self.descriptor[self.descriptor.index(")") + 1:]

    @property
    def returns_value(self) -> bool:
        return self.return_type != "V"

    def instruction_at(self, address: int) -> Optional[Instruction]:
        if self._by_address is None:
            self._by_address = {insn.address: insn for insn in self.instructions}
        return self._by_address.get(address)

    def fallthrough_predecessors(self, address: int) -> List[Instruction]:
        """Instructions whose successor address is address"""
        return [insn for insn in self.instructions if insn.next_address == address]


@dataclass
class DalvikClass:
    """An application class"""
    name: str
    super_name: Optional[str] = "Ljava/lang/Object;"
    interfaces: List[str] = field(default_factory=list)
    fields: List[DalvikField] = field(default_factory=list)
    methods: Dict[str, DalvikMethod] = field(default_factory=dict)
    is_launcher: bool = False

    @property
    def class_id(self) -> int:
        return java_hash(self.name)

    def add_method(self, method: DalvikMethod) -> DalvikMethod:
        self.methods[method.signature] = method
        return method

    def instance_fields(self) -> List[DalvikField]:
        return [f for f in self.fields if not f.is_static]

    def declares_static(self, field_key: str) -> bool:
        return any(f.is_static and f.key == field_key for f in self.fields)


@dataclass
class Implementation:
    """A resolved dispatch target and the allocation ids it applies to"""
    dalvik_class: DalvikClass
    method: DalvikMethod
    instances: List[int] = field(default_factory=list)


# =============================================================================
# Program
# =============================================================================

class Program:
    """
    The application under analysis.

    Allocation ids of new-instance sites are registered per class by the
    analysis pre-pass (register_instance); virtual dispatch only binds
    classes that have at least one registered instance.
    """

    def __init__(self, classes: Optional[List[DalvikClass]] = None,
                 spec: Optional[SourceSinkSpec] = None):
        self.classes: Dict[str, DalvikClass] = OrderedDict()
        self.spec = spec if spec is not None else SourceSinkSpec()
        self._instances: Dict[str, Set[int]] = {}
        self._lock = threading.RLock()
        self._virtual_cache: Dict[Tuple[str, str], Optional[List[Implementation]]] = {}
        self._static_cache: Dict[Tuple[str, str], Optional[List[Tuple[DalvikClass, DalvikMethod]]]] = {}
        self._layout_cache: Dict[str, Optional["OrderedDict[int, bool]"]] = {}
        for cls in classes or []:
            self.add_class(cls)

    def add_class(self, cls: DalvikClass) -> DalvikClass:
        with self._lock:
            self.classes[cls.name] = cls
            self._virtual_cache.clear()
            self._static_cache.clear()
            self._layout_cache.clear()
        return cls

    def __iter__(self) -> Iterator[DalvikClass]:
        return iter(list(self.classes.values()))

    def methods(self) -> Iterator[Tuple[DalvikClass, DalvikMethod]]:
        for cls in self:
            for method in cls.methods.values():
                yield cls, method

    def method_count(self) -> int:
        return sum(len(c.methods) for c in self.classes.values())

    # -------------------------------------------------------------------------
    # Hierarchy
    # -------------------------------------------------------------------------

    def superclasses(self, class_name: str) -> List[str]:
        """class_name followed by its superclass chain, as far as it is known"""
        chain = []
        seen = set()
        current: Optional[str] = class_name
        while current is not None and current not in seen:
            chain.append(current)
            seen.add(current)
            cls = self.classes.get(current)
            current = cls.super_name if cls is not None else None
        return chain

    def supertypes(self, class_name: str) -> List[str]:
        """Superclass chain plus every implemented interface"""
        result: List[str] = []
        pending = [class_name]
        while pending:
            name = pending.pop(0)
            if name in result:
                continue
            result.append(name)
            cls = self.classes.get(name)
            if cls is not None:
                if cls.super_name:
                    pending.append(cls.super_name)
                pending.extend(cls.interfaces)
        return result

    def is_subtype(self, class_name: str, ancestor: str) -> bool:
        return ancestor in self.supertypes(class_name)

    def find_method(self, class_name: str, signature: str) -> Optional[Tuple[DalvikClass, DalvikMethod]]:
        """Nearest definition of signature on the superclass chain"""
        for name in self.superclasses(class_name):
            cls = self.classes.get(name)
            if cls is not None and signature in cls.methods:
                return cls, cls.methods[signature]
        return None

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    @staticmethod
    def allocation_id(class_id: int, method_id: int, pc: int) -> int:
        return java_hash(f"{class_id}{method_id}{pc}")

    @staticmethod
    def framework_instance(class_name: str) -> int:
        """Instance id of a component the framework creates (activities, services)"""
        return java_hash(class_name + "<framework>")

    def register_instance(self, class_name: str, instance: int) -> None:
        with self._lock:
            self._instances.setdefault(class_name, set()).add(instance)
            self._virtual_cache.clear()

    def instances_of(self, class_name: str) -> List[int]:
        with self._lock:
            return sorted(self._instances.get(class_name, ()))

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def resolve_virtual(self, class_name: str, signature: str) -> Optional[List[Implementation]]:
        """
        Implementations a virtual call on class_name may reach.

        Every program class that is class_name or one of its subtypes and
        has registered instances contributes the nearest definition of
        signature. Returns None when nothing in the program applies.
        """
        key = (class_name, signature)
        with self._lock:
            if key in self._virtual_cache:
                return self._virtual_cache[key]
            by_method: Dict[Tuple[str, str], Implementation] = OrderedDict()
            for cls in self.classes.values():
                instances = self._instances.get(cls.name)
                if not instances or not self.is_subtype(cls.name, class_name):
                    continue
                found = self.find_method(cls.name, signature)
                if found is None:
                    continue
                owner, method = found
                impl = by_method.setdefault(
                    (owner.name, method.signature), Implementation(owner, method)
                )
                impl.instances.extend(sorted(instances))
            result = list(by_method.values()) or None
            if result is None:
                logger.debug("No implementation of %s->%s with instances", class_name, signature)
            self._virtual_cache[key] = result
            return result

    def resolve_static(self, class_name: str, signature: str) -> Optional[List[Tuple[DalvikClass, DalvikMethod]]]:
        key = (class_name, signature)
        with self._lock:
            if key not in self._static_cache:
                found = self.find_method(class_name, signature)
                self._static_cache[key] = [found] if found is not None else None
            return self._static_cache[key]

    # -------------------------------------------------------------------------
    # Fields
    # -------------------------------------------------------------------------

    def field_layout(self, type_name: str) -> Optional["OrderedDict[int, bool]"]:
        """
        Instance-field layout of type_name: field id to isPrimitive, ordered
        by id. Arrays have an empty layout; unknown types give None.
        """
        with self._lock:
            if type_name in self._layout_cache:
                return self._layout_cache[type_name]
            layout = self._compute_layout(type_name)
            self._layout_cache[type_name] = layout
            return layout

    def _compute_layout(self, type_name: str) -> Optional["OrderedDict[int, bool]"]:
        if is_array(type_name):
            return OrderedDict()
        if type_name not in self.classes:
            return library_layout(type_name)
        fields: Dict[int, bool] = {}
        for name in self.superclasses(type_name):
            cls = self.classes.get(name)
            if cls is None:
                inherited = library_layout(name)
                if inherited:
                    fields.update(inherited)
                break
            for f in cls.instance_fields():
                fields.setdefault(f.field_id, f.is_primitive)
        return make_layout_from_ids(fields)

    def static_field_owner(self, class_name: str, field_key: str) -> str:
        """Class on the superclass chain declaring the static field, else class_name"""
        for name in self.superclasses(class_name):
            cls = self.classes.get(name)
            if cls is not None and cls.declares_static(field_key):
                return name
        return class_name

    def static_initializer(self, class_name: str) -> Optional[Tuple[DalvikClass, DalvikMethod]]:
        cls = self.classes.get(class_name)
        if cls is None or CLINIT not in cls.methods:
            return None
        return cls, cls.methods[CLINIT]

    def has_static_initializer(self, class_name: str) -> bool:
        return self.static_initializer(class_name) is not None

    # -------------------------------------------------------------------------
    # Sources and sinks
    # -------------------------------------------------------------------------

    def is_source(self, class_name: str, signature: str) -> bool:
        return any(self.spec.is_source(t, signature) for t in self.supertypes(class_name))

    def is_sink(self, class_name: str, signature: str) -> bool:
        return any(self.spec.is_sink(t, signature) for t in self.supertypes(class_name))

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def entry_methods(self) -> List[Tuple[DalvikClass, DalvikMethod]]:
        """Methods flagged as entry points, else every lifecycle callback"""
        flagged = [(c, m) for c, m in self.methods() if m.is_entry]
        if flagged:
            return flagged
        return [(c, m) for c, m in self.methods()
                if m.name in LIFECYCLE_CALLBACKS and not m.is_static]

    def launcher_classes(self) -> List[DalvikClass]:
        return [c for c in self if c.is_launcher]


def make_layout_from_ids(fields: Dict[int, bool]) -> "OrderedDict[int, bool]":
    return OrderedDict(sorted(fields.items()))
