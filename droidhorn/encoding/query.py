"""
Leak queries and their results.

A LeakQuery asks whether a tainted value can reach an argument register of
a sink call: R(pc) with h(reg) = true. Queries for the same call site and
sink merge by disjunction so the report holds one entry per call.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Tuple

import z3


class QueryStatus(Enum):
    """Outcome of one fixed-point query"""
    LEAK = "leak"          # query reachable
    SAFE = "safe"          # query unreachable
    UNKNOWN = "unknown"
    TIMEOUT = "timeout"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


@dataclass
class LeakQuery:
    """Reachability question for one sink call"""
    expr: z3.BoolRef
    class_name: str
    method_name: str
    pc: int
    sink: str
    registers: List[int] = field(default_factory=list)

    @property
    def key(self) -> Tuple[str, str, int, str]:
        return (self.class_name, self.method_name, self.pc, self.sink)

    @property
    def description(self) -> str:
        regs = ", ".join(str(r) for r in self.registers)
        noun, verb = ("register", "leaks") if len(self.registers) == 1 else ("registers", "leak")
        return (f"Test if {noun} {regs} {verb} @line {self.pc} in method "
                f"{self.method_name} of the class {self.class_name} ---> sink {self.sink}")

    def merge(self, other: "LeakQuery") -> "LeakQuery":
        self.expr = z3.Or(self.expr, other.expr)
        self.registers.extend(r for r in other.registers if r not in self.registers)
        return self


@dataclass
class QueryResult:
    """A query and what the solver said about it"""
    query: LeakQuery
    status: QueryStatus
    elapsed_ms: float = 0.0
    reason: str = ""

    @property
    def is_leak(self) -> bool:
        return self.status == QueryStatus.LEAK

    def to_dict(self) -> dict:
        return {
            "class": self.query.class_name,
            "method": self.query.method_name,
            "pc": self.query.pc,
            "sink": self.query.sink,
            "registers": list(self.query.registers),
            "description": self.query.description,
            "status": self.status.value,
            "elapsed_ms": round(self.elapsed_ms, 2),
            "reason": self.reason,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)
