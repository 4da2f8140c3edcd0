"""
Leak report.

The result of one analysis run: every decided query, the leaks among them,
compilation errors and warnings, engine statistics and timing. Reports are
keyed by (class, method, pc, sink), one entry per sink call.
"""

import json
from dataclasses import dataclass, field
from typing import Dict, List

from droidhorn.encoding.query import QueryResult, QueryStatus


@dataclass
class Leak:
    """A sink call a tainted value may reach"""
    class_name: str
    method_name: str
    pc: int
    sink: str
    description: str
    status: QueryStatus = QueryStatus.LEAK
    registers: List[int] = field(default_factory=list)
    elapsed_ms: float = 0.0

    @classmethod
    def from_result(cls, result: QueryResult) -> "Leak":
        query = result.query
        return cls(
            class_name=query.class_name,
            method_name=query.method_name,
            pc=query.pc,
            sink=query.sink,
            description=query.description,
            status=result.status,
            registers=list(query.registers),
            elapsed_ms=result.elapsed_ms,
        )

    @property
    def location(self) -> str:
        return f"{self.class_name}->{self.method_name}@{self.pc}"

    def to_dict(self) -> dict:
        return {
            "class": self.class_name,
            "method": self.method_name,
            "pc": self.pc,
            "sink": self.sink,
            "registers": self.registers,
            "description": self.description,
            "status": self.status.value,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }


@dataclass
class LeakReport:
    """Result of analysing one program"""
    program: str
    results: List[QueryResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    classes_analyzed: int = 0
    methods_compiled: int = 0
    instructions_compiled: int = 0
    statistics: Dict[str, int] = field(default_factory=dict)
    compile_time_ms: float = 0.0
    solve_time_ms: float = 0.0

    @property
    def leaks(self) -> List[Leak]:
        return [Leak.from_result(r) for r in self.results if r.is_leak]

    @property
    def has_leaks(self) -> bool:
        return any(r.is_leak for r in self.results)

    def count(self, status: QueryStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def undecided(self) -> List[QueryResult]:
        """Queries the solver gave up on"""
        return [r for r in self.results
                if r.status in (QueryStatus.UNKNOWN, QueryStatus.TIMEOUT, QueryStatus.ERROR)]

    @property
    def total_time_ms(self) -> float:
        return self.compile_time_ms + self.solve_time_ms

    def to_dict(self) -> dict:
        return {
            "program": self.program,
            "leaks": [leak.to_dict() for leak in self.leaks],
            "queries": [r.to_dict() for r in self.results],
            "errors": self.errors,
            "warnings": self.warnings,
            "classes_analyzed": self.classes_analyzed,
            "methods_compiled": self.methods_compiled,
            "instructions_compiled": self.instructions_compiled,
            "statistics": self.statistics,
            "compile_time_ms": round(self.compile_time_ms, 2),
            "solve_time_ms": round(self.solve_time_ms, 2),
            "summary": {
                status.value: self.count(status) for status in QueryStatus
            },
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def to_text(self) -> str:
        lines = [f"Program: {self.program}"]
        lines.append(
            f"Compiled {self.methods_compiled} methods ({self.instructions_compiled} "
            f"instructions) of {self.classes_analyzed} classes in {self.compile_time_ms:.0f}ms"
        )
        if self.statistics:
            lines.append(
                f"Encoding: {self.statistics.get('relations', 0)} relations, "
                f"{self.statistics.get('rules', 0)} rules, "
                f"{self.statistics.get('queries', 0)} queries, "
                f"local heap of {self.statistics.get('local_heap_size', 0)} slots"
            )
        lines.append("")

        for result in self.results:
            lines.append(f"[{result.status.value.upper()}] {result.query.description}"
                         f" ({result.elapsed_ms:.0f}ms)")
            if result.reason:
                lines.append(f"    reason: {result.reason}")

        for error in self.errors:
            lines.append(f"error: {error}")

        lines.append("")
        leaks = self.count(QueryStatus.LEAK)
        undecided = len(self.undecided)
        lines.append(
            f"{leaks} leak(s), {self.count(QueryStatus.SAFE)} safe, {undecided} undecided "
            f"out of {len(self.results)} queries; solved in {self.solve_time_ms:.0f}ms"
        )
        return "\n".join(lines)
