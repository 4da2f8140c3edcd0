"""
Horn clause engine.

HornEngine is the predicate builder of the compiler: it owns the relation
table, collects rules and leak queries, and decides the queries with the
z3 fixed-point engine. Relations:

- R_<c>_<m>_<pc>: one per program point, declared lazily; columns are the
  register slots of the method (4 columns each) followed by the local heap
  (5 columns per slot)
- RES_<c>_<m>: method exit; argument copies, return value, local heap
- H(class, instance, field, value, high, blocked): global heap
- HI(targetClass, intent, value, high, blocked): intent extras
- I(targetClass, callerClass, value, high, blocked): launched intents
- S(class, field, value, high, blocked): static fields
- ReachLH / CFilter: local-heap reachability (optional)

Rules are quantified over the shared symbolic variables; a fresh
z3.Fixedpoint is built for each query so that every query runs with its
own timeout.

Term construction is serialized on `lock`: a z3 context is not safe to
use from several threads at once.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import z3

from droidhorn.core.state import HeapSlot, MethodFrame, RegisterState, java_hash
from droidhorn.core.variables import SymbolicVariables
from droidhorn.encoding.query import LeakQuery, QueryResult, QueryStatus
from droidhorn.errors import RelationArityError
from droidhorn.options import AnalysisOptions


logger = logging.getLogger(__name__)


class HornEngine:
    """Relation store, rule collector and query runner"""

    def __init__(self, options: Optional[AnalysisOptions] = None,
                 variables: Optional[SymbolicVariables] = None,
                 local_heap_size: int = 0):
        self.options = options or AnalysisOptions()
        self.vars = variables or SymbolicVariables(self.options.bitvector_size)
        self.local_heap_size = local_heap_size
        self.lock = threading.RLock()

        self._relations: Dict[str, z3.FuncDeclRef] = {}
        self._rules: List[Tuple[z3.BoolRef, Optional[z3.BoolRef]]] = []
        self._queries: List[LeakQuery] = []

        self.bv_sort = self.vars.bv_sort
        bv, b = self.bv_sort, z3.BoolSort()
        self._h = self.declare("H", [bv, bv, bv, bv, b, b])
        self._hi = self.declare("HI", [bv, bv, bv, b, b])
        self._i = self.declare("I", [bv, bv, bv, b, b])
        self._s = self.declare("S", [bv, bv, bv, b, b])
        self._add_result_rule()

    # =========================================================================
    # Relations
    # =========================================================================

    def declare(self, name: str, sorts: Sequence[z3.SortRef]) -> z3.FuncDeclRef:
        """Declare relation name, or return it if already declared with the same arity"""
        with self.lock:
            decl = self._relations.get(name)
            if decl is not None:
                if decl.arity() != len(sorts):
                    raise RelationArityError(name, decl.arity(), len(sorts))
                return decl
            decl = z3.Function(name, *sorts, z3.BoolSort())
            self._relations[name] = decl
            return decl

    @property
    def relations(self) -> List[z3.FuncDeclRef]:
        with self.lock:
            return list(self._relations.values())

    def _state_sorts(self, slots: int) -> List[z3.SortRef]:
        b = z3.BoolSort()
        sorts = [self.bv_sort, b, b, b] * slots
        sorts += [self.bv_sort, b, b, b, b] * self.local_heap_size
        return sorts

    def _state_args(self, registers: Sequence[RegisterState],
                    heap: Sequence[HeapSlot]) -> List[z3.ExprRef]:
        if len(heap) != self.local_heap_size:
            raise RelationArityError("local heap", self.local_heap_size, len(heap))
        args: List[z3.ExprRef] = []
        for reg in registers:
            args.extend(reg.columns())
        for slot in heap:
            args.extend(slot.columns())
        return args

    def point(self, frame: MethodFrame, pc: int, registers: Sequence[RegisterState],
              heap: Sequence[HeapSlot]) -> z3.BoolRef:
        """R_<c>_<m>_<pc> applied to the given state"""
        if len(registers) != frame.slot_count:
            raise RelationArityError(frame.point(pc).relation_name, frame.slot_count, len(registers))
        with self.lock:
            decl = self.declare(frame.point(pc).relation_name, self._state_sorts(frame.slot_count))
            return decl(*self._state_args(registers, heap))

    def exit(self, class_id: int, method_id: int, registers: Sequence[RegisterState],
             heap: Sequence[HeapSlot]) -> z3.BoolRef:
        """RES_<c>_<m>: registers are the argument copies followed by the return value"""
        with self.lock:
            decl = self.declare(f"RES_{class_id}_{method_id}", self._state_sorts(len(registers)))
            return decl(*self._state_args(registers, heap))

    def _bv(self, value) -> z3.ExprRef:
        if isinstance(value, int):
            return self.vars.literal(value)
        return value

    @staticmethod
    def _bool(value) -> z3.ExprRef:
        if isinstance(value, bool):
            return z3.BoolVal(value)
        return value

    def h(self, cls, instance, field, value, high, blocked) -> z3.BoolRef:
        with self.lock:
            return self._h(self._bv(cls), self._bv(instance), self._bv(field),
                           self._bv(value), self._bool(high), self._bool(blocked))

    def hi(self, cls, instance, value, high, blocked) -> z3.BoolRef:
        with self.lock:
            return self._hi(self._bv(cls), self._bv(instance), self._bv(value),
                            self._bool(high), self._bool(blocked))

    def i(self, cls, caller, value, high, blocked) -> z3.BoolRef:
        with self.lock:
            return self._i(self._bv(cls), self._bv(caller), self._bv(value),
                           self._bool(high), self._bool(blocked))

    def s(self, cls, field, value, high, blocked) -> z3.BoolRef:
        with self.lock:
            return self._s(self._bv(cls), self._bv(field), self._bv(value),
                           self._bool(high), self._bool(blocked))

    def reach_lh(self, origin, target, values: Sequence[z3.ExprRef],
                 locals_: Sequence[z3.ExprRef]) -> z3.BoolRef:
        b = z3.BoolSort()
        with self.lock:
            decl = self.declare(
                "ReachLH",
                [self.bv_sort, self.bv_sort] + [self.bv_sort] * len(values) + [b] * len(locals_),
            )
            return decl(self._bv(origin), self._bv(target), *values, *locals_)

    def c_filter(self, origin, blocked, values: Sequence[z3.ExprRef],
                 locals_: Sequence[z3.ExprRef], filters: Sequence[z3.ExprRef]) -> z3.BoolRef:
        b = z3.BoolSort()
        with self.lock:
            decl = self.declare(
                "CFilter",
                [self.bv_sort, b] + [self.bv_sort] * len(values) + [b] * len(locals_)
                + [b] * len(filters),
            )
            return decl(self._bv(origin), self._bool(blocked), *values, *locals_,
                        *[self._bool(f) for f in filters])

    def _add_result_rule(self) -> None:
        """
        An activity result set by a launched activity reaches the activity
        that launched it.
        """
        v = self.vars.scalar
        parent, result = java_hash("parent"), java_hash("result")
        body = z3.And(
            self.h(v("cn"), v("cn"), parent, v("f"), v("lf"), v("bf")),
            self.h(v("cn"), v("cn"), result, v("val"), v("lval"), v("bval")),
            self.h(v("f"), v("f"), v("fpp"), v("vfp"), v("lfp"), v("bfp")),
        )
        self.add_rule(self.h(v("f"), v("f"), result, v("val"), v("lval"), v("bval")), body)

    # =========================================================================
    # Rules and queries
    # =========================================================================

    def add_rule(self, head: z3.BoolRef, body: Optional[z3.BoolRef] = None) -> None:
        """Add body => head, or a fact when body is None"""
        with self.lock:
            self._rules.append((head, body))

    def add_fact(self, head: z3.BoolRef) -> None:
        self.add_rule(head)

    @property
    def rules(self) -> List[Tuple[z3.BoolRef, Optional[z3.BoolRef]]]:
        with self.lock:
            return list(self._rules)

    def add_query(self, query: LeakQuery) -> None:
        """
        Record a query. A query for the same (class, method, pc, sink) as
        the previous one is merged into it unless per-register results are
        requested.
        """
        with self.lock:
            if (self._queries and not self.options.verbose_results
                    and self._queries[-1].key == query.key):
                self._queries[-1].merge(query)
            else:
                self._queries.append(query)

    @property
    def queries(self) -> List[LeakQuery]:
        with self.lock:
            return list(self._queries)

    # =========================================================================
    # Solving
    # =========================================================================

    def _fixedpoint(self) -> z3.Fixedpoint:
        fp = z3.Fixedpoint()
        fp.set(engine=self.options.engine)
        fp.set("timeout", self.options.query_timeout)
        with self.lock:
            for decl in self._relations.values():
                fp.register_relation(decl)
            fp.declare_var(*self.vars.all())
            for head, body in self._rules:
                fp.add_rule(head, body)
        return fp

    def run_query(self, query: LeakQuery) -> QueryResult:
        start = time.time()
        try:
            fp = self._fixedpoint()
            answer = fp.query(query.expr)
        except z3.Z3Exception as e:
            elapsed = (time.time() - start) * 1000
            logger.error("Query failed (%s): %s", query.description, e)
            return QueryResult(query, QueryStatus.ERROR, elapsed, str(e))
        elapsed = (time.time() - start) * 1000

        if answer == z3.sat:
            return QueryResult(query, QueryStatus.LEAK, elapsed)
        if answer == z3.unsat:
            return QueryResult(query, QueryStatus.SAFE, elapsed)
        reason = fp.reason_unknown()
        status = QueryStatus.TIMEOUT if ("timeout" in reason or "canceled" in reason) \
            else QueryStatus.UNKNOWN
        return QueryResult(query, status, elapsed, reason)

    def execute_queries(self, on_result: Optional[Callable[[QueryResult], None]] = None
                        ) -> List[QueryResult]:
        """
        Decide the recorded queries in order.

        Honors max_queries and stop_at_first_leak from the options;
        on_result is called after each query.
        """
        queries = self.queries
        limit = self.options.max_queries
        if limit is not None:
            queries = queries[:limit]
        logger.info("Executing %d queries over %d rules and %d relations",
                    len(queries), len(self._rules), len(self._relations))

        results = []
        for query in queries:
            result = self.run_query(query)
            logger.info("%s: %s (%.0f ms)", query.description, result.status, result.elapsed_ms)
            results.append(result)
            if on_result is not None:
                on_result(result)
            if result.is_leak and self.options.stop_at_first_leak:
                break
        return results

    def to_smt2(self) -> str:
        """Rules and queries in the fixed-point SMT-LIB dialect"""
        fp = self._fixedpoint()
        queries = [fp.abstract(q.expr, False) for q in self.queries]
        return fp.to_string(queries)

    def statistics(self) -> Dict[str, int]:
        with self.lock:
            return {
                "relations": len(self._relations),
                "rules": len(self._rules),
                "queries": len(self._queries),
                "variables": len(self.vars),
                "local_heap_size": self.local_heap_size,
            }
