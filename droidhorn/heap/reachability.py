"""
Local-heap reachability relations.

ReachLH(origin, target, heap) holds when target is reachable from origin
through local references stored in the local heap. CFilter(origin, bf,
heap, filter) marks the slots of every allocation site reachable from
origin. Both are generated on request (AnalysisOptions.reachability) for
clients that want a finer escape test than whole-heap lifting.
"""

import logging

import z3

from droidhorn.encoding.engine import HornEngine
from droidhorn.heap.allocation import AllocationMap


logger = logging.getLogger(__name__)


def add_reachability_rules(engine: HornEngine, allocations: AllocationMap) -> int:
    """Emit the ReachLH and CFilter rules; returns the number of rules added"""
    v = engine.vars
    size = allocations.size
    values = [v.slot(j).value for j in range(size)]
    locals_ = [v.slot(j).local for j in range(size)]
    filters = [v.filter(j) for j in range(size)]
    val, vfp, rez, bf = v.scalar("val"), v.scalar("vfp"), v.scalar("rez"), v.scalar("bf")
    added = 0

    with engine.lock:
        engine.add_fact(engine.reach_lh(val, val, values, locals_))
        engine.add_fact(engine.c_filter(val, True, values, locals_, [z3.BoolVal(False)] * size))
        added += 2

        for site in allocations:
            for _, slot, _ in site.field_slots():
                body = z3.And(
                    engine.reach_lh(val, vfp, values, locals_),
                    vfp == site.alloc_id,
                    values[slot] == rez,
                    locals_[slot],
                )
                engine.add_rule(engine.reach_lh(val, rez, values, locals_), body)
                added += 1

            marked = list(filters)
            for slot in site.slots:
                marked[slot] = z3.BoolVal(True)
            body = z3.And(
                engine.reach_lh(val, vfp, values, locals_),
                engine.c_filter(val, bf, values, locals_, filters),
                bf,
                vfp == site.alloc_id,
            )
            engine.add_rule(engine.c_filter(val, bf, values, locals_, marked), body)
            added += 1

    logger.debug("Added %d reachability rules", added)
    return added
