"""
Tests for allocation sites and the local heap (droidhorn/heap/)
"""

import pytest

from droidhorn.core.state import java_hash
from droidhorn.encoding.engine import HornEngine
from droidhorn.errors import AllocationConsistencyError
from droidhorn.heap.allocation import AllocationMap
from droidhorn.heap.layouts import field_rank, make_layout
from droidhorn.heap.reachability import add_reachability_rules
from droidhorn.options import AnalysisOptions


BOX = "Lcom/example/Box;"
PAIR = "Lcom/example/Pair;"


def box_layout():
    return make_layout([("value", "Ljava/lang/String;")])


def pair_layout():
    return make_layout([("first", "Ljava/lang/Object;"), ("count", "I")])


def two_sites() -> AllocationMap:
    allocations = AllocationMap()
    allocations.register(1, 2, 0, BOX, java_hash(BOX), 100, box_layout())
    allocations.register(1, 2, 4, PAIR, java_hash(PAIR), 200, pair_layout())
    return allocations


class TestLayouts:
    """Field layouts"""

    def test_ordered_by_field_id(self):
        """Layouts are ordered by field id"""
        layout = pair_layout()
        assert list(layout) == sorted(layout)

    def test_primitive_flags(self):
        """Each field records whether it is primitive"""
        layout = pair_layout()
        assert layout[java_hash("count:I")] is True
        assert layout[java_hash("first:Ljava/lang/Object;")] is False

    def test_rank(self):
        """Ranks follow the layout order"""
        layout = pair_layout()
        ids = list(layout)
        assert field_rank(layout, ids[1]) == 1
        assert field_rank(layout, 12345) is None


class TestAllocationMap:
    """Slot ranges of allocation sites"""

    def test_consecutive_ranges(self):
        """Each site owns its fields plus a marker"""
        allocations = two_sites()
        box, pair = list(allocations)
        assert (box.offset, box.size, box.marker) == (0, 1, 1)
        assert (pair.offset, pair.size, pair.marker) == (2, 2, 4)
        assert list(pair.slots) == [2, 3, 4]
        assert allocations.size == 5
        assert len(allocations) == 2

    def test_register_twice(self):
        """Registering the same instruction again returns the first site"""
        allocations = two_sites()
        again = allocations.register(1, 2, 0, BOX, java_hash(BOX), 100, box_layout())
        assert again.offset == 0
        assert allocations.size == 5

    def test_frozen(self):
        """No new sites once compilation starts"""
        allocations = two_sites()
        allocations.freeze()
        assert allocations.frozen
        with pytest.raises(AllocationConsistencyError):
            allocations.register(1, 2, 8, BOX, java_hash(BOX), 300, box_layout())

    def test_id_collision(self):
        """Two sites may not share an allocation id"""
        allocations = two_sites()
        with pytest.raises(AllocationConsistencyError):
            allocations.register(1, 3, 0, BOX, java_hash(BOX), 100, box_layout())

    def test_lookup(self):
        """Lookups of unregistered instructions are fatal"""
        allocations = two_sites()
        assert allocations.lookup(1, 2, 4).alloc_id == 200
        assert allocations.get(1, 2, 6) is None
        with pytest.raises(AllocationConsistencyError):
            allocations.lookup(1, 2, 6)

    def test_sites_with_field(self):
        """Field slots are found across sites"""
        allocations = two_sites()
        found = allocations.sites_with_field(java_hash("count:I"))
        [(site, slot)] = found
        assert site.alloc_id == 200
        assert slot == site.slot_of(java_hash("count:I"))
        assert allocations.sites_with_field(java_hash("missing:I")) == []

    def test_unknown_layout(self):
        """A site of unknown layout only owns its marker"""
        allocations = AllocationMap()
        site = allocations.register(1, 2, 0, "Lx/Y;", java_hash("Lx/Y;"), 5, None)
        assert site.size == 0
        assert site.field_slots() == []
        assert site.slot_of(1) is None
        assert allocations.size == 1


class TestReachability:
    """ReachLH and CFilter rules"""

    def test_rule_count(self):
        """Two base facts, one ReachLH rule per field, one CFilter rule per site"""
        allocations = two_sites()
        engine = HornEngine(AnalysisOptions(), local_heap_size=allocations.size)
        before = len(engine.rules)
        added = add_reachability_rules(engine, allocations)
        assert added == 2 + 3 + 2
        assert len(engine.rules) - before == added

    def test_relations_declared(self):
        """The reachability relations span the whole local heap"""
        allocations = two_sites()
        engine = HornEngine(AnalysisOptions(), local_heap_size=allocations.size)
        add_reachability_rules(engine, allocations)
        arities = {r.name(): r.arity() for r in engine.relations}
        assert arities["ReachLH"] == 2 + 2 * allocations.size
        assert arities["CFilter"] == 2 + 3 * allocations.size
