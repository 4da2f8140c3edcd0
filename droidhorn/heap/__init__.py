"""
Heap model: library field layouts, allocation sites with their local-heap
slot ranges, and the local-heap reachability relations.

The global, intent and static heaps are relations of the Horn engine
(droidhorn.encoding.engine).
"""

from droidhorn.heap.layouts import make_layout, library_layout, field_rank, LIBRARY_FIELDS
from droidhorn.heap.allocation import AllocationSite, AllocationMap

__all__ = [
    "make_layout", "library_layout", "field_rank", "LIBRARY_FIELDS",
    "AllocationSite", "AllocationMap",
]
