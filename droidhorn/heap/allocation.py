"""
Allocation sites and the local-heap layout.

The local heap is one flat array shared by every relation of the program.
The analysis pre-pass registers each allocation site in a deterministic
order; a site with a layout of n fields owns slots [offset, offset+n) for
its fields plus a trailing occupancy marker at offset+n, so the next site
starts at offset+n+1. Once compilation starts the map is frozen: the
relation arity depends on its final size.
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from droidhorn.heap.layouts import field_rank
from droidhorn.errors import AllocationConsistencyError


logger = logging.getLogger(__name__)

SiteKey = Tuple[int, int, int]


@dataclass(frozen=True)
class AllocationSite:
    """One allocating instruction and its slot range"""
    class_id: int
    method_id: int
    pc: int
    type_name: str
    type_id: int
    alloc_id: int
    offset: int
    layout: Optional["OrderedDict[int, bool]"]

    @property
    def size(self) -> int:
        return len(self.layout) if self.layout else 0

    @property
    def marker(self) -> int:
        """Occupancy slot; free while the site holds no object of the current epoch"""
        return self.offset + self.size

    @property
    def slots(self) -> range:
        """Field slots plus the marker"""
        return range(self.offset, self.offset + self.size + 1)

    def slot_of(self, field_id: int) -> Optional[int]:
        if not self.layout:
            return None
        rank = field_rank(self.layout, field_id)
        return None if rank is None else self.offset + rank

    def field_slots(self) -> List[Tuple[int, int, bool]]:
        """(field id, slot, isPrimitive) for every field of the layout"""
        if not self.layout:
            return []
        return [(fid, self.offset + rank, prim)
                for rank, (fid, prim) in enumerate(self.layout.items())]


class AllocationMap:
    """Registry of allocation sites, in registration order"""

    def __init__(self):
        self._sites: Dict[SiteKey, AllocationSite] = OrderedDict()
        self._by_alloc: Dict[int, AllocationSite] = {}
        self._size = 0
        self._frozen = False
        self._lock = threading.Lock()

    def register(self, class_id: int, method_id: int, pc: int, type_name: str,
                 type_id: int, alloc_id: int,
                 layout: Optional["OrderedDict[int, bool]"]) -> AllocationSite:
        """Register a site; registering the same site twice returns the first registration"""
        key = (class_id, method_id, pc)
        with self._lock:
            if key in self._sites:
                return self._sites[key]
            if self._frozen:
                raise AllocationConsistencyError(
                    f"Allocation site {key} registered after compilation started"
                )
            clash = self._by_alloc.get(alloc_id)
            if clash is not None:
                raise AllocationConsistencyError(
                    f"Allocation id {alloc_id} shared by sites "
                    f"{(clash.class_id, clash.method_id, clash.pc)} and {key}"
                )
            site = AllocationSite(class_id, method_id, pc, type_name, type_id,
                                  alloc_id, self._size, layout)
            self._sites[key] = site
            self._by_alloc[alloc_id] = site
            self._size += site.size + 1
            logger.debug("Allocation site %s of %s at slots %d..%d",
                         key, type_name, site.offset, site.marker)
            return site

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def lookup(self, class_id: int, method_id: int, pc: int) -> AllocationSite:
        """The site registered for this instruction; fatal when missing"""
        site = self.get(class_id, method_id, pc)
        if site is None:
            raise AllocationConsistencyError(
                f"No allocation site registered at {(class_id, method_id, pc)}"
            )
        return site

    def get(self, class_id: int, method_id: int, pc: int) -> Optional[AllocationSite]:
        return self._sites.get((class_id, method_id, pc))

    def sites_with_field(self, field_id: int) -> List[Tuple[AllocationSite, int]]:
        """Sites whose layout contains field_id, with the field's slot"""
        result = []
        for site in self:
            slot = site.slot_of(field_id)
            if slot is not None:
                result.append((site, slot))
        return result

    @property
    def size(self) -> int:
        """Total number of local-heap slots"""
        return self._size

    def __iter__(self) -> Iterator[AllocationSite]:
        return iter(list(self._sites.values()))

    def __len__(self) -> int:
        return len(self._sites)
