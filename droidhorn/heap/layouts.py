"""
Field layouts of library types.

Allocation sites of framework classes need a field layout to reserve
local-heap slots. The program model only knows application classes, so
library classes come from this precomputed stub table. A layout maps
field id (javaHash of "name:Type") to whether the field is primitive,
ordered by field id; slot offsets inside an allocation follow that order.
"""

from collections import OrderedDict
from typing import Dict, Iterable, Optional, Tuple

from droidhorn.core.state import java_hash
from droidhorn.core.descriptors import is_primitive


def make_layout(fields: Iterable[Tuple[str, str]]) -> "OrderedDict[int, bool]":
    """Build a layout from (name, type descriptor) pairs"""
    entries = {java_hash(f"{name}:{typ}"): is_primitive(typ) for name, typ in fields}
    return OrderedDict(sorted(entries.items()))


def field_rank(layout: "OrderedDict[int, bool]", field_id: int) -> Optional[int]:
    """Position of field_id inside layout, None when absent"""
    for rank, fid in enumerate(layout):
        if fid == field_id:
            return rank
    return None


LIBRARY_FIELDS: Dict[str, Tuple[Tuple[str, str], ...]] = {
    "Ljava/lang/Object;": (),
    "Ljava/lang/String;": (("value", "[C"), ("hash", "I")),
    "Ljava/lang/StringBuilder;": (("value", "[C"), ("count", "I")),
    "Ljava/lang/StringBuffer;": (("value", "[C"), ("count", "I")),
    "Ljava/lang/Integer;": (("value", "I"),),
    "Ljava/lang/Long;": (("value", "J"),),
    "Ljava/lang/Boolean;": (("value", "Z"),),
    "Ljava/lang/Thread;": (("target", "Ljava/lang/Runnable;"), ("name", "Ljava/lang/String;")),
    "Ljava/lang/RuntimeException;": (("message", "Ljava/lang/String;"),
                                    ("cause", "Ljava/lang/Throwable;")),
    "Ljava/lang/Exception;": (("message", "Ljava/lang/String;"),
                             ("cause", "Ljava/lang/Throwable;")),
    "Ljava/util/ArrayList;": (("elementData", "[Ljava/lang/Object;"), ("size", "I")),
    "Ljava/util/HashMap;": (("table", "[Ljava/util/HashMap$Node;"), ("size", "I")),
    "Ljava/util/Formatter;": (("a", "Ljava/lang/Appendable;"),),
    "Landroid/graphics/PointF;": (("x", "F"), ("y", "F")),
    "Landroid/graphics/Point;": (("x", "I"), ("y", "I")),
    "Landroid/os/Bundle;": (("mMap", "Landroid/util/ArrayMap;"),),
    "Landroid/os/Parcel;": (("mNativePtr", "J"),),
    "Landroid/location/Location;": (("mLatitude", "D"), ("mLongitude", "D"),
                                   ("mProvider", "Ljava/lang/String;")),
    "Landroid/content/ComponentName;": (("mPackage", "Ljava/lang/String;"),
                                       ("mClass", "Ljava/lang/String;")),
    "Landroid/content/Intent;": (("mAction", "Ljava/lang/String;"),
                                ("mData", "Landroid/net/Uri;"),
                                ("mType", "Ljava/lang/String;"),
                                ("mFlags", "I"),
                                ("mComponent", "Landroid/content/ComponentName;"),
                                ("mExtras", "Landroid/os/Bundle;")),
    "Landroid/widget/Button;": (("hint", "Ljava/lang/CharSequence;"),),
    "Landroid/os/Handler;": (("mCallback", "Landroid/os/Handler$Callback;"),),
    "Landroid/os/Message;": (("what", "I"), ("obj", "Ljava/lang/Object;")),
}


def library_layout(type_name: str) -> Optional["OrderedDict[int, bool]"]:
    fields = LIBRARY_FIELDS.get(type_name)
    if fields is None:
        return None
    return make_layout(fields)
