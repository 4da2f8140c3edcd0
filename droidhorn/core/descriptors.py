"""
Dex type descriptors: primitives ZBSCIJFD, V for void, L...; for classes
and a leading [ per array dimension.
"""

from typing import List

from droidhorn.errors import ModelError


PRIMITIVE_TYPES = "ZBSCIJFD"


def is_primitive(descriptor: str) -> bool:
    return len(descriptor) == 1 and descriptor in PRIMITIVE_TYPES


def is_array(descriptor: str) -> bool:
    return descriptor.startswith("[")


def register_width(descriptor: str) -> int:
    """Registers occupied by a value of this type"""
    return 2 if descriptor in ("J", "D") else 1


def split_descriptors(text: str) -> List[str]:
    """Split a run of concatenated type descriptors, e.g. 'I[JLa/B;'"""
    result = []
    i = 0
    while i < len(text):
        start = i
        while i < len(text) and text[i] == "[":
            i += 1
        if i >= len(text):
            raise ModelError(f"Truncated array descriptor in '{text}'")
        if text[i] == "L":
            end = text.find(";", i)
            if end < 0:
                raise ModelError(f"Unterminated class descriptor in '{text}'")
            i = end + 1
        elif text[i] in PRIMITIVE_TYPES or text[i] == "V":
            i += 1
        else:
            raise ModelError(f"Bad type descriptor '{text[i]}' in '{text}'")
        result.append(text[start:i])
    return result
