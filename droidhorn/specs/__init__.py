"""
Source and sink configuration: the built-in Android tables and the parser
for text configuration files.
"""

from droidhorn.specs.sources_sinks import (
    SourceSinkSpec, SpecEntry, parse_sources_sinks, load_sources_sinks,
    java_type_to_descriptor,
)
from droidhorn.specs.android_specs import default_android_spec, ANDROID_SOURCES, ANDROID_SINKS

__all__ = [
    "SourceSinkSpec", "SpecEntry", "parse_sources_sinks", "load_sources_sinks",
    "java_type_to_descriptor", "default_android_spec", "ANDROID_SOURCES", "ANDROID_SINKS",
]
