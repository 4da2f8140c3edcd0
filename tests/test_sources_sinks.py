"""
Tests for source/sink configuration (droidhorn/specs/)
"""

import pytest

from droidhorn.errors import SpecFormatError
from droidhorn.specs.android_specs import ANDROID_SINKS, ANDROID_SOURCES, default_android_spec
from droidhorn.specs.sources_sinks import (
    SourceSinkSpec,
    java_type_to_descriptor,
    load_sources_sinks,
    parse_entry,
    parse_sources_sinks,
)


SOURCES_AND_SINKS = """\
% comment
# another comment

<android.telephony.TelephonyManager: java.lang.String getDeviceId()> -> _SOURCE_
<android.util.Log: int d(java.lang.String,java.lang.String)> android.permission.X -> _SINK_
<com.example.Pipe: byte[] roundtrip(byte[], int)> -> _BOTH_
"""


class TestDescriptors:
    """Java type names to dex descriptors"""

    def test_primitives(self):
        """Primitive names map to single letters"""
        assert java_type_to_descriptor("int") == "I"
        assert java_type_to_descriptor("void") == "V"
        assert java_type_to_descriptor("boolean") == "Z"

    def test_classes_and_arrays(self):
        """Classes become L...; with one [ per dimension"""
        assert java_type_to_descriptor("java.lang.String") == "Ljava/lang/String;"
        assert java_type_to_descriptor("byte[]") == "[B"
        assert java_type_to_descriptor("java.lang.Object[][]") == "[[Ljava/lang/Object;"


class TestParseEntry:
    """Single lines of the text format"""

    def test_source(self):
        """A source line gives class descriptor and signature"""
        kind, entry = parse_entry(
            "<android.telephony.TelephonyManager: java.lang.String getDeviceId()> -> _SOURCE_")
        assert kind == "_SOURCE_"
        assert entry.class_name == "Landroid/telephony/TelephonyManager;"
        assert entry.signature == "getDeviceId()Ljava/lang/String;"

    def test_sink_with_permission(self):
        """Permissions between the method and the arrow are ignored"""
        kind, entry = parse_entry(
            "<android.util.Log: int d(java.lang.String,java.lang.String)> "
            "android.permission.X -> _SINK_")
        assert kind == "_SINK_"
        assert entry.signature == "d(Ljava/lang/String;Ljava/lang/String;)I"

    def test_garbage(self):
        """Unparseable lines raise with their line number"""
        with pytest.raises(SpecFormatError) as info:
            parse_entry("not an entry", 7)
        assert info.value.line_no == 7


class TestParseSourcesSinks:
    """Whole files"""

    def test_kinds(self):
        """_BOTH_ entries are sources and sinks"""
        spec = parse_sources_sinks(SOURCES_AND_SINKS.splitlines())
        assert spec.is_source("Landroid/telephony/TelephonyManager;",
                              "getDeviceId()Ljava/lang/String;")
        assert spec.is_sink("Landroid/util/Log;", "d(Ljava/lang/String;Ljava/lang/String;)I")
        assert spec.is_source("Lcom/example/Pipe;", "roundtrip([BI)[B")
        assert spec.is_sink("Lcom/example/Pipe;", "roundtrip([BI)[B")
        assert len(spec) == 4

    def test_bad_lines_are_skipped(self):
        """Lenient parsing skips what it cannot read"""
        spec = parse_sources_sinks(["garbage", SOURCES_AND_SINKS.splitlines()[3]])
        assert len(spec.sources) == 1

    def test_strict(self):
        """Strict parsing stops at the first bad line"""
        with pytest.raises(SpecFormatError):
            parse_sources_sinks(["garbage"], strict=True)

    def test_load_file(self, tmp_path):
        """Files are read as UTF-8 text"""
        path = tmp_path / "ss.txt"
        path.write_text(SOURCES_AND_SINKS, encoding="utf-8")
        spec = load_sources_sinks(path)
        assert len(spec.sinks) == 2


class TestSourceSinkSpec:
    """The lookup tables"""

    def test_merge(self):
        """Merging adds the other spec's entries"""
        spec = SourceSinkSpec()
        spec.add_source("LA;", "a()I")
        other = SourceSinkSpec()
        other.add_sink("LB;", "b(I)V")
        spec.merge(other)
        assert spec.is_source("LA;", "a()I")
        assert spec.is_sink("LB;", "b(I)V")

    def test_android_defaults(self):
        """The built-in table covers identifiers, logging and SMS"""
        spec = default_android_spec()
        assert spec.is_source("Landroid/telephony/TelephonyManager;",
                              "getDeviceId()Ljava/lang/String;")
        assert spec.is_sink("Landroid/util/Log;", "d(Ljava/lang/String;Ljava/lang/String;)I")
        assert len(spec) == len(ANDROID_SOURCES) + len(ANDROID_SINKS)

    def test_android_defaults_are_fresh(self):
        """Each call returns an independent spec"""
        spec = default_android_spec()
        spec.add_sink("LA;", "x()V")
        assert not default_android_spec().is_sink("LA;", "x()V")
