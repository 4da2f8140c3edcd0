"""
Tests for the leak report (droidhorn/analysis/report.py)
"""

import json

import pytest
import z3

from droidhorn.analysis.report import Leak, LeakReport
from droidhorn.encoding.query import LeakQuery, QueryResult, QueryStatus


def result(pc, status, reason=""):
    query = LeakQuery(z3.Bool(f"q{pc}"), "Lcom/example/Main;", "onCreate(Landroid/os/Bundle;)V",
                      pc, "Lcom/example/Network;->send(Ljava/lang/String;)V", registers=[0])
    return QueryResult(query, status, elapsed_ms=10.0, reason=reason)


def mixed_report():
    report = LeakReport(program="app.json", classes_analyzed=2, methods_compiled=3,
                        instructions_compiled=17, compile_time_ms=5.0, solve_time_ms=30.0)
    report.results = [
        result(4, QueryStatus.LEAK),
        result(9, QueryStatus.SAFE),
        result(12, QueryStatus.TIMEOUT, reason="timeout"),
    ]
    report.statistics = {"relations": 6, "rules": 20, "queries": 3, "local_heap_size": 2}
    return report


class TestLeak:
    """Single leaks"""

    def test_from_result(self):
        """A leak copies its query's location"""
        leak = Leak.from_result(result(4, QueryStatus.LEAK))
        assert leak.location == "Lcom/example/Main;->onCreate(Landroid/os/Bundle;)V@4"
        assert leak.registers == [0]
        assert leak.description.startswith("Test if register 0 leaks @line 4")

    def test_to_dict(self):
        """Leaks serialize with their status value"""
        data = Leak.from_result(result(4, QueryStatus.LEAK)).to_dict()
        assert data["status"] == "leak"
        assert data["pc"] == 4
        assert data["elapsed_ms"] == 10.0


class TestLeakReport:
    """Report summaries and output"""

    def test_counts(self):
        """Leaks, safe and undecided queries are counted apart"""
        report = mixed_report()
        assert report.has_leaks
        assert [leak.pc for leak in report.leaks] == [4]
        assert report.count(QueryStatus.SAFE) == 1
        assert [r.query.pc for r in report.undecided] == [12]
        assert report.total_time_ms == 35.0

    def test_empty(self):
        """An empty report has no leaks"""
        report = LeakReport(program="empty")
        assert not report.has_leaks
        assert report.leaks == []

    def test_json(self):
        """The JSON report lists every query and a status summary"""
        data = json.loads(mixed_report().to_json())
        assert data["program"] == "app.json"
        assert len(data["queries"]) == 3
        assert len(data["leaks"]) == 1
        assert data["summary"] == {"leak": 1, "safe": 1, "unknown": 0, "timeout": 1, "error": 0}
        assert data["statistics"]["rules"] == 20

    def test_text(self):
        """The text report lists every query and ends with the totals"""
        text = mixed_report().to_text()
        lines = text.splitlines()
        assert lines[0] == "Program: app.json"
        assert "Encoding: 6 relations, 20 rules, 3 queries, local heap of 2 slots" in text
        assert "[LEAK] Test if register 0 leaks @line 4" in text
        assert "    reason: timeout" in text
        assert lines[-1] == "1 leak(s), 1 safe, 1 undecided out of 3 queries; solved in 30ms"

    def test_text_errors(self):
        """Compilation errors appear in the text report"""
        report = LeakReport(program="app.json", errors=["Lx;->m()V: broken"])
        assert "error: Lx;->m()V: broken" in report.to_text()
