"""
Analysis orchestration and reporting.
"""

from droidhorn.analysis.report import Leak, LeakReport
from droidhorn.analysis.analyzer import Analyzer, analyze_program

__all__ = ["Leak", "LeakReport", "Analyzer", "analyze_program"]
