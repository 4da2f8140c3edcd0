"""
Horn clause encoding: the relation store and rule collector (HornEngine)
and leak query records.
"""

from droidhorn.encoding.query import LeakQuery, QueryResult, QueryStatus
from droidhorn.encoding.engine import HornEngine

__all__ = ["LeakQuery", "QueryResult", "QueryStatus", "HornEngine"]
