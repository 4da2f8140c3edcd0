"""
Exception hierarchy for droidhorn.

All errors raised by the compiler derive from AnalysisError so callers can
catch a single type. Some errors are recoverable and only skip the offending
element (a class, an instruction, a payload entry). Others abort the run:

- ModelError: malformed class, method or instruction in the program model
- UnsupportedInstructionError: unknown mnemonic in the program model
- PayloadError: malformed switch / array-data payload (a ModelError)
- AllocationConsistencyError: allocation site table is inconsistent (fatal)
- RelationArityError: a relation redeclared with a different arity (fatal)
- SpecFormatError: unparseable line in a sources/sinks file
"""


class AnalysisError(Exception):
    """Base class for all droidhorn errors"""
    pass


class ModelError(AnalysisError):
    """Raised when the program model is malformed"""
    pass


class UnsupportedInstructionError(ModelError):
    """Raised when an instruction mnemonic is not a known Dalvik opcode"""

    def __init__(self, mnemonic: str, where: str = ""):
        self.mnemonic = mnemonic
        self.where = where
        suffix = f" in {where}" if where else ""
        super().__init__(f"Unsupported instruction '{mnemonic}'{suffix}")


class PayloadError(ModelError):
    """Raised when a switch or array-data payload cannot be used"""
    pass


class AllocationConsistencyError(AnalysisError):
    """Raised when an allocation is compiled at a site the pre-pass did not register"""
    pass


class RelationArityError(AnalysisError):
    """Raised when a relation name is declared twice with different arities"""

    def __init__(self, name: str, expected: int, actual: int):
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Relation {name} declared with arity {expected}, requested with {actual}"
        )


class SpecFormatError(AnalysisError):
    """Raised for an unparseable sources/sinks entry"""

    def __init__(self, line: str, line_no: int = 0):
        self.line = line
        self.line_no = line_no
        super().__init__(f"Line {line_no}: cannot parse source/sink entry: {line!r}")
