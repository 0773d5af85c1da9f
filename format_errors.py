"""
Format Errors

Exception hierarchy shared by the descriptor loader and the read/write engine.
Malformed-input errors always carry the stream position where they happened.
"""

from typing import Any, List, Optional, Tuple


class BinaryFormatError(Exception):
    """Custom exception for binary format errors."""
    pass


class BadMagic(BinaryFormatError):
    """A magic value did not match the bytes found in the stream."""

    def __init__(self, position: int, expected: bytes = None, found: bytes = None):
        self.position = position
        self.expected = expected
        self.found = found
        super().__init__(
            f"bad magic at 0x{position:x}: expected {expected!r}, found {found!r}")


class AssertFail(BinaryFormatError):
    """An assertion declared on a type or a field evaluated to false."""

    def __init__(self, position: int, message: str, payload: Any = None):
        self.position = position
        self.message = message
        self.payload = payload
        super().__init__(f"assertion failed at 0x{position:x}: {message}")


class IoError(BinaryFormatError):
    """Wraps a failure of the underlying stream (including unexpected EOF)."""

    def __init__(self, underlying: BaseException, position: Optional[int] = None):
        self.underlying = underlying
        self.position = position
        where = f" at 0x{position:x}" if position is not None else ""
        super().__init__(f"I/O error{where}: {underlying}")


class ContractViolation(BinaryFormatError):
    """Misuse of the engine: bad argument arity, illegal reference order..."""

    def __init__(self, description: str):
        self.description = description
        super().__init__(description)


class ExpressionError(ContractViolation):
    """Custom exception for expression evaluation errors."""
    pass


class InvalidCount(IoError, ContractViolation):
    """A count directive produced a negative length."""

    def __init__(self, count: int, position: Optional[int] = None):
        self.count = count
        description = f"invalid element count {count}"
        IoError.__init__(self, ValueError(description), position)
        self.description = description


VariantErrors = List[Tuple[str, BinaryFormatError]]


def _describe(errors: VariantErrors) -> str:
    return '; '.join(f"{name}: {error}" for name, error in errors)


class NoVariantMatch(BinaryFormatError):
    """No variant of a union could be parsed."""

    def __init__(self, position: int, errors: VariantErrors):
        self.position = position
        self.errors = errors
        super().__init__(f"no variant matched at 0x{position:x} ({_describe(errors)})")


class EnumErrors(BinaryFormatError):
    """Every variant failed; holds exactly one error per variant, in declaration order."""

    def __init__(self, position: int, errors: VariantErrors):
        self.position = position
        self.errors = errors
        super().__init__(f"all {len(errors)} variants failed at 0x{position:x} ({_describe(errors)})")
