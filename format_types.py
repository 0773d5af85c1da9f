"""
Value types understood by the engine.

Every type exposes the same two entry points as a descriptor,
``read(cursor, config)`` and ``write(cursor, config, value)``, plus
``default()`` and, when its size never changes, ``fixed_size``.
"""

import logging
import struct
from typing import Any, Dict, Optional

from byte_order import Configuration
from format_errors import BinaryFormatError, ContractViolation
from stream_cursor import StreamCursor


logger = logging.getLogger(__name__)


class Record(dict):
    """Values of one parsed scope, by field name.

    Records produced by a union remember which variant they came from.
    """

    def __init__(self, *args, variant: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.variant = variant

    def __repr__(self):
        if self.variant is None:
            return super().__repr__()
        return f'{self.variant}{super().__repr__()}'


class ValueType:
    """Base class for leaf types."""

    name = 'value'
    fixed_size: Optional[int] = None

    def __repr__(self):
        return f'<{self.__class__.__name__}({self.name})>'

    def read(self, cursor: StreamCursor, config: Configuration) -> Any:  # pragma: nocover
        raise NotImplementedError

    def write(self, cursor: StreamCursor, config: Configuration, value: Any) -> None:  # pragma: nocover
        raise NotImplementedError

    def default(self) -> Any:
        return None


class IntegerType(ValueType):
    """Integers of any byte width, including the 24-bit ones."""

    def __init__(self, name: str, size: int, signed: bool):
        self.name = name
        self.fixed_size = size
        self.signed = signed

    def read(self, cursor, config):
        data = cursor.read_exact(self.fixed_size)
        return int.from_bytes(data, config.endian.byteorder, signed=self.signed)

    def write(self, cursor, config, value):
        try:
            cursor.write(int(value).to_bytes(self.fixed_size, config.endian.byteorder, signed=self.signed))
        except (OverflowError, TypeError, ValueError) as e:
            raise BinaryFormatError(f"Value out of range for {self.name}: {value!r}") from e

    def default(self):
        return 0


class StructType(ValueType):
    """Types packed by the struct module (floats, chars, booleans)."""

    def __init__(self, name: str, format_char: str, default=0):
        self.name = name
        self.format_char = format_char
        self.fixed_size = struct.calcsize('<' + format_char)
        self._default = default

    def read(self, cursor, config):
        data = cursor.read_exact(self.fixed_size)
        return struct.unpack(config.endian.struct_char + self.format_char, data)[0]

    def write(self, cursor, config, value):
        try:
            cursor.write(struct.pack(config.endian.struct_char + self.format_char, value))
        except struct.error as e:
            raise BinaryFormatError(f"Cannot pack {value!r} as {self.name}: {e}") from e

    def default(self):
        return self._default


class BytesType(ValueType):
    """Raw bytes, a fixed number of them or everything up to the end of the stream."""

    name = 'bytes'

    def __init__(self, size: Optional[int] = None):
        if size is not None and size < 0:
            raise ContractViolation(f"bytes size must be >= 0, got {size}")
        self.fixed_size = size

    def read(self, cursor, config):
        if self.fixed_size is None:
            return cursor.read()
        return cursor.read_exact(self.fixed_size)

    def write(self, cursor, config, value):
        value = bytes(value)
        if self.fixed_size is not None and len(value) != self.fixed_size:
            raise BinaryFormatError(f"must write {self.fixed_size} bytes, got {len(value)}")
        cursor.write(value)

    def default(self):
        return b'\x00' * (self.fixed_size or 0)


class StringType(ValueType):
    """
    Encoded text.

    With a size the string is stored in exactly that many bytes, truncated or
    NUL-padded; without one it is prefixed by its uint32 byte length.
    """

    name = 'string'

    def __init__(self, size: Optional[int] = None, encoding: str = 'utf-8'):
        self.fixed_size = size
        self.encoding = encoding

    def read(self, cursor, config):
        if self.fixed_size:
            data = cursor.read_exact(self.fixed_size)
            # Remove null padding
            return data.rstrip(b'\x00').decode(self.encoding, errors='replace')

        length = PRIMITIVES['uint32'].read(cursor, config)
        return cursor.read_exact(length).decode(self.encoding, errors='replace')

    def write(self, cursor, config, value):
        encoded = value.encode(self.encoding)
        if self.fixed_size:
            cursor.write(encoded[:self.fixed_size].ljust(self.fixed_size, b'\x00'))
        else:
            PRIMITIVES['uint32'].write(cursor, config, len(encoded))
            cursor.write(encoded)

    def default(self):
        return ''


class CStringType(ValueType):
    """NUL terminated string."""

    name = 'cstring'

    def __init__(self, encoding: str = 'utf-8'):
        self.encoding = encoding

    def read(self, cursor, config):
        data = bytearray()
        while True:
            char = cursor.read_exact(1)
            if char == b'\x00':
                break
            data += char
        return data.decode(self.encoding, errors='replace')

    def write(self, cursor, config, value):
        cursor.write(value.encode(self.encoding) + b'\x00')

    def default(self):
        return ''


class FilePointer:
    """
    An offset-based reference as read from the stream.

    ``pointer`` is the raw stored value; the target is materialized into
    ``value`` by after_parse(), relative to the configuration offset in force
    when the hook runs.
    """

    def __init__(self, pointer: int, target_type, value: Any = None):
        self.pointer = pointer
        self.target_type = target_type
        self.position: Optional[int] = None
        self.value = value

    def __repr__(self):
        return f'<{self.__class__.__name__}(0x{self.pointer:x} -> {self.value!r})>'

    def __eq__(self, other):
        if isinstance(other, FilePointer):
            return self.pointer == other.pointer and self.value == other.value
        return NotImplemented

    def after_parse(self, cursor: StreamCursor, config: Configuration, scope) -> None:
        self.position = config.offset + self.pointer
        logger.debug('following pointer 0x%x to 0x%x', self.pointer, self.position)
        with cursor.seeking(self.position):
            self.value = self.target_type.read(cursor, config)
            after_parse(self.value, cursor, config, scope)


class PointerType(ValueType):
    """Stores the position of a target value found elsewhere in the stream."""

    name = 'pointer'

    def __init__(self, pointer_type: IntegerType, target):
        self.pointer_type = pointer_type
        self.target = target
        self.fixed_size = pointer_type.fixed_size

    def __repr__(self):
        return f'<{self.__class__.__name__}({self.pointer_type.name} -> {self.target!r})>'

    def read(self, cursor, config):
        return FilePointer(self.pointer_type.read(cursor, config), self.target)

    def write(self, cursor, config, value):
        target = value.value if isinstance(value, FilePointer) else value
        if target is None:
            self.pointer_type.write(cursor, config, 0)
            return
        if config.writer is None:
            raise ContractViolation('pointer fields can only be written by a two-pass writer')

        config.writer.defer_pointer(cursor.tell(), self, target, config)
        self.pointer_type.write(cursor, config, 0)  # placeholder, patched in pass 2


def after_parse(value: Any, cursor: StreamCursor, config: Configuration, scope) -> None:
    """Run the secondary-resolution hook of a value, element-wise for sequences."""
    if isinstance(value, list):
        for element in value:
            after_parse(element, cursor, config, scope)
    elif hasattr(value, 'after_parse'):
        value.after_parse(cursor, config, scope)


def has_after_parse(value: Any) -> bool:
    if isinstance(value, list):
        return any(has_after_parse(_) for _ in value)
    return hasattr(value, 'after_parse')


# Type mapping for the primitive names usable in a format definition
PRIMITIVES: Dict[str, ValueType] = {
    'int8': IntegerType('int8', 1, True),
    'uint8': IntegerType('uint8', 1, False),
    'int16': IntegerType('int16', 2, True),
    'uint16': IntegerType('uint16', 2, False),
    'int24': IntegerType('int24', 3, True),
    'uint24': IntegerType('uint24', 3, False),
    'int32': IntegerType('int32', 4, True),
    'uint32': IntegerType('uint32', 4, False),
    'int64': IntegerType('int64', 8, True),
    'uint64': IntegerType('uint64', 8, False),
    'float32': StructType('float32', 'f', 0.0),
    'float64': StructType('float64', 'd', 0.0),
    'char': StructType('char', 'c', b'\x00'),
    'bool': StructType('bool', '?', False),
}


def make_type(name: str, size: Optional[int] = None, encoding: str = 'utf-8',
              pointer_type: str = 'uint32', target=None) -> ValueType:
    """Build a leaf type from the name used in a format definition."""
    if name in PRIMITIVES:
        return PRIMITIVES[name]
    if name == 'bytes':
        return BytesType(size)
    if name == 'string':
        return StringType(size, encoding)
    if name == 'cstring':
        return CStringType(encoding)
    if name == 'pointer':
        if target is None:
            raise ContractViolation("pointer type needs a 'target'")
        pointer = PRIMITIVES.get(pointer_type)
        if not isinstance(pointer, IntegerType):
            raise ContractViolation(f"pointer_type must be an integer type, got {pointer_type!r}")
        return PointerType(pointer, target)

    raise ContractViolation(f"Unsupported field type: {name}")
