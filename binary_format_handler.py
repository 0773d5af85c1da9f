#!/usr/bin/env python3
"""
Binary Format Handler

Reads a binary format definition (dictionary, JSON string or JSON file) and
provides serialization/deserialization between Python values and binary data.

Supports:
- Basic numeric types (int8..int64, uint8..uint64, int24, uint24, float32, float64, char, bool)
- Strings (fixed size, length prefixed, NUL terminated) and raw bytes
- Arrays with fixed or computed length, nested structures, tagged unions
- Magic values, conditional/computed fields, padding and alignment
- Offset-based references (pointers) and checksum fields patched in a second pass
"""

import logging
import os
from typing import Any, BinaryIO, Dict, Optional, Union

from byte_order import Configuration, Endian
from format_definition import Descriptor, build_descriptor, load_format_definition
from format_errors import BinaryFormatError
from format_types import Record
from stream_cursor import StreamCursor, as_cursor


logger = logging.getLogger(__name__)

Source = Union[str, bytes, bytearray, BinaryIO, StreamCursor]


def read(descriptor: Descriptor, source: Source, config: Optional[Configuration] = None) -> Record:
    """Read one value of descriptor from bytes, a file path, a file object or a cursor."""
    config = config or Configuration()
    if isinstance(source, StreamCursor):
        return descriptor.read(source, config)
    with StreamCursor(source) as cursor:
        return descriptor.read(cursor, config)


def write(descriptor: Descriptor, value: Any, target: Union[str, BinaryIO, None] = None,
          config: Optional[Configuration] = None) -> bytes:
    """
    Write value as descriptor and return the bytes produced.

    With a target (path or binary file object) the bytes are written there too.
    """
    config = config or Configuration()
    cursor = StreamCursor()
    descriptor.write(cursor, config, value)
    data = cursor.getvalue()

    if target is None:
        return data

    logger.debug("writing %d bytes to %r", len(data), target)
    if isinstance(target, (str, os.PathLike)):
        with StreamCursor(target, mode='wb') as output:
            output.write(data)
    else:
        as_cursor(target).write(data)

    return data


class BinaryFormatHandler:
    """Serializes and deserializes data following one format definition."""

    def __init__(self, format_source: Union[str, Dict[str, Any]]):
        """
        Initialize the handler with a format definition.

        Args:
            format_source: Can be one of:
                - Path to JSON file containing format definition
                - JSON string containing format definition
                - Dictionary containing format definition
        """
        self.format_json_dict = load_format_definition(format_source)
        self.endianness = self.format_json_dict.get('endianness', 'little')
        self.config = Configuration(endian=Endian.parse(self.endianness),
                                    offset=self.format_json_dict.get('offset', 0))
        self.endian_char = self.config.endian.struct_char
        self.descriptor = build_descriptor(self.format_json_dict)

    def serialize_to_binary(self, data: Dict[str, Any], output_file: str = None) -> bytes:
        try:
            return write(self.descriptor, data, output_file, self.config)
        except BinaryFormatError:
            raise
        except Exception as e:
            raise BinaryFormatError(f"Serialization failed: {e}") from e

    def deserialize_from_binary(self, input_source: Source) -> Record:
        """
        Deserialize binary data according to format definition.

        Args:
            input_source: Can be one of:
                - Path to binary file
                - Bytes object containing binary data
                - Binary file object

        Returns:
            Record (a dict) containing the deserialized data
        """
        if not isinstance(input_source, (str, os.PathLike, bytes, bytearray, StreamCursor)) \
                and not hasattr(input_source, 'read'):
            raise BinaryFormatError(
                f"Unsupported input_source type: {type(input_source)}. Must be str (file path) or bytes.")

        try:
            return read(self.descriptor, input_source, self.config)
        except BinaryFormatError:
            raise
        except Exception as e:
            raise BinaryFormatError(f"Deserialization failed: {e}") from e
