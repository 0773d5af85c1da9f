"""
Two-pass writer

Phase 1 writes the value with placeholders for every pointer and for every
computed (checksum-like) field. Phase 2 appends the pointer targets, patches
the pointers, then computes the functional fields over the final bytes and
patches them in place.
"""

import logging
import os
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Tuple

import crcmod

from byte_order import Configuration
from format_errors import BinaryFormatError
from stream_cursor import StreamCursor


logger = logging.getLogger(__name__)


class ScopeResolver:
    """Resolves different types of scopes for calculated fields."""

    def __init__(self, field_offsets: Dict[str, int], field_sizes: Dict[str, int]):
        self.field_offsets = field_offsets
        self.field_sizes = field_sizes

    def _offset_of(self, name: str, role: str) -> int:
        offset = self.field_offsets.get(name)
        if offset is None:
            raise BinaryFormatError(f"{role} field '{name}' not found")
        return offset

    def get_scope_data(self, data: bytes, scope_type: str,
                       scope_start: str = None, scope_end: str = None,
                       current_offset: int = 0) -> bytes:
        """Get data based on scope definition."""

        if scope_type in ("all_previous", "from_start"):
            return data[:current_offset]

        elif scope_type == "entire_file":
            return data

        elif scope_type == "field_range":
            if not scope_start or not scope_end:
                raise BinaryFormatError("field_range scope requires both scope_start and scope_end")

            start_offset = self._offset_of(scope_start, "Start")
            end_offset = self._offset_of(scope_end, "End")

            # Include the end field in the range
            return data[start_offset:end_offset + self.field_sizes.get(scope_end, 0)]

        elif scope_type == "from_field":
            if not scope_start:
                raise BinaryFormatError("from_field scope requires scope_start")
            return data[self._offset_of(scope_start, "Start"):current_offset]

        elif scope_type == "to_field":
            if not scope_end:
                raise BinaryFormatError("to_field scope requires scope_end")
            end_offset = self._offset_of(scope_end, "End")
            return data[:end_offset + self.field_sizes.get(scope_end, 0)]

        elif scope_type == "after_field":
            if not scope_start:
                raise BinaryFormatError("after_field scope requires scope_start")
            start_offset = self._offset_of(scope_start, "Start")
            return data[start_offset + self.field_sizes.get(scope_start, 0):current_offset]

        elif scope_type == "last_n_bytes":
            # Get last N bytes before current position
            n_bytes = int(scope_start) if scope_start else 100
            return data[max(0, current_offset - n_bytes):current_offset]

        elif scope_type == "byte_range":
            # "start:end" absolute byte positions
            try:
                start, end = (int(_, 0) for _ in str(scope_start).split(':'))
            except ValueError as e:
                raise BinaryFormatError(f"Invalid byte range format: {scope_start}") from e
            return data[start:end]

        else:
            raise BinaryFormatError(f"Unknown scope type: {scope_type}")


def calculate_function_value(function: str, params: Dict[str, Any], data: bytes,
                             context, own_size: int = 0) -> int:
    """Calculate function value with parameters."""
    if function == "crc32":
        # Create CRC function using crcmod
        crc_func = crcmod.mkCrcFun(
            params.get('polynomial', 0x104C11DB7),  # CRC-32 polynomial
            initCrc=params.get('initial_value', 0xFFFFFFFF),
            rev=params.get('reverse', True),
            xorOut=params.get('xor_out', 0xFFFFFFFF))
        return crc_func(data)

    elif function == "crc16":
        crc_func = crcmod.mkCrcFun(
            params.get('polynomial', 0x18005),  # CRC-16 polynomial
            initCrc=params.get('initial_value', 0xFFFF),
            rev=params.get('reverse', True),
            xorOut=params.get('xor_out', 0x0000))
        return crc_func(data)

    elif function == "count":
        key = params.get("key", "")
        if not key:
            return 0
        list_to_count = context.get(key) or []
        return len(list_to_count) if isinstance(list_to_count, (list, tuple)) else 0

    elif function == "length":
        return (len(data) * params.get('multiplier', 1)) + params.get('offset', 0)

    elif function == "file_size":
        # Get total file size including this field
        return len(data) + own_size

    raise BinaryFormatError(f"Unknown function: {function}")


@dataclass
class PendingPointer:
    placeholder: int
    pointer_type: Any
    target: Any
    config: Configuration


@dataclass
class PendingFunction:
    placeholder: int
    directive: Any
    config: Configuration
    layout: Any
    context: Any


class TwoPassWriter:
    """Collects what cannot be written in stream order and writes it in phase 2."""

    def __init__(self, cursor: StreamCursor):
        self.cursor = cursor
        self.pointers: Deque[PendingPointer] = deque()
        self.functions: List[PendingFunction] = []

    def defer_pointer(self, placeholder: int, pointer_type, target, config: Configuration) -> None:
        self.pointers.append(PendingPointer(placeholder, pointer_type, target, config))

    def defer_function(self, directive, config: Configuration, layout, context) -> None:
        """Write a zero placeholder for directive at the current position."""
        self.functions.append(PendingFunction(self.cursor.tell(), directive, config, layout, context))
        directive.type.write(self.cursor, config, 0)

    def checkpoint(self) -> Tuple[int, int]:
        return len(self.pointers), len(self.functions)

    def rollback(self, checkpoint: Tuple[int, int]) -> None:
        """Forget what was deferred since checkpoint."""
        pointers, functions = checkpoint
        while len(self.pointers) > pointers:
            self.pointers.pop()
        del self.functions[functions:]

    def finish(self) -> None:
        self._emit_pointer_targets()
        self._patch_functions()
        self.cursor.seek(0, os.SEEK_END)

    def _emit_pointer_targets(self) -> None:
        # targets may hold pointers themselves, drain until nothing is left
        while self.pointers:
            pending = self.pointers.popleft()
            position = self.cursor.seek(0, os.SEEK_END)
            pending.pointer_type.target.write(self.cursor, pending.config, pending.target)

            relative = position - pending.config.offset
            if relative < 0:
                raise BinaryFormatError(
                    f"target at 0x{position:x} is before the base offset 0x{pending.config.offset:x}")

            logger.debug('patching pointer at 0x%x with 0x%x', pending.placeholder, relative)
            with self.cursor.seeking(pending.placeholder):
                pending.pointer_type.pointer_type.write(self.cursor, pending.config, relative)

    def _patch_functions(self) -> None:
        for pending in self.functions:
            directive = pending.directive
            params = dict(directive.function_parameters)

            self.cursor.seek(0)
            data = self.cursor.read()

            resolver = ScopeResolver(pending.layout.offsets, pending.layout.sizes)
            scope_data = resolver.get_scope_data(
                data,
                params.get('function_scope', directive.function_scope) or "all_previous",
                params.get('function_scope_start', directive.function_scope_start),
                params.get('function_scope_end', directive.function_scope_end),
                pending.placeholder,
            )

            value = calculate_function_value(
                directive.function, params, scope_data, pending.context,
                own_size=pending.layout.sizes.get(directive.name, 0))

            logger.debug("patching %s '%s' at 0x%x with 0x%x",
                         directive.function, directive.name, pending.placeholder, value)
            with self.cursor.seeking(pending.placeholder):
                directive.type.write(self.cursor, pending.config, value)
