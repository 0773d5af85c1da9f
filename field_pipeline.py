"""
Field Pipeline

Executes the directives of each field of a scope, in declaration order, on
both the read and the write path. The read path of a field goes through:

    padding -> byte order -> condition -> magic -> value production
    (default / calc / custom parser / count / nested read) -> map ->
    padding -> postprocess scheduling -> position restore

Fields whose value carries a secondary-resolution hook (file pointers) are
either resolved immediately (inline) or handed to the DeferredRegistry, which
runs once every inline field of the scope has been read so that the hook can
see the complete scope.
"""

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any, Dict, List, Sequence, Tuple

from byte_order import Configuration, Endian, resolve_endian
from expression_evaluator import Scope, evaluate
from format_errors import (
    AssertFail,
    BadMagic,
    BinaryFormatError,
    ContractViolation,
    InvalidCount,
    IoError,
)
from format_types import Record, after_parse, has_after_parse
from stream_cursor import StreamCursor
from two_pass_writer import calculate_function_value


logger = logging.getLogger(__name__)


class PostprocessTiming(Enum):
    INLINE = 'inline'
    DEFERRED = 'deferred'


def magic_bytes(magic, endian: Endian) -> bytes:
    """Canonical bytes of a magic value: raw bytes, or a (type, value) pair."""
    if isinstance(magic, bytes):
        return magic
    value_type, value = magic
    cursor = StreamCursor()
    value_type.write(cursor, Configuration(endian=endian), value)
    return cursor.getvalue()


def check_magic(cursor: StreamCursor, magic, endian: Endian) -> None:
    expected = magic_bytes(magic, endian)
    position = cursor.tell()
    found = cursor.read_exact(len(expected))
    if found != expected:
        raise BadMagic(position, expected, found)


def bind_arguments(name: str, imports: Sequence[str], arguments) -> Dict[str, Any]:
    """Match the arguments of a Configuration with the imports of a type."""
    if isinstance(arguments, Mapping):
        if set(arguments) != set(imports):
            raise ContractViolation(
                f"'{name}' imports {tuple(imports)}, got arguments {tuple(sorted(arguments))}")
        return dict(arguments)

    arguments = tuple(arguments)
    if len(arguments) != len(imports):
        raise ContractViolation(
            f"'{name}' expects {len(imports)} argument(s) {tuple(imports)}, got {len(arguments)}")
    return dict(zip(imports, arguments))


def call_hook(hook, *args) -> Any:
    """Call a user supplied function (map, custom parser...)."""
    try:
        return hook(*args)
    except BinaryFormatError:
        raise
    except OSError as e:
        raise IoError(e) from e
    except Exception as e:
        raise BinaryFormatError(f"{getattr(hook, '__name__', hook)} failed: {e!r}") from e


def run_assertions(assertions, scope: Scope, position: int) -> None:
    """Stop at the first assertion that does not hold."""
    for assertion in assertions:
        if evaluate(assertion.condition, scope):
            continue

        payload = None
        if isinstance(assertion.payload, (tuple, list)):
            payload = tuple(evaluate(_, scope) for _ in assertion.payload)
        elif assertion.payload is not None:
            payload = evaluate(assertion.payload, scope)

        message = assertion.message
        if message is None:
            message = assertion.condition if isinstance(assertion.condition, str) else repr(assertion.condition)
        raise AssertFail(position, message, payload)


class DeferredRegistry:
    """Postprocessing hooks waiting for the whole scope to be read."""

    def __init__(self):
        self._entries: List[Tuple[Any, Configuration]] = []

    def __len__(self):
        return len(self._entries)

    def register(self, directive, config: Configuration) -> None:
        self._entries.append((directive, config))

    def resolve(self, cursor: StreamCursor, scope: Scope) -> None:
        for directive, config in sorted(self._entries, key=lambda _: _[0].index):
            logger.debug("resolving deferred field '%s'", directive.name)
            value = scope.values[directive.name]
            try:
                after_parse(value, cursor, _hook_config(directive, config, scope), scope)
            except BinaryFormatError as e:
                if not directive.try_:
                    raise
                logger.debug("deferred resolution of '%s' failed: %s", directive.name, e)
                scope.set(directive.name, None)


class FieldLayout:
    """Where each written field of a scope landed, used by checksum fields."""

    def __init__(self):
        self.offsets: Dict[str, int] = {}
        self.sizes: Dict[str, int] = {}

    def record(self, name: str, offset: int, size: int) -> None:
        self.offsets[name] = offset
        self.sizes[name] = size


def _hook_config(directive, config: Configuration, scope: Scope) -> Configuration:
    if directive.offset_after is None:
        return config
    return config.derive(offset=evaluate(directive.offset_after, scope))


def _field_config(directive, config: Configuration, endian: Endian, scope: Scope) -> Configuration:
    offset = config.offset if directive.offset is None else evaluate(directive.offset, scope)
    arguments = tuple(evaluate(_, scope) for _ in directive.args)
    return config.derive(endian=endian, arguments=arguments, offset=offset)


def _pad_before(directive, cursor: StreamCursor, scope: Scope, writing: bool) -> None:
    if directive.seek_before is not None:
        position, whence = directive.seek_before
        cursor.seek(evaluate(position, scope), whence)
    if directive.pad_before:
        cursor.skip(evaluate(directive.pad_before, scope), writing=writing)
    if directive.align_before:
        cursor.align(directive.align_before, writing=writing)


def _pad_after(directive, cursor: StreamCursor, value_start: int, scope: Scope, writing: bool) -> None:
    if directive.pad_size_to is not None:
        end = value_start + evaluate(directive.pad_size_to, scope)
        cursor.skip(end - cursor.tell(), writing=writing)
    if directive.pad_after:
        cursor.skip(evaluate(directive.pad_after, scope), writing=writing)
    if directive.align_after:
        cursor.align(directive.align_after, writing=writing)


def _count(directive, scope: Scope, position: int) -> int:
    count = evaluate(directive.count, scope)
    if isinstance(count, float) and count.is_integer():
        count = int(count)
    if isinstance(count, bool) or not isinstance(count, int):
        raise ContractViolation(f"count of '{directive.name}' is not an integer: {count!r}")
    if count < 0:
        raise InvalidCount(count, position)
    return count


def _read_count(directive, cursor: StreamCursor, config: Configuration, scope: Scope) -> List[Any]:
    position = cursor.tell()
    count = _count(directive, scope, position)

    size = getattr(directive.type, 'fixed_size', None)
    if size is not None and count * size > cursor.remaining():
        raise IoError(
            EOFError(f"'{directive.name}' needs {count} x {size} bytes, {cursor.remaining()} left"),
            position)

    return [directive.type.read(cursor, config) for _ in range(count)]


# Read path

def read_fields(descriptor, cursor: StreamCursor, config: Configuration, endian: Endian, start: int) -> Record:
    """Read every field of descriptor, then its deferred fields, then check its assertions."""
    arguments = bind_arguments(descriptor.name, descriptor.imports, config.arguments)
    scope = Scope([_.name for _ in descriptor.fields], arguments)
    registry = DeferredRegistry()
    positions: Dict[str, int] = {}

    for directive in descriptor.fields:
        positions[directive.name] = cursor.tell()
        logger.debug("reading %s.%s at 0x%x", descriptor.name, directive.name, cursor.tell())
        _read_field(directive, cursor, config, endian, scope, registry)

    if registry:
        logger.debug("%s: resolving %d deferred field(s)", descriptor.name, len(registry))
        registry.resolve(cursor, scope)

    for directive in descriptor.fields:
        run_assertions(directive.assertions, scope, positions[directive.name])
    run_assertions(descriptor.assertions, scope, start)

    return Record(scope.values)


def _read_field(directive, cursor: StreamCursor, config: Configuration, endian: Endian,
                scope: Scope, registry: DeferredRegistry) -> None:
    start = cursor.tell()
    _pad_before(directive, cursor, scope, writing=False)

    endian = resolve_endian(endian, directive, scope)

    if directive.condition is not None and not evaluate(directive.condition, scope):
        scope.set(directive.name, None)
    else:
        if directive.magic is not None:
            check_magic(cursor, directive.magic, endian)

        if directive.try_:
            try:
                _produce(directive, cursor, config, endian, scope, registry)
            except BinaryFormatError as e:
                logger.debug("try field '%s' failed, rewinding to 0x%x: %s", directive.name, start, e)
                cursor.seek(start)
                scope.set(directive.name, None)
        else:
            _produce(directive, cursor, config, endian, scope, registry)

    if directive.restore_position:
        cursor.seek(start)


def _produce(directive, cursor: StreamCursor, config: Configuration, endian: Endian,
             scope: Scope, registry: DeferredRegistry) -> None:
    field_config = _field_config(directive, config, endian, scope)
    value_start = cursor.tell()

    if directive.default:
        value = directive.default_value()
    elif directive.calc is not None:
        value = evaluate(directive.calc, scope)
    elif directive.parse_with is not None:
        value = call_hook(directive.parse_with, cursor, field_config)
    elif directive.count is not None:
        value = _read_count(directive, cursor, field_config, scope)
    else:
        value = directive.type.read(cursor, field_config)

    if directive.map is not None:
        value = call_hook(directive.map, value)

    _pad_after(directive, cursor, value_start, scope, writing=False)

    scope.set(directive.name, value)

    if not has_after_parse(value):
        return
    if directive.postprocess is PostprocessTiming.INLINE:
        after_parse(value, cursor, _hook_config(directive, field_config, scope), scope)
    else:
        registry.register(directive, field_config)


# Write path

def write_fields(descriptor, cursor: StreamCursor, config: Configuration, endian: Endian, value) -> None:
    """Write every field of descriptor taking the values from the mapping value."""
    if not isinstance(value, Mapping):
        raise BinaryFormatError(f"Expected dict for struct {descriptor.name}, got {type(value).__name__}")

    arguments = bind_arguments(descriptor.name, descriptor.imports, config.arguments)
    scope = Scope([_.name for _ in descriptor.fields], arguments)
    scope.values.update(value)
    layout = FieldLayout()

    for directive in descriptor.fields:
        logger.debug("writing %s.%s at 0x%x", descriptor.name, directive.name, cursor.tell())
        _write_field(directive, cursor, config, endian, scope, layout)


def _write_field(directive, cursor: StreamCursor, config: Configuration, endian: Endian,
                 scope: Scope, layout: FieldLayout) -> None:
    start = cursor.tell()
    end = cursor.size() if directive.try_ else None
    _pad_before(directive, cursor, scope, writing=True)

    endian = resolve_endian(endian, directive, scope)

    if directive.condition is None or evaluate(directive.condition, scope):
        if directive.magic is not None:
            cursor.write(magic_bytes(directive.magic, endian))

        if not directive.try_:
            _emit(directive, cursor, config, endian, scope, layout)
        elif scope.values.get(directive.name) is not None:
            checkpoint = config.writer.checkpoint() if config.writer is not None else None
            try:
                _emit(directive, cursor, config, endian, scope, layout)
            except BinaryFormatError as e:
                logger.debug("try field '%s' not written, rewinding to 0x%x: %s", directive.name, start, e)
                if checkpoint is not None:
                    config.writer.rollback(checkpoint)
                cursor.truncate(max(start, end))
                cursor.seek(start)

    if directive.restore_position:
        cursor.seek(start)


def _emit(directive, cursor: StreamCursor, config: Configuration, endian: Endian,
          scope: Scope, layout: FieldLayout) -> None:
    field_config = _field_config(directive, config, endian, scope)
    value_start = cursor.tell()
    name = directive.name

    if directive.default:
        pass
    elif directive.calc is not None:
        scope.set(name, evaluate(directive.calc, scope))
    elif directive.function == 'count' and scope.values.get(name, 'auto') == 'auto':
        # element counts do not depend on the written bytes, later counts may need them
        scope.set(name, calculate_function_value(directive.function, directive.function_parameters, b'', scope.values))
        directive.type.write(cursor, field_config, scope.values[name])
    elif directive.function is not None and scope.values.get(name, 'auto') == 'auto':
        if config.writer is None:
            raise ContractViolation(f"computed field '{name}' can only be written by a two-pass writer")
        config.writer.defer_function(directive, field_config, layout, scope)
    else:
        if name not in scope.values:
            raise BinaryFormatError(f"Missing field in data: {name}")
        value = scope.values[name]

        if directive.map is not None and directive.map_inverse is not None:
            value = call_hook(directive.map_inverse, value)

        if directive.write_with is not None:
            call_hook(directive.write_with, cursor, field_config, value)
        elif directive.parse_with is not None:
            raise ContractViolation(f"field '{name}' has a custom parser but no write_with")
        elif directive.count is not None:
            _write_count(directive, cursor, field_config, scope, value)
        else:
            directive.type.write(cursor, field_config, value)

    _pad_after(directive, cursor, value_start, scope, writing=True)
    layout.record(name, value_start, cursor.tell() - value_start)


def _write_count(directive, cursor: StreamCursor, config: Configuration, scope: Scope, value) -> None:
    if not isinstance(value, (list, tuple, bytes, bytearray)):
        raise BinaryFormatError(f"Expected list for array field {directive.name}")

    count = _count(directive, scope, cursor.tell())
    if count != len(value):
        raise ContractViolation(f"'{directive.name}' holds {len(value)} element(s) but its count is {count}")

    for element in value:
        directive.type.write(cursor, config, element)

