"""
Format Definition

Descriptors of a binary layout (types, fields, unions and their variants)
and the loader building them from a format definition: a dictionary, a
JSON string or the path of a JSON file.

Descriptors are checked once, when they are built: a descriptor that exists
only refers to fields in an order the engine can honour.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from byte_order import Configuration, Endian, scope_endian
from expression_evaluator import Expression, referenced_names
from field_pipeline import PostprocessTiming, check_magic, magic_bytes, read_fields, write_fields
from format_errors import BinaryFormatError, ContractViolation
from format_types import PRIMITIVES, PointerType, Record, ValueType, make_type
from stream_cursor import StreamCursor, as_cursor
from two_pass_writer import TwoPassWriter
from variant_selector import VariantMode, select_variant, variant_for_value


logger = logging.getLogger(__name__)


_WHENCE = {'start': os.SEEK_SET, 'current': os.SEEK_CUR, 'end': os.SEEK_END}


def normalize_magic(magic):
    """Magic as raw bytes or as a (ValueType, value) pair."""
    if magic is None or isinstance(magic, bytes):
        return magic
    if isinstance(magic, bytearray):
        return bytes(magic)
    if isinstance(magic, str):
        return magic.encode('latin-1')
    if isinstance(magic, dict):
        magic = (magic.get('type'), magic.get('value'))
    if isinstance(magic, (tuple, list)) and len(magic) == 2:
        value_type, value = magic
        if isinstance(value_type, str):
            value_type = make_type(value_type)
        if isinstance(value_type, ValueType) and value_type.fixed_size is not None:
            return value_type, value
    raise ContractViolation(f"Invalid magic: {magic!r}")


@dataclass
class Assertion:
    condition: Expression
    message: Optional[str] = None
    payload: Any = None


def as_assertion(assertion) -> Assertion:
    if isinstance(assertion, Assertion):
        return assertion
    if isinstance(assertion, dict):
        return Assertion(assertion['condition'], assertion.get('message'), assertion.get('payload'))
    if isinstance(assertion, (tuple, list)):
        return Assertion(*assertion)
    return Assertion(assertion)


@dataclass
class FieldDirective:
    """
    Everything the pipeline needs to read or write one field.

    ``type`` is a value type or a nested descriptor; a string names a
    primitive. Expressions are strings in the expression language or callables
    receiving the Scope.
    """
    name: str
    type: Any = None
    index: int = 0
    endian: Optional[Endian] = None
    is_big: Optional[Expression] = None
    is_little: Optional[Expression] = None
    magic: Any = None
    condition: Optional[Expression] = None
    default: bool = False
    postprocess: PostprocessTiming = PostprocessTiming.DEFERRED
    offset: Optional[Expression] = None
    offset_after: Optional[Expression] = None
    pad_before: Optional[Expression] = None
    pad_after: Optional[Expression] = None
    align_before: Optional[int] = None
    align_after: Optional[int] = None
    seek_before: Optional[Tuple[Expression, int]] = None
    pad_size_to: Optional[Expression] = None
    count: Optional[Expression] = None
    map: Optional[Callable[[Any], Any]] = None
    map_inverse: Optional[Callable[[Any], Any]] = None
    parse_with: Optional[Callable[[StreamCursor, Configuration], Any]] = None
    write_with: Optional[Callable[[StreamCursor, Configuration, Any], None]] = None
    calc: Optional[Expression] = None
    try_: bool = False
    restore_position: bool = False
    args: List[Expression] = field(default_factory=list)
    assertions: List[Assertion] = field(default_factory=list)
    function: Optional[str] = None  # Function to calculate field value (e.g., "crc32")
    function_scope: Optional[str] = 'all_previous'
    function_scope_start: Optional[str] = None
    function_scope_end: Optional[str] = None
    function_parameters: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.type, str):
            self.type = make_type(self.type)
        self.endian = Endian.parse(self.endian)
        overrides = [_ for _ in (self.endian, self.is_big, self.is_little) if _ is not None]
        if len(overrides) > 1:
            raise ContractViolation(f"'{self.name}': only one of endian, is_big and is_little may be given")
        self.magic = normalize_magic(self.magic)
        if isinstance(self.postprocess, str):
            self.postprocess = PostprocessTiming(self.postprocess)
        if self.seek_before is not None and not isinstance(self.seek_before, tuple):
            self.seek_before = (self.seek_before, os.SEEK_SET)
        for alignment in (self.align_before, self.align_after):
            if alignment is not None and (not isinstance(alignment, int) or alignment <= 0):
                raise ContractViolation(f"'{self.name}': alignment must be a positive integer, got {alignment!r}")
        self.args = list(self.args)
        self.assertions = [as_assertion(_) for _ in self.assertions]

    def default_value(self) -> Any:
        if self.type is None:
            return None
        return self.type.default()

    def inline_expressions(self) -> List[Tuple[str, Expression]]:
        """Expressions evaluated while the field itself is being read."""
        expressions = [
            ('if', self.condition), ('calc', self.calc), ('count', self.count),
            ('is_big', self.is_big), ('is_little', self.is_little), ('offset', self.offset),
            ('pad_before', self.pad_before), ('pad_after', self.pad_after),
            ('pad_size_to', self.pad_size_to),
        ]
        if self.seek_before is not None:
            expressions.append(('seek_before', self.seek_before[0]))
        expressions.extend(('args', _) for _ in self.args)
        if self.postprocess is PostprocessTiming.INLINE:
            expressions.append(('offset_after', self.offset_after))
        return [(key, expression) for key, expression in expressions if expression is not None]


def _imports_of(field_type) -> Optional[Tuple[str, ...]]:
    """Imports of the type a field's args are passed to, None for leaf types."""
    if isinstance(field_type, PointerType):
        field_type = field_type.target
    return getattr(field_type, 'imports', None)


def _check_names(owner: str, key: str, expression: Expression, visible: Set[str], declared: Set[str]) -> None:
    for name in referenced_names(expression):
        if name in visible:
            continue
        if name in declared:
            raise ContractViolation(
                f"'{owner}' {key} expression {expression!r} refers to '{name}', "
                f"which is not read yet at that point")
        raise ContractViolation(f"'{owner}' {key} expression {expression!r} refers to unknown name '{name}'")


def validate_scope(descriptor) -> None:
    """Reject references the pipeline could not resolve when reading descriptor."""
    declared: Set[str] = set()
    for directive in descriptor.fields:
        if directive.name in declared:
            raise ContractViolation(f"duplicate field '{directive.name}' in '{descriptor.name}'")
        declared.add(directive.name)

    imports = set(descriptor.imports)
    clash = imports & declared
    if clash:
        raise ContractViolation(f"'{descriptor.name}' imports {sorted(clash)} shadowing its own fields")

    visible = set(imports)
    for directive in descriptor.fields:
        owner = f"{descriptor.name}.{directive.name}"

        if directive.type is None and directive.calc is None and directive.parse_with is None \
                and not directive.default:
            raise ContractViolation(f"'{owner}' has no type")

        for key, expression in directive.inline_expressions():
            own = {directive.name} if key == 'offset_after' else set()
            _check_names(owner, key, expression, visible | own, declared)

        if directive.offset_after is not None:
            _check_names(owner, 'offset_after', directive.offset_after, declared | imports, declared)

        callee_imports = _imports_of(directive.type)
        if callee_imports is None:
            if directive.args:
                raise ContractViolation(f"'{owner}' passes args to a type without imports")
        elif len(directive.args) != len(callee_imports):
            raise ContractViolation(
                f"'{owner}' passes {len(directive.args)} argument(s), "
                f"its type imports {len(callee_imports)} {tuple(callee_imports)}")

        for assertion in directive.assertions:
            _check_names(owner, 'assert', assertion.condition, declared | imports, declared)

        visible.add(directive.name)

    for assertion in descriptor.assertions:
        _check_names(descriptor.name, 'assert', assertion.condition, declared | imports, declared)


@dataclass
class TypeDescriptor:
    """A structured type: ordered fields plus type-level magic, endian, imports and assertions."""
    name: str
    fields: List[FieldDirective]
    magic: Any = None
    endian: Optional[Endian] = None
    imports: Tuple[str, ...] = ()
    assertions: List[Assertion] = field(default_factory=list)

    fixed_size = None
    validate_on_init = True

    def __post_init__(self):
        self.fields = list(self.fields)
        self.magic = normalize_magic(self.magic)
        self.endian = Endian.parse(self.endian)
        self.imports = tuple(self.imports)
        self.assertions = [as_assertion(_) for _ in self.assertions]
        for index, directive in enumerate(self.fields):
            directive.index = index
        if self.validate_on_init:
            self.validate()

    def validate(self) -> None:
        validate_scope(self)

    def default(self) -> Record:
        return Record((_.name, _.default_value()) for _ in self.fields)

    def read(self, cursor, config: Optional[Configuration] = None) -> Record:
        cursor = as_cursor(cursor)
        config = config or Configuration()
        endian = scope_endian(config, self.endian)
        start = cursor.tell()

        if self.magic is not None:
            check_magic(cursor, self.magic, endian)

        return read_fields(self, cursor, config, endian, start)

    def write(self, cursor, config: Optional[Configuration] = None, value=None) -> None:
        cursor = as_cursor(cursor)
        config = config or Configuration()
        if config.writer is None:
            writer = TwoPassWriter(cursor)
            self.write(cursor, config.derive(writer=writer), value)
            writer.finish()
            return

        endian = scope_endian(config, self.endian)
        if self.magic is not None:
            cursor.write(magic_bytes(self.magic, endian))

        write_fields(self, cursor, config, endian, value)


@dataclass
class VariantDescriptor(TypeDescriptor):
    """
    One shape of a union. Its magic is its discriminant; without one the
    variant is recognised by trial parsing. Checked by the union owning it,
    once it has taken the union's imports.
    """
    validate_on_init = False


@dataclass
class UnionDescriptor:
    """A tagged union: variants tried in declaration order."""
    name: str
    variants: Sequence[VariantDescriptor]
    mode: VariantMode = VariantMode.FIRST_MATCH
    magic: Any = None
    endian: Optional[Endian] = None
    imports: Tuple[str, ...] = ()
    discriminator: Optional[str] = None

    fixed_size = None

    def __post_init__(self):
        self.variants = tuple(self.variants)
        if not self.variants:
            raise ContractViolation(f"union '{self.name}' has no variants")
        if isinstance(self.mode, str):
            self.mode = VariantMode(self.mode)
        self.magic = normalize_magic(self.magic)
        self.endian = Endian.parse(self.endian)
        self.imports = tuple(self.imports)

        names = [_.name for _ in self.variants]
        if len(set(names)) != len(names):
            raise ContractViolation(f"union '{self.name}' has duplicate variant names {names}")

        for variant in self.variants:
            if not variant.imports:
                variant.imports = self.imports
            elif variant.imports != self.imports:
                raise ContractViolation(
                    f"variant '{variant.name}' imports {variant.imports}, union '{self.name}' {self.imports}")
            variant.validate()

    def default(self) -> Record:
        record = self.variants[0].default()
        record.variant = self.variants[0].name
        return record

    def read(self, cursor, config: Optional[Configuration] = None) -> Record:
        cursor = as_cursor(cursor)
        config = config or Configuration()
        endian = scope_endian(config, self.endian)

        if self.magic is not None:
            check_magic(cursor, self.magic, endian)

        return select_variant(self, cursor, config.derive(endian=endian))

    def write(self, cursor, config: Optional[Configuration] = None, value=None) -> None:
        cursor = as_cursor(cursor)
        config = config or Configuration()
        if config.writer is None:
            writer = TwoPassWriter(cursor)
            self.write(cursor, config.derive(writer=writer), value)
            writer.finish()
            return

        endian = scope_endian(config, self.endian)
        if self.magic is not None:
            cursor.write(magic_bytes(self.magic, endian))

        variant_for_value(self, value).write(cursor, config.derive(endian=endian), value)


Descriptor = Union[TypeDescriptor, UnionDescriptor]


# Loading

def load_format_definition(format_source: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Load and validate format definition from various sources."""
    try:
        # If it's already a dictionary, use it directly
        if isinstance(format_source, dict):
            format_def = format_source
        elif isinstance(format_source, (str, os.PathLike)):
            # Check if it's a JSON string or file path
            text = str(format_source).strip()
            if text.startswith('{') and text.endswith('}'):
                # It's a JSON string
                format_def = json.loads(text)
            else:
                # It's a file path
                with open(format_source, 'r', encoding='utf-8') as f:
                    format_def = json.load(f)
        else:
            raise BinaryFormatError(f"Unsupported format_source type: {type(format_source)}")

        # Validate the format definition
        if 'fields' not in format_def and 'variants' not in format_def:
            raise BinaryFormatError("Format definition must contain 'fields' key")

        return format_def

    except BinaryFormatError:
        raise
    except FileNotFoundError as e:
        raise BinaryFormatError(f"Format file not found: {format_source}") from e
    except json.JSONDecodeError as e:
        raise BinaryFormatError(f"Invalid JSON in format definition: {e}") from e
    except Exception as e:
        raise BinaryFormatError(f"Error loading format definition: {e}") from e


class DefinitionBuilder:
    """Turns a loaded format definition into descriptors."""

    def __init__(self, types: Optional[Dict[str, Any]] = None):
        self.type_defs = dict(types or {})
        self.types: Dict[str, Any] = {}
        self._building: List[str] = []

    def named_type(self, name: str):
        if name in self.types:
            return self.types[name]
        if name not in self.type_defs:
            raise ContractViolation(f"Unsupported field type: {name}")
        if name in self._building:
            raise ContractViolation(f"type '{name}' contains itself: {' -> '.join(self._building + [name])}")

        self._building.append(name)
        try:
            built = self.build_type(self.type_defs[name], name)
        finally:
            self._building.pop()
        self.types[name] = built
        return built

    def build_type(self, definition: Dict[str, Any], name: str):
        """Descriptor of a struct or union definition."""
        if 'variants' in definition or 'union_variants' in definition:
            return self.build_union(definition, name)

        return TypeDescriptor(
            name=definition.get('name', name),
            fields=[self.build_field(_) for _ in definition.get('fields', [])],
            magic=definition.get('magic'),
            endian=definition.get('endian'),
            imports=definition.get('imports', definition.get('import', ())),
            assertions=definition.get('assertions', definition.get('assert', [])),
        )

    def build_union(self, definition: Dict[str, Any], name: str) -> UnionDescriptor:
        mode = definition.get('mode', VariantMode.FIRST_MATCH)
        if definition.get('return_all_errors'):
            mode = VariantMode.COLLECT_ALL

        discriminator = None
        if 'union_variants' in definition:
            variants, discriminator = self._tagged_variants(definition['union_variants'])
        else:
            variant_defs = definition['variants']
            if isinstance(variant_defs, dict):
                variant_defs = [dict(_, name=key) for key, _ in variant_defs.items()]
            variants = [self.build_variant(_) for _ in variant_defs]

        return UnionDescriptor(
            name=definition.get('name', name),
            variants=variants,
            mode=mode,
            magic=definition.get('magic'),
            endian=definition.get('endian'),
            imports=definition.get('imports', definition.get('import', ())),
            discriminator=discriminator,
        )

    def build_variant(self, definition: Dict[str, Any]) -> VariantDescriptor:
        return VariantDescriptor(
            name=definition['name'],
            fields=[self.build_field(_) for _ in definition.get('fields', [])],
            magic=definition.get('magic'),
            endian=definition.get('endian'),
            imports=definition.get('imports', definition.get('import', ())),
            assertions=definition.get('assertions', definition.get('assert', [])),
        )

    def _tagged_variants(self, union_variants: Dict[str, List[Dict[str, Any]]]):
        """
        Variants keyed by the value of their leading discriminator field. The
        discriminator becomes the variant magic and stays visible in the
        record as a computed field.
        """
        variants = []
        discriminator = None
        for key, field_defs in union_variants.items():
            if not field_defs:
                raise ContractViolation(f"union variant '{key}' has no discriminator field")
            head, rest = field_defs[0], field_defs[1:]
            discriminator = discriminator or head['name']
            if head['name'] != discriminator:
                raise ContractViolation(
                    f"union variant '{key}' starts with '{head['name']}', expected '{discriminator}'")

            value = int(key, 0) if isinstance(key, str) else int(key)
            discriminator_type = head.get('type', 'uint8')
            if discriminator_type not in PRIMITIVES:
                raise ContractViolation(f"Unsupported discriminator type: {discriminator_type}")

            variants.append(VariantDescriptor(
                name=str(value),
                fields=[FieldDirective(discriminator, type=discriminator_type, calc=value)]
                + [self.build_field(_) for _ in rest],
                magic=(discriminator_type, value),
            ))
        return variants, discriminator

    def resolve_type(self, field_def: Dict[str, Any], type_name=None):
        """Value type or descriptor for the 'type' of a field definition."""
        type_name = field_def.get('type') if type_name is None else type_name
        name = field_def['name']

        if type_name is None:
            return None
        if isinstance(type_name, dict):
            return self.build_type(type_name, type_name.get('name', name))
        if not isinstance(type_name, str):
            return type_name

        if type_name == 'struct':
            return TypeDescriptor(
                name=name,
                fields=[self.build_field(_) for _ in field_def.get('fields', [])],
                imports=field_def.get('imports', ()),
            )
        if type_name == 'union':
            return self.build_union(field_def, name)
        if type_name == 'pointer':
            return make_type(
                'pointer',
                pointer_type=field_def.get('pointer_type', 'uint32'),
                target=self.resolve_type({'name': name}, field_def.get('target')))
        if type_name in self.type_defs or type_name in self.types:
            return self.named_type(type_name)

        return make_type(type_name, field_def.get('size'), field_def.get('encoding', 'utf-8'))

    def build_field(self, field_def: Dict[str, Any]) -> FieldDirective:
        """Parse a field definition from the format definition."""
        count = field_def.get('count')
        if field_def.get('type') == 'array':
            # For arrays, the directive type is the element type
            element_def = {'name': field_def['name'], 'type': field_def.get('element_type')}
            for key in ('size', 'encoding', 'union_variants', 'variants', 'pointer_type', 'target'):
                if key in field_def:
                    element_def[key] = field_def[key]
            if 'element_fields' in field_def:
                element_def['fields'] = field_def['element_fields']
            if element_def['type'] in ('bytes', 'string'):
                element_def['size'] = field_def.get('element_size')

            field_type = self.resolve_type(element_def)
            if count is None:
                count = field_def.get('length_field', field_def.get('size'))
            if count is None:
                raise ContractViolation(
                    f"Array field {field_def['name']} must have either size or length_field defined")
        else:
            field_type = self.resolve_type(field_def)

        endian = field_def.get('endian')
        if field_def.get('big'):
            endian = Endian.BIG
        elif field_def.get('little'):
            endian = Endian.LITTLE

        postprocess = field_def.get('postprocess', PostprocessTiming.DEFERRED)
        if field_def.get('postprocess_now') or field_def.get('deref_now'):
            postprocess = PostprocessTiming.INLINE

        seek_before = field_def.get('seek_before')
        if isinstance(seek_before, (list, tuple)):
            position, whence = seek_before
            seek_before = (position, _WHENCE.get(whence, whence))

        return FieldDirective(
            name=field_def['name'],
            type=field_type,
            endian=endian,
            is_big=field_def.get('is_big'),
            is_little=field_def.get('is_little'),
            magic=field_def.get('magic'),
            condition=field_def.get('if', field_def.get('condition')),
            default=bool(field_def.get('default', field_def.get('ignore', False))),
            postprocess=postprocess,
            offset=field_def.get('offset'),
            offset_after=field_def.get('offset_after'),
            pad_before=field_def.get('pad_before'),
            pad_after=field_def.get('pad_after'),
            align_before=field_def.get('align_before'),
            align_after=field_def.get('align_after'),
            seek_before=seek_before,
            pad_size_to=field_def.get('pad_size_to'),
            count=count,
            map=field_def.get('map'),
            map_inverse=field_def.get('map_inverse'),
            parse_with=field_def.get('parse_with'),
            write_with=field_def.get('write_with'),
            calc=field_def.get('calc'),
            try_=bool(field_def.get('try', field_def.get('try_', False))),
            restore_position=bool(field_def.get('restore_position', False)),
            args=field_def.get('args', []),
            assertions=field_def.get('assertions', field_def.get('assert', [])),
            function=field_def.get('function'),
            function_scope=field_def.get('function_scope', 'all_previous'),
            function_scope_start=field_def.get('function_scope_start'),
            function_scope_end=field_def.get('function_scope_end'),
            function_parameters=field_def.get('function_parameters', {}),
        )


def build_descriptor(format_def: Dict[str, Any], name: str = None) -> Descriptor:
    """Descriptor of the top-level type of a loaded format definition."""
    builder = DefinitionBuilder(format_def.get('types'))
    for type_name in builder.type_defs:
        builder.named_type(type_name)

    descriptor = builder.build_type(format_def, name or format_def.get('name', 'root'))
    logger.debug("built descriptor '%s' (%d named type(s))", descriptor.name, len(builder.types))
    return descriptor
