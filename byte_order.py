"""
Byte order resolution and the per-call Configuration snapshot.

Precedence, highest first: field, variant, type, inherited Configuration,
native byte order of the host.
"""

import sys
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping, Optional, Tuple, Union

from expression_evaluator import evaluate


class Endian(Enum):
    BIG = 'big'
    LITTLE = 'little'
    NATIVE = 'native'

    @classmethod
    def parse(cls, value: Union[str, 'Endian', None]) -> Optional['Endian']:
        if value is None or isinstance(value, Endian):
            return value
        aliases = {'be': 'big', 'le': 'little', 'network': 'big', '>': 'big', '<': 'little', '=': 'native'}
        return cls(aliases.get(value.lower(), value.lower()))

    @property
    def byteorder(self) -> str:
        """Name usable with int.from_bytes()/int.to_bytes()."""
        if self is Endian.NATIVE:
            return sys.byteorder
        return self.value

    @property
    def struct_char(self) -> str:
        return '>' if self.byteorder == 'big' else '<'


Arguments = Union[Tuple[Any, ...], Mapping[str, Any]]


@dataclass(frozen=True)
class Configuration:
    """Immutable options passed down a read or a write.

    ``offset`` is the base position offset-based references are relative to.
    ``writer`` is set by the outermost write and shared by the nested ones.
    """
    endian: Endian = Endian.NATIVE
    arguments: Arguments = ()
    offset: int = 0
    writer: Any = field(default=None, compare=False, repr=False)

    def derive(self, **changes) -> 'Configuration':
        return replace(self, **changes)


def resolve_endian(scope_endian: Endian, directive, scope: Mapping) -> Endian:
    """Endianness for a single field.

    ``scope_endian`` already folds variant, type and configuration levels.
    A guard picks one of the two orders: ``is_big`` gives LITTLE when false
    and ``is_little`` gives BIG when false.
    """
    if directive.endian is not None:
        return directive.endian
    if directive.is_big is not None:
        return Endian.BIG if evaluate(directive.is_big, scope) else Endian.LITTLE
    if directive.is_little is not None:
        return Endian.LITTLE if evaluate(directive.is_little, scope) else Endian.BIG
    return scope_endian


def scope_endian(config: Configuration, *levels: Optional[Endian]) -> Endian:
    """First explicit endian among levels (most specific first), else the configured one."""
    for level in levels:
        if level is not None:
            return level
    return config.endian
