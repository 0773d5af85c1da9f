"""
Variant Selector & Error Aggregator

Picks the active shape of a tagged union by trying its variants in
declaration order. Every failed trial puts the cursor back where the trial
started, so nothing read by one variant leaks into the next.
"""

import logging
from collections.abc import Mapping
from enum import Enum
from typing import List, Tuple

from byte_order import Configuration
from format_errors import (
    BadMagic,
    BinaryFormatError,
    ContractViolation,
    EnumErrors,
    IoError,
    NoVariantMatch,
)
from format_types import Record
from stream_cursor import StreamCursor


logger = logging.getLogger(__name__)


class VariantMode(Enum):
    FIRST_MATCH = 'first_match'
    COLLECT_ALL = 'collect_all'


def _is_misuse(error: BinaryFormatError) -> bool:
    # a negative count read from the data is still a failed trial
    return isinstance(error, ContractViolation) and not isinstance(error, IoError)


def select_variant(union, cursor: StreamCursor, config: Configuration) -> Record:
    """Read the first variant of union that parses; config carries the union endian."""
    start = cursor.tell()
    errors: List[Tuple[str, BinaryFormatError]] = []

    for variant in union.variants:
        logger.debug("%s: trying variant '%s' at 0x%x", union.name, variant.name, start)
        try:
            record = variant.read(cursor, config)
        except BinaryFormatError as e:
            if _is_misuse(e):
                raise
            logger.debug("%s: variant '%s' failed: %s", union.name, variant.name, e)
            cursor.seek(start)
            errors.append((variant.name, e))
            continue

        record.variant = variant.name
        return record

    if union.mode is VariantMode.COLLECT_ALL:
        raise EnumErrors(start, errors)

    # a discriminant mismatch at the very start tells nothing about the data
    distinguishing = [
        error for _, error in errors
        if not (isinstance(error, BadMagic) and error.position == start)
    ]
    if distinguishing:
        raise distinguishing[-1]

    raise NoVariantMatch(start, errors)


def variant_for_value(union, value):
    """The variant a value must be written with, from its own discriminant."""
    name = getattr(value, 'variant', None)
    if name is None and isinstance(value, Mapping):
        name = value.get('variant')
        discriminator = getattr(union, 'discriminator', None)
        if name is None and discriminator is not None and value.get(discriminator) is not None:
            name = str(value[discriminator])
    if name is None and len(union.variants) == 1:
        return union.variants[0]

    for variant in union.variants:
        if variant.name == name:
            return variant

    raise ContractViolation(f"{union.name}: unknown variant {name!r} for value {value!r}")
