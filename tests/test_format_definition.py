"""Tests for building descriptors from format definitions."""

import json
import os

import pytest

from byte_order import Endian
from field_pipeline import PostprocessTiming
from format_definition import (
    FieldDirective,
    TypeDescriptor,
    UnionDescriptor,
    build_descriptor,
    load_format_definition,
)
from format_errors import BinaryFormatError, ContractViolation
from format_types import CStringType, PointerType, StringType
from variant_selector import VariantMode


def test_load_from_dict_string_and_file(tmp_path):
    definition = {"fields": [{"name": "a", "type": "uint8"}]}
    path = tmp_path / 'format.json'
    path.write_text(json.dumps(definition))

    assert load_format_definition(definition) is definition
    assert load_format_definition(json.dumps(definition)) == definition
    assert load_format_definition(str(path)) == definition
    assert load_format_definition(path) == definition


def test_load_union_definition():
    definition = {"variants": [{"name": "v", "fields": []}]}

    assert load_format_definition(definition) is definition


class TestBuild:

    def test_aliases(self):
        descriptor = build_descriptor({
            "name": "Header",
            "endian": "big",
            "imports": ["limit"],
            "assert": ["version < limit"],
            "fields": [
                {"name": "version", "type": "uint8", "magic": "V"},
                {"name": "flags", "type": "uint8", "if": "version > 1", "try": True},
                {"name": "reserved", "type": "uint16", "ignore": True},
                {"name": "ptr", "type": "pointer", "target": "uint8", "deref_now": True},
                {"name": "tail", "type": "uint8", "seek_before": [-1, "end"], "restore_position": True},
                {"name": "wide", "type": "uint16", "little": True, "pad_before": 1, "align_after": 4},
            ]
        })

        assert descriptor.name == "Header"
        assert descriptor.endian is Endian.BIG
        assert descriptor.imports == ("limit",)
        assert descriptor.assertions[0].condition == "version < limit"

        version, flags, reserved, ptr, tail, wide = descriptor.fields
        assert version.magic == b'V'
        assert flags.condition == "version > 1" and flags.try_
        assert reserved.default
        assert isinstance(ptr.type, PointerType) and ptr.postprocess is PostprocessTiming.INLINE
        assert tail.seek_before == (-1, os.SEEK_END)
        assert wide.endian is Endian.LITTLE
        assert [_.index for _ in descriptor.fields] == [0, 1, 2, 3, 4, 5]

    def test_named_types_in_any_order(self):
        descriptor = build_descriptor({
            "types": {
                "Outer": {"fields": [{"name": "inner", "type": "Inner"}]},
                "Inner": {"fields": [{"name": "value", "type": "uint8"}]},
            },
            "fields": [{"name": "root", "type": "Outer"}]
        })

        outer = descriptor.fields[0].type
        assert outer.name == "Outer"
        assert outer.fields[0].type.name == "Inner"

    def test_recursive_types_are_rejected(self):
        with pytest.raises(ContractViolation) as exc_info:
            build_descriptor({
                "types": {"Loop": {"fields": [{"name": "again", "type": "Loop"}]}},
                "fields": [{"name": "root", "type": "Loop"}]
            })
        assert "contains itself" in str(exc_info.value)

    def test_unknown_type(self):
        with pytest.raises(ContractViolation) as exc_info:
            build_descriptor({"fields": [{"name": "a", "type": "quaternion"}]})
        assert "Unsupported field type: quaternion" in str(exc_info.value)

    def test_strings(self):
        descriptor = build_descriptor({"fields": [
            {"name": "fixed", "type": "string", "size": 8, "encoding": "ascii"},
            {"name": "prefixed", "type": "string"},
            {"name": "terminated", "type": "cstring"},
        ]})

        fixed, prefixed, terminated = (_.type for _ in descriptor.fields)
        assert isinstance(fixed, StringType) and fixed.fixed_size == 8 and fixed.encoding == "ascii"
        assert prefixed.fixed_size is None
        assert isinstance(terminated, CStringType)

    def test_array_without_length(self):
        with pytest.raises(ContractViolation) as exc_info:
            build_descriptor({"fields": [{"name": "a", "type": "array", "element_type": "uint8"}]})
        assert "must have either size or length_field" in str(exc_info.value)

    def test_fixed_size_array(self):
        descriptor = build_descriptor({"fields": [
            {"name": "a", "type": "array", "element_type": "uint8", "size": 3},
        ]})

        assert descriptor.fields[0].count == 3

    def test_union_definition(self):
        descriptor = build_descriptor({
            "return_all_errors": True,
            "variants": {
                "one": {"magic": "1", "fields": [{"name": "a", "type": "uint8"}]},
                "two": {"magic": {"type": "uint16", "value": 2}, "fields": []},
            }
        }, name="Choice")

        assert isinstance(descriptor, UnionDescriptor)
        assert descriptor.name == "Choice"
        assert descriptor.mode is VariantMode.COLLECT_ALL
        assert [_.name for _ in descriptor.variants] == ["one", "two"]
        assert descriptor.variants[1].magic[1] == 2

    def test_tagged_variants_need_the_same_discriminator(self):
        with pytest.raises(ContractViolation):
            build_descriptor({"fields": [{"name": "u", "type": "union", "union_variants": {
                "1": [{"name": "kind", "type": "uint8"}],
                "2": [{"name": "tag", "type": "uint8"}],
            }}]})


class TestValidation:

    def test_duplicate_fields(self):
        with pytest.raises(ContractViolation) as exc_info:
            TypeDescriptor('T', [FieldDirective('a', 'uint8'), FieldDirective('a', 'uint8')])
        assert "duplicate field 'a'" in str(exc_info.value)

    @pytest.mark.parametrize("directive", [
        dict(condition='later > 0'),
        dict(count='later'),
        dict(calc='later + 1'),
        dict(offset='later'),
        dict(pad_before='later'),
        dict(seek_before='later'),
    ])
    def test_inline_expressions_cannot_look_ahead(self, directive):
        with pytest.raises(ContractViolation) as exc_info:
            TypeDescriptor('T', [FieldDirective('first', 'uint8', **directive), FieldDirective('later', 'uint8')])
        assert "not read yet" in str(exc_info.value)

    def test_unknown_name(self):
        with pytest.raises(ContractViolation) as exc_info:
            TypeDescriptor('T', [FieldDirective('a', 'uint8', condition='nothing')])
        assert "unknown name 'nothing'" in str(exc_info.value)

    def test_field_without_type(self):
        with pytest.raises(ContractViolation):
            TypeDescriptor('T', [FieldDirective('a')])

    def test_import_shadowing_a_field(self):
        with pytest.raises(ContractViolation):
            TypeDescriptor('T', [FieldDirective('a', 'uint8')], imports=('a',))

    def test_bad_alignment(self):
        with pytest.raises(ContractViolation):
            FieldDirective('a', 'uint8', align_before=0)

    def test_bad_magic(self):
        with pytest.raises(ContractViolation):
            FieldDirective('a', 'uint8', magic=12)

    def test_pointer_without_target(self):
        with pytest.raises(ContractViolation):
            build_descriptor({"fields": [{"name": "p", "type": "pointer", "target": None}]})

    def test_loader_errors_are_format_errors(self):
        with pytest.raises(BinaryFormatError):
            load_format_definition("{not json}")
