"""Tests for offset-based references: deferred resolution and the two-pass writer."""

import pytest

from binary_format_handler import BinaryFormatHandler, read, write
from byte_order import Configuration, Endian
from field_pipeline import PostprocessTiming
from format_definition import FieldDirective, TypeDescriptor
from format_errors import ContractViolation, IoError
from format_types import FilePointer, make_type
from stream_cursor import StreamCursor


LITTLE = Configuration(endian=Endian.LITTLE)


def pointer_to(target, pointer_type='uint8'):
    return make_type('pointer', pointer_type=pointer_type, target=target)


class TestDeferredResolution:

    def test_deferred_hook_sees_later_siblings(self):
        descriptor = TypeDescriptor('T', [
            FieldDirective('ptr', pointer_to(make_type('uint8')), offset_after='base'),
            FieldDirective('base', 'uint8'),
        ])

        record = read(descriptor, bytes([1, 2, 0xAA, 0xBB]))

        assert record['ptr'].value == 0xBB
        assert record['ptr'].position == 3
        assert record['base'] == 2

    def test_inline_hook_cannot_see_later_siblings(self):
        with pytest.raises(ContractViolation) as exc_info:
            TypeDescriptor('T', [
                FieldDirective('ptr', pointer_to(make_type('uint8')), offset_after='base',
                               postprocess=PostprocessTiming.INLINE),
                FieldDirective('base', 'uint8'),
            ])
        assert "not read yet" in str(exc_info.value)

    def test_inline_hook_fails_at_runtime_on_later_sibling(self):
        descriptor = TypeDescriptor('T', [
            FieldDirective('ptr', pointer_to(make_type('uint8')), offset_after=lambda scope: scope['base'],
                           postprocess=PostprocessTiming.INLINE),
            FieldDirective('base', 'uint8'),
        ])

        with pytest.raises(ContractViolation):
            read(descriptor, bytes([1, 2, 0xAA, 0xBB]))

    def test_inline_hook_with_earlier_sibling(self):
        descriptor = TypeDescriptor('T', [
            FieldDirective('base', 'uint8'),
            FieldDirective('ptr', pointer_to(make_type('uint8')), offset_after='base',
                           postprocess=PostprocessTiming.INLINE),
            FieldDirective('seen', 'uint8', calc=lambda scope: scope['ptr'].value),
        ])

        assert read(descriptor, bytes([2, 1, 0xAA, 0xBB]))['seen'] == 0xBB

    def test_deferred_value_is_not_visible_to_inline_fields(self):
        descriptor = TypeDescriptor('T', [
            FieldDirective('ptr', pointer_to(make_type('uint8'))),
            FieldDirective('seen', 'uint8', calc=lambda scope: scope['ptr'].value),
        ])

        assert read(descriptor, bytes([1, 0xAA]))['seen'] is None

    def test_deferred_resolution_keeps_cursor(self):
        descriptor = TypeDescriptor('T', [
            FieldDirective('ptr', pointer_to(make_type('uint8'))),
            FieldDirective('next', 'uint8'),
        ])
        cursor = StreamCursor(bytes([3, 1, 0, 9]))

        assert descriptor.read(cursor) == {'ptr': FilePointer(3, None, 9), 'next': 1}
        assert cursor.tell() == 2

    def test_pointer_list(self):
        descriptor = TypeDescriptor('T', [FieldDirective('ptrs', pointer_to(make_type('uint8')), count=2)])

        record = read(descriptor, bytes([2, 3, 0x10, 0x20]))
        assert [_.value for _ in record['ptrs']] == [0x10, 0x20]

    def test_configuration_offset_is_the_base(self):
        descriptor = TypeDescriptor('T', [FieldDirective('ptr', pointer_to(make_type('uint8')))])

        assert read(descriptor, bytes([1, 0, 0x10, 0x20]), Configuration(offset=2))['ptr'].value == 0x20

    def test_field_offset_override(self):
        descriptor = TypeDescriptor('T', [
            FieldDirective('base', 'uint8'),
            FieldDirective('ptr', pointer_to(make_type('uint8')), offset='base'),
        ])

        assert read(descriptor, bytes([2, 1, 0x10, 0x20]))['ptr'].value == 0x20

    def test_failed_deferred_try_field_becomes_none(self):
        descriptor = TypeDescriptor('T', [
            FieldDirective('ptr', pointer_to(make_type('uint32')), try_=True),
            FieldDirective('next', 'uint8'),
        ])

        assert read(descriptor, bytes([40, 5])) == {'ptr': None, 'next': 5}

    def test_failed_deferred_field(self):
        descriptor = TypeDescriptor('T', [FieldDirective('ptr', pointer_to(make_type('uint32')))])

        with pytest.raises(IoError):
            read(descriptor, bytes([40]))


class TestTwoPassWriter:

    @pytest.fixture
    def document(self):
        return TypeDescriptor('Doc', [
            FieldDirective('name', pointer_to(make_type('cstring'), 'uint32')),
            FieldDirective('id', 'uint16'),
        ])

    def test_target_is_appended_and_pointer_patched(self, document):
        data = write(document, {'name': 'hi', 'id': 7}, config=LITTLE)

        assert data == b'\x06\x00\x00\x00\x07\x00hi\x00'
        record = read(document, data, LITTLE)
        assert record['name'].value == 'hi'
        assert record['id'] == 7

    def test_round_trip_of_read_record(self, document):
        data = b'\x06\x00\x00\x00\x07\x00hi\x00'

        assert write(document, read(document, data, LITTLE), config=LITTLE) == data

    def test_base_offset(self, document):
        config = Configuration(endian=Endian.LITTLE, offset=2)
        data = write(document, {'name': 'hi', 'id': 7}, config=config)

        assert data[:4] == b'\x04\x00\x00\x00'
        assert read(document, data, config)['name'].value == 'hi'

    def test_none_target_writes_null_pointer(self, document):
        assert write(document, {'name': None, 'id': 1}, config=LITTLE) == b'\x00\x00\x00\x00\x01\x00'

    def test_nested_pointers(self):
        leaf = TypeDescriptor('Leaf', [FieldDirective('value', pointer_to(make_type('uint8')))])
        root = TypeDescriptor('Root', [FieldDirective('leaf', pointer_to(leaf))])

        data = write(root, {'leaf': {'value': 0x55}})

        assert data == bytes([1, 2, 0x55])
        assert read(root, data)['leaf'].value['value'].value == 0x55

    def test_pointer_outside_a_two_pass_write(self):
        pointer = pointer_to(make_type('uint8'))

        with pytest.raises(ContractViolation):
            pointer.write(StreamCursor(), Configuration(), 1)

    def test_pointer_from_definition(self):
        handler = BinaryFormatHandler({
            "endianness": "little",
            "types": {
                "Entry": {"fields": [{"name": "key", "type": "cstring"}, {"name": "value", "type": "uint16"}]}
            },
            "fields": [
                {"name": "count", "type": "uint8"},
                {"name": "entries", "type": "array", "element_type": "pointer", "target": "Entry",
                 "pointer_type": "uint16", "length_field": "count"},
            ]
        })

        data = handler.serialize_to_binary({"count": 2, "entries": [
            {"key": "a", "value": 1},
            {"key": "b", "value": 2},
        ]})

        assert data == b'\x02\x05\x00\x09\x00a\x00\x01\x00b\x00\x02\x00'
        restored = handler.deserialize_from_binary(data)
        assert [_.value for _ in restored["entries"]] == [{"key": "a", "value": 1}, {"key": "b", "value": 2}]
