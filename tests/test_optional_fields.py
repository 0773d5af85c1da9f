#!/usr/bin/env python3
"""
Tests for optional (conditional) fields, default fields and computed fields.
"""

import json
import os

import pytest

from binary_format_handler import BinaryFormatHandler, BinaryFormatError


@pytest.fixture
def optional_format():
    return {
        "endianness": "little",
        "description": "Test format with optional fields",
        "fields": [
            {"name": "count", "type": "uint8"},
            {
                "name": "optional_value",
                "type": "uint16",
                "condition": "count > 0"
            },
            {"name": "always_present", "type": "uint32"}
        ]
    }


def test_optional_fields(optional_format, tmp_path):
    """Optional fields are present only when their condition holds."""
    format_file = tmp_path / 'test_format.json'
    format_file.write_text(json.dumps(optional_format, indent=2))

    test_data_with_optional = {
        "count": 5,
        "optional_value": 1234,
        "always_present": 999999
    }
    test_data_without_optional = {
        "count": 0,
        "always_present": 888888
    }

    handler = BinaryFormatHandler(str(format_file))

    with_optional = str(tmp_path / 'test_with_optional.bin')
    handler.serialize_to_binary(test_data_with_optional, with_optional)
    assert handler.deserialize_from_binary(with_optional) == test_data_with_optional

    without_optional = str(tmp_path / 'test_without_optional.bin')
    handler.serialize_to_binary(test_data_without_optional, without_optional)
    restored = handler.deserialize_from_binary(without_optional)
    assert restored["optional_value"] is None
    assert restored["always_present"] == 888888

    # should be 2 for uint16
    assert os.path.getsize(with_optional) - os.path.getsize(without_optional) == 2


def test_if_alias(optional_format):
    optional_format["fields"][1] = {"name": "optional_value", "type": "uint16", "if": "count > 0"}
    handler = BinaryFormatHandler(optional_format)

    assert handler.deserialize_from_binary(b'\x00\x01\x00\x00\x00') == \
        {"count": 0, "optional_value": None, "always_present": 1}


def test_default_and_calc_fields():
    handler = BinaryFormatHandler({
        "fields": [
            {"name": "width", "type": "uint8"},
            {"name": "height", "type": "uint8"},
            {"name": "area", "calc": "width * height"},
            {"name": "reserved", "type": "uint32", "ignore": True},
            {"name": "pixels", "type": "array", "element_type": "uint8", "length_field": "area"},
        ]
    })

    restored = handler.deserialize_from_binary(b'\x02\x02\x01\x02\x03\x04')
    assert restored == {"width": 2, "height": 2, "area": 4, "reserved": 0, "pixels": [1, 2, 3, 4]}

    # computed and default fields are not written back
    assert handler.serialize_to_binary(restored) == b'\x02\x02\x01\x02\x03\x04'


def test_missing_field_in_data():
    handler = BinaryFormatHandler({"fields": [{"name": "a", "type": "uint8"}, {"name": "b", "type": "uint8"}]})

    with pytest.raises(BinaryFormatError) as exc_info:
        handler.serialize_to_binary({"a": 1})
    assert "Missing field in data: b" in str(exc_info.value)
