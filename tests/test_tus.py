"""Tests for the tus metadata codec and header helpers."""
import pytest

from resumable.tus import decode_metadata, encode_metadata, parse_non_negative


def test_encode_metadata():
    assert encode_metadata({"filename": "a.txt", "groupId": "g1"}) == "filename YS50eHQ=,groupId ZzE="


def test_encode_rejects_bad_key():
    with pytest.raises(ValueError):
        encode_metadata({"bad key": "x"})


def test_decode_metadata():
    assert decode_metadata("filename 0L/RgNC40LLQtdGCLnR4dA==,groupId ZzE=,flag") == {
        "filename": "привет.txt",
        "groupId": "g1",
        "flag": "",
    }
    assert decode_metadata("") == {}


def test_decode_rejects_invalid_base64():
    with pytest.raises(ValueError):
        decode_metadata("filename !!!")


def test_parse_non_negative():
    assert parse_non_negative("42", "Upload-Offset") == 42
    for bad in (None, "", "-1", "1.5", "abc"):
        with pytest.raises(ValueError):
            parse_non_negative(bad, "Upload-Offset")
