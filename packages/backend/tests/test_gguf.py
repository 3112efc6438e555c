"""Tests for the GGUF header reader."""

import struct

import pytest

from adapters.ai.gguf import GgufFormatError, read_gguf_header


def test_reads_header(gguf_file):
    header = read_gguf_header(gguf_file)

    assert header.version == 3
    assert header.tensor_count == 0
    assert header.metadata_kv_count == 3
    assert header.architecture == "llama"
    assert header.model_name == "Test Model"
    assert header.context_length == 2048


def test_stops_at_tokenizer_section(tmp_path, make_gguf):
    path = tmp_path / "model.gguf"
    path.write_bytes(make_gguf({
        "general.architecture": "lfm2",
        "tokenizer.ggml.model": "gpt2",
        "general.name": "after tokenizer",
    }))

    header = read_gguf_header(path)

    assert header.architecture == "lfm2"
    assert header.model_name is None
    assert "tokenizer.ggml.model" not in header.metadata


def test_array_values(tmp_path):
    key = b"general.tags"
    data = (
        b"GGUF"
        + struct.pack("<IQQ", 3, 0, 1)
        + struct.pack("<Q", len(key)) + key
        + struct.pack("<IIQ", 9, 4, 2)  # array of two uint32
        + struct.pack("<II", 7, 11)
    )
    path = tmp_path / "model.gguf"
    path.write_bytes(data)

    assert read_gguf_header(path).metadata["general.tags"] == [7, 11]


def test_missing_architecture(tmp_path, make_gguf):
    path = tmp_path / "model.gguf"
    path.write_bytes(make_gguf({}))

    header = read_gguf_header(path)

    assert header.architecture is None
    assert header.context_length is None


def test_bad_magic(tmp_path):
    path = tmp_path / "model.gguf"
    path.write_bytes(b"<!DOCTYPE html><html></html>")

    with pytest.raises(GgufFormatError, match="magic"):
        read_gguf_header(path)


def test_old_version_rejected(tmp_path, make_gguf):
    path = tmp_path / "model.gguf"
    path.write_bytes(make_gguf({}, version=1))

    with pytest.raises(GgufFormatError, match="version"):
        read_gguf_header(path)


def test_truncated(tmp_path, gguf_bytes):
    path = tmp_path / "model.gguf"
    path.write_bytes(gguf_bytes[:30])

    with pytest.raises(GgufFormatError):
        read_gguf_header(path)


def test_empty_file(tmp_path):
    path = tmp_path / "model.gguf"
    path.write_bytes(b"")

    with pytest.raises(GgufFormatError):
        read_gguf_header(path)
