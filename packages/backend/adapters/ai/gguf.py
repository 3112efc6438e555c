"""Minimal GGUF header reader.

Reads the fixed header and the leading ``general.*`` metadata of a GGUF file
so a corrupt or truncated download is rejected before llama.cpp touches it.
Format reference: https://github.com/ggerganov/ggml/blob/master/docs/gguf.md
"""

import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO

GGUF_MAGIC = b"GGUF"

# GGUF metadata value types
_SCALAR_FORMATS = {
    0: "<B",   # uint8
    1: "<b",   # int8
    2: "<H",   # uint16
    3: "<h",   # int16
    4: "<I",   # uint32
    5: "<i",   # int32
    6: "<f",   # float32
    7: "<?",   # bool
    10: "<Q",  # uint64
    11: "<q",  # int64
    12: "<d",  # float64
}
_TYPE_STRING = 8
_TYPE_ARRAY = 9

_MAX_STRING_LEN = 1 << 20


class GgufFormatError(ValueError):
    """The file is not a readable GGUF model."""


@dataclass(frozen=True)
class GgufHeader:
    """GGUF file header and leading metadata."""

    version: int
    tensor_count: int
    metadata_kv_count: int
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def architecture(self) -> str | None:
        return self.metadata.get("general.architecture")

    @property
    def model_name(self) -> str | None:
        return self.metadata.get("general.name")

    @property
    def context_length(self) -> int | None:
        if self.architecture is None:
            return None
        return self.metadata.get(f"{self.architecture}.context_length")


def _read_exact(f: BinaryIO, size: int) -> bytes:
    data = f.read(size)
    if len(data) != size:
        raise GgufFormatError("Unexpected end of file in GGUF header")
    return data


def _unpack(f: BinaryIO, fmt: str) -> Any:
    return struct.unpack(fmt, _read_exact(f, struct.calcsize(fmt)))[0]


def _read_string(f: BinaryIO) -> str:
    length = _unpack(f, "<Q")
    if length > _MAX_STRING_LEN:
        raise GgufFormatError(f"GGUF string too long: {length} bytes")
    return _read_exact(f, length).decode("utf-8", errors="replace")


def _read_value(f: BinaryIO, value_type: int) -> Any:
    if value_type in _SCALAR_FORMATS:
        return _unpack(f, _SCALAR_FORMATS[value_type])
    if value_type == _TYPE_STRING:
        return _read_string(f)
    if value_type == _TYPE_ARRAY:
        item_type = _unpack(f, "<I")
        count = _unpack(f, "<Q")
        return [_read_value(f, item_type) for _ in range(count)]
    raise GgufFormatError(f"Unknown GGUF value type: {value_type}")


def read_gguf_header(path: Path | str, max_kv: int = 64) -> GgufHeader:
    """Read the header of a GGUF file.

    Metadata is read until the tokenizer section (or ``max_kv`` entries),
    which keeps the large vocabulary arrays out of memory.

    Raises:
        GgufFormatError: on a bad magic number, unsupported version or
            truncated header
    """
    with open(path, "rb") as f:
        magic = f.read(4)
        if magic != GGUF_MAGIC:
            raise GgufFormatError(f"Invalid GGUF magic: expected {GGUF_MAGIC!r}, got {magic!r}")

        version = _unpack(f, "<I")
        if version < 2:
            raise GgufFormatError(f"Unsupported GGUF version: {version}")

        tensor_count = _unpack(f, "<Q")
        kv_count = _unpack(f, "<Q")

        metadata: dict[str, Any] = {}
        for _ in range(min(kv_count, max_kv)):
            key = _read_string(f)
            if key.startswith("tokenizer."):
                break
            value_type = _unpack(f, "<I")
            metadata[key] = _read_value(f, value_type)

    return GgufHeader(
        version=version,
        tensor_count=tensor_count,
        metadata_kv_count=kv_count,
        metadata=metadata,
    )
