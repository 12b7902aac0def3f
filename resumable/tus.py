"""Wire constants and metadata codec for the tus 1.0.0 resumable protocol."""
import base64
import binascii
from typing import Dict, Mapping

TUS_VERSION = "1.0.0"
TUS_EXTENSIONS = "creation,termination"
OFFSET_CONTENT_TYPE = "application/offset+octet-stream"

H_RESUMABLE = "Tus-Resumable"
H_VERSION = "Tus-Version"
H_EXTENSION = "Tus-Extension"
H_UPLOAD_LENGTH = "Upload-Length"
H_UPLOAD_OFFSET = "Upload-Offset"
H_UPLOAD_METADATA = "Upload-Metadata"


def encode_metadata(metadata: Mapping[str, str]) -> str:
    """Encode as comma-separated ``key base64(value)`` pairs."""
    pairs = []
    for key, value in metadata.items():
        if not key or " " in key or "," in key:
            raise ValueError(f"Invalid metadata key: {key!r}")
        encoded = base64.b64encode(str(value).encode("utf-8")).decode("ascii")
        pairs.append(f"{key} {encoded}")
    return ",".join(pairs)


def decode_metadata(header: str) -> Dict[str, str]:
    """
    Decode an ``Upload-Metadata`` header.

    Keys without a value decode to an empty string.

    Raises:
        ValueError: if a value is not valid base64 / UTF-8
    """
    metadata: Dict[str, str] = {}
    if not header or not header.strip():
        return metadata
    for pair in header.split(","):
        parts = pair.strip().split(" ")
        key = parts[0]
        if not key:
            continue
        if len(parts) == 1 or not parts[1]:
            metadata[key] = ""
            continue
        try:
            metadata[key] = base64.b64decode(parts[1], validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise ValueError(f"Invalid metadata value for {key!r}") from exc
    return metadata


def parse_non_negative(value: str, header: str) -> int:
    """Parse an integer header value.

    Raises:
        ValueError: if missing, non-numeric or negative
    """
    if value is None or not value.strip().isdigit():
        raise ValueError(f"Invalid {header} header: {value!r}")
    return int(value)
