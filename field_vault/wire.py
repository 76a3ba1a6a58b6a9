"""
Wire encoding of a ProtectedRecord.

UTF-8 JSON, every field tagged so clear values, nested records and
protected fields can never be confused with one another:

    {"fv": 1, "fields": {
        "note":    {"v": "hello"},
        "address": {"r": {...}},
        "ssn":     {"p": {"c": "PII_SSN", "a": "xchacha20poly1305",
                          "k": "ssn-key", "n": 2, "x": "<base64>"}}}}
"""

import base64
import binascii
import json
from typing import Any, Dict

from .errors import EncodingError
from .models import ProtectedField, ProtectedRecord, is_scalar

WIRE_VERSION = 1
MAX_DEPTH = 64


def _encode_fields(record: ProtectedRecord, prefix: str = "", depth: int = 0) -> Dict[str, Any]:
    if depth > MAX_DEPTH:
        raise EncodingError(f"Record at {prefix} is nested deeper than {MAX_DEPTH} levels")
    out = {}
    for name, value in record.items():
        if not isinstance(name, str):
            raise EncodingError(f"Field names must be strings, got {name!r}")
        if isinstance(value, ProtectedField):
            out[name] = {"p": {
                "c": value.sensitivity_class,
                "a": value.algorithm,
                "k": value.key_ref,
                "n": value.key_version,
                "x": base64.b64encode(value.ciphertext).decode("ascii"),
            }}
        elif isinstance(value, dict):
            out[name] = {"r": _encode_fields(value, f"{prefix}{name}.", depth + 1)}
        elif is_scalar(value):
            out[name] = {"v": value}
        else:
            raise EncodingError(f"Field {prefix}{name} has unsupported type {type(value).__name__}")
    return out


def encode(record: ProtectedRecord) -> bytes:
    if not isinstance(record, dict):
        raise EncodingError("Protected record must be a mapping")
    try:
        return json.dumps(
            {"fv": WIRE_VERSION, "fields": _encode_fields(record)},
            separators=(",", ":"),
            allow_nan=False,
        ).encode("utf-8")
    except ValueError as e:
        raise EncodingError(f"Record is not wire-encodable: {e}", cause=e) from e


def _decode_protected(path: str, body: Any) -> ProtectedField:
    if not isinstance(body, dict):
        raise EncodingError(f"Protected field {path} is malformed")
    try:
        cls, alg, ref, version, blob = body["c"], body["a"], body["k"], body["n"], body["x"]
    except KeyError as e:
        raise EncodingError(f"Protected field {path} is missing {e.args[0]!r}") from None
    if not all(isinstance(v, str) for v in (cls, alg, ref, blob)):
        raise EncodingError(f"Protected field {path} has non-string tags")
    if isinstance(version, bool) or not isinstance(version, int):
        raise EncodingError(f"Protected field {path} has a non-integer key version")
    try:
        ciphertext = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncodingError(f"Protected field {path} has invalid base64", cause=e) from e
    return ProtectedField(cls, alg, ref, version, ciphertext)


def _decode_fields(fields: Any, prefix: str = "", depth: int = 0) -> ProtectedRecord:
    if depth > MAX_DEPTH:
        raise EncodingError(f"Record at {prefix} is nested deeper than {MAX_DEPTH} levels")
    if not isinstance(fields, dict):
        raise EncodingError(f"Record at {prefix or '<root>'} is not an object")
    out: ProtectedRecord = {}
    for name, tagged in fields.items():
        path = f"{prefix}{name}"
        if not isinstance(tagged, dict) or len(tagged) != 1:
            raise EncodingError(f"Field {path} is not a tagged value")
        (tag, body), = tagged.items()
        if tag == "v":
            if not is_scalar(body):
                raise EncodingError(f"Field {path} carries a non-scalar clear value")
            out[name] = body
        elif tag == "r":
            out[name] = _decode_fields(body, f"{path}.", depth + 1)
        elif tag == "p":
            out[name] = _decode_protected(path, body)
        else:
            raise EncodingError(f"Field {path} has unknown tag {tag!r}")
    return out


def decode(data: bytes) -> ProtectedRecord:
    """Parse wire bytes. Anything malformed raises EncodingError."""
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise EncodingError(f"Wire data must be bytes, got {type(data).__name__}")
    try:
        doc = json.loads(bytes(data).decode("utf-8"))
    except (UnicodeDecodeError, ValueError, RecursionError) as e:
        raise EncodingError(f"Wire data is not valid JSON: {e}", cause=e) from e
    if not isinstance(doc, dict):
        raise EncodingError("Wire envelope must be an object")
    if doc.get("fv") != WIRE_VERSION:
        raise EncodingError(f"Unsupported wire version: {doc.get('fv')!r}")
    try:
        return _decode_fields(doc.get("fields"))
    except RecursionError as e:
        raise EncodingError("Wire record is nested too deeply", cause=e) from e
