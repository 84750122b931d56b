"""Wire codec for the chat service.

Every request, response and stream envelope travels as a
google.protobuf.Struct, so the service needs no generated stubs.
Struct stores every number as a double; integral values are turned back
into ints on decode so ids, sizes and millisecond timestamps round-trip.
"""
from google.protobuf import json_format, struct_pb2

SERVICE_NAME = "chatflow.ChatService"


def _normalize(value):
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalize(v) for v in value]
    return value


def to_struct(payload: dict) -> struct_pb2.Struct:
    s = struct_pb2.Struct()
    s.update(payload or {})
    return s


def encode(payload: dict) -> bytes:
    """Serialize a JSON-like dict to Struct bytes."""
    return to_struct(payload).SerializeToString()


def decode(raw: bytes) -> dict:
    """Deserialize Struct bytes into a plain dict."""
    s = struct_pb2.Struct.FromString(raw)
    return _normalize(json_format.MessageToDict(s))


def envelope(event: str, data=None) -> dict:
    return {"event": event, "data": data if data is not None else {}}


def method_path(name: str) -> str:
    return f"/{SERVICE_NAME}/{name}"
