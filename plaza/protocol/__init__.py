# Plaza Wire Protocol
# Fixed envelope, closed message-type set, one payload model per type

from plaza.protocol.envelope import (
    PLAZA_TOPIC,
    EnvelopeError,
    MessageType,
    PlazaMessage,
    create_envelope,
    decode_frame,
    now_ms,
)

__all__ = [
    "PLAZA_TOPIC",
    "EnvelopeError",
    "MessageType",
    "PlazaMessage",
    "create_envelope",
    "decode_frame",
    "now_ms",
]
