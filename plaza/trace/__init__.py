# Message Log
# Bounded append-only record of inbound envelopes for the query surface

from plaza.trace.store import MessageLog

__all__ = ["MessageLog"]
