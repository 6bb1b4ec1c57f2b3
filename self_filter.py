"""Discard relayed events that originated from this client.

The relay broadcasts to every room member, the sender included, so each
client compares the sender identity embedded in the payload with its own
connection identity.
"""

from schemas.signaling import RelayedEvent


def sender_of(event: RelayedEvent) -> str:
    return event.connectionId


def accept(event: RelayedEvent, local_connection_id: str) -> bool:
    """Return False for events this client sent itself."""
    return sender_of(event) != local_connection_id
