"""Client-side negotiation of a single two-party call.

Events from the relay are fed to :meth:`NegotiationSession.handle_event` one at
a time (see :meth:`NegotiationSession.run`). Which side offers falls out of
event order: the member already in the room reacts to the other's
``userJoined`` by offering, the newcomer never sees anyone else's join and
waits for the offer.

    idle -> offering -> awaiting_answer -> connected
    idle -> answering -> connected
    any  -> failed | closed
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from errors import NegotiationError, RelayTransportError
from logging_config import get_logger
from schemas.signaling import JoinEvent, RelayedEvent, SignalEvent, SignalKind
from self_filter import accept

logger = get_logger(__name__)

Publish = Callable[[SignalKind, Any], Awaitable[None]]
StatusCallback = Callable[[str, str], None]


class NegotiationState(str, Enum):
    IDLE = "idle"
    OFFERING = "offering"
    AWAITING_ANSWER = "awaiting_answer"
    ANSWERING = "answering"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


TERMINAL_STATES = {NegotiationState.FAILED, NegotiationState.CLOSED}

# A client left out of a call (third member of a room) never flushes its buffer
MAX_PENDING_CANDIDATES = 64


def _candidate_key(payload: dict) -> tuple:
    return (payload.get("candidate"), payload.get("sdpMid"), payload.get("sdpMLineIndex"))


class NegotiationSession:
    """Negotiation state of one client in one room.

    Args:
        local_connection_id: Relay identity of this client, used to discard its own events.
        publish: Coroutine ``publish(kind, payload)`` sending a signal to the room.
        peer_factory: ``peer_factory(on_state_change)`` creating the peer connection.
        on_status: Optional ``on_status(message, level)`` for user-visible status lines.
    """

    def __init__(self, local_connection_id: str, publish: Publish, peer_factory: Callable,
                 on_status: Optional[StatusCallback] = None):
        self.local_connection_id = local_connection_id
        self.publish = publish
        self.peer_factory = peer_factory
        self.on_status = on_status
        self.state = NegotiationState.IDLE
        self.peer = None
        self.pending_candidates: List[dict] = []
        self.applied_candidates = set()
        self.queue: asyncio.Queue = asyncio.Queue()

    # ── status / transitions ────────────────────────────────────────────────

    def _status(self, message: str, level: str = "info"):
        if self.on_status:
            self.on_status(message, level)

    def _transition(self, state: NegotiationState):
        if state != self.state:
            logger.info(f"Negotiation {self.state.value} -> {state.value}")
            self.state = state
            if state in TERMINAL_STATES:
                # Wake run() so it can return
                self.queue.put_nowait(None)

    def _fail(self, message: str):
        if self.state == NegotiationState.CLOSED:
            # Hung up while a handler was awaiting the peer; the error is about a released object
            logger.debug(f"Ignoring failure after hang-up: {message}")
            return
        logger.error(message)
        self._status(message, "error")
        self._transition(NegotiationState.FAILED)

    def _ensure_peer(self):
        # One peer connection per room membership; later requests reuse it
        if self.peer is None:
            self.peer = self.peer_factory(self.on_peer_state)
            logger.debug("Created peer connection")
        return self.peer

    # ── event loop ──────────────────────────────────────────────────────────

    def submit(self, event: RelayedEvent):
        """Queue a relayed event for :meth:`run`."""
        self.queue.put_nowait(event)

    async def run(self):
        """Process queued events one at a time until the session ends."""
        while self.state not in TERMINAL_STATES:
            event = await self.queue.get()
            try:
                if event is not None:
                    await self.handle_event(event)
            finally:
                self.queue.task_done()

    async def handle_event(self, event: RelayedEvent):
        if not accept(event, self.local_connection_id):
            logger.debug(f"Discarding own {type(event).__name__}")
            return
        if self.state in TERMINAL_STATES:
            logger.debug(f"Ignoring {type(event).__name__} in state {self.state.value}")
            return

        try:
            if isinstance(event, JoinEvent):
                await self.on_peer_joined(event)
            elif event.type == SignalKind.OFFER:
                await self.on_offer(event)
            elif event.type == SignalKind.ANSWER:
                await self.on_answer(event)
            elif event.type == SignalKind.CANDIDATE:
                await self.on_candidate(event)
        except NegotiationError as e:
            self._fail(f"Error handling signal: {e}")
        except RelayTransportError as e:
            logger.error(f"Error sending signal: {e}")
            self._fail("Error sending signal")

    # ── handlers ────────────────────────────────────────────────────────────

    async def on_peer_joined(self, event: JoinEvent):
        if self.state != NegotiationState.IDLE:
            logger.info(f"Ignoring join of {event.connectionId} in state {self.state.value}")
            return

        logger.info(f"User {event.connectionId} joined the room, sending offer")
        self._transition(NegotiationState.OFFERING)
        peer = self._ensure_peer()
        offer = await peer.create_offer()
        await self.publish(SignalKind.OFFER, offer)
        if self.state != NegotiationState.OFFERING:
            return
        self._transition(NegotiationState.AWAITING_ANSWER)
        await self._publish_local_candidates()
        logger.info("Offer sent")

    async def on_offer(self, event: SignalEvent):
        if self.state != NegotiationState.IDLE:
            logger.info(f"Ignoring offer from {event.connectionId} in state {self.state.value}")
            return

        self._transition(NegotiationState.ANSWERING)
        peer = self._ensure_peer()
        await peer.set_remote_description(event.signal)
        await self._flush_pending_candidates()
        answer = await peer.create_answer()
        await self.publish(SignalKind.ANSWER, answer)
        if self.state != NegotiationState.ANSWERING:
            return
        self._transition(NegotiationState.CONNECTED)
        await self._publish_local_candidates()
        logger.info("Answer sent")

    async def on_answer(self, event: SignalEvent):
        if self.state != NegotiationState.AWAITING_ANSWER:
            logger.info(f"Ignoring answer from {event.connectionId} in state {self.state.value}")
            return

        await self.peer.set_remote_description(event.signal)
        if self.state != NegotiationState.AWAITING_ANSWER:
            return
        self._transition(NegotiationState.CONNECTED)
        await self._flush_pending_candidates()
        logger.info("Answer received")

    async def on_candidate(self, event: SignalEvent):
        payload = event.signal
        if not isinstance(payload, dict) or not payload.get("candidate"):
            # End-of-candidates marker
            logger.debug("Ignoring empty ICE candidate")
            return

        if self.peer is not None and self.peer.has_remote_description:
            await self._apply_candidate(payload)
        else:
            if len(self.pending_candidates) >= MAX_PENDING_CANDIDATES:
                logger.warning(f"Dropping ICE candidate from {event.connectionId}: {MAX_PENDING_CANDIDATES} already pending")
                return
            self.pending_candidates.append(payload)
            logger.debug(f"Buffered ICE candidate ({len(self.pending_candidates)} pending)")

    async def _apply_candidate(self, payload: dict):
        key = _candidate_key(payload)
        if key in self.applied_candidates:
            logger.debug("Skipping duplicate ICE candidate")
            return
        await self.peer.add_ice_candidate(payload)
        self.applied_candidates.add(key)
        logger.debug("ICE candidate added")

    async def _flush_pending_candidates(self):
        pending, self.pending_candidates = self.pending_candidates, []
        if pending:
            logger.info(f"Applying {len(pending)} buffered ICE candidates")
        for payload in pending:
            if self.state in TERMINAL_STATES:
                return
            await self._apply_candidate(payload)

    async def _publish_local_candidates(self):
        for candidate in self.peer.local_candidates():
            if self.state in TERMINAL_STATES:
                return
            logger.debug("Sending ICE candidate")
            await self.publish(SignalKind.CANDIDATE, candidate)

    # ── peer connection / local actions ─────────────────────────────────────

    def on_peer_state(self, connection_state: str):
        """Callback for peer connection state changes."""
        if self.state in TERMINAL_STATES:
            return
        if connection_state in ("failed", "disconnected"):
            self._fail("Connection lost")
        elif connection_state == "connected":
            self._status("Connected!", "success")

    async def hang_up(self):
        """Close the call. No buffered candidate is applied after this starts."""
        self._transition(NegotiationState.CLOSED)
        self.pending_candidates = []
        peer, self.peer = self.peer, None
        if peer is not None:
            await peer.close()
        self._status("Call ended", "success")
