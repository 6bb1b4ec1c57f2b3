from fastapi import APIRouter, Depends, Request
from schemas.signaling import JoinRoomRequest, SendSignalRequest, SuccessResponse, NegotiateResponse, SignalKind
from backend import RedisBackend, get_relay_backend
from errors import ValidationError
from logging_config import get_logger

logger = get_logger(__name__)

signaling_router = APIRouter(prefix="/api", tags=["signaling"])

JOIN_ROOM_MISSING = "Missing required fields: roomId, connectionId"
SEND_SIGNAL_MISSING = "Missing required fields: roomId, signal, type, connectionId"
SIGNAL_TYPES = {kind.value for kind in SignalKind}


@signaling_router.get("/negotiate", response_model=NegotiateResponse)
async def negotiate(request: Request):
    # Tells a client where to open its relay connection.
    # Response 200: { "url": "wss://api.example.com/api/ws" }
    base_url = str(request.base_url).rstrip('/')
    ws_base = base_url.replace("http://", "ws://").replace("https://", "wss://")
    return NegotiateResponse(url=f"{ws_base}/api/ws")


@signaling_router.post("/joinRoom", response_model=SuccessResponse)
async def join_room(body: JoinRoomRequest, relay: RedisBackend = Depends(get_relay_backend)):
    # POST /api/joinRoom Body: { "roomId": "abc123", "connectionId": "..." }
    # Every member, the joiner included, receives userJoined({connectionId}).
    if not body.roomId or not body.connectionId:
        logger.warning(f"joinRoom rejected: roomId={body.roomId!r}, connectionId={body.connectionId!r}")
        raise ValidationError(JOIN_ROOM_MISSING)

    logger.info(f"Connection {body.connectionId} joining room {body.roomId}")
    relay.join_group(body.roomId, body.connectionId)
    delivered = relay.broadcast_to_group(body.roomId, "userJoined", [{"connectionId": body.connectionId}])
    logger.debug(f"userJoined for {body.connectionId} sent to {delivered} members of room {body.roomId}")
    return SuccessResponse()


@signaling_router.post("/sendSignal", response_model=SuccessResponse)
async def send_signal(body: SendSignalRequest, relay: RedisBackend = Depends(get_relay_backend)):
    # POST /api/sendSignal Body: { "roomId": "...", "type": "offer", "signal": {...}, "connectionId": "..." }
    # Broadcast unfiltered: receivers drop frames carrying their own connectionId.
    if not body.roomId or not body.signal or not body.type or not body.connectionId:
        logger.warning(f"sendSignal rejected for room {body.roomId!r}: missing fields")
        raise ValidationError(SEND_SIGNAL_MISSING)
    if body.type not in SIGNAL_TYPES:
        logger.warning(f"sendSignal rejected for room {body.roomId}: invalid type {body.type!r}")
        raise ValidationError(f"Invalid signal type: {body.type}")

    logger.debug(f"Relaying {body.type} from {body.connectionId} in room {body.roomId}")
    relay.broadcast_to_group(body.roomId, "signal", [{
        "type": body.type,
        "signal": body.signal,
        "connectionId": body.connectionId,
    }])
    return SuccessResponse()
