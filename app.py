from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from routers.signaling import signaling_router
from backend import RedisBackend, build_envelope, get_relay_backend, redis_backend
from constants import CORS_ORIGINS
from errors import RelayTransportError, ValidationError
import uuid
import json
import asyncio
import time
import redis
from logging_config import get_logger, setup_logging
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    redis_backend.ping()
    yield


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(signaling_router)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(RelayTransportError)
async def relay_error_handler(request: Request, exc: RelayTransportError):
    logger.error(f"Relay failure on {request.url.path}: {exc}")
    return JSONResponse(status_code=502, content={"error": "Relay unavailable"})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Unparseable body on {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})


logger.info("FastAPI application initialized")


# Pause before polling again after a failed get_message
PUBSUB_RETRY_DELAY = 1.0


async def forward_connection_channel(connection_id: str, websocket: WebSocket, relay: RedisBackend):
    """Background task: forward frames published for one connection to its WebSocket.

    Redis errors while polling are logged and retried; redis-py resubscribes on
    reconnect. Membership TTLs are refreshed while the connection lives.
    """
    logger.info(f"Starting Redis pub/sub listener for connection: {connection_id}")
    pubsub = None
    try:
        pubsub = relay.subscribe_to_connection(connection_id)
        loop = asyncio.get_running_loop()
        last_refresh = loop.time()

        def get_message():
            """Blocking call to get next message from Redis pub/sub with timeout."""
            try:
                return pubsub.get_message(timeout=1.0, ignore_subscribe_messages=True)
            except redis.RedisError as e:
                logger.error(f"Error in pubsub.get_message() for connection {connection_id}: {e}")
                time.sleep(PUBSUB_RETRY_DELAY)
                return None

        while True:
            if relay.refresh_interval and loop.time() - last_refresh >= relay.refresh_interval:
                last_refresh = loop.time()
                try:
                    relay.refresh_connection(connection_id)
                except RelayTransportError as e:
                    logger.error(f"Could not refresh memberships of {connection_id}: {e}")

            message = await loop.run_in_executor(None, get_message)
            if message is None:
                continue
            if message.get('type') != 'message':
                continue
            try:
                frame = json.loads(message['data'])
            except json.JSONDecodeError as e:
                logger.error(f"Error parsing frame for connection {connection_id}: {e}")
                continue
            logger.debug(f"Delivering {frame.get('target', 'unknown')} to connection {connection_id}")
            await websocket.send_text(json.dumps(frame))

    except asyncio.CancelledError:
        logger.info(f"Redis listener task cancelled for connection: {connection_id}")
        raise
    finally:
        if pubsub:
            try:
                pubsub.close()
                logger.debug(f"Closed pub/sub connection for connection: {connection_id}")
            except Exception as e:
                logger.error(f"Error closing pub/sub for connection {connection_id}: {e}")


@app.websocket("/api/ws")
async def relay_connection(websocket: WebSocket, relay: RedisBackend = Depends(get_relay_backend)):
    """Relay connection: assigns the connection identity and delivers group frames.

    The first frame is ``{"target": "connected", "arguments": [{"connectionId": ...}]}``.
    Group membership is managed through ``POST /api/joinRoom``.
    """
    await websocket.accept()
    connection_id = str(uuid.uuid4())
    logger.info(f"Relay connection accepted: {connection_id}")

    listener = asyncio.create_task(forward_connection_channel(connection_id, websocket, relay))
    try:
        await websocket.send_text(json.dumps(build_envelope("connected", [{"connectionId": connection_id}])))
        while True:
            data = await websocket.receive_text()
            logger.debug(f"Ignoring inbound frame from connection {connection_id}: {data[:80]}")
    except WebSocketDisconnect:
        logger.info(f"Relay connection {connection_id} disconnected")
    finally:
        listener.cancel()
        try:
            await listener
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Relay listener for {connection_id} failed: {e}", exc_info=True)
        try:
            groups = relay.remove_connection(connection_id)
            logger.info(f"Connection {connection_id} left rooms: {sorted(groups)}")
        except RelayTransportError as e:
            logger.error(f"Could not clean up connection {connection_id}: {e}")
