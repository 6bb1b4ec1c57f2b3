from enum import Enum
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from typing import Any, Optional, Union


class SignalKind(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "ice-candidate"


class JoinRoomRequest(BaseModel):
    roomId: Optional[str] = None
    connectionId: Optional[str] = None

class SendSignalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    roomId: Optional[str] = None
    type: Optional[str] = None
    signal: Optional[Any] = None
    connectionId: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("connectionId", "senderConnectionId"),
    )

class SuccessResponse(BaseModel):
    success: bool = True

class ErrorResponse(BaseModel):
    error: str

class NegotiateResponse(BaseModel):
    url: str


# Events relayed to clients. The sender identity travels inside the payload so
# receivers can discard their own events.

class JoinEvent(BaseModel):
    connectionId: str = Field(min_length=1)

class SignalEvent(BaseModel):
    type: SignalKind
    signal: Any
    connectionId: str = Field(min_length=1)

RelayedEvent = Union[JoinEvent, SignalEvent]
