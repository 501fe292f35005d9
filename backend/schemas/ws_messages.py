"""WebSocket message schemas — canonical contract between device and gateway.

Version: v1
Field names on the wire are camelCase; Python attributes are snake_case and
map through aliases. Command envelopes keep a fixed schema: optional fields
serialize as "" instead of being omitted.
"""
from enum import Enum
from typing import Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


# ---- Enums ----

class WSMessageType(str, Enum):
    # Device → Gateway
    AUTH = "auth"
    STATUS = "status"
    MESSAGE_RESULT = "message-result"
    HEARTBEAT = "heartbeat"

    # Gateway → Device
    AUTH_SUCCESS = "auth-success"
    ERROR = "error"
    SEND_MESSAGE = "send-message"
    SEND_IMAGE = "send-image"
    SEND_VIDEO = "send-video"
    SEND_DOCUMENT = "send-document"
    PING = "ping"


class CommandKind(str, Enum):
    MESSAGE = "message"
    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


# =====================================================
#  Device → Gateway envelopes
# =====================================================

class AuthMessage(_WireModel):
    type: Literal["auth"] = "auth"
    api_key: str = Field(alias="apiKey")
    extension_version: str = Field(default="unknown", alias="extensionVersion")
    browser: str = "unknown"


class StatusMessage(_WireModel):
    type: Literal["status"] = "status"
    whatsapp_logged_in: bool = Field(default=False, alias="whatsappLoggedIn")
    ready: bool = False


class MessageResultMessage(_WireModel):
    type: Literal["message-result"] = "message-result"
    request_id: str = Field(alias="requestId")
    success: bool
    error: Optional[str] = None
    timestamp: float


class HeartbeatMessage(_WireModel):
    type: Literal["heartbeat"] = "heartbeat"
    timestamp: float


InboundEnvelope = Union[AuthMessage, StatusMessage, MessageResultMessage, HeartbeatMessage]


# =====================================================
#  Gateway → Device envelopes
# =====================================================

class AuthSuccessEnvelope(_WireModel):
    type: Literal["auth-success"] = "auth-success"
    session_id: str = Field(alias="sessionId")


class ErrorBody(_WireModel):
    code: str
    message: str


class ErrorEnvelope(_WireModel):
    type: Literal["error"] = "error"
    error: ErrorBody


class PingEnvelope(_WireModel):
    type: Literal["ping"] = "ping"


class SendMessageBody(_WireModel):
    phone_number: str = Field(alias="phoneNumber")
    message: str


class SendImageBody(_WireModel):
    phone_number: str = Field(alias="phoneNumber")
    image_data_url: str = Field(alias="imageDataUrl")
    caption: str = ""


class SendVideoBody(_WireModel):
    phone_number: str = Field(alias="phoneNumber")
    video_data_url: str = Field(alias="videoDataUrl")
    caption: str = ""


class SendDocumentBody(_WireModel):
    phone_number: str = Field(alias="phoneNumber")
    document_data_url: str = Field(alias="documentDataUrl")
    document_name: str = Field(alias="documentName")
    caption: str = ""


class CommandEnvelope(_WireModel):
    type: WSMessageType
    request_id: str = Field(alias="requestId")
    data: Union[SendMessageBody, SendImageBody, SendVideoBody, SendDocumentBody]


# =====================================================
#  Caller → Gateway send-operation inputs
# =====================================================

class SendMessageData(_WireModel):
    phone_number: str = Field(alias="phoneNumber")
    message: str


class SendImageData(_WireModel):
    phone_number: str = Field(alias="phoneNumber")
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    image_data_url: Optional[str] = Field(default=None, alias="imageDataUrl")
    caption: str = ""


class SendVideoData(_WireModel):
    phone_number: str = Field(alias="phoneNumber")
    video_url: Optional[str] = Field(default=None, alias="videoUrl")
    video_data_url: Optional[str] = Field(default=None, alias="videoDataUrl")
    caption: str = ""


class SendDocumentData(_WireModel):
    phone_number: str = Field(alias="phoneNumber")
    document_url: Optional[str] = Field(default=None, alias="documentUrl")
    document_data_url: Optional[str] = Field(default=None, alias="documentDataUrl")
    document_name: str = Field(alias="documentName")
    caption: str = ""


class MessageResult(_WireModel):
    """Acknowledgment returned to the caller of a send operation."""
    request_id: str = Field(alias="requestId")
    success: bool
    error: Optional[str] = None
    timestamp: float
