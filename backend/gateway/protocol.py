"""Protocol codec — parse, validate and serialize gateway envelopes.

Stateless. Parsing never raises: malformed input comes back as a
``ParseFailure`` carrying the error code to report to the device.
Send-operation validators raise ``ValidationError`` instead, since their
caller is local code that branches on ``.code``.
"""
import json
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel

from core.exceptions import ValidationError
from gateway import contracts
from schemas.session import now_ms
from schemas.ws_messages import (
    AuthMessage,
    AuthSuccessEnvelope,
    CommandEnvelope,
    ErrorBody,
    ErrorEnvelope,
    HeartbeatMessage,
    InboundEnvelope,
    MessageResultMessage,
    PingEnvelope,
    SendDocumentBody,
    SendDocumentData,
    SendImageBody,
    SendImageData,
    SendMessageBody,
    SendMessageData,
    SendVideoBody,
    SendVideoData,
    StatusMessage,
    WSMessageType,
)

_PHONE_RE = re.compile(r"\+[1-9][0-9]{0,14}")
_DATA_URL_MIME_RE = re.compile(r"^data:([^;]+);")

INVALID_PHONE_MESSAGE = "Invalid phone number format. Use international format: +1234567890"


@dataclass(frozen=True)
class ParseFailure:
    code: str
    message: str


ParseResult = Union[InboundEnvelope, ParseFailure]


# =====================================================
#  Inbound
# =====================================================

def parse_message(raw: Union[str, bytes]) -> Optional[dict]:
    """Decode raw text into a JSON object with a ``type`` tag, or None."""
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        message = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(message, dict) or not message.get("type"):
        return None
    return message


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _timestamp_or_now(value: Any) -> float:
    return value if _is_number(value) and value else now_ms()


def _metadata_field(data: dict, key: str) -> str:
    value = data.get(key)
    return value if isinstance(value, str) and value else "unknown"


def validate_auth_message(message: dict) -> ParseResult:
    api_key = message.get("apiKey")
    if not isinstance(api_key, str) or not api_key:
        return ParseFailure(contracts.VALIDATION_ERROR, "Missing or invalid apiKey")
    data = message.get("data")
    if not isinstance(data, dict):
        return ParseFailure(contracts.VALIDATION_ERROR, "Missing or invalid data object")
    return AuthMessage(
        api_key=api_key,
        extension_version=_metadata_field(data, "extensionVersion"),
        browser=_metadata_field(data, "browser"),
    )


def validate_status_message(message: dict) -> ParseResult:
    data = message.get("data")
    if not isinstance(data, dict):
        return ParseFailure(contracts.VALIDATION_ERROR, "Missing or invalid data object")
    return StatusMessage(
        whatsapp_logged_in=data.get("whatsappLoggedIn") is True,
        ready=data.get("ready") is True,
    )


def validate_message_result(message: dict) -> ParseResult:
    request_id = message.get("requestId")
    if not isinstance(request_id, str) or not request_id:
        return ParseFailure(contracts.VALIDATION_ERROR, "Missing or invalid requestId")
    success = message.get("success")
    if not isinstance(success, bool):
        return ParseFailure(contracts.VALIDATION_ERROR, "Missing or invalid success field")
    error = message.get("error")
    return MessageResultMessage(
        request_id=request_id,
        success=success,
        error=error if isinstance(error, str) and error else None,
        timestamp=_timestamp_or_now(message.get("timestamp")),
    )


def validate_heartbeat_message(message: dict) -> ParseResult:
    return HeartbeatMessage(timestamp=_timestamp_or_now(message.get("timestamp")))


_INBOUND_VALIDATORS = {
    WSMessageType.AUTH.value: validate_auth_message,
    WSMessageType.STATUS.value: validate_status_message,
    WSMessageType.MESSAGE_RESULT.value: validate_message_result,
    WSMessageType.HEARTBEAT.value: validate_heartbeat_message,
}


def parse_envelope(raw: Union[str, bytes]) -> ParseResult:
    """Turn raw text into a typed, validated inbound envelope."""
    message = parse_message(raw)
    if message is None:
        return ParseFailure(contracts.INVALID_MESSAGE, "Invalid message format")

    msg_type = message["type"]
    validator = _INBOUND_VALIDATORS.get(msg_type) if isinstance(msg_type, str) else None
    if validator is None:
        return ParseFailure(contracts.UNKNOWN_MESSAGE_TYPE, f"Unknown message type: {msg_type}")
    return validator(message)


# =====================================================
#  Outbound
# =====================================================

def _dump(model: BaseModel) -> str:
    return model.model_dump_json(by_alias=True)


def create_auth_success(session_id: str) -> str:
    return _dump(AuthSuccessEnvelope(session_id=session_id))


def create_error(code: str, message: str) -> str:
    return _dump(ErrorEnvelope(error=ErrorBody(code=code, message=message)))


def create_ping_command() -> str:
    return _dump(PingEnvelope())


def create_send_message_command(request_id: str, phone_number: str, message: str) -> str:
    return _dump(CommandEnvelope(
        type=WSMessageType.SEND_MESSAGE,
        request_id=request_id,
        data=SendMessageBody(phone_number=phone_number, message=message),
    ))


def create_send_image_command(request_id: str, phone_number: str, image_data_url: str, caption: Optional[str] = None) -> str:
    return _dump(CommandEnvelope(
        type=WSMessageType.SEND_IMAGE,
        request_id=request_id,
        data=SendImageBody(phone_number=phone_number, image_data_url=image_data_url, caption=caption or ""),
    ))


def create_send_video_command(request_id: str, phone_number: str, video_data_url: str, caption: Optional[str] = None) -> str:
    return _dump(CommandEnvelope(
        type=WSMessageType.SEND_VIDEO,
        request_id=request_id,
        data=SendVideoBody(phone_number=phone_number, video_data_url=video_data_url, caption=caption or ""),
    ))


def create_send_document_command(
    request_id: str,
    phone_number: str,
    document_data_url: str,
    document_name: str,
    caption: Optional[str] = None,
) -> str:
    return _dump(CommandEnvelope(
        type=WSMessageType.SEND_DOCUMENT,
        request_id=request_id,
        data=SendDocumentBody(
            phone_number=phone_number,
            document_data_url=document_data_url,
            document_name=document_name,
            caption=caption or "",
        ),
    ))


# =====================================================
#  Send-operation validation
# =====================================================

def is_valid_phone_number(phone_number: Any) -> bool:
    """``+`` followed by 1-15 ASCII digits, the first of which is 1-9."""
    if not isinstance(phone_number, str):
        return False
    return _PHONE_RE.fullmatch(phone_number) is not None


def is_valid_data_url(data_url: Any, expected_type: str) -> bool:
    """True for a base64 data URL of ``expected_type`` (e.g. ``"image/"``).

    Public helper for hosting apps that build data URLs themselves; the send
    validators only check the MIME prefix so plain (non-base64) payloads pass.
    """
    if not isinstance(data_url, str) or not data_url:
        return False
    return data_url.startswith(f"data:{expected_type}") and "base64," in data_url


def get_mime_type_from_data_url(data_url: Any) -> Optional[str]:
    """MIME type declared by a data URL, or None. Public helper for hosting apps."""
    if not isinstance(data_url, str) or not data_url.startswith("data:"):
        return None
    m = _DATA_URL_MIME_RE.match(data_url)
    return m.group(1) if m else None


def _as_fields(data: Any) -> Mapping[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump(by_alias=True)
    if not isinstance(data, Mapping):
        raise ValidationError("Invalid data object")
    return data


def _get(fields: Mapping[str, Any], alias: str, name: str) -> Any:
    return fields.get(alias, fields.get(name))


def _optional_str(fields: Mapping[str, Any], alias: str, name: str) -> Optional[str]:
    value = _get(fields, alias, name)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{alias} must be a string")
    return value


def _caption(fields: Mapping[str, Any]) -> str:
    value = fields.get("caption")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError("caption must be a string")
    return value


def _require_phone(fields: Mapping[str, Any]) -> str:
    phone = _get(fields, "phoneNumber", "phone_number")
    if not is_valid_phone_number(phone):
        raise ValidationError(INVALID_PHONE_MESSAGE)
    return phone


def _exactly_one_source(fields: Mapping[str, Any], label: str, expected_prefix: Optional[str]):
    url = _optional_str(fields, f"{label}Url", f"{label}_url")
    data_url = _optional_str(fields, f"{label}DataUrl", f"{label}_data_url")
    if not url and not data_url:
        raise ValidationError(f"Either {label}Url or {label}DataUrl is required")
    if url and data_url:
        raise ValidationError(f"Provide either {label}Url or {label}DataUrl, not both")
    if data_url and expected_prefix and not data_url.startswith(f"data:{expected_prefix}"):
        raise ValidationError(f"Invalid {label}DataUrl format. Must start with data:{expected_prefix}")
    return url, data_url


def validate_send_message_data(data: Any) -> SendMessageData:
    fields = _as_fields(data)
    phone = _require_phone(fields)
    message = fields.get("message")
    if not isinstance(message, str) or not message.strip():
        raise ValidationError("Message cannot be empty")
    return SendMessageData(phone_number=phone, message=message)


def validate_send_image_data(data: Any) -> SendImageData:
    fields = _as_fields(data)
    phone = _require_phone(fields)
    url, data_url = _exactly_one_source(fields, "image", "image/")
    return SendImageData(phone_number=phone, image_url=url, image_data_url=data_url, caption=_caption(fields))


def validate_send_video_data(data: Any) -> SendVideoData:
    fields = _as_fields(data)
    phone = _require_phone(fields)
    url, data_url = _exactly_one_source(fields, "video", "video/")
    return SendVideoData(phone_number=phone, video_url=url, video_data_url=data_url, caption=_caption(fields))


def validate_send_document_data(data: Any) -> SendDocumentData:
    fields = _as_fields(data)
    phone = _require_phone(fields)
    url, data_url = _exactly_one_source(fields, "document", None)
    name = _get(fields, "documentName", "document_name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("documentName is required")
    return SendDocumentData(
        phone_number=phone,
        document_url=url,
        document_data_url=data_url,
        document_name=name,
        caption=_caption(fields),
    )
