"""Wire messages exchanged between clients, the master node and data nodes."""

import base64
import binascii
import enum
import json
import types
from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any, Union, get_args, get_origin


class UploadPolicy(enum.IntEnum):
    """What to do when an uploaded file already exists."""

    OVERWRITE = 0
    VERSION_CONTROL = 1
    NO_CHANGE = 2


class MessageCategory(enum.IntEnum):
    REQUEST = 0
    RESPONSE = 1


class MessageOperation(enum.IntEnum):
    REGISTER = 0
    UPLOAD = 1
    DOWNLOAD = 2
    HASFILE = 3
    DELETE = 4
    LIST = 5
    UPLOAD_CHUNK = 6
    DOWNLOAD_CHUNK = 7


@dataclass
class FileChunk:
    content: bytes = b""
    index: int = 0


@dataclass
class RegisterMessage:
    node_id: str = ""
    addr: str = ""


@dataclass
class UploadFileRequest:
    user_id: str = ""
    filename: str = ""
    file_size: int = 0
    policy: UploadPolicy = UploadPolicy.OVERWRITE
    content: bytes = b""


@dataclass
class DownloadFileRequest:
    filename: str = ""
    user_id: str = ""


@dataclass
class HasFileRequest:
    user_id: str = ""
    filename: str = ""


@dataclass
class DeleteFileRequest:
    filename: str = ""
    user_id: str = ""


@dataclass
class ListFilesRequest:
    directory: str = ""


@dataclass
class UploadFileChunkRequest:
    user_id: str = ""
    filename: str = ""
    chunk: FileChunk = field(default_factory=FileChunk)


@dataclass
class DownloadChunkRequest:
    user_id: str = ""
    filename: str = ""


@dataclass
class BaseResponse:
    success: bool = False
    message: str = ""


@dataclass
class RegisterResponse(BaseResponse):
    pass


@dataclass
class UploadFileResponse(BaseResponse):
    pass


@dataclass
class DownloadFileResponse(BaseResponse):
    file_content: bytes = b""


@dataclass
class HasFileResponse(BaseResponse):
    is_exist: bool = False


@dataclass
class DeleteFileResponse(BaseResponse):
    pass


@dataclass
class ListFilesResponse(BaseResponse):
    pass


@dataclass
class UploadChunkResponse(BaseResponse):
    chunk_index: int = 0


@dataclass
class DownloadChunkResponse(BaseResponse):
    chunk: FileChunk = field(default_factory=FileChunk)


@dataclass
class FileInfo:
    name: str = ""
    size: int = 0
    is_dir: bool = False


@dataclass
class RequestPayload:
    register: RegisterMessage | None = None
    upload: UploadFileRequest | None = None
    download: DownloadFileRequest | None = None
    has_file: HasFileRequest | None = None
    delete: DeleteFileRequest | None = None
    list: ListFilesRequest | None = None
    upload_chunk: UploadFileChunkRequest | None = None
    download_chunk: DownloadChunkRequest | None = None


@dataclass
class ResponsePayload:
    register: RegisterResponse | None = None
    upload: UploadFileResponse | None = None
    download: DownloadFileResponse | None = None
    has_file: HasFileResponse | None = None
    delete: DeleteFileResponse | None = None
    list: ListFilesResponse | None = None
    upload_chunk: UploadChunkResponse | None = None
    download_chunk: DownloadChunkResponse | None = None


_PAYLOAD_KINDS: dict[str, type] = {
    "request": RequestPayload,
    "response": ResponsePayload,
}


def _to_plain(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: _to_plain(getattr(value, f.name))
            for f in fields(value)
            if getattr(value, f.name) is not None
        }
    if isinstance(value, enum.Enum):
        return int(value.value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    return value


def _convert(tp: Any, value: Any) -> Any:
    if value is None:
        return None
    if get_origin(tp) in (Union, types.UnionType):
        options = [arg for arg in get_args(tp) if arg is not type(None)]
        tp = options[0]
    if tp is bytes:
        if not isinstance(value, str):
            raise ValueError("expected base64 text for a bytes field")
        try:
            return base64.b64decode(value, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"invalid base64 data: {exc}") from exc
    if isinstance(tp, type) and is_dataclass(tp):
        return _from_plain(tp, value)
    if isinstance(tp, type) and issubclass(tp, enum.Enum):
        return tp(value)
    if tp in (str, int, bool) and not isinstance(value, tp):
        raise ValueError(f"expected {tp.__name__}, got {type(value).__name__}")
    return value


def _from_plain(cls: type, data: Any) -> Any:
    if not isinstance(data, dict):
        raise ValueError(f"expected an object for {cls.__name__}")
    kwargs = {
        f.name: _convert(f.type, data[f.name])
        for f in fields(cls)
        if f.name in data
    }
    return cls(**kwargs)


@dataclass
class Message:
    """A single framed message: category, operation and an optional payload."""

    category: MessageCategory
    operation: MessageOperation
    payload: RequestPayload | ResponsePayload | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready representation of the message."""
        payload: dict[str, Any] | None = None
        if self.payload is not None:
            kind = "request" if isinstance(self.payload, RequestPayload) else "response"
            payload = {"kind": kind, "fields": _to_plain(self.payload)}
        return {
            "category": int(self.category),
            "operation": int(self.operation),
            "payload": payload,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Message":
        """Build a message from the form produced by to_dict."""
        if not isinstance(data, dict):
            raise ValueError("message must be an object")
        try:
            category = MessageCategory(data["category"])
            operation = MessageOperation(data["operation"])
            raw_payload = data.get("payload")
        except KeyError as exc:
            raise ValueError(f"message is missing {exc.args[0]!r}") from exc
        payload = None
        if raw_payload is not None:
            if not isinstance(raw_payload, dict):
                raise ValueError("payload must be an object")
            payload_cls = _PAYLOAD_KINDS.get(raw_payload.get("kind"))
            if payload_cls is None:
                raise ValueError(f"unknown payload kind {raw_payload.get('kind')!r}")
            payload = _from_plain(payload_cls, raw_payload.get("fields", {}))
        return cls(category=category, operation=operation, payload=payload)


def encode_message(message: Message) -> bytes:
    """Serialise a message to UTF-8 JSON bytes."""
    return json.dumps(message.to_dict(), separators=(",", ":")).encode("utf-8")


def decode_message(data: bytes) -> Message:
    """Parse bytes produced by encode_message; raises ValueError on bad input."""
    return Message.from_dict(json.loads(data))