"""Two-phase media handoff: mint a write target, upload bytes, then dispatch.

The function layer only ever sees metadata and a storage path; bytes go
straight to object storage.
"""

from __future__ import annotations

import base64
import binascii
import enum
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal, Protocol, TypeAlias

import httpx

from .backend import api
from .backend.client import Backend, BackendCallError
from .config import DEFAULT_REQUEST_TIMEOUT_S
from .errors import MediaRejected, TargetUnavailable, UploadFailed
from .logging import get_logger

logger = get_logger(__name__)

MediaKind: TypeAlias = Literal["image", "audio", "document"]

IMAGE_MAX_BYTES = 10 * 1024 * 1024
DOCUMENT_MAX_BYTES = 20 * 1024 * 1024

DOCUMENT_MIME_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "text/plain",
        "text/csv",
    }
)

AUDIO_FORMAT_PREFERENCE: tuple[str, ...] = (
    "audio/ogg; codecs=opus",
    "audio/ogg",
    "audio/webm; codecs=opus",
    "audio/webm",
    "audio/mp4",
    "audio/mpeg",
)


def _megabytes(limit: int) -> str:
    return f"{limit // (1024 * 1024)}MB"


def validate_image(size: int, mime_type: str) -> None:
    if not mime_type.startswith("image/"):
        raise MediaRejected("select an image file.")
    if size > IMAGE_MAX_BYTES:
        raise MediaRejected(f"image is too large (max {_megabytes(IMAGE_MAX_BYTES)}).")


def validate_document(size: int, mime_type: str) -> None:
    if mime_type not in DOCUMENT_MIME_TYPES:
        raise MediaRejected(
            "select a document (PDF, DOC, DOCX, XLS, XLSX, TXT, CSV)."
        )
    if size > DOCUMENT_MAX_BYTES:
        raise MediaRejected(
            f"document is too large (max {_megabytes(DOCUMENT_MAX_BYTES)})."
        )


def choose_audio_format(is_supported: Callable[[str], bool]) -> str:
    for mime_type in AUDIO_FORMAT_PREFERENCE:
        if is_supported(mime_type):
            return mime_type
    raise MediaRejected("no supported audio recording format on this device.")


def decode_audio_payload(payload: str) -> bytes:
    """Decode base64 audio, accepting a ``data:<mime>;base64,`` prefix."""
    data = payload.split(",", 1)[1] if "," in payload else payload
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MediaRejected("audio payload is not valid base64.") from exc


class CaptureDevice(Protocol):
    def is_type_supported(self, mime_type: str) -> bool: ...

    def start(self, mime_type: str) -> None: ...

    def stop(self) -> None: ...


class RecorderState(str, enum.Enum):
    IDLE = "idle"
    RECORDING = "recording"
    FINISHED = "finished"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class CapturedAudio:
    data: bytes
    mime_type: str


class AudioRecorder:
    """Buffers encoder chunks; the chosen format is used for upload as is."""

    def __init__(self, device: CaptureDevice) -> None:
        self._device = device
        self._chunks: list[bytes] = []
        self._mime_type: str | None = None
        self.state = RecorderState.IDLE

    @property
    def mime_type(self) -> str | None:
        return self._mime_type

    @property
    def cancelled(self) -> bool:
        return self.state is RecorderState.CANCELLED

    def start(self) -> str:
        if self.state is not RecorderState.IDLE:
            raise RuntimeError(f"recorder already {self.state.value}")
        mime_type = choose_audio_format(self._device.is_type_supported)
        self._device.start(mime_type)
        self._mime_type = mime_type
        self.state = RecorderState.RECORDING
        return mime_type

    def feed(self, chunk: bytes) -> None:
        if self.state is RecorderState.RECORDING and chunk:
            self._chunks.append(chunk)

    def cancel(self) -> None:
        if self.state is RecorderState.RECORDING:
            self._device.stop()
        self._chunks.clear()
        self.state = RecorderState.CANCELLED

    def finish(self) -> CapturedAudio:
        if self.state is not RecorderState.RECORDING or self._mime_type is None:
            raise MediaRejected("no recording in progress.")
        self._device.stop()
        self.state = RecorderState.FINISHED
        data = b"".join(self._chunks)
        self._chunks.clear()
        if not data:
            raise MediaRejected("recording is empty.")
        return CapturedAudio(data=data, mime_type=self._mime_type)


class TransferState(str, enum.Enum):
    IDLE = "idle"
    REQUESTING_TARGET = "requesting_target"
    UPLOADING = "uploading"
    DISPATCHING = "dispatching"
    SENT = "sent"
    FAILED = "failed"


_TRANSITIONS: dict[TransferState, frozenset[TransferState]] = {
    TransferState.IDLE: frozenset({TransferState.REQUESTING_TARGET}),
    TransferState.REQUESTING_TARGET: frozenset(
        {TransferState.UPLOADING, TransferState.FAILED}
    ),
    TransferState.UPLOADING: frozenset({TransferState.DISPATCHING, TransferState.FAILED}),
    TransferState.DISPATCHING: frozenset({TransferState.SENT, TransferState.FAILED}),
    TransferState.SENT: frozenset(),
    TransferState.FAILED: frozenset(),
}


@dataclass(frozen=True, slots=True)
class UploadTarget:
    write_url: str
    storage_path: str


@dataclass(slots=True)
class PendingUpload:
    target: UploadTarget
    payload: bytes
    mime_type: str


@dataclass(frozen=True, slots=True)
class PreparedMedia:
    kind: MediaKind
    storage_path: str
    mime_type: str


class MediaTransfer:
    def __init__(self, kind: MediaKind) -> None:
        self.kind = kind
        self.state = TransferState.IDLE
        self.failure: str | None = None
        self.pending: PendingUpload | None = None

    def advance(self, state: TransferState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"invalid media transfer transition {self.state.value} -> {state.value}"
            )
        self.state = state

    def fail(self, detail: str) -> None:
        if self.state in (TransferState.SENT, TransferState.FAILED):
            return
        self.failure = detail
        self.state = TransferState.FAILED

    def discard(self) -> None:
        self.pending = None


class MediaTransferPipeline:
    def __init__(
        self,
        backend: Backend,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
    ) -> None:
        self._backend = backend
        self._client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = http_client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def request_upload_target(
        self,
        organization_id: str,
        conversation_id: str,
        mime_type: str,
        kind: MediaKind,
    ) -> UploadTarget:
        try:
            response = await api.create_upload_target(
                self._backend,
                organization_id=organization_id,
                conversation_id=conversation_id,
                mime_type=mime_type,
                kind=kind,
            )
        except BackendCallError as exc:
            raise TargetUnavailable(exc.detail) from exc
        if not response.success or not response.signed_url or not response.path:
            raise TargetUnavailable(response.error or "backend refused the upload target")
        if not response.path.startswith(f"orgs/{organization_id}/"):
            logger.error(
                "media.target_outside_org",
                organization_id=organization_id,
                path=response.path,
            )
            raise TargetUnavailable("upload path is outside the organization")
        return UploadTarget(write_url=response.signed_url, storage_path=response.path)

    async def upload(self, target: UploadTarget, payload: bytes, mime_type: str) -> None:
        try:
            resp = await self._client.put(
                target.write_url,
                content=payload,
                headers={"Content-Type": mime_type},
            )
        except httpx.HTTPError as e:
            logger.error(
                "media.upload.network_error",
                path=target.storage_path,
                error=str(e),
                error_type=e.__class__.__name__,
            )
            raise UploadFailed(None, str(e) or e.__class__.__name__) from e
        if not resp.is_success:
            logger.error(
                "media.upload.http_error",
                path=target.storage_path,
                status=resp.status_code,
                body=resp.text,
            )
            raise UploadFailed(resp.status_code)

    async def prepare(
        self,
        transfer: MediaTransfer,
        *,
        organization_id: str,
        conversation_id: str,
        payload: bytes,
        mime_type: str,
    ) -> PreparedMedia:
        """Drive ``transfer`` from IDLE to DISPATCHING or raise with it FAILED."""
        transfer.advance(TransferState.REQUESTING_TARGET)
        try:
            target = await self.request_upload_target(
                organization_id, conversation_id, mime_type, transfer.kind
            )
            transfer.advance(TransferState.UPLOADING)
            transfer.pending = PendingUpload(
                target=target, payload=payload, mime_type=mime_type
            )
            logger.info(
                "media.uploading",
                kind=transfer.kind,
                conversation_id=conversation_id,
                size_bytes=len(payload),
                mime_type=mime_type,
            )
            await self.upload(target, payload, mime_type)
        except (TargetUnavailable, UploadFailed) as exc:
            transfer.fail(exc.notice)
            transfer.discard()
            raise
        transfer.advance(TransferState.DISPATCHING)
        return PreparedMedia(
            kind=transfer.kind, storage_path=target.storage_path, mime_type=mime_type
        )
