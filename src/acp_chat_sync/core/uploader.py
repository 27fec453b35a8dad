from __future__ import annotations

import base64
import logging
import mimetypes
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import httpx

from acp_chat_sync.core.errors import (
    ImageTooLarge,
    NoCredentials,
    UnsupportedMediaType,
    UnsupportedPlatform,
    UploadAlreadyInProgress,
    UploadFailed,
)
from acp_chat_sync.core.models import AttachmentDescriptor, UploadState
from acp_chat_sync.core.session_registry import Credentials

MAX_IMAGE_BYTES = 10 * 1024 * 1024
UPLOAD_PATH = "/v1/images/upload"
GENERIC_UPLOAD_ERROR = "Upload failed"
logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class LocalImage:
    """Image bytes picked by the user, not yet uploaded."""

    name: str
    mime_type: str
    data: bytes
    source: str | None = None

    @classmethod
    def from_path(cls, path: Path) -> LocalImage:
        mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return cls(name=path.name, mime_type=mime_type, data=path.read_bytes(), source=str(path))

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def preview_ref(self) -> str:
        if self.source is not None:
            return self.source
        return f"data:{self.mime_type};base64,{base64.b64encode(self.data).decode('ascii')}"


class AttachmentUploader:
    """Uploads images for one attachment slot.

    The slot moves `idle -> uploading -> resolved | failed`. A failed retry keeps the
    previously resolved descriptor.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        server_url: str,
        credentials: Callable[[], Credentials | None],
        client: httpx.AsyncClient | None = None,
        supported: bool = True,
        max_bytes: int = MAX_IMAGE_BYTES,
        timeout: float = 60.0,
    ) -> None:
        if max_bytes <= 0:
            raise ValueError(max_bytes)
        self._server_url = server_url.rstrip("/")
        self._credentials = credentials
        self._client = client
        self._supported = supported
        self._max_bytes = max_bytes
        self._timeout = timeout
        self.state: UploadState = "idle"
        self.descriptor: AttachmentDescriptor | None = None
        self.error: str | None = None

    @property
    def uploading(self) -> bool:
        return self.state == "uploading"

    def validate(self, image: LocalImage) -> None:
        """Run the pre-flight checks that never reach the network."""
        if not image.mime_type.startswith("image/"):
            raise UnsupportedMediaType(f"{image.name} is not an image ({image.mime_type})")
        if image.size > self._max_bytes:
            limit_mib = self._max_bytes // (1024 * 1024)
            raise ImageTooLarge(f"{image.name} is larger than {limit_mib} MiB")

    def preview(self, image: LocalImage) -> AttachmentDescriptor:
        """Descriptor usable for rendering before the upload resolves."""
        return AttachmentDescriptor(
            url=None, width=0, height=0, perceptual_hash="", local_preview_ref=image.preview_ref
        )

    async def upload(self, image: LocalImage) -> AttachmentDescriptor:
        if not self._supported:
            raise UnsupportedPlatform("Image upload is not supported in this environment")
        if self.uploading:
            raise UploadAlreadyInProgress(f"an upload is already running for {image.name}")
        self.validate(image)
        credentials = self._credentials()
        if credentials is None or not credentials.token:
            raise NoCredentials("No authentication token available")

        self.state = "uploading"
        self.error = None
        try:
            descriptor = await self._post(image, credentials)
        except Exception as exc:
            self.state = "failed"
            self.error = str(exc) or GENERIC_UPLOAD_ERROR
            logger.warning("Image upload failed: name=%s error=%s", image.name, exc)
            raise
        self.state = "resolved"
        self.descriptor = descriptor
        logger.info("Image uploaded: name=%s url=%s", image.name, descriptor.url)
        return descriptor

    async def _post(self, image: LocalImage, credentials: Credentials) -> AttachmentDescriptor:
        url = f"{self._server_url}{UPLOAD_PATH}"
        headers = {"Authorization": f"Bearer {credentials.token}"}
        files = {"image": (image.name, image.data, image.mime_type)}
        try:
            if self._client is not None:
                response = await self._client.post(url, headers=headers, files=files)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, headers=headers, files=files)
        except httpx.HTTPError as exc:
            raise UploadFailed(str(exc) or GENERIC_UPLOAD_ERROR) from exc

        if not response.is_success:
            raise UploadFailed(self._error_message(response))
        try:
            body = response.json()
            return AttachmentDescriptor(
                url=str(body["url"]),
                width=int(body["width"]),
                height=int(body["height"]),
                perceptual_hash=str(body["thumbhash"]),
                local_preview_ref=image.preview_ref,
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise UploadFailed(f"{GENERIC_UPLOAD_ERROR}: unexpected response body") from exc

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            detail = body.get("error") or body.get("message")
            if detail:
                return str(detail)
        return f"{GENERIC_UPLOAD_ERROR}: {response.reason_phrase or response.status_code}"
