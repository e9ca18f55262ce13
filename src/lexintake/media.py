"""Media collaborators: transcription, PDF detection and archiving.

All of these are best-effort. Callers decide what a failure means for
the conversation; nothing here is allowed to take a bot down.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Protocol

import anyio
import httpx

from .logging import get_logger
from .settings import LLMSettings, StorageSettings, TranscriptionSettings

logger = get_logger(__name__)

PDF_MIMETYPES = frozenset(
    {
        "application/pdf",
        "application/x-pdf",
        "application/acrobat",
        "application/vnd.pdf",
    }
)

_EXTENSIONS = {
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/wav": "wav",
    "application/pdf": "pdf",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
}


def is_pdf_mimetype(mimetype: str | None) -> bool:
    if not mimetype:
        return False
    return mimetype.split(";", 1)[0].strip().lower() in PDF_MIMETYPES


def extension_for(mimetype: str | None) -> str:
    if not mimetype:
        return "bin"
    return _EXTENSIONS.get(mimetype.split(";", 1)[0].strip().lower(), "bin")


def media_filename(kind: str, mimetype: str | None, *, now: float | None = None) -> str:
    """``{kind}_{epoch_ms}.{ext}``, e.g. ``audio_1700000000000.ogg``."""
    stamp = int((time.time() if now is None else now) * 1000)
    return f"{kind}_{stamp}.{extension_for(mimetype)}"


class AudioTranscriber(Protocol):
    async def transcribe(self, data: bytes, mimetype: str | None = None) -> str | None:
        """Return the spoken text, or None when nothing intelligible was found."""
        ...


class StorageUploader(Protocol):
    async def upload(self, data: bytes, filename: str, *, folder: str) -> str:
        """Store ``data`` and return a reference (path or URL) to it."""
        ...


class GroqTranscriber:
    """Whisper transcription through Groq's OpenAI-compatible endpoint."""

    def __init__(
        self,
        llm: LLMSettings,
        settings: TranscriptionSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or TranscriptionSettings()
        self._api_key = llm.api_key.get_secret_value() if llm.api_key else None
        self._client = client or httpx.AsyncClient(
            base_url=llm.base_url, timeout=llm.timeout_s
        )

    @property
    def available(self) -> bool:
        return self._settings.enabled and bool(self._api_key)

    async def transcribe(self, data: bytes, mimetype: str | None = None) -> str | None:
        if not self.available:
            logger.debug("transcription.disabled")
            return None
        ext = extension_for(mimetype or "audio/ogg")
        response = await self._client.post(
            "/audio/transcriptions",
            headers={"Authorization": f"Bearer {self._api_key}"},
            data={
                "model": self._settings.model,
                "language": self._settings.language,
                "response_format": "json",
            },
            files={"file": (f"audio.{ext}", data, mimetype or "audio/ogg")},
        )
        response.raise_for_status()
        text = str(response.json().get("text", "")).strip()
        return text or None

    async def aclose(self) -> None:
        await self._client.aclose()


class LocalFolderUploader:
    """Archives media under ``root/<folder>/<filename>``."""

    def __init__(self, root: Path) -> None:
        self.root = root

    async def upload(self, data: bytes, filename: str, *, folder: str) -> str:
        target = anyio.Path(self.root) / folder
        await target.mkdir(parents=True, exist_ok=True)
        path = target / filename
        await path.write_bytes(data)
        logger.debug("storage.uploaded", path=str(path), size=len(data))
        return str(path)


def build_uploader(settings: StorageSettings, data_dir: Path) -> StorageUploader | None:
    if not settings.enabled:
        return None
    return LocalFolderUploader(settings.root or data_dir / "media")
