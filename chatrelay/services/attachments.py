"""Attachment reader for images and documents stored on the local filesystem."""

from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
from collections.abc import Awaitable, Callable
from pathlib import Path

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = "data:"

OcrReader = Callable[[str], Awaitable[str]]


class FileAttachmentReader:
    """Resolves attachment references that are file paths or data URLs.

    OCR is delegated to an optional callable; without one, images sent to
    non-vision models contribute no text.
    """

    def __init__(self, root: str | Path | None = None, ocr: OcrReader | None = None) -> None:
        self._root = Path(root) if root is not None else None
        self._ocr = ocr

    def _resolve(self, ref: str) -> Path:
        path = Path(ref)
        if self._root is not None and not path.is_absolute():
            path = self._root / path
        return path

    async def image_data_url(self, ref: str) -> str:
        if ref.startswith(DATA_URL_PREFIX):
            return ref
        path = self._resolve(ref)
        data = await asyncio.to_thread(path.read_bytes)
        mime = mimetypes.guess_type(path.name)[0] or "image/png"
        return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"

    async def image_text(self, ref: str) -> str:
        if self._ocr is None:
            return ""
        return await self._ocr(ref)

    async def document_text(self, ref: str) -> str:
        path = self._resolve(ref)
        return await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")
