from __future__ import annotations

import asyncio
import re
import secrets
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, AsyncIterator

from .messages import InvalidRequest
from .sessions import _now_ms

UPLOAD_KINDS = ("avatars", "files", "voice")
URL_PREFIX = "/uploads"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class UploadTooLarge(Exception):
    pass


@dataclass(frozen=True)
class StoredFile:
    filename: str
    path: str
    size: int
    original_name: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "path": self.path,
            "size": self.size,
            "original_name": self.original_name,
        }


def _safe_name(original_name: str) -> str:
    base = Path(original_name).name
    cleaned = _UNSAFE_CHARS.sub("_", base).strip("._")
    return cleaned or "upload"


class MediaStore:
    """Writes uploads under ``root/<kind>/`` and hands back an opaque URL path.

    The bytes are never inspected; message bodies carry the returned path
    verbatim.
    """

    def __init__(self, root: str | Path, *, max_bytes: int = 50 * 1024 * 1024, now_func=_now_ms) -> None:
        self.root = Path(root)
        self.max_bytes = max_bytes
        self._now = now_func

    def ensure_dirs(self) -> None:
        for kind in UPLOAD_KINDS:
            (self.root / kind).mkdir(parents=True, exist_ok=True)

    def open_upload(self, kind: str | None, original_name: str | None) -> tuple[Path, StoredFile]:
        kind = kind or "files"
        if kind not in UPLOAD_KINDS:
            raise InvalidRequest(f"type must be one of {', '.join(UPLOAD_KINDS)}")
        original = original_name or "upload"
        filename = f"{self._now()}-{secrets.token_hex(4)}-{_safe_name(original)}"
        target = self.root / kind / filename
        target.parent.mkdir(parents=True, exist_ok=True)
        stored = StoredFile(filename=filename, path=f"{URL_PREFIX}/{kind}/{filename}", size=0, original_name=original)
        return target, stored

    async def store_stream(
        self, kind: str | None, original_name: str | None, chunks: AsyncIterator[bytes]
    ) -> StoredFile:
        """Write ``chunks`` to a new upload, enforcing ``max_bytes`` as they arrive.

        File I/O runs in the default executor. A partial file is removed when
        the stream is rejected or fails.
        """

        target, stored = self.open_upload(kind, original_name)
        loop = asyncio.get_running_loop()
        handle = await loop.run_in_executor(None, target.open, "wb")
        size = 0
        completed = False
        try:
            async for chunk in chunks:
                size += len(chunk)
                if size > self.max_bytes:
                    raise UploadTooLarge("upload exceeds size limit")
                await loop.run_in_executor(None, handle.write, chunk)
            completed = True
        finally:
            await loop.run_in_executor(None, handle.close)
            if not completed:
                target.unlink(missing_ok=True)
        return replace(stored, size=size)
