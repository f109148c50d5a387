from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet

from .errors import UploadError


_IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif"})

ALLOWED_EXTENSIONS: Dict[str, FrozenSet[str]] = {
    "image": _IMAGE_EXTENSIONS,
    "avatar": _IMAGE_EXTENSIONS,
    "video": frozenset({"mp4", "webm", "ogg", "mov"}),
}


@dataclass(frozen=True)
class BlobLimits:
    max_bytes: Dict[str, int] = field(
        default_factory=lambda: {
            "image": 10 * 1024 * 1024,
            "video": 50 * 1024 * 1024,
            "avatar": 5 * 1024 * 1024,
        }
    )


class BlobStore:
    def store(self, data: bytes, kind: str, filename: str) -> str:
        """Persist ``data`` and return its public URL, or raise :class:`UploadError`."""
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    """Writes uploads into a directory served by the app under ``/uploads``."""

    def __init__(self, directory: str, base_url: str, limits: BlobLimits | None = None) -> None:
        self.directory = Path(directory)
        self.base_url = base_url.rstrip("/")
        self.limits = limits or BlobLimits()

    def store(self, data: bytes, kind: str, filename: str) -> str:
        allowed = ALLOWED_EXTENSIONS.get(kind)
        if allowed is None:
            raise UploadError(f"unsupported media kind: {kind}")
        extension = Path(filename).suffix.lower().lstrip(".")
        if extension not in allowed:
            raise UploadError(f"only {kind} files are allowed")
        if not data:
            raise UploadError("empty upload")
        max_bytes = self.limits.max_bytes.get(kind)
        if max_bytes is not None and len(data) > max_bytes:
            raise UploadError(f"{kind} exceeds {max_bytes} bytes")

        name = f"{secrets.token_hex(12)}.{extension}"
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            (self.directory / name).write_bytes(data)
        except OSError as exc:
            raise UploadError("could not store upload") from exc
        return f"{self.base_url}/uploads/{name}"
