"""File-backed artifact storage.

Artifacts are written under a root directory and addressed by a public
location handle (``/generated/<name>``) that the API also serves as a static
file URL, so large payloads can be referenced instead of re-sent.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import time
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "text/plain": ".txt",
}
_MIME_TYPES = {ext: mime for mime, ext in _EXTENSIONS.items()}
_MIME_TYPES[".jpeg"] = "image/jpeg"

# Non-standard spellings seen in remote responses
_MIME_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "image/x-png": "image/png",
}


def normalize_mime_type(mime_type: str) -> str:
    """Lower-cased MIME type without parameters, with known aliases mapped to the standard name."""
    mime_type = (mime_type or "").split(";", 1)[0].strip().lower()
    return _MIME_ALIASES.get(mime_type, mime_type)


def extension_for(mime_type: str) -> str:
    """File extension for a MIME type (``.bin`` when unknown)."""
    mime_type = normalize_mime_type(mime_type)
    return _EXTENSIONS.get(mime_type) or mimetypes.guess_extension(mime_type) or ".bin"


def mime_type_for(path: Path) -> str:
    suffix = path.suffix.lower()
    return _MIME_TYPES.get(suffix) or mimetypes.guess_type(path.name)[0] or "application/octet-stream"


class ArtifactStore:
    """Stores artifact bytes on disk and hands back location handles."""

    def __init__(self, root_dir: str | Path, url_prefix: str = "/generated"):
        self.root_dir = Path(root_dir)
        self.url_prefix = url_prefix.rstrip("/")
        self.root_dir.mkdir(parents=True, exist_ok=True)

    def child(self, name: str) -> ArtifactStore:
        """A store for a subdirectory, addressed under the same URL prefix."""
        return ArtifactStore(self.root_dir / name, f"{self.url_prefix}/{name}")

    def store(self, data: bytes, mime_type: str, name: str | None = None) -> str:
        """Write bytes and return the location handle.

        Writes go to a temp file first so concurrent readers never see a
        partially written artifact.
        """
        if name is None:
            name = f"img-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}{extension_for(mime_type)}"
        path = self.root_dir / name
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)
        logger.debug("Stored %d bytes at %s", len(data), path)
        return f"{self.url_prefix}/{name}"

    def path_for(self, handle: str) -> Path:
        """Resolve a location handle to a file path inside this store.

        Raises:
            ValueError: If the handle is not under this store (or escapes it).
        """
        prefix = f"{self.url_prefix}/"
        if not handle.startswith(prefix):
            raise ValueError(f"Location {handle!r} is not under {prefix}")

        relative = handle[len(prefix) :]
        root = self.root_dir.resolve()
        path = (root / relative).resolve()
        if path != root and root not in path.parents:
            logger.warning("Path traversal attempt detected: %s", handle)
            raise ValueError("Invalid location: outside of artifact directory")
        return path

    def read(self, handle: str) -> bytes:
        """Read an artifact back by handle.

        Raises:
            ValueError: Invalid handle.
            FileNotFoundError: No artifact at that location.
        """
        path = self.path_for(handle)
        if not path.is_file():
            raise FileNotFoundError(handle)
        return path.read_bytes()

    def exists(self, handle: str) -> bool:
        try:
            return self.path_for(handle).is_file()
        except ValueError:
            return False
