"""Content Cache: content-addressable store for generated artifacts.

The cache key is a SHA-256 digest over the canonical JSON of every semantic
input of a request (kind, model, prompt, characters, reference image bytes),
so identical requests map to the same key regardless of how the caller built
them. Entries are write-once and never expire in-process; clearing the cache
directory out of band is the only eviction.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
from datetime import datetime, timezone

from app.gateway.storage import ArtifactStore, extension_for, mime_type_for
from app.gateway.types import (
    CacheEntry,
    CharacterBlueprint,
    GenerationRequest,
    ImageEditRequest,
    ImageFromTextRequest,
    InlineImage,
    TextRequest,
)

logger = logging.getLogger(__name__)


def _image_fields(image: InlineImage) -> dict:
    return {"mime_type": image.mime_type, "data": base64.b64encode(image.data).decode("ascii")}


def _character_fields(character: CharacterBlueprint) -> dict:
    return {
        "name": character.name,
        "profile": character.profile,
        "identity_locked": character.identity_locked,
    }


def canonical_payload(request: GenerationRequest, model: str = "") -> dict:
    """Every field that changes what the remote would produce."""
    payload: dict = {"kind": request.kind.value, "model": model, "prompt": request.prompt}

    if isinstance(request, TextRequest):
        payload["reference_images"] = [_image_fields(i) for i in request.reference_images]
    elif isinstance(request, ImageFromTextRequest):
        payload["characters"] = [_character_fields(c) for c in request.characters]
        payload["style_references"] = [_image_fields(i) for i in request.style_references]
    elif isinstance(request, ImageEditRequest):
        payload["characters"] = [_character_fields(c) for c in request.locked_characters]
        payload["source"] = _image_fields(request.source)
    else:
        raise TypeError(f"Unsupported request type: {type(request).__name__}")

    return payload


def compute_cache_key(request: GenerationRequest, model: str = "") -> str:
    """Deterministic hex fingerprint of a request."""
    serialized = json.dumps(
        canonical_payload(request, model),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


class ContentCache:
    """Maps cache keys to artifacts persisted in an ArtifactStore.

    Usage:
        cache = ContentCache(ArtifactStore("generated").child("cache"))

        entry = cache.lookup(key)
        if entry is None:
            location = cache.store(key, data, "image/png")
    """

    def __init__(self, store: ArtifactStore):
        self._store = store
        self.hits = 0
        self.misses = 0

    def lookup(self, key: str) -> CacheEntry | None:
        """Return the cached artifact for ``key``, or None. Never does remote work."""
        for path in sorted(self._store.root_dir.glob(f"{key}.*")):
            if not path.is_file() or path.name.startswith("."):
                continue
            self.hits += 1
            return CacheEntry(
                key=key,
                data=path.read_bytes(),
                mime_type=mime_type_for(path),
                location=f"{self._store.url_prefix}/{path.name}",
                created_at=datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc),
            )
        self.misses += 1
        return None

    def store(self, key: str, data: bytes, mime_type: str) -> str:
        """Persist an artifact under ``key`` and return its location.

        Idempotent: a key that is already present is left untouched.
        """
        name = f"{key}{extension_for(mime_type)}"
        existing = f"{self._store.url_prefix}/{name}"
        if self._store.exists(existing):
            logger.debug("Cache entry %s already present", key[:12])
            return existing
        return self._store.store(data, mime_type, name=name)

    def size(self) -> int:
        return sum(1 for p in self._store.root_dir.glob("*.*") if p.is_file() and not p.name.startswith("."))

    def get_stats(self) -> dict:
        return {"entries": self.size(), "hits": self.hits, "misses": self.misses}
