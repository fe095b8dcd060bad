"""
Object storage backends for generated images.

Only the upload contract matters to the drafting engine:
upload(data, file_name, mime_type) -> publicly resolvable URL.
"""
import base64
import re
import secrets
import time
from pathlib import Path
from typing import Optional

import structlog

logger = structlog.get_logger()


def generate_file_name(original_name: str, prefix: str = "") -> str:
    """
    Build a unique, URL-safe file name.

    "figure_1.png", "ai-figure" -> "ai-figure-figure-1-1718000000000-a1b2c3.png"
    """
    extension = original_name.rsplit(".", 1)[-1] if "." in original_name else "bin"
    stem = original_name.rsplit(".", 1)[0] if "." in original_name else original_name
    clean = re.sub(r"[^a-zA-Z0-9]", "-", stem).lower()[:30]
    timestamp = int(time.time() * 1000)
    random_part = secrets.token_hex(3)
    head = f"{prefix}-" if prefix else ""
    return f"{head}{clean}-{timestamp}-{random_part}.{extension}"


class InlineStorage:
    """Returns data: URLs. No network, no disk; the default backend."""

    async def upload(self, data: bytes, file_name: str, mime_type: str) -> str:
        encoded = base64.b64encode(data).decode("ascii")
        logger.debug("inline_image_stored", file_name=file_name, size=len(data))
        return f"data:{mime_type};base64,{encoded}"


class LocalStorage:
    """Writes files under root and serves them from public_base_url."""

    def __init__(self, root: Path, public_base_url: str):
        self.root = root
        self.public_base_url = public_base_url.rstrip("/")

    def _resolve(self, file_name: str) -> Path:
        path = Path(file_name)
        if path.is_absolute() or ".." in path.parts:
            raise ValueError(f"invalid file name: {file_name}")
        return self.root / path

    async def upload(self, data: bytes, file_name: str, mime_type: str) -> str:
        target = self._resolve(file_name)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.info("image_stored", path=str(target), mime_type=mime_type, size=len(data))
        return f"{self.public_base_url}/{file_name}"


def get_storage(ctx) -> "InlineStorage | LocalStorage":
    """Pick the storage backend from STORAGE_PROVIDER (inline | local)."""
    provider = (ctx.get_secret("STORAGE_PROVIDER") or "inline").lower()

    if provider == "local":
        root: Optional[str] = ctx.get_secret("STORAGE_ROOT")
        public_url = ctx.get_secret("STORAGE_PUBLIC_URL") or "/uploads"
        return LocalStorage(Path(root or "public/uploads"), public_url)

    if provider != "inline":
        logger.warning("unknown_storage_provider", provider=provider, using="inline")
    return InlineStorage()
