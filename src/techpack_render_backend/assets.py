"""
Image assets for rendered pages.

Logos and how-to-measure illustrations are referenced by asset refs in the
snapshot and the overlay descriptor. The resolver fetches the bytes from a
local directory or from S3, re-encodes raster images as JPEG at the
requested quality, and returns data URIs that are inlined into page HTML.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

from .s3_service import S3Storage

logger = logging.getLogger(__name__)

# Embedded images never need more than this on a landscape A4 page.
MAX_EMBED_SIZE: Tuple[int, int] = (1200, 800)


def reencode_image(payload: bytes, quality: int, max_size: Optional[Tuple[int, int]] = None) -> bytes:
    """
    Re-encode an image as JPEG.

    Args:
        payload: Encoded source image (PNG, JPEG, WebP, ...)
        quality: JPEG quality, 0-100
        max_size: Optional bounding box; larger images are scaled down

    Raises:
        UnidentifiedImageError: If Pillow cannot decode the payload
    """
    with Image.open(io.BytesIO(payload)) as image:
        image.load()
        if max_size is not None:
            image.thumbnail(max_size)
        if image.mode in ("RGBA", "LA", "P"):
            rgba = image.convert("RGBA")
            background = Image.new("RGB", rgba.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.getchannel("A"))
            image = background
        elif image.mode != "RGB":
            image = image.convert("RGB")
        output = io.BytesIO()
        image.save(output, format="JPEG", quality=max(1, min(int(quality), 95)), optimize=True)
        return output.getvalue()


def to_data_uri(payload: bytes, media_type: str) -> str:
    return f"data:{media_type};base64,{base64.b64encode(payload).decode('ascii')}"


class LogoAssetResolver:
    """
    Resolves asset refs to bytes.

    Args:
        source: "local" or "s3"
        local_root: Directory holding assets when source is local
        storage: S3 storage used when source is s3
        s3_prefix: Key prefix prepended to refs in S3
    """

    def __init__(
        self,
        source: str = "local",
        local_root: Path = Path("assets"),
        storage: Optional[S3Storage] = None,
        s3_prefix: str = "",
    ) -> None:
        if source not in ("local", "s3"):
            raise ValueError(f"Unknown asset source: {source}")
        self.source = source
        self.local_root = Path(local_root)
        self.storage = storage
        self.s3_prefix = s3_prefix

    @classmethod
    def from_config(cls, assets_config, storage: Optional[S3Storage] = None) -> "LogoAssetResolver":
        return cls(
            source=assets_config.source,
            local_root=Path(assets_config.local_root),
            storage=storage,
            s3_prefix=assets_config.s3_prefix,
        )

    def resolve_logo_asset(self, ref: str) -> Optional[bytes]:
        """Return the bytes behind an asset ref, or None when it cannot be found."""
        if ref.startswith("data:"):
            try:
                return base64.b64decode(ref.split(",", 1)[1])
            except (IndexError, binascii.Error):
                logger.warning("Ignoring malformed data URI asset")
                return None

        if self.source == "s3":
            if self.storage is None:
                logger.warning(f"No S3 storage configured for asset {ref}")
                return None
            return self.storage.get_object_bytes(f"{self.s3_prefix}{ref.lstrip('/')}")

        root = self.local_root.resolve()
        path = (root / ref.lstrip("/")).resolve()
        if not path.is_relative_to(root):
            logger.warning(f"Asset ref escapes the asset directory: {ref}")
            return None
        if not path.is_file():
            logger.warning(f"Asset not found: {path}")
            return None
        return path.read_bytes()

    def embed(self, ref: Optional[str], quality: int) -> Optional[str]:
        """
        Data URI for an asset, re-encoded as JPEG when it is a raster image.

        SVG assets are inlined unchanged; anything else Pillow cannot decode
        is skipped.
        """
        if not ref:
            return None
        payload = self.resolve_logo_asset(ref)
        if payload is None:
            return None
        if ref.lower().endswith(".svg") or ref.startswith("data:image/svg"):
            return to_data_uri(payload, "image/svg+xml")
        try:
            return to_data_uri(reencode_image(payload, quality, MAX_EMBED_SIZE), "image/jpeg")
        except (UnidentifiedImageError, OSError) as exc:
            logger.warning(f"Skipping undecodable image asset {ref}: {exc}")
            return None
