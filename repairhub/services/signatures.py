"""
Signature image handling: decode, reject blank pads, store.
"""
import base64
import binascii
import uuid
from datetime import datetime
from io import BytesIO

import structlog
from PIL import Image, ImageOps, UnidentifiedImageError

from ..storage.provider import StorageProvider
from .errors import PersistenceFailed, RepairError

logger = structlog.get_logger(__name__)

MAX_SIGNATURE_BYTES = 2 * 1024 * 1024


class InvalidSignature(RepairError):
    status_code = 422
    title = "Unprocessable Entity"
    code = "signature_required"


def decode_data_url(data: str) -> bytes:
    """Accept a bare base64 string or a data:image/png;base64,... URL."""
    if not data:
        raise InvalidSignature("Signature is required")
    if data.startswith("data:"):
        _, _, data = data.partition(",")
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidSignature("Signature is not valid base64")
    if len(raw) > MAX_SIGNATURE_BYTES:
        raise InvalidSignature("Signature image too large")
    return raw


def has_ink(png_bytes: bytes) -> bool:
    """True when the image has at least one pixel that differs from the pad background."""
    try:
        img = Image.open(BytesIO(png_bytes))
        img.load()
    except (UnidentifiedImageError, OSError):
        raise InvalidSignature("Signature is not a readable image")
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        # Transparent pad: any opaque pixel is a stroke
        alpha = img.convert("RGBA").getchannel("A")
        return alpha.getbbox() is not None
    # Opaque pad: strokes are anything darker than pure white
    inverted = ImageOps.invert(img.convert("L"))
    return inverted.getbbox() is not None


def store_signature(storage: StorageProvider, repair_id, kind: str, png_bytes: bytes) -> str:
    """Validate and persist a signature PNG. Returns the storage key."""
    if not has_ink(png_bytes):
        raise InvalidSignature("Signature is empty")
    ts = datetime.utcnow().strftime("%Y%m%d%H%M%S")
    key = f"signatures/{repair_id}/{kind}_{ts}_{uuid.uuid4().hex[:8]}.png"
    try:
        storage.put_bytes(key, png_bytes, "image/png")
    except Exception as e:
        logger.error("signature_store_failed", repair_id=str(repair_id), kind=kind, error=str(e))
        raise PersistenceFailed("Could not save the signature, please retry")
    return key
