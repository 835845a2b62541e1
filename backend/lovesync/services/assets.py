"""
Asset uploads (photos and other attachments referenced by records).

Uploads go straight to the remote store; there is no offline queue for blobs.
Failures are reported as ``None`` so callers can keep the record without an
attachment and retry later.
"""
import base64
import binascii
import logging
import re
from typing import Optional, Tuple

from ..core.errors import RemoteError
from .remote_client import AssetInfo, RemoteClient

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(;[\w=-]+)*;base64,")


def decode_base64_payload(payload: str, default_mime: str = "image/jpeg") -> Tuple[bytes, str]:
    """Decode raw or ``data:`` URL base64 content; returns ``(bytes, mime_type)``."""
    mime_type = default_mime
    match = DATA_URL_PREFIX.match(payload)
    if match:
        mime_type = match.group("mime") or default_mime
        payload = payload[match.end():]
    return base64.b64decode(payload, validate=True), mime_type


class AssetService:
    def __init__(self, remote: RemoteClient):
        self.remote = remote

    async def upload(self, data: bytes, filename: str, mime_type: str = "application/octet-stream") -> Optional[AssetInfo]:
        """Upload ``data`` and return its remote location, or ``None`` on failure."""
        try:
            info = await self.remote.upload_asset(data, filename, mime_type)
        except RemoteError as exc:
            logger.warning("Failed to upload file %s: %s", filename, exc.message)
            return None
        logger.info("Uploaded file %s (%d bytes) -> %s", info.name, info.size, info.url)
        return info

    async def upload_base64(self, payload: str, filename: str, mime_type: str = "image/jpeg") -> Optional[AssetInfo]:
        try:
            data, detected_mime = decode_base64_payload(payload, mime_type)
        except (binascii.Error, ValueError) as exc:
            logger.warning("Failed to decode base64 upload %s: %s", filename, exc)
            return None
        return await self.upload(data, filename, detected_mime)
