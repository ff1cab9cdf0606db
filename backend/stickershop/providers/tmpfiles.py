"""
Temporary public file host, used when the generation API won't take an
inline image.

The host answers with a landing-page URL; the generation API needs the
direct-download form (``https://tmpfiles.org/dl/...``).
"""

from __future__ import annotations

import logging

import httpx

from stickershop.errors import UploadFailed

logger = logging.getLogger(__name__)


def to_direct_download_url(url: str) -> str:
    """Rewrite ``tmpfiles.org/<id>/<name>`` as ``https://tmpfiles.org/dl/<id>/<name>``."""
    direct = url.strip()
    if direct.startswith("http://"):
        direct = "https://" + direct[len("http://"):]
    if "tmpfiles.org/" in direct and "tmpfiles.org/dl/" not in direct:
        direct = direct.replace("tmpfiles.org/", "tmpfiles.org/dl/", 1)
    return direct


class TmpFilesClient:
    """Uploads a file and returns a public direct-download URL."""

    def __init__(self, upload_url: str, http: httpx.AsyncClient):
        self.upload_url = upload_url
        self.http = http

    async def upload(self, data: bytes, filename: str, mime_type: str) -> str:
        """
        Upload bytes to the file host.

        Raises:
            UploadFailed: transport error, non-2xx, or no usable URL returned
        """
        try:
            response = await self.http.post(
                self.upload_url,
                files={"file": (filename, data, mime_type)},
            )
        except httpx.HTTPError as e:
            logger.error("File host unreachable (%s)", type(e).__name__)
            raise UploadFailed(f"File host unreachable: {type(e).__name__}") from None

        if response.status_code >= 400:
            logger.error("File host rejected upload (status=%s)", response.status_code)
            raise UploadFailed(f"File host returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            raise UploadFailed("File host returned invalid JSON") from None

        url = None
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            url = payload["data"].get("url")
        if not isinstance(url, str) or not url.strip():
            logger.error("File host returned no URL")
            raise UploadFailed("No URL returned from file host")

        direct = to_direct_download_url(url)
        logger.info("Uploaded %d bytes to file host", len(data))
        return direct
