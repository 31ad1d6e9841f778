import logging
from typing import Optional

import httpx

from shared.utils import ConfigurationError, UpstreamServiceError

logger = logging.getLogger(__name__)

CLOUDINARY_UPLOAD_URL = "https://api.cloudinary.com/v1_1/{cloud_name}/upload"


class ImageUploader:
    """Unsigned uploads to Cloudinary for admin product photos."""

    def __init__(self, cloud_name: Optional[str], upload_preset: Optional[str],
                 timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.cloud_name = cloud_name
        self.upload_preset = upload_preset
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def configured(self) -> bool:
        return bool(self.cloud_name and self.upload_preset)

    async def upload(self, filename: str, content: bytes, content_type: str = "application/octet-stream") -> str:
        if not self.configured:
            raise ConfigurationError(
                "Cloudinary is not configured. Set CLOUDINARY_CLOUD_NAME and CLOUDINARY_UPLOAD_PRESET in .env"
            )

        url = CLOUDINARY_UPLOAD_URL.format(cloud_name=self.cloud_name)
        try:
            response = await self._client.post(
                url,
                files={"file": (filename, content, content_type)},
                data={"upload_preset": self.upload_preset},
            )
        except httpx.RequestError as e:
            raise UpstreamServiceError(f"Cloudinary upload failed: {e}")

        if response.is_error:
            raise UpstreamServiceError(f"Cloudinary upload failed: {response.status_code} {response.text}")

        try:
            data = response.json()
        except ValueError:
            raise UpstreamServiceError(f"Cloudinary upload failed: unexpected response {response.text[:200]}")
        secure_url = data.get("secure_url") or data.get("url")
        logger.info(f"Uploaded image {filename}")
        return secure_url

    async def aclose(self) -> None:
        await self._client.aclose()
