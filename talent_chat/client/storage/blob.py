import logging
from typing import Optional

import httpx

import talent_chat.config.config as configs
from talent_chat.service.chat.errors import UploadFailed

logger = logging.getLogger(__name__)


class HttpBlobStore:
    """Uploads chat media to a storage REST endpoint and returns public urls."""

    def __init__(
        self,
        base_url: str = configs.STORAGE_URL,
        api_key: str = configs.STORAGE_KEY,
        bucket: str = configs.CHAT_MEDIA_BUCKET,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._bucket = bucket
        self._client = client if client is not None else httpx.AsyncClient(timeout=configs.UPLOAD_TIMEOUT_SEC)

    def public_url(self, path: str) -> str:
        return f"{self._base_url}/storage/v1/object/public/{self._bucket}/{path}"

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        headers = {"content-type": content_type, "x-upsert": "true"}
        if self._api_key:
            headers["authorization"] = f"Bearer {self._api_key}"
        try:
            response = await self._client.post(
                f"{self._base_url}/storage/v1/object/{self._bucket}/{path}",
                content=data,
                headers=headers,
            )
        except httpx.RequestError as exc:
            logger.exception("media upload failed path=%s", path)
            raise UploadFailed(f"upload failed for {path}") from exc
        if response.status_code >= 400:
            logger.warning("media upload rejected status=%s body=%s", response.status_code, response.text)
            raise UploadFailed(f"upload rejected for {path} status={response.status_code}")
        return self.public_url(path)

    async def aclose(self) -> None:
        await self._client.aclose()
