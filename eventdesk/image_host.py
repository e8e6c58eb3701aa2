from __future__ import annotations

import logging

import requests

from eventdesk.errors import EventDeskError, UploadFailed
from eventdesk.models import ImageDescriptor, ImageHostConfig, PendingImage
from eventdesk.upstream import json_body, send


logger = logging.getLogger(__name__)


class ImageHostService:
    def __init__(self, config: ImageHostConfig, http: requests.Session | None = None) -> None:
        self.config = config
        self._http = http or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.config.upload_url)

    def upload(self, image: PendingImage) -> ImageDescriptor:
        if not self.is_configured():
            raise UploadFailed("Image upload is not configured.")
        headers: dict[str, str] = {}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        try:
            response = send(
                self._http,
                "POST",
                self.config.upload_url,
                timeout=self.config.timeout_seconds,
                service="Image host",
                headers=headers,
                files={"file": (image.filename, image.content, image.content_type)},
            )
            payload = json_body(response)
        except EventDeskError as exc:
            raise UploadFailed(f"Failed to upload image: {exc.message}", original_error=exc) from exc
        except ValueError as exc:
            raise UploadFailed("Image host returned an unreadable response.", original_error=exc) from exc

        file_id = str(payload.get("fileId") or payload.get("id") or payload.get("public_id") or "").strip()
        url = str(payload.get("url") or payload.get("secure_url") or "").strip()
        if not file_id or not url:
            raise UploadFailed("Image host response is missing fileId or url.")
        alt = payload.get("alt")
        descriptor = ImageDescriptor(file_id=file_id, url=url, alt=str(alt) if alt else None)
        logger.info("Uploaded image %s as %s", image.filename, descriptor.file_id)
        return descriptor
