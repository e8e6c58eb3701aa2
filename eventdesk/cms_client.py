from __future__ import annotations

import logging
from typing import Any

import requests

from eventdesk.errors import NetworkError, UpstreamTimeout
from eventdesk.models import CMSConfig, CMSItem, UPDATE_MODE_LIVE, UPDATE_MODES
from eventdesk.upstream import json_body, send


logger = logging.getLogger(__name__)

SERVICE_NAME = "CMS"


class CMSService:
    """Thin client for the hosted CMS collection API (v2 item endpoints)."""

    def __init__(self, config: CMSConfig, http: requests.Session | None = None) -> None:
        self.config = config
        self._http = http or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.api_token)

    def _headers(self, *, with_body: bool = False) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.config.api_token}",
            "accept-version": "2.0.0",
        }
        if with_body:
            headers["Content-Type"] = "application/json"
        return headers

    def _collection_url(self, collection_id: str) -> str:
        if not collection_id:
            raise RuntimeError("CMS collection id is not configured.")
        return f"{self.config.base_url}/collections/{collection_id}"

    def _items_url(self, collection_id: str) -> str:
        return f"{self._collection_url(collection_id)}/items"

    def _read(self, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        attempts = 1 + max(0, self.config.read_retries)
        for attempt in range(1, attempts + 1):
            try:
                response = send(
                    self._http,
                    "GET",
                    url,
                    timeout=self.config.timeout_seconds,
                    service=SERVICE_NAME,
                    headers=self._headers(),
                    params=params,
                )
                return json_body(response)
            except (UpstreamTimeout, NetworkError):
                # Only reads are retried.
                if attempt >= attempts:
                    raise
                logger.info("Retrying CMS read %s (attempt %s/%s)", url, attempt + 1, attempts)
        raise RuntimeError("unreachable")

    def get_collection(self, collection_id: str) -> dict[str, Any]:
        return self._read(self._collection_url(collection_id))

    def list_items(self, collection_id: str) -> list[CMSItem]:
        """Fetch every item of a collection, following offset pagination."""
        url = self._items_url(collection_id)
        items: list[CMSItem] = []
        offset = 0
        while True:
            payload = self._read(url, params={"offset": offset, "limit": self.config.page_size})
            raw_items = payload.get("items") or []
            for raw in raw_items:
                if isinstance(raw, dict):
                    items.append(CMSItem.from_api(raw))
            pagination = payload.get("pagination") or {}
            total = int(pagination.get("total", len(items)) or 0)
            offset += len(raw_items)
            if not raw_items or offset >= total:
                break
        return items

    def get_item(self, collection_id: str, item_id: str) -> CMSItem:
        payload = self._read(f"{self._items_url(collection_id)}/{item_id}")
        return CMSItem.from_api(payload)

    def create_item(
        self,
        collection_id: str,
        field_data: dict[str, Any],
        *,
        is_draft: bool,
        is_archived: bool = False,
    ) -> CMSItem:
        response = send(
            self._http,
            "POST",
            self._items_url(collection_id),
            timeout=self.config.timeout_seconds,
            service=SERVICE_NAME,
            headers=self._headers(with_body=True),
            json={"fieldData": field_data, "isDraft": bool(is_draft), "isArchived": bool(is_archived)},
        )
        item = CMSItem.from_api(json_body(response))
        logger.info("Created CMS item %s in collection %s", item.id, collection_id)
        return item

    def update_item(
        self,
        collection_id: str,
        item_id: str,
        field_data: dict[str, Any],
        *,
        target: str,
        is_draft: bool | None = None,
        is_archived: bool | None = None,
    ) -> CMSItem:
        if target not in UPDATE_MODES:
            raise ValueError(f"Unknown update target: {target}")
        url = f"{self._items_url(collection_id)}/{item_id}"
        if target == UPDATE_MODE_LIVE:
            url = f"{url}/live"
        body: dict[str, Any] = {"fieldData": field_data}
        if is_draft is not None:
            body["isDraft"] = bool(is_draft)
        if is_archived is not None:
            body["isArchived"] = bool(is_archived)
        response = send(
            self._http,
            "PATCH",
            url,
            timeout=self.config.timeout_seconds,
            service=SERVICE_NAME,
            headers=self._headers(with_body=True),
            json=body,
        )
        item = CMSItem.from_api(json_body(response))
        logger.info("Updated CMS item %s (%s) in collection %s", item_id, target, collection_id)
        return item

    def publish_items(self, collection_id: str, item_ids: list[str]) -> dict[str, Any]:
        response = send(
            self._http,
            "POST",
            f"{self._items_url(collection_id)}/publish",
            timeout=self.config.timeout_seconds,
            service=SERVICE_NAME,
            headers=self._headers(with_body=True),
            json={"itemIds": list(item_ids)},
        )
        return json_body(response)
