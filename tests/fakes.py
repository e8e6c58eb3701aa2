import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from eventdesk.errors import UpstreamRejected
from eventdesk.models import AppConfig, CMSItem, IdentityProfile, Session


def make_config(**overrides: Any) -> AppConfig:
    data: dict[str, Any] = {
        "cms": {
            "api_token": "cms-token",
            "events_collection_id": "events",
            "users_collection_id": "users",
            "categories_collection_id": "categories",
            "communities_collection_id": "communities",
            "locations_collection_id": "locations",
        },
        "identity": {"secret_key": "sk_test", "jwt_secret": "jwt-secret", "webhook_secret": ""},
        "image_host": {"upload_url": "https://images.example.com/upload"},
        "access": {"privileged_user_ids": ["user_admin"]},
        "sync": {"lock_ttl_seconds": 5, "lock_wait_seconds": 5},
    }
    for section, values in overrides.items():
        data.setdefault(section, {}).update(values)
    return AppConfig.from_dict(data)


def make_profile(user_id: str = "user_1", **kwargs: Any) -> IdentityProfile:
    defaults: dict[str, Any] = {
        "first_name": "Jane",
        "last_name": "Doe",
        "email": "jane@example.com",
        "image_url": "https://img.example.com/jane.png",
    }
    defaults.update(kwargs)
    return IdentityProfile(user_id=user_id, **defaults)


class FakeCMS:
    """In-memory stand-in for CMSService, keyed by collection id."""

    def __init__(self, list_delay: float = 0.0) -> None:
        self.collections: dict[str, dict[str, CMSItem]] = {}
        self.calls: list[tuple[str, ...]] = []
        self.update_calls: list[dict[str, Any]] = []
        self.create_calls: list[dict[str, Any]] = []
        self.published: list[str] = []
        self.list_delay = list_delay
        self.fail_writes: UpstreamRejected | None = None
        self.fail_publish: UpstreamRejected | None = None
        self._lock = threading.Lock()
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def seed(self, collection_id: str, field_data: dict[str, Any], **kwargs: Any) -> CMSItem:
        with self._lock:
            item = CMSItem(
                id=kwargs.pop("id", uuid.uuid4().hex[:12]),
                field_data=dict(field_data),
                created_on=kwargs.pop("created_on", self._tick()),
                **kwargs,
            )
            self.collections.setdefault(collection_id, {})[item.id] = item
            return item

    def _check(self, collection_id: str) -> None:
        if not collection_id:
            raise RuntimeError("CMS collection id is not configured.")

    def get_collection(self, collection_id: str) -> dict[str, Any]:
        self._check(collection_id)
        return {"id": collection_id, "displayName": collection_id.title()}

    def list_items(self, collection_id: str) -> list[CMSItem]:
        self._check(collection_id)
        self.calls.append(("list", collection_id))
        with self._lock:
            items = list(self.collections.get(collection_id, {}).values())
        if self.list_delay:
            time.sleep(self.list_delay)
        return items

    def get_item(self, collection_id: str, item_id: str) -> CMSItem:
        self._check(collection_id)
        item = self.collections.get(collection_id, {}).get(item_id)
        if item is None:
            raise UpstreamRejected("CMS API error: 404", status=404, body="not found")
        return item

    def create_item(
        self,
        collection_id: str,
        field_data: dict[str, Any],
        *,
        is_draft: bool,
        is_archived: bool = False,
    ) -> CMSItem:
        self._check(collection_id)
        self.create_calls.append(
            {"collection": collection_id, "fieldData": dict(field_data), "isDraft": is_draft, "isArchived": is_archived}
        )
        if self.fail_writes is not None:
            raise self.fail_writes
        return self.seed(collection_id, field_data, is_draft=is_draft, is_archived=is_archived)

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
        self.update_calls.append(
            {
                "collection": collection_id,
                "id": item_id,
                "fieldData": dict(field_data),
                "target": target,
                "isDraft": is_draft,
                "isArchived": is_archived,
            }
        )
        if self.fail_writes is not None:
            raise self.fail_writes
        item = self.get_item(collection_id, item_id)
        with self._lock:
            item.field_data.update(field_data)
            if is_draft is not None:
                item.is_draft = is_draft
            if is_archived is not None:
                item.is_archived = is_archived
        return item

    def publish_items(self, collection_id: str, item_ids: list[str]) -> dict[str, Any]:
        if self.fail_publish is not None:
            raise self.fail_publish
        self.published.extend(item_ids)
        return {"publishedItemIds": list(item_ids)}


class FakeIdentity:
    """In-memory stand-in for IdentityService."""

    def __init__(self, *profiles: IdentityProfile) -> None:
        self.profiles = {profile.user_id: profile for profile in profiles}
        self.refreshed: list[str] = []
        self.drop_metadata_writes = False

    def get_user(self, user_id: str) -> IdentityProfile:
        profile = self.profiles.get(user_id)
        if profile is None:
            raise UpstreamRejected("Identity provider API error: 404", status=404, body="not found")
        return IdentityProfile(
            user_id=profile.user_id,
            first_name=profile.first_name,
            last_name=profile.last_name,
            email=profile.email,
            phone=profile.phone,
            image_url=profile.image_url,
            metadata=dict(profile.metadata),
        )

    def update_metadata(self, user_id: str, metadata_patch: dict[str, Any]) -> IdentityProfile:
        if not self.drop_metadata_writes:
            self.profiles[user_id].metadata.update(metadata_patch)
        return self.get_user(user_id)

    def refresh_session(self, session_id: str) -> str:
        self.refreshed.append(session_id)
        return f"refreshed-{session_id}"


def session_for(user_id: str = "user_1", metadata: dict[str, Any] | None = None) -> Session:
    claims: dict[str, Any] = {"sub": user_id, "sid": f"sess_{user_id}"}
    if metadata is not None:
        claims["metadata"] = metadata
    return Session(user_id=user_id, session_id=f"sess_{user_id}", claims=claims)
