from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


# CMS field keys. These must match the live collection schemas exactly.
USER_NAME_KEY = "name"
USER_FULL_NAME_KEY = "full-name"
USER_SLUG_KEY = "slug"
USER_EMAIL_KEY = "email"
USER_PHONE_KEY = "phone"
USER_IMAGE_KEY = "profile-image"
USER_EXTERNAL_ID_KEY = "clerk-user-id"

EVENT_NAME_KEY = "name"
EVENT_DESCRIPTION_KEY = "description"
EVENT_CLUB_NAME_KEY = "club-name"
EVENT_DATE_KEY = "date-and-time"
EVENT_ADDRESS_KEY = "address"
EVENT_THUMBNAIL_KEY = "thumbnail"
EVENT_TICKET_LINK_KEY = "ticket-link"
EVENT_TIMEZONE_KEY = "timezone"
EVENT_ORGANISER_KEY = "organiser-name"
EVENT_COMMUNITIES_KEY = "event-community"
EVENT_CATEGORIES_KEY = "places-2"
EVENT_LOCATION_KEY = "location"

UPDATE_MODE_STAGING = "staging"
UPDATE_MODE_LIVE = "live"
UPDATE_MODES = {UPDATE_MODE_STAGING, UPDATE_MODE_LIVE}


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def clean_str_list(values: Any) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    if not isinstance(values, (list, tuple, set)):
        return []
    return [str(x).strip() for x in values if str(x).strip()]


@dataclass
class CMSConfig:
    base_url: str = "https://api.webflow.com/v2"
    api_token: str = ""
    events_collection_id: str = ""
    users_collection_id: str = ""
    categories_collection_id: str = ""
    communities_collection_id: str = ""
    locations_collection_id: str = ""
    timeout_seconds: int = 30
    page_size: int = 100
    read_retries: int = 1

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CMSConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "https://api.webflow.com/v2")).strip().rstrip("/")
            or "https://api.webflow.com/v2",
            api_token=str(data.get("api_token", "")).strip(),
            events_collection_id=str(data.get("events_collection_id", "")).strip(),
            users_collection_id=str(data.get("users_collection_id", "")).strip(),
            categories_collection_id=str(data.get("categories_collection_id", "")).strip(),
            communities_collection_id=str(data.get("communities_collection_id", "")).strip(),
            locations_collection_id=str(data.get("locations_collection_id", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            page_size=min(100, max(1, int(data.get("page_size", 100)))),
            read_retries=max(0, min(3, int(data.get("read_retries", 1)))),
        )


@dataclass
class IdentityConfig:
    api_base_url: str = "https://api.clerk.com/v1"
    secret_key: str = ""
    jwks_url: str = ""
    jwt_secret: str = ""
    session_cookie: str = "__session"
    webhook_secret: str = ""
    timeout_seconds: int = 15

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "IdentityConfig":
        data = data or {}
        return cls(
            api_base_url=str(data.get("api_base_url", "https://api.clerk.com/v1")).strip().rstrip("/")
            or "https://api.clerk.com/v1",
            secret_key=str(data.get("secret_key", "")).strip(),
            jwks_url=str(data.get("jwks_url", "")).strip(),
            jwt_secret=str(data.get("jwt_secret", "")).strip(),
            session_cookie=str(data.get("session_cookie", "__session")).strip() or "__session",
            webhook_secret=str(data.get("webhook_secret", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 15))),
        )


@dataclass
class ImageHostConfig:
    upload_url: str = ""
    api_key: str = ""
    timeout_seconds: int = 60

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ImageHostConfig":
        data = data or {}
        return cls(
            upload_url=str(data.get("upload_url", "")).strip(),
            api_key=str(data.get("api_key", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 60))),
        )


@dataclass
class AccessConfig:
    privileged_user_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AccessConfig":
        data = data or {}
        return cls(privileged_user_ids=clean_str_list(data.get("privileged_user_ids", [])))

    def is_privileged(self, external_user_id: str) -> bool:
        return bool(external_user_id) and external_user_id in set(self.privileged_user_ids)


@dataclass
class SyncConfig:
    lock_ttl_seconds: int = 15
    lock_wait_seconds: int = 10

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            lock_ttl_seconds=max(1, int(data.get("lock_ttl_seconds", 15))),
            lock_wait_seconds=max(0, int(data.get("lock_wait_seconds", 10))),
        )


@dataclass
class AppConfig:
    cms: CMSConfig = field(default_factory=CMSConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    image_host: ImageHostConfig = field(default_factory=ImageHostConfig)
    access: AccessConfig = field(default_factory=AccessConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            cms=CMSConfig.from_dict(data.get("cms")),
            identity=IdentityConfig.from_dict(data.get("identity")),
            image_host=ImageHostConfig.from_dict(data.get("image_host")),
            access=AccessConfig.from_dict(data.get("access")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Session:
    """A verified identity-provider session.

    ``claims`` is the snapshot taken when the token was issued, so the
    metadata it carries can lag behind the identity provider.
    """

    user_id: str
    session_id: str = ""
    claims: dict[str, Any] = field(default_factory=dict)
    token: str = ""

    @property
    def metadata(self) -> dict[str, Any]:
        for key in ("metadata", "unsafe_metadata", "unsafeMetadata"):
            value = self.claims.get(key)
            if isinstance(value, dict):
                return value
        return {}


@dataclass
class IdentityProfile:
    user_id: str
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    image_url: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "IdentityProfile":
        primary_email_id = payload.get("primary_email_address_id")
        email = ""
        for entry in payload.get("email_addresses") or []:
            if isinstance(entry, dict) and entry.get("id") == primary_email_id:
                email = str(entry.get("email_address", "") or "")
                break
        primary_phone_id = payload.get("primary_phone_number_id")
        phone = ""
        for entry in payload.get("phone_numbers") or []:
            if isinstance(entry, dict) and entry.get("id") == primary_phone_id:
                phone = str(entry.get("phone_number", "") or "")
                break
        metadata = payload.get("unsafe_metadata")
        return cls(
            user_id=str(payload.get("id", "") or ""),
            first_name=str(payload.get("first_name", "") or ""),
            last_name=str(payload.get("last_name", "") or ""),
            email=email,
            phone=phone,
            image_url=str(payload.get("image_url", "") or ""),
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        )


@dataclass
class CMSItem:
    id: str
    field_data: dict[str, Any] = field(default_factory=dict)
    is_draft: bool = False
    is_archived: bool = False
    created_on: datetime | None = None
    last_updated: datetime | None = None
    last_published: datetime | None = None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "CMSItem":
        field_data = payload.get("fieldData")
        return cls(
            id=str(payload.get("id", "") or ""),
            field_data=dict(field_data) if isinstance(field_data, dict) else {},
            is_draft=bool(payload.get("isDraft", False)),
            is_archived=bool(payload.get("isArchived", False)),
            created_on=parse_iso_datetime(payload.get("createdOn")),
            last_updated=parse_iso_datetime(payload.get("lastUpdated")),
            last_published=parse_iso_datetime(payload.get("lastPublished")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "fieldData": dict(self.field_data),
            "isDraft": self.is_draft,
            "isArchived": self.is_archived,
            "createdOn": serialize_datetime(self.created_on),
            "lastUpdated": serialize_datetime(self.last_updated),
            "lastPublished": serialize_datetime(self.last_published),
        }

    @property
    def is_active(self) -> bool:
        return not self.is_draft and not self.is_archived


@dataclass
class MirrorUser:
    mirror_id: str
    external_user_id: str
    name: str = ""
    full_name: str = ""
    email: str = ""
    phone: str = ""
    image_url: str = ""
    slug: str = ""
    created_on: datetime | None = None

    @classmethod
    def from_item(cls, item: CMSItem) -> "MirrorUser":
        data = item.field_data
        return cls(
            mirror_id=item.id,
            external_user_id=str(data.get(USER_EXTERNAL_ID_KEY, "") or ""),
            name=str(data.get(USER_NAME_KEY, "") or ""),
            full_name=str(data.get(USER_FULL_NAME_KEY, "") or ""),
            email=str(data.get(USER_EMAIL_KEY, "") or ""),
            phone=str(data.get(USER_PHONE_KEY, "") or ""),
            image_url=str(data.get(USER_IMAGE_KEY, "") or ""),
            slug=str(data.get(USER_SLUG_KEY, "") or ""),
            created_on=item.created_on,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "mirrorId": self.mirror_id,
            "externalUserId": self.external_user_id,
            "name": self.name,
            "fullName": self.full_name,
            "email": self.email,
        }


@dataclass
class ImageDescriptor:
    file_id: str
    url: str
    alt: str | None = None

    def to_field(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"fileId": self.file_id, "url": self.url}
        if self.alt:
            payload["alt"] = self.alt
        return payload


@dataclass
class PendingImage:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass
class EventRecord:
    item_id: str = ""
    name: str = ""
    description: str = ""
    club_name: str = ""
    date_and_time: str = ""
    address: str = ""
    thumbnail: str | dict[str, Any] | None = None
    ticket_link: str = ""
    timezone: str = ""
    organiser_id: str = ""
    community_ids: list[str] = field(default_factory=list)
    category_ids: list[str] = field(default_factory=list)
    location_id: str = ""
    is_draft: bool = True
    is_archived: bool = True

    @classmethod
    def from_payload(cls, payload: dict[str, Any] | None) -> "EventRecord":
        """Build a draft from CMS-keyed field data supplied by a caller."""
        data = payload or {}
        thumbnail = data.get(EVENT_THUMBNAIL_KEY)
        if isinstance(thumbnail, str):
            thumbnail = thumbnail.strip() or None
        elif not isinstance(thumbnail, dict) or not thumbnail.get("url"):
            thumbnail = None
        return cls(
            name=str(data.get(EVENT_NAME_KEY, "") or "").strip(),
            description=str(data.get(EVENT_DESCRIPTION_KEY, "") or "").strip(),
            club_name=str(data.get(EVENT_CLUB_NAME_KEY, "") or "").strip(),
            date_and_time=str(data.get(EVENT_DATE_KEY, "") or "").strip(),
            address=str(data.get(EVENT_ADDRESS_KEY, "") or "").strip(),
            thumbnail=thumbnail,
            ticket_link=str(data.get(EVENT_TICKET_LINK_KEY, "") or "").strip(),
            timezone=str(data.get(EVENT_TIMEZONE_KEY, "") or "").strip(),
            organiser_id=_first_reference(data.get(EVENT_ORGANISER_KEY)),
            community_ids=clean_str_list(data.get(EVENT_COMMUNITIES_KEY)),
            category_ids=clean_str_list(data.get(EVENT_CATEGORIES_KEY)),
            location_id=str(data.get(EVENT_LOCATION_KEY, "") or "").strip(),
        )

    @classmethod
    def from_item(cls, item: CMSItem) -> "EventRecord":
        record = cls.from_payload(item.field_data)
        record.item_id = item.id
        record.is_draft = item.is_draft
        record.is_archived = item.is_archived
        return record

    def to_field_data(self) -> dict[str, Any]:
        field_data: dict[str, Any] = {
            EVENT_NAME_KEY: self.name,
            EVENT_DESCRIPTION_KEY: self.description,
            EVENT_CLUB_NAME_KEY: self.club_name,
            EVENT_DATE_KEY: self.date_and_time,
            EVENT_ADDRESS_KEY: self.address,
            EVENT_THUMBNAIL_KEY: self.thumbnail or "",
            EVENT_TICKET_LINK_KEY: self.ticket_link,
            EVENT_TIMEZONE_KEY: self.timezone,
        }
        if self.location_id:
            field_data[EVENT_LOCATION_KEY] = self.location_id
        if self.organiser_id:
            # Reference fields are sent as lists even for a single reference.
            field_data[EVENT_ORGANISER_KEY] = [self.organiser_id]
        if self.community_ids:
            field_data[EVENT_COMMUNITIES_KEY] = list(self.community_ids)
        if self.category_ids:
            field_data[EVENT_CATEGORIES_KEY] = list(self.category_ids)
        return field_data


def _first_reference(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        value = value[0] if value else ""
    return str(value or "").strip()


@dataclass
class SyncOutcome:
    already_exists: bool
    mirror_id: str
    updated_fields: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "alreadyExists": self.already_exists,
            "mirrorId": self.mirror_id,
            "updatedFields": list(self.updated_fields),
        }


def default_app_config() -> AppConfig:
    return AppConfig()
