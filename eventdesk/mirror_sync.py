from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any

from eventdesk.cms_client import CMSService
from eventdesk.errors import (
    EventDeskError,
    MirrorLookupFailed,
    MirrorWriteFailed,
    Unauthenticated,
    UpstreamRejected,
)
from eventdesk.identity_client import IdentityService
from eventdesk.models import (
    USER_EMAIL_KEY,
    USER_EXTERNAL_ID_KEY,
    USER_FULL_NAME_KEY,
    USER_IMAGE_KEY,
    USER_NAME_KEY,
    USER_PHONE_KEY,
    USER_SLUG_KEY,
    AppConfig,
    IdentityProfile,
    MirrorUser,
    Session,
    SyncOutcome,
)
from eventdesk.state_store import StateStore


logger = logging.getLogger(__name__)

FALLBACK_NAME = "User"
_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def resolve_full_name(profile: IdentityProfile) -> str:
    full_name = f"{profile.first_name or ''} {profile.last_name or ''}".strip()
    return full_name or profile.email.strip() or FALLBACK_NAME


def resolve_display_name(profile: IdentityProfile) -> str:
    display_name = str(profile.metadata.get("displayName") or "").strip()
    return display_name or resolve_full_name(profile)


def mirror_slug(external_user_id: str) -> str:
    return re.sub(r"[^a-z0-9-]", "-", f"user-{external_user_id}".lower())


def display_fields(profile: IdentityProfile) -> dict[str, str]:
    return {
        USER_NAME_KEY: resolve_display_name(profile),
        USER_FULL_NAME_KEY: resolve_full_name(profile),
    }


class MirrorDirectory:
    """Finds the mirror record for an external user id."""

    def find(self, external_user_id: str) -> MirrorUser | None:
        raise NotImplementedError


class ScanningMirrorDirectory(MirrorDirectory):
    """Full-collection scan on the external id field.

    The CMS offers no server-side filter on this field, so every lookup is
    O(collection size) and dominates the cost of a sync.
    """

    def __init__(self, cms: CMSService, collection_id: str) -> None:
        self.cms = cms
        self.collection_id = collection_id

    def find(self, external_user_id: str) -> MirrorUser | None:
        matches = [
            MirrorUser.from_item(item)
            for item in self.cms.list_items(self.collection_id)
            if str(item.field_data.get(USER_EXTERNAL_ID_KEY, "") or "") == external_user_id
        ]
        if not matches:
            return None
        matches.sort(key=lambda user: (user.created_on or _OLDEST, user.mirror_id))
        if len(matches) > 1:
            logger.warning(
                "Found %s mirror records for %s; using oldest %s, duplicates: %s",
                len(matches),
                external_user_id,
                matches[0].mirror_id,
                ", ".join(user.mirror_id for user in matches[1:]),
            )
        return matches[0]


class MirrorSynchronizer:
    def __init__(
        self,
        config: AppConfig,
        cms: CMSService,
        identity: IdentityService,
        state_store: StateStore,
        directory: MirrorDirectory | None = None,
    ) -> None:
        self.config = config
        self.cms = cms
        self.identity = identity
        self.state_store = state_store
        self.directory = directory or ScanningMirrorDirectory(cms, config.cms.users_collection_id)

    @property
    def _collection_id(self) -> str:
        return self.config.cms.users_collection_id

    def sync_current_user(self, session: Session | None) -> SyncOutcome:
        if session is None or not session.user_id:
            raise Unauthenticated()
        profile = self.identity.get_user(session.user_id)
        return self.sync_profile(profile)

    def sync_profile(self, profile: IdentityProfile) -> SyncOutcome:
        if not profile.user_id:
            raise Unauthenticated("Identity profile has no user id.")
        with self.state_store.advisory_lock(
            f"mirror:{profile.user_id}",
            ttl_seconds=self.config.sync.lock_ttl_seconds,
            wait_seconds=self.config.sync.lock_wait_seconds,
        ) as lease:
            existing = self._lookup(profile.user_id)
            if existing is not None:
                return self._sync_existing(existing, profile)
            # No create once another caller has taken the key.
            lease.ensure_held()
            return self._create(profile)

    def current_mirror_user(self, session: Session | None) -> MirrorUser:
        if session is None or not session.user_id:
            raise Unauthenticated()
        existing = self._lookup(session.user_id)
        if existing is None:
            raise MirrorLookupFailed(
                "User not found in the CMS. Please refresh the page to sync.",
                not_found=True,
            )
        return existing

    def _lookup(self, external_user_id: str) -> MirrorUser | None:
        try:
            return self.directory.find(external_user_id)
        except (UpstreamRejected, RuntimeError, ValueError) as exc:
            message = exc.message if isinstance(exc, EventDeskError) else str(exc)
            raise MirrorLookupFailed(f"Failed to look up mirror user: {message}", original_error=exc) from exc

    def _sync_existing(self, user: MirrorUser, profile: IdentityProfile) -> SyncOutcome:
        current = {USER_NAME_KEY: user.name, USER_FULL_NAME_KEY: user.full_name}
        changes = {key: value for key, value in display_fields(profile).items() if current.get(key) != value}
        if not changes:
            return SyncOutcome(already_exists=True, mirror_id=user.mirror_id)

        logger.info(
            "Syncing mirror user %s for %s, changed fields: %s",
            user.mirror_id,
            profile.user_id,
            ", ".join(sorted(changes)),
        )
        # Mirror records are published on creation, so edits go to the live item.
        self._write(
            lambda: self.cms.update_item(self._collection_id, user.mirror_id, changes, target="live"),
            "update",
        )
        self.state_store.record_audit_event(
            actor_id=profile.user_id,
            item_id=user.mirror_id,
            action="mirror_update",
            details={
                "changes": [
                    {"field": key, "before": current.get(key, ""), "after": value}
                    for key, value in sorted(changes.items())
                ]
            },
        )
        return SyncOutcome(already_exists=True, mirror_id=user.mirror_id, updated_fields=sorted(changes))

    def _create(self, profile: IdentityProfile) -> SyncOutcome:
        field_data: dict[str, Any] = {
            **display_fields(profile),
            USER_SLUG_KEY: mirror_slug(profile.user_id),
            USER_EMAIL_KEY: profile.email,
            USER_EXTERNAL_ID_KEY: profile.user_id,
            USER_IMAGE_KEY: profile.image_url,
        }
        if profile.phone:
            field_data[USER_PHONE_KEY] = profile.phone

        logger.info("Creating mirror user for %s (%s)", profile.user_id, field_data[USER_NAME_KEY])
        item = self._write(
            lambda: self.cms.create_item(self._collection_id, field_data, is_draft=False),
            "create",
        )
        try:
            self.cms.publish_items(self._collection_id, [item.id])
        except EventDeskError as exc:
            logger.warning("Mirror user %s created but not published: %s", item.id, exc.message)

        self.state_store.record_audit_event(
            actor_id=profile.user_id,
            item_id=item.id,
            action="mirror_create",
            details={"name": field_data[USER_NAME_KEY], "slug": field_data[USER_SLUG_KEY]},
        )
        return SyncOutcome(already_exists=False, mirror_id=item.id)

    def _write(self, call: Any, operation: str) -> Any:
        try:
            return call()
        except (UpstreamRejected, RuntimeError, ValueError) as exc:
            message = exc.message if isinstance(exc, EventDeskError) else str(exc)
            raise MirrorWriteFailed(f"Failed to {operation} mirror user: {message}", original_error=exc) from exc
