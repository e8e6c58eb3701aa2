from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from eventdesk.cms_client import CMSService
from eventdesk.errors import (
    CmsWriteFailed,
    EventDeskError,
    MirrorLookupFailed,
    NotPrivileged,
    Unauthenticated,
    UpstreamRejected,
    ValidationFailed,
)
from eventdesk.image_host import ImageHostService
from eventdesk.mirror_sync import MirrorSynchronizer
from eventdesk.models import (
    EVENT_CATEGORIES_KEY,
    EVENT_COMMUNITIES_KEY,
    EVENT_ORGANISER_KEY,
    EVENT_THUMBNAIL_KEY,
    UPDATE_MODE_LIVE,
    UPDATE_MODE_STAGING,
    UPDATE_MODES,
    AppConfig,
    CMSItem,
    EventRecord,
    PendingImage,
    Session,
    clean_str_list,
)
from eventdesk.state_store import StateStore


logger = logging.getLogger(__name__)

MAX_REFERENCES = 2

REFERENCE_KINDS = ("categories", "communities", "locations")


@dataclass
class UpdatePlan:
    target: str
    field_data: dict[str, Any]
    is_draft: bool | None
    is_archived: bool | None
    downgraded: bool
    dropped_fields: list[str]


def _reference_violation(label: str, values: list[str]) -> str | None:
    if not values:
        return f"{label} (select 1-{MAX_REFERENCES})"
    if len(values) > MAX_REFERENCES:
        return f"{label} (select at most {MAX_REFERENCES})"
    return None


def validate_new_event(record: EventRecord, *, has_pending_image: bool) -> ValidationFailed | None:
    """Check every required field at once and report all violations together."""
    fields: list[str] = []
    labels: list[str] = []

    def _missing(key: str, label: str) -> None:
        fields.append(key)
        labels.append(label)

    if not record.name:
        _missing("name", "Event Name")
    if not record.description:
        _missing("description", "Description")
    if not record.club_name:
        _missing("club-name", "Club Name")
    if not record.date_and_time:
        _missing("date-and-time", "Date and Time")
    if not record.address:
        _missing("address", "Address")
    if not record.thumbnail and not has_pending_image:
        _missing(EVENT_THUMBNAIL_KEY, "Thumbnail Image")
    if not record.location_id:
        _missing("location", "Location")
    communities = _reference_violation("Communities", record.community_ids)
    if communities:
        _missing(EVENT_COMMUNITIES_KEY, communities)
    categories = _reference_violation("Categories", record.category_ids)
    if categories:
        _missing(EVENT_CATEGORIES_KEY, categories)

    if not fields:
        return None
    return ValidationFailed(
        fields,
        message=f"Please fill in the following required fields: {', '.join(labels)}",
    )


def plan_update(
    fields: dict[str, Any] | None,
    *,
    privileged: bool,
    update_mode: str | None,
    is_archived: bool | None,
) -> UpdatePlan:
    """Decide the write target and the payload for an event update.

    Only a privileged caller asking for ``live`` reaches the live endpoint.
    Every other combination is written to staging without error.
    """
    mode = (update_mode or UPDATE_MODE_STAGING).strip().lower()
    if mode not in UPDATE_MODES:
        raise ValidationFailed(["updateMode"], message=f"Unknown update mode: {update_mode}")

    field_data = dict(fields or {})
    dropped = [key for key in (EVENT_ORGANISER_KEY,) if key in field_data]
    for key in dropped:
        field_data.pop(key, None)

    violations: list[str] = []
    for key, label in ((EVENT_COMMUNITIES_KEY, "Communities"), (EVENT_CATEGORIES_KEY, "Categories")):
        if key not in field_data:
            continue
        refs = clean_str_list(field_data[key])
        if _reference_violation(label, refs):
            violations.append(key)
        else:
            field_data[key] = refs
    if violations:
        raise ValidationFailed(
            violations,
            message=f"Select between 1 and {MAX_REFERENCES} values for: {', '.join(violations)}",
        )

    live = privileged and mode == UPDATE_MODE_LIVE
    return UpdatePlan(
        target=UPDATE_MODE_LIVE if live else UPDATE_MODE_STAGING,
        field_data=field_data,
        is_draft=False if live else None,
        is_archived=is_archived,
        downgraded=mode == UPDATE_MODE_LIVE and not live,
        dropped_fields=dropped,
    )


class EventGate:
    def __init__(
        self,
        config: AppConfig,
        cms: CMSService,
        synchronizer: MirrorSynchronizer,
        image_host: ImageHostService,
        state_store: StateStore,
    ) -> None:
        self.config = config
        self.cms = cms
        self.synchronizer = synchronizer
        self.image_host = image_host
        self.state_store = state_store

    @property
    def _collection_id(self) -> str:
        return self.config.cms.events_collection_id

    def is_privileged(self, session: Session) -> bool:
        return self.config.access.is_privileged(session.user_id)

    def create_event(
        self,
        session: Session | None,
        fields: dict[str, Any] | None,
        pending_image: PendingImage | None = None,
    ) -> CMSItem:
        if session is None or not session.user_id:
            raise Unauthenticated()
        record = EventRecord.from_payload(fields)
        failure = validate_new_event(record, has_pending_image=pending_image is not None)
        if failure is not None:
            raise failure

        mirror_id = self.synchronizer.sync_current_user(session).mirror_id
        if pending_image is not None:
            record.thumbnail = self.image_host.upload(pending_image).to_field()

        supplied_organiser = record.organiser_id
        record.organiser_id = mirror_id
        if supplied_organiser and supplied_organiser != mirror_id:
            logger.info("Ignoring caller-supplied organiser %s for %s", supplied_organiser, session.user_id)

        # New events never go public directly.
        item = self._cms_write(
            lambda: self.cms.create_item(
                self._collection_id,
                record.to_field_data(),
                is_draft=True,
                is_archived=True,
            ),
            "create",
        )
        self.state_store.record_audit_event(
            actor_id=session.user_id,
            item_id=item.id,
            action="event_create",
            details={"name": record.name, "organiser": mirror_id},
        )
        return item

    def update_event(
        self,
        session: Session | None,
        item_id: str,
        fields: dict[str, Any] | None,
        update_mode: str | None = None,
        is_archived: bool | None = None,
        pending_image: PendingImage | None = None,
    ) -> CMSItem:
        if session is None or not session.user_id:
            raise Unauthenticated()
        privileged = self.is_privileged(session)
        plan = plan_update(fields, privileged=privileged, update_mode=update_mode, is_archived=is_archived)
        if plan.dropped_fields:
            logger.info("Dropped immutable fields %s from update of %s", plan.dropped_fields, item_id)

        if not privileged:
            self._ensure_owner(session, item_id)
        if plan.downgraded:
            logger.info("Update of %s by %s downgraded from live to staging", item_id, session.user_id)

        if pending_image is not None:
            plan.field_data[EVENT_THUMBNAIL_KEY] = self.image_host.upload(pending_image).to_field()

        item = self._cms_write(
            lambda: self.cms.update_item(
                self._collection_id,
                item_id,
                plan.field_data,
                target=plan.target,
                is_draft=plan.is_draft,
                is_archived=plan.is_archived,
            ),
            "update",
        )
        self.state_store.record_audit_event(
            actor_id=session.user_id,
            item_id=item_id,
            action="event_update",
            details={
                "target": plan.target,
                "requested_mode": update_mode or UPDATE_MODE_STAGING,
                "fields": sorted(plan.field_data),
                "is_archived": plan.is_archived,
            },
        )
        return item

    def _ensure_owner(self, session: Session, item_id: str) -> None:
        mirror_id = self.synchronizer.sync_current_user(session).mirror_id
        try:
            current = self.cms.get_item(self._collection_id, item_id)
        except UpstreamRejected as exc:
            raise CmsWriteFailed(
                f"Failed to load event {item_id}: {exc.message}",
                status=exc.status,
                body=exc.body,
                original_error=exc,
            ) from exc
        if EventRecord.from_item(current).organiser_id != mirror_id:
            raise NotPrivileged("Only the organiser or an administrator can edit this event.")

    def _cms_write(self, call: Any, operation: str) -> CMSItem:
        try:
            return call()
        except UpstreamRejected as exc:
            raise CmsWriteFailed(
                f"Failed to {operation} event: {exc.message}",
                status=exc.status,
                body=exc.body,
                original_error=exc,
            ) from exc
        except RuntimeError as exc:
            raise CmsWriteFailed(f"Failed to {operation} event: {exc}", original_error=exc) from exc

    def list_events(self, session: Session | None) -> dict[str, Any]:
        if session is None or not session.user_id:
            raise Unauthenticated()
        collection = self.cms.get_collection(self._collection_id)
        items = self.cms.list_items(self._collection_id)
        if not self.is_privileged(session):
            try:
                mirror_id = self.synchronizer.current_mirror_user(session).mirror_id
            except MirrorLookupFailed as exc:
                if not exc.not_found:
                    raise
                mirror_id = ""
            items = [item for item in items if mirror_id and EventRecord.from_item(item).organiser_id == mirror_id]
        return {
            "collection": collection,
            "items": [item.to_dict() for item in items],
            "privileged": self.is_privileged(session),
        }

    def list_references(self, kind: str) -> list[dict[str, Any]]:
        collection_ids = {
            "categories": self.config.cms.categories_collection_id,
            "communities": self.config.cms.communities_collection_id,
            "locations": self.config.cms.locations_collection_id,
        }
        if kind not in collection_ids:
            raise ValueError(f"Unknown reference collection: {kind}")
        try:
            items = self.cms.list_items(collection_ids[kind])
        except RuntimeError as exc:
            raise EventDeskError(f"Failed to fetch {kind}: {exc}", original_error=exc) from exc
        return [item.to_dict() for item in items if item.is_active]
