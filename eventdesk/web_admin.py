from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from eventdesk.cms_client import CMSService
from eventdesk.config_manager import ConfigManager
from eventdesk.errors import EventDeskError, NotPrivileged, Unauthenticated, ValidationFailed
from eventdesk.identity_client import IdentityService
from eventdesk.image_host import ImageHostService
from eventdesk.mirror_sync import MirrorSynchronizer
from eventdesk.models import AppConfig, PendingImage, Session
from eventdesk.onboarding import OnboardingFlow, is_public_path, onboarding_state
from eventdesk.ownership import REFERENCE_KINDS, EventGate
from eventdesk.state_store import StateStore
from eventdesk.webhooks import WebhookVerificationError, verify_webhook


logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class CreateEventRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    field_data: dict[str, Any] = Field(default_factory=dict, alias="fieldData")


class UpdateEventRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    field_data: dict[str, Any] = Field(default_factory=dict, alias="fieldData")
    update_mode: str | None = Field(default=None, alias="updateMode")
    is_archived: bool | None = Field(default=None, alias="isArchived")


class OnboardingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    display_name: str = Field(default="", alias="displayName")


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)


@dataclass
class Services:
    config: AppConfig
    cms: CMSService
    identity: IdentityService
    image_host: ImageHostService
    synchronizer: MirrorSynchronizer
    gate: EventGate
    onboarding: OnboardingFlow


def build_services(config: AppConfig, state_store: StateStore) -> Services:
    cms = CMSService(config.cms)
    identity = IdentityService(config.identity)
    image_host = ImageHostService(config.image_host)
    synchronizer = MirrorSynchronizer(config, cms, identity, state_store)
    return Services(
        config=config,
        cms=cms,
        identity=identity,
        image_host=image_host,
        synchronizer=synchronizer,
        gate=EventGate(config, cms, synchronizer, image_host, state_store),
        onboarding=OnboardingFlow(identity),
    )


def _session_token(request: Request, cookie_name: str) -> str | None:
    authorization = request.headers.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        if token:
            return token
    return request.cookies.get(cookie_name) or None


def _error_response(exc: EventDeskError, **extra: Any) -> JSONResponse:
    error = exc.to_dict()
    error.update(extra)
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": error})


def _form_fields(field_data: str) -> dict[str, Any]:
    try:
        fields = json.loads(field_data)
    except json.JSONDecodeError as exc:
        raise ValidationFailed(["fieldData"], message="fieldData must be a JSON object") from exc
    if not isinstance(fields, dict):
        raise ValidationFailed(["fieldData"], message="fieldData must be a JSON object")
    return fields


def _pending_image(upload: UploadFile | None) -> PendingImage | None:
    if upload is None or not upload.filename:
        return None
    content = upload.file.read()
    if not content:
        return None
    return PendingImage(
        filename=upload.filename,
        content=content,
        content_type=upload.content_type or "application/octet-stream",
    )


def create_app() -> FastAPI:
    config_path = os.getenv("EVENTDESK_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("EVENTDESK_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="EventDesk Admin", version="0.1.0")
    app.state.context = context

    def _services() -> Services:
        config = app.state.context.config_manager.load()
        return build_services(config, app.state.context.state_store)

    def _require_session(request: Request) -> Session:
        session = getattr(request.state, "session", None)
        if session is None:
            raise Unauthenticated()
        return session

    def _require_privileged(request: Request, services: Services) -> Session:
        session = _require_session(request)
        if not services.gate.is_privileged(session):
            raise NotPrivileged("Administrator access required.")
        return session

    @app.exception_handler(EventDeskError)
    async def _handle_eventdesk_error(_request: Request, exc: EventDeskError) -> JSONResponse:
        return _error_response(exc)

    @app.middleware("http")
    async def onboarding_gate(request: Request, call_next: Any) -> Any:
        path = request.url.path
        request.state.session = None
        if is_public_path(path):
            return await call_next(request)

        services = await run_in_threadpool(_services)
        token = _session_token(request, services.config.identity.session_cookie)
        session: Session | None = None
        if token:
            try:
                session = await run_in_threadpool(services.identity.verify_session, token)
            except Unauthenticated as exc:
                logger.info("Rejected session on %s: %s", path, exc.message)
        try:
            decision = await run_in_threadpool(services.onboarding.check, session, path)
        except EventDeskError as exc:
            return _error_response(exc)

        if not decision.allow:
            if path.startswith("/api/"):
                if session is None:
                    return _error_response(Unauthenticated(), redirect_to=decision.redirect_to)
                return JSONResponse(
                    status_code=403,
                    content={
                        "ok": False,
                        "error": {
                            "kind": "onboarding_required",
                            "message": "Complete your profile before continuing.",
                            "redirect_to": decision.redirect_to,
                        },
                    },
                )
            return RedirectResponse(decision.redirect_to or "/", status_code=307)

        request.state.session = session
        request.state.onboarding_state = decision.state
        return await call_next(request)

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/sign-in")
    def sign_in(redirect_url: str = "/") -> dict[str, Any]:
        return {"ok": True, "message": "Sign in with the identity provider.", "redirect_url": redirect_url}

    @app.get("/")
    def home(request: Request) -> dict[str, Any]:
        session = _require_session(request)
        return {"ok": True, "app": "EventDesk Admin", "user_id": session.user_id}

    @app.get("/onboarding")
    def onboarding_page(request: Request) -> dict[str, Any]:
        _require_session(request)
        return {"ok": True, "state": request.state.onboarding_state}

    @app.get("/api/onboarding")
    def get_onboarding(request: Request) -> dict[str, Any]:
        session = _require_session(request)
        services = _services()
        profile = services.identity.get_user(session.user_id)
        return {
            "ok": True,
            "state": onboarding_state(profile.metadata),
            "displayName": str(profile.metadata.get("displayName") or ""),
        }

    @app.post("/api/onboarding")
    def post_onboarding(request: OnboardingRequest, raw_request: Request) -> JSONResponse:
        session = _require_session(raw_request)
        services = _services()
        result = services.onboarding.complete(session, request.display_name)
        mirror: dict[str, Any] | None = None
        try:
            mirror = services.synchronizer.sync_profile(result.profile).to_dict()
        except EventDeskError as exc:
            logger.warning("Mirror sync after onboarding failed for %s: %s", session.user_id, exc.message)
        response = JSONResponse(
            content={
                "ok": True,
                "redirect_to": result.redirect_to,
                "metadata": result.metadata,
                "mirror": mirror,
            }
        )
        response.set_cookie(
            key=services.config.identity.session_cookie,
            value=result.session_token,
            httponly=True,
            secure=True,
            samesite="lax",
            path="/",
        )
        return response

    @app.post("/api/sync-user")
    def sync_user(request: Request) -> dict[str, Any]:
        session = _require_session(request)
        outcome = _services().synchronizer.sync_current_user(session)
        message = "User already synced" if outcome.already_exists else "User synced to CMS"
        return {"ok": True, "success": True, "message": message, **outcome.to_dict()}

    @app.get("/api/current-user")
    def current_user(request: Request) -> dict[str, Any]:
        session = _require_session(request)
        user = _services().synchronizer.current_mirror_user(session)
        return {"ok": True, **user.to_dict()}

    @app.get("/api/collection")
    def list_events(request: Request) -> dict[str, Any]:
        session = _require_session(request)
        return {"ok": True, **_services().gate.list_events(session)}

    @app.post("/api/collection/items")
    def create_event(request: CreateEventRequest, raw_request: Request) -> dict[str, Any]:
        session = _require_session(raw_request)
        item = _services().gate.create_event(session, request.field_data)
        return {"ok": True, "item": item.to_dict()}

    @app.post("/api/collection/items/upload")
    def create_event_with_image(
        raw_request: Request,
        field_data: str = Form(..., alias="fieldData"),
        file: UploadFile | None = File(default=None),
    ) -> dict[str, Any]:
        session = _require_session(raw_request)
        item = _services().gate.create_event(session, _form_fields(field_data), _pending_image(file))
        return {"ok": True, "item": item.to_dict()}

    @app.patch("/api/collection/items/{item_id}")
    def update_event(item_id: str, request: UpdateEventRequest, raw_request: Request) -> dict[str, Any]:
        session = _require_session(raw_request)
        item = _services().gate.update_event(
            session,
            item_id,
            request.field_data,
            update_mode=request.update_mode,
            is_archived=request.is_archived,
        )
        return {"ok": True, "item": item.to_dict()}

    @app.patch("/api/collection/items/{item_id}/upload")
    def update_event_with_image(
        item_id: str,
        raw_request: Request,
        field_data: str = Form("{}", alias="fieldData"),
        update_mode: str | None = Form(default=None, alias="updateMode"),
        is_archived: bool | None = Form(default=None, alias="isArchived"),
        file: UploadFile | None = File(default=None),
    ) -> dict[str, Any]:
        session = _require_session(raw_request)
        item = _services().gate.update_event(
            session,
            item_id,
            _form_fields(field_data),
            update_mode=update_mode,
            is_archived=is_archived,
            pending_image=_pending_image(file),
        )
        return {"ok": True, "item": item.to_dict()}

    @app.post("/api/upload-image")
    def upload_image(request: Request, file: UploadFile = File(...)) -> dict[str, Any]:
        _require_session(request)
        image = _pending_image(file)
        if image is None:
            raise ValidationFailed(["file"], message="An image file is required")
        descriptor = _services().image_host.upload(image)
        return {"ok": True, **descriptor.to_field()}

    def _reference_route(kind: str) -> Any:
        def list_references() -> dict[str, Any]:
            return {"ok": True, "items": _services().gate.list_references(kind)}

        return list_references

    for reference_kind in REFERENCE_KINDS:
        app.add_api_route(
            f"/api/{reference_kind}",
            _reference_route(reference_kind),
            methods=["GET"],
            name=f"list_{reference_kind}",
        )

    @app.post("/api/webhooks/identity")
    async def identity_webhook(request: Request) -> dict[str, Any]:
        body = await request.body()
        services = await run_in_threadpool(_services)
        try:
            event = verify_webhook(services.config.identity.webhook_secret, request.headers, body)
        except WebhookVerificationError as exc:
            raise HTTPException(status_code=400, detail=f"Error: {exc}") from exc
        if not event.requires_sync:
            return {"ok": True, "success": True, "event": event.event_type, "synced": False}
        outcome = await run_in_threadpool(services.synchronizer.sync_profile, event.profile())
        logger.info("Webhook %s synced %s -> %s", event.event_type, event.data.get("id"), outcome.mirror_id)
        return {"ok": True, "success": True, "event": event.event_type, "synced": True, **outcome.to_dict()}

    @app.get("/api/config")
    def get_config(request: Request) -> dict[str, Any]:
        _require_privileged(request, _services())
        return {"ok": True, "config": app.state.context.config_manager.masked()}

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest, raw_request: Request) -> dict[str, Any]:
        _require_privileged(raw_request, _services())
        updated = app.state.context.config_manager.update(request.payload)
        logger.info("Config updated; %s privileged users", len(updated.access.privileged_user_ids))
        return {"ok": True, "message": "config updated", "config": app.state.context.config_manager.masked()}

    @app.get("/api/audit/events")
    def audit_events(request: Request, limit: int = 100, action: str | None = None) -> dict[str, Any]:
        _require_privileged(request, _services())
        return {"ok": True, "events": app.state.context.state_store.recent_audit_events(limit=limit, action=action)}

    return app


app = create_app()
