from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

from eventdesk.errors import EventDeskError, Unauthenticated, ValidationFailed
from eventdesk.identity_client import IdentityService
from eventdesk.models import IdentityProfile, Session


logger = logging.getLogger(__name__)

STATE_NEW = "NEW"
STATE_COMPLETE = "COMPLETE"

HOME_PATH = "/"
ONBOARDING_PATH = "/onboarding"
SIGN_IN_PATH = "/sign-in"

PUBLIC_PREFIXES = ("/sign-in", "/sign-up", "/healthz", "/api/webhooks/")
ONBOARDING_API_PATH = "/api/onboarding"
MAX_DISPLAY_NAME_LENGTH = 80


def onboarding_state(metadata: dict[str, Any] | None) -> str:
    if isinstance(metadata, dict) and metadata.get("onboardingComplete") is True:
        return STATE_COMPLETE
    return STATE_NEW


def is_public_path(path: str) -> bool:
    return any(path == prefix.rstrip("/") or path.startswith(prefix) for prefix in PUBLIC_PREFIXES)


def is_onboarding_path(path: str) -> bool:
    return path.rstrip("/") == ONBOARDING_PATH


def sign_in_redirect(path: str) -> str:
    return f"{SIGN_IN_PATH}?{urlencode({'redirect_url': path})}"


@dataclass
class GateDecision:
    allow: bool
    redirect_to: str | None = None
    reason: str = ""
    state: str = STATE_NEW


@dataclass
class OnboardingResult:
    redirect_to: str
    session_token: str
    profile: IdentityProfile
    metadata: dict[str, Any] = field(default_factory=dict)


class OnboardingFlow:
    """Two-state onboarding machine stored in the identity metadata bag."""

    def __init__(self, identity: IdentityService) -> None:
        self.identity = identity

    def current_state(self, session: Session) -> str:
        state = onboarding_state(session.metadata)
        if state == STATE_COMPLETE:
            return state
        # The claims may predate a completed onboarding; confirm before redirecting.
        profile = self.identity.get_user(session.user_id)
        return onboarding_state(profile.metadata)

    def check(self, session: Session | None, path: str) -> GateDecision:
        if is_public_path(path):
            return GateDecision(allow=True, reason="public")
        if session is None:
            return GateDecision(allow=False, redirect_to=sign_in_redirect(path), reason="unauthenticated")
        if path.rstrip("/") == ONBOARDING_API_PATH:
            return GateDecision(allow=True, reason="onboarding_api")

        state = self.current_state(session)
        if is_onboarding_path(path):
            if state == STATE_COMPLETE:
                return GateDecision(allow=False, redirect_to=HOME_PATH, reason="already_onboarded", state=state)
            return GateDecision(allow=True, reason="onboarding", state=state)
        if state == STATE_COMPLETE:
            return GateDecision(allow=True, reason="onboarded", state=state)
        return GateDecision(allow=False, redirect_to=ONBOARDING_PATH, reason="onboarding_required", state=state)

    def complete(self, session: Session | None, display_name: str) -> OnboardingResult:
        if session is None or not session.user_id:
            raise Unauthenticated()
        name = " ".join(str(display_name or "").split())
        if not name:
            raise ValidationFailed(["displayName"], message="Please enter a display name")
        if len(name) > MAX_DISPLAY_NAME_LENGTH:
            raise ValidationFailed(
                ["displayName"],
                message=f"Display name must be at most {MAX_DISPLAY_NAME_LENGTH} characters",
            )

        self.identity.update_metadata(session.user_id, {"displayName": name, "onboardingComplete": True})
        token = self.identity.refresh_session(session.session_id)
        profile = self.identity.get_user(session.user_id)
        if onboarding_state(profile.metadata) != STATE_COMPLETE:
            logger.error("Onboarding flag for %s not visible after refresh", session.user_id)
            raise EventDeskError("Failed to save display name. Please try again.")

        logger.info("Onboarding complete for %s", session.user_id)
        return OnboardingResult(
            redirect_to=HOME_PATH,
            session_token=token,
            profile=profile,
            metadata={
                "displayName": profile.metadata.get("displayName", name),
                "onboardingComplete": True,
            },
        )
