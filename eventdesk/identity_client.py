from __future__ import annotations

import logging
from typing import Any

import jwt
import requests
from jwt import PyJWKClient

from eventdesk.errors import Unauthenticated
from eventdesk.models import IdentityConfig, IdentityProfile, Session
from eventdesk.upstream import json_body, send


logger = logging.getLogger(__name__)

SERVICE_NAME = "Identity provider"


class IdentityService:
    def __init__(self, config: IdentityConfig, http: requests.Session | None = None) -> None:
        self.config = config
        self._http = http or requests.Session()
        self._jwks_client: PyJWKClient | None = None

    def _headers(self, *, with_body: bool = False) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.config.secret_key}"}
        if with_body:
            headers["Content-Type"] = "application/json"
        return headers

    def _decode(self, token: str) -> dict[str, Any]:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as exc:
            raise Unauthenticated("Invalid session token format.", original_error=exc) from exc
        alg = header.get("alg")
        if alg in ("RS256", "ES256"):
            if not self.config.jwks_url:
                raise Unauthenticated("Session verification is not configured (jwks_url).")
            if self._jwks_client is None:
                self._jwks_client = PyJWKClient(self.config.jwks_url)
            try:
                signing_key = self._jwks_client.get_signing_key_from_jwt(token)
            except jwt.PyJWKClientError as exc:
                raise Unauthenticated("Session signing key could not be resolved.", original_error=exc) from exc
            return jwt.decode(token, signing_key.key, algorithms=["RS256", "ES256"], options={"verify_aud": False})
        if alg == "HS256":
            if not self.config.jwt_secret:
                raise Unauthenticated("Session verification is not configured (jwt_secret).")
            return jwt.decode(token, self.config.jwt_secret, algorithms=["HS256"], options={"verify_aud": False})
        raise Unauthenticated(f"Unsupported session token algorithm: {alg}")

    def verify_session(self, token: str | None) -> Session:
        if not token:
            raise Unauthenticated()
        try:
            claims = self._decode(token)
        except jwt.ExpiredSignatureError as exc:
            raise Unauthenticated("Session has expired.", original_error=exc) from exc
        except jwt.InvalidTokenError as exc:
            logger.warning("Session token rejected: %s", exc)
            raise Unauthenticated("Invalid session token.", original_error=exc) from exc
        user_id = str(claims.get("sub", "") or "")
        if not user_id:
            raise Unauthenticated("Session token missing subject.")
        return Session(
            user_id=user_id,
            session_id=str(claims.get("sid", "") or ""),
            claims=claims,
            token=token,
        )

    def get_user(self, user_id: str) -> IdentityProfile:
        response = send(
            self._http,
            "GET",
            f"{self.config.api_base_url}/users/{user_id}",
            timeout=self.config.timeout_seconds,
            service=SERVICE_NAME,
            headers=self._headers(),
        )
        return IdentityProfile.from_api(json_body(response))

    def update_metadata(self, user_id: str, metadata_patch: dict[str, Any]) -> IdentityProfile:
        """Merge ``metadata_patch`` into the user's metadata bag."""
        response = send(
            self._http,
            "PATCH",
            f"{self.config.api_base_url}/users/{user_id}/metadata",
            timeout=self.config.timeout_seconds,
            service=SERVICE_NAME,
            headers=self._headers(with_body=True),
            json={"unsafe_metadata": metadata_patch},
        )
        return IdentityProfile.from_api(json_body(response))

    def refresh_session(self, session_id: str) -> str:
        """Mint a fresh session token so its claims reflect current metadata."""
        if not session_id:
            raise Unauthenticated("Session id missing; cannot refresh session.")
        response = send(
            self._http,
            "POST",
            f"{self.config.api_base_url}/sessions/{session_id}/tokens",
            timeout=self.config.timeout_seconds,
            service=SERVICE_NAME,
            headers=self._headers(with_body=True),
            json={},
        )
        token = str(json_body(response).get("jwt", "") or "")
        if not token:
            raise Unauthenticated("Identity provider returned no session token.")
        return token
