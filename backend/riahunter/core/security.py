from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import jwt
from fastapi import Depends, Request
from sqlalchemy.orm import sessionmaker

from riahunter.core.errors import AuthError
from riahunter.core.settings import Settings
from riahunter.models.profile import Profile
from riahunter.services.cache import TTLCache


logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: str
    claimed_role: str = ""


class AuthVerifier(Protocol):
    def verify(self, session_token: str) -> CurrentUser: ...

    def has_role(self, user_id: str, role: str) -> bool: ...


def _normalize_email(value: str) -> str:
    return str(value or "").strip().lower()


def _decide_role(
    *,
    email_is_admin: bool,
    claim_is_admin: bool,
    db_role: str | None,
    supabase_role: str | None,
) -> tuple[str, str]:
    dbr = str(db_role or "").strip().lower()
    if dbr == "admin":
        return ("admin", "db_profile")
    if email_is_admin:
        return ("admin", "admin_emails")
    if claim_is_admin:
        return ("admin", "jwt_claim")
    if str(supabase_role or "").strip().lower() == "admin":
        return ("admin", "supabase_profiles")
    if dbr:
        return (dbr, "db_profile")
    return ("user", "default")


def _claimed_role(claims: dict[str, Any]) -> str:
    app_meta = claims.get("app_metadata") or {}
    if not isinstance(app_meta, dict):
        app_meta = {}
    claimed = str(app_meta.get("role") or "").strip().lower()
    if claimed:
        return claimed
    # Supabase puts "authenticated" in the top-level role claim; only "admin" matters here.
    top_level = str(claims.get("role") or "").strip().lower()
    return top_level if top_level == ADMIN_ROLE else ""


class SupabaseAuthVerifier:
    """Verifies Supabase session JWTs and resolves profile roles."""

    def __init__(self, settings: Settings, session_factory: sessionmaker | None = None) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._jwks_client: jwt.PyJWKClient | None = None
        self._verified = TTLCache(max_items=20000, ttl_s=3600)
        self._remote_roles = TTLCache(max_items=20000, ttl_s=60)

    def _supabase_url(self) -> str:
        return (self._settings.supabase_url or "").strip().rstrip("/")

    def _decode(self, token: str) -> dict[str, Any]:
        audience = self._settings.supabase_jwt_audience or "authenticated"
        supabase_url = self._supabase_url()
        issuer = self._settings.supabase_jwt_issuer or (f"{supabase_url}/auth/v1" if supabase_url else None)
        options = {"require": ["exp", "sub"], "verify_iss": bool(issuer)}

        if self._settings.supabase_jwt_secret:
            return dict(
                jwt.decode(
                    token,
                    self._settings.supabase_jwt_secret,
                    algorithms=["HS256"],
                    audience=audience,
                    issuer=issuer,
                    options=options,
                )
            )

        if not supabase_url:
            raise AuthError("Supabase is not configured")
        if self._jwks_client is None:
            self._jwks_client = jwt.PyJWKClient(f"{supabase_url}/auth/v1/.well-known/jwks.json")
        signing_key = self._jwks_client.get_signing_key_from_jwt(token).key
        return dict(
            jwt.decode(
                token,
                signing_key,
                algorithms=["ES256", "RS256"],
                audience=audience,
                issuer=issuer,
                options=options,
            )
        )

    def verify(self, session_token: str) -> CurrentUser:
        token = (session_token or "").strip()
        if not token:
            raise AuthError("Missing bearer token")
        try:
            claims = self._decode(token)
        except jwt.PyJWTError as exc:
            logger.info("security.verify.rejected reason=%s", type(exc).__name__)
            raise AuthError() from exc

        user_id = str(claims.get("sub") or "").strip()
        if not user_id:
            raise AuthError("Invalid token")
        user = CurrentUser(
            id=user_id,
            email=str(claims.get("email") or "").strip(),
            claimed_role=_claimed_role(claims),
        )
        self._verified.set(user_id, user)
        return user

    def _profile_role(self, user_id: str) -> tuple[str | None, str]:
        if self._session_factory is None:
            return (None, "")
        with self._session_factory() as db:
            profile = db.query(Profile).filter(Profile.id == user_id).first()
            if profile is None:
                return (None, "")
            return (profile.role, profile.email or "")

    def _remote_profile_role(self, user_id: str) -> str | None:
        cached = self._remote_roles.get(user_id)
        if isinstance(cached, str):
            return cached or None
        supabase_url = self._supabase_url()
        api_key = (self._settings.supabase_service_role_key or "").strip()
        if not supabase_url or not api_key:
            return None

        import requests

        try:
            resp = requests.get(
                f"{supabase_url}/rest/v1/profiles",
                params={"select": "role", "id": f"eq.{user_id}"},
                headers={
                    "apikey": api_key,
                    "authorization": f"Bearer {api_key}",
                    "accept": "application/json",
                },
                timeout=8,
            )
        except requests.RequestException:
            logger.exception("security.profile_role.error user_id=%s", user_id)
            return None
        if resp.status_code != 200:
            return None
        rows = resp.json()
        role = None
        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            role = str(rows[0].get("role") or "").strip().lower() or None
        self._remote_roles.set(user_id, role or "")
        return role

    def has_role(self, user_id: str, role: str) -> bool:
        user = self._verified.get(user_id)
        db_role, db_email = self._profile_role(user_id)
        email = (user.email if user else "") or db_email
        claim_is_admin = bool(user and user.claimed_role == ADMIN_ROLE)
        email_is_admin = bool(_normalize_email(email)) and _normalize_email(email) in self._settings.admin_emails

        remote_role = None
        if str(db_role or "").strip().lower() != ADMIN_ROLE and not (email_is_admin or claim_is_admin):
            remote_role = self._remote_profile_role(user_id)

        decided, reason = _decide_role(
            email_is_admin=email_is_admin,
            claim_is_admin=claim_is_admin,
            db_role=db_role,
            supabase_role=remote_role,
        )
        logger.debug("security.has_role user_id=%s decided=%s reason=%s", user_id, decided, reason)
        return decided == str(role or "").strip().lower()


def get_bearer_token(request: Request) -> str | None:
    auth = request.headers.get("authorization") or ""
    if not auth.lower().startswith("bearer "):
        return None
    token = auth.split(" ", 1)[1].strip()
    return token or None


def get_verifier(request: Request) -> AuthVerifier:
    return request.app.state.verifier


def get_current_user(request: Request, verifier: AuthVerifier = Depends(get_verifier)) -> CurrentUser:
    token = get_bearer_token(request)
    if token is None:
        raise AuthError("Missing bearer token")
    return verifier.verify(token)
