"""Maps an inbound request to a single stable ledger account id."""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass

from riahunter.core.errors import NoIdentity
from riahunter.core.security import AuthVerifier, CurrentUser


ANON_ACCOUNT_PREFIX = "anon_"


@dataclass(frozen=True)
class AccountIdentity:
    account_id: str
    is_authenticated: bool
    user: CurrentUser | None = None


def mint_anonymous_cookie() -> str:
    return f"anon-{secrets.token_urlsafe(24)}"


def anonymous_account_id(cookie_value: str, hash_key: str) -> str:
    """Keyed one-way pseudonym for an anonymous cookie.

    Rotating ``hash_key`` orphans every anonymous account created under the old key.
    """
    digest = hmac.new(
        key=hash_key.encode("utf-8"),
        msg=cookie_value.encode("utf-8"),
        digestmod=hashlib.sha256,
    ).hexdigest()
    return f"{ANON_ACCOUNT_PREFIX}{digest}"


class IdentityResolver:
    def __init__(self, verifier: AuthVerifier, hash_key: str) -> None:
        if not hash_key:
            raise ValueError("hash_key is required")
        self._verifier = verifier
        self._hash_key = hash_key

    def resolve(self, session_token: str | None = None, anon_cookie: str | None = None) -> AccountIdentity:
        token = (session_token or "").strip()
        if token:
            # AuthError propagates; a bad token never falls back to the cookie.
            user = self._verifier.verify(token)
            return AccountIdentity(account_id=user.id, is_authenticated=True, user=user)

        cookie = (anon_cookie or "").strip()
        if cookie:
            return AccountIdentity(
                account_id=anonymous_account_id(cookie, self._hash_key),
                is_authenticated=False,
            )

        raise NoIdentity()
