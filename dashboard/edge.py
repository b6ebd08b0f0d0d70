"""Edge proxy identity probe and access-token helpers."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

import httpx

from .models import Identity
from .roles import DEFAULT_RULES, RoleRules
from .storage import EDGE_IDENTITY_KEY, SlotStore

logger = logging.getLogger("dashboard.edge")

IDENTITY_PATH = "/cdn-cgi/access/get-identity"
LOGOUT_PATH = "/cdn-cgi/access/logout"
ACCESS_COOKIE_NAME = "CF_Authorization"

_UNDEFINED_NAME = "undefined undefined"
_EXPIRY_SKEW_SECONDS = 60

Extractor = Callable[[Mapping[str, Any]], Optional[str]]


def _text(payload: Mapping[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned or None
    return None


def _field(key: str) -> Extractor:
    return lambda payload: _text(payload, key)


def _explicit_name(payload: Mapping[str, Any]) -> Optional[str]:
    name = _text(payload, "name")
    if name is None or name == _UNDEFINED_NAME:
        return None
    return name


def _full_name(payload: Mapping[str, Any]) -> Optional[str]:
    given = _text(payload, "given_name")
    family = _text(payload, "family_name")
    if given and family:
        return f"{given} {family}"
    return None


def name_from_email(email: str) -> str:
    """Turn ``ferran.torres@x.com`` into ``Ferran Torres``."""

    local_part = re.sub(r"[._-]", " ", email.split("@", 1)[0])
    titled = re.sub(r"\b\w", lambda match: match.group(0).upper(), local_part)
    return " ".join(titled.split())


EMAIL_EXTRACTORS: Sequence[Extractor] = (
    _field("email"),
    _field("user_email"),
    _field("preferred_username"),
)

NAME_EXTRACTORS: Sequence[Extractor] = (
    _explicit_name,
    _full_name,
    _field("given_name"),
    _field("displayName"),
)

SUBJECT_EXTRACTORS: Sequence[Extractor] = (
    _field("id"),
    _field("sub"),
    _field("user_uuid"),
)


def first_match(payload: Mapping[str, Any], extractors: Sequence[Extractor]) -> Optional[str]:
    for extractor in extractors:
        value = extractor(payload)
        if value:
            return value
    return None


def identity_from_payload(
    payload: Mapping[str, Any],
    *,
    rules: RoleRules = DEFAULT_RULES,
    now: Optional[datetime] = None,
) -> Optional[Identity]:
    """Normalise an edge identity document, or ``None`` when it has no email."""

    email = first_match(payload, EMAIL_EXTRACTORS)
    if email is None:
        logger.info("Edge identity carried no email; fields present: %s", sorted(payload.keys()))
        return None

    display_name = first_match(payload, NAME_EXTRACTORS) or name_from_email(email)
    subject_id = first_match(payload, SUBJECT_EXTRACTORS) or email
    timestamp = now or datetime.now(timezone.utc)
    return Identity(
        subject_id=subject_id,
        email=email,
        display_name=display_name,
        role=rules.resolve(email),
        created_at=timestamp,
        last_login=timestamp,
    )


class EdgeIdentityProbe:
    """Ask the edge proxy whether the current request carries an identity."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        cache: SlotStore,
        rules: RoleRules = DEFAULT_RULES,
        cookies: Optional[Mapping[str, str]] = None,
        identity_path: str = IDENTITY_PATH,
    ) -> None:
        self._client = client
        self._cache = cache
        self._rules = rules
        self._cookies = dict(cookies or {})
        self._identity_path = identity_path

    async def probe(self) -> Optional[Identity]:
        # Opaque tokens are left for the edge endpoint to judge.
        token = read_access_token(self._cookies)
        if token is not None and decode_access_token(token) is not None and is_token_expired(token):
            logger.info("Edge access token has expired; treating the request as anonymous")
            self._cache.remove_item(EDGE_IDENTITY_KEY)
            return None

        try:
            response = await self._client.get(self._identity_path, headers=self._cookie_header())
            if response.status_code < 200 or response.status_code >= 300:
                logger.info("Edge identity endpoint answered %s; no identity present", response.status_code)
                return None

            payload = response.json()
            if not isinstance(payload, dict):
                raise ValueError("Edge identity payload is not a JSON object")

            identity = identity_from_payload(payload, rules=self._rules)
            if identity is None:
                return None

            self._cache.set_item(EDGE_IDENTITY_KEY, json.dumps(identity.to_dict()))
            logger.info("Edge identity resolved for %s with role %s", identity.email, identity.role.value)
            return identity
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Edge identity check failed: %s", exc)
            return self._recover()

    def _cookie_header(self) -> Dict[str, str]:
        if not self._cookies:
            return {}
        return {"Cookie": "; ".join(f"{name}={value}" for name, value in self._cookies.items())}

    def _recover(self) -> Optional[Identity]:
        stored = self._cache.get_item(EDGE_IDENTITY_KEY)
        if not stored:
            return None
        try:
            identity = Identity.from_dict(json.loads(stored))
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable cached edge identity")
            self._cache.remove_item(EDGE_IDENTITY_KEY)
            return None
        logger.info("Recovered cached edge identity for %s", identity.email)
        return identity


def read_access_token(cookies: Mapping[str, str]) -> Optional[str]:
    token = cookies.get(ACCESS_COOKIE_NAME)
    return token or None


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode the JWT payload without verifying it; the edge already did."""

    parts = token.split(".")
    if len(parts) != 3:
        return None
    segment = parts[1]
    segment += "=" * (-len(segment) % 4)
    try:
        raw = base64.urlsafe_b64decode(segment.encode("ascii"))
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        logger.warning("Failed to decode edge access token: %s", exc)
        return None
    return payload if isinstance(payload, dict) else None


def is_token_expired(token: str, *, now: Optional[float] = None) -> bool:
    payload = decode_access_token(token)
    if payload is None:
        return True
    try:
        expires = float(payload["exp"])
    except (KeyError, TypeError, ValueError):
        return True
    current = time.time() if now is None else now
    return current > expires - _EXPIRY_SKEW_SECONDS


__all__ = [
    "ACCESS_COOKIE_NAME",
    "EMAIL_EXTRACTORS",
    "EdgeIdentityProbe",
    "IDENTITY_PATH",
    "LOGOUT_PATH",
    "NAME_EXTRACTORS",
    "decode_access_token",
    "first_match",
    "identity_from_payload",
    "is_token_expired",
    "name_from_email",
    "read_access_token",
]
