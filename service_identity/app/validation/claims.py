"""
Claims normalization: provider claim sets to the canonical UserInfo.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from shared.errors import TokenValidationError
from service_identity.app.models import UserInfo

_EXECUTABLE_MARKERS = re.compile(
    r"<\s*/?\s*script\b[^>]*>?|\bjavascript\s*:|\bvbscript\s*:|\bdata\s*:",
    re.IGNORECASE,
)
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def sanitize_text(value: Optional[str]) -> str:
    """Strip executable-content markers from a display value.

    Everything else in the value is left alone.
    """
    if not value:
        return ""
    cleaned = value
    while True:
        stripped = _EXECUTABLE_MARKERS.sub("", cleaned)
        if stripped == cleaned:
            break
        cleaned = stripped
    return cleaned.strip()


def sanitize_url(value: Optional[str]) -> Optional[str]:
    """Keep only http(s) URLs."""
    if not value:
        return None
    candidate = _CONTROL_CHARS.sub("", value).strip()
    if candidate.lower().startswith(("https://", "http://")):
        return candidate
    return None


def stringify_claim(value: Any) -> str:
    """Render a raw claim value as a string without losing content."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def flatten_claims(raw: Mapping[str, Any]) -> Dict[str, str]:
    """Copy every claim, stringified, keyed by its original name."""
    return {str(name): stringify_claim(value) for name, value in raw.items()}


def _lookup(raw: Mapping[str, Any], path: str) -> Any:
    current: Any = raw
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    if isinstance(current, list):
        current = current[0] if current else None
    return current


def first_claim(raw: Mapping[str, Any], paths: Tuple[str, ...]) -> str:
    """First non-empty value among ``paths`` (dotted paths descend into objects)."""
    for path in paths:
        value = _lookup(raw, path)
        if value is None or isinstance(value, (dict, list)):
            continue
        text = stringify_claim(value).strip()
        if text:
            return text
    return ""


@dataclass(frozen=True)
class ClaimMapping:
    """Which raw claims feed each UserInfo field, in priority order."""
    user_id: Tuple[str, ...] = ("sub",)
    email: Tuple[str, ...] = ("email",)
    display_name: Tuple[str, ...] = ("name",)
    first_name: Tuple[str, ...] = ("given_name",)
    last_name: Tuple[str, ...] = ("family_name",)
    picture: Tuple[str, ...] = ("picture",)


class ClaimsNormalizer:
    """Maps a validated claim set into ``UserInfo``."""

    def __init__(self, mapping: ClaimMapping = ClaimMapping()):
        self.mapping = mapping

    def normalize(self,
                  provider: str,
                  raw_claims: Mapping[str, Any],
                  extra_claims: Optional[Mapping[str, Any]] = None,
                  email: Optional[str] = None,
                  display_name: Optional[str] = None) -> UserInfo:
        """
        Build the canonical identity.

        ``extra_claims`` are provider-derived values (business ids, tenant
        ids); they never overwrite a raw claim of the same name.
        ``email`` / ``display_name`` override the mapped values when given.
        """
        user_id = first_claim(raw_claims, self.mapping.user_id)
        if not user_id:
            raise TokenValidationError(
                "MISSING_REQUIRED_CLAIM", "Identity is missing a subject identifier",
                {"provider": provider},
            )

        claims = flatten_claims(raw_claims)
        for name, value in (extra_claims or {}).items():
            claims.setdefault(name, stringify_claim(value))

        first_name = sanitize_text(first_claim(raw_claims, self.mapping.first_name))
        last_name = sanitize_text(first_claim(raw_claims, self.mapping.last_name))
        resolved_email = email if email is not None else first_claim(raw_claims, self.mapping.email)

        if display_name is None:
            display_name = first_claim(raw_claims, self.mapping.display_name)
            if not display_name:
                display_name = " ".join(part for part in (first_name, last_name) if part)
            if not display_name and resolved_email:
                display_name = resolved_email.split("@", 1)[0]
            if not display_name:
                display_name = user_id

        return UserInfo(
            user_id=user_id,
            email=sanitize_text(resolved_email),
            display_name=sanitize_text(display_name),
            first_name=first_name,
            last_name=last_name,
            profile_picture_url=sanitize_url(first_claim(raw_claims, self.mapping.picture)),
            auth_provider=provider,
            is_authenticated=True,
            claims=claims,
        )
