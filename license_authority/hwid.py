from __future__ import annotations

import hashlib
from dataclasses import dataclass

from license_authority.errors import HwidMismatch, ValidationError

MAX_HWID_BYTES = 128


def normalize_hwid(value: str | None) -> str | None:
    """Trim an HWID; blank input becomes ``None``. Case is preserved."""
    if value is None:
        return None
    candidate = value.strip()
    if not candidate:
        return None
    if len(candidate.encode("utf-8")) > MAX_HWID_BYTES:
        raise ValidationError(f"hwid must be at most {MAX_HWID_BYTES} bytes")
    return candidate


def derive_client_hwid(
    screen: str,
    timezone: str,
    language: str,
    platform: str,
    user_agent: str,
) -> str:
    """Reference derivation used by the browser client.

    ``screen`` is ``WIDTHxHEIGHTxDEPTH``. The result looks like ``A3-7F-10-22``;
    the server never recomputes it and stores whatever the client sends.
    """
    raw = "|".join([screen, timezone, language, platform, user_agent])
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:8].upper()
    return "-".join(digest[index : index + 2] for index in range(0, 8, 2))


@dataclass(frozen=True)
class HwidBinder:
    strict: bool = True
    allow_multiple_devices: bool = False

    def is_compatible(self, stored: str | None, presented: str | None) -> bool:
        if stored is None:
            return True
        if presented is not None and presented == stored:
            return True
        if self.strict:
            return False
        return self.allow_multiple_devices

    def check(self, stored: str | None, presented: str | None) -> None:
        if not self.is_compatible(stored, presented):
            raise HwidMismatch()
