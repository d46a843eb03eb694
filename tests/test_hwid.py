from __future__ import annotations

import re

import pytest

from license_authority.errors import HwidMismatch, ValidationError
from license_authority.hwid import HwidBinder, derive_client_hwid, normalize_hwid


def test_normalize_hwid_trims_and_preserves_case() -> None:
    assert normalize_hwid("  a3-7F-10-22 ") == "a3-7F-10-22"
    assert normalize_hwid("   ") is None
    assert normalize_hwid(None) is None


def test_normalize_hwid_rejects_oversized_values() -> None:
    with pytest.raises(ValidationError):
        normalize_hwid("A" * 129)


@pytest.mark.parametrize(
    ("strict", "multiple", "stored", "presented", "expected"),
    [
        (True, False, None, "A3-7F-10-22", True),
        (True, False, "A3-7F-10-22", "A3-7F-10-22", True),
        (True, False, "A3-7F-10-22", "FF-FF-FF-FF", False),
        (True, True, "A3-7F-10-22", "FF-FF-FF-FF", False),
        (False, True, "A3-7F-10-22", "FF-FF-FF-FF", True),
        (False, False, "A3-7F-10-22", "FF-FF-FF-FF", False),
        (True, False, "A3-7F-10-22", "a3-7f-10-22", False),
        (True, False, "A3-7F-10-22", None, False),
    ],
)
def test_binder_policy_table(
    strict: bool,
    multiple: bool,
    stored: str | None,
    presented: str | None,
    expected: bool,
) -> None:
    binder = HwidBinder(strict=strict, allow_multiple_devices=multiple)

    assert binder.is_compatible(stored, presented) is expected


def test_binder_check_raises_conflict() -> None:
    with pytest.raises(HwidMismatch) as excinfo:
        HwidBinder().check("A3-7F-10-22", "FF-FF-FF-FF")

    assert excinfo.value.status_code == 409
    assert excinfo.value.message == "HwidMismatch"


def test_derive_client_hwid_matches_reference_vector() -> None:
    hwid = derive_client_hwid(
        "1920x1080x24",
        "Europe/Berlin",
        "en-US",
        "Win32",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64)",
    )

    assert re.fullmatch(r"[0-9A-F]{2}(-[0-9A-F]{2}){3}", hwid)
    assert hwid == "3F-A6-C4-F3"
