from __future__ import annotations

import re
import secrets
from typing import Callable

from license_authority.errors import KeyExhaustion, ValidationError

KEY_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
KEY_GROUP_LENGTH = 4
KEY_GENERATION_ATTEMPTS = 8
ALLOWED_KEY_LENGTHS = (12, 16, 20, 24)
DEFAULT_PREFIX = "PRUDA"
DEFAULT_KEY_LENGTH = 16

# Largest multiple of the alphabet size that fits in a byte; bytes at or above
# it are rejected so the modulo below stays unbiased.
_REJECTION_LIMIT = 256 - (256 % len(KEY_ALPHABET))

_PREFIX_PATTERN = re.compile(r"[A-Z0-9]{1,8}")
_KEY_SHAPE = re.compile(r"[A-Z0-9]{1,8}(?:-[A-Z0-9]{4})+")
_WHITESPACE = re.compile(r"\s+")


def canonicalize(raw_key: str) -> str:
    return _WHITESPACE.sub("", raw_key).upper()


def has_key_shape(raw_key: str) -> bool:
    return _KEY_SHAPE.fullmatch(canonicalize(raw_key)) is not None


def validate_prefix(prefix: str) -> str:
    candidate = prefix.strip().upper()
    if not _PREFIX_PATTERN.fullmatch(candidate):
        raise ValidationError("licensePrefix must be 1-8 characters of A-Z and 0-9")
    return candidate


def validate_length(length: int) -> int:
    if length not in ALLOWED_KEY_LENGTHS:
        allowed = ", ".join(str(value) for value in ALLOWED_KEY_LENGTHS)
        raise ValidationError(f"licenseLength must be one of {allowed}")
    return length


def random_symbols(count: int) -> str:
    symbols: list[str] = []
    while len(symbols) < count:
        for byte in secrets.token_bytes(count - len(symbols)):
            if byte < _REJECTION_LIMIT:
                symbols.append(KEY_ALPHABET[byte % len(KEY_ALPHABET)])
    return "".join(symbols)


class KeyCodec:
    """Formats, validates and mints keys shaped like ``PRUDA-XXXX-XXXX-XXXX-XXXX``."""

    def __init__(self, prefix: str = DEFAULT_PREFIX, length: int = DEFAULT_KEY_LENGTH) -> None:
        self.prefix = validate_prefix(prefix)
        self.length = validate_length(length)
        groups = self.length // KEY_GROUP_LENGTH
        self.pattern = re.compile(
            rf"{re.escape(self.prefix)}(?:-[A-Z0-9]{{{KEY_GROUP_LENGTH}}}){{{groups}}}"
        )

    def format(self, body: str) -> str:
        if len(body) != self.length:
            raise ValueError(f"key body must be {self.length} characters")
        groups = [
            body[index : index + KEY_GROUP_LENGTH]
            for index in range(0, self.length, KEY_GROUP_LENGTH)
        ]
        return "-".join([self.prefix, *groups])

    def generate(self) -> str:
        return self.format(random_symbols(self.length))

    def canonicalize(self, raw_key: str) -> str:
        return canonicalize(raw_key)

    def validate(self, raw_key: str) -> bool:
        return self.pattern.fullmatch(canonicalize(raw_key)) is not None

    def generate_unique(
        self,
        is_taken: Callable[[str], bool],
        attempts: int = KEY_GENERATION_ATTEMPTS,
    ) -> str:
        for _ in range(attempts):
            candidate = self.generate()
            if not is_taken(candidate):
                return candidate

        raise KeyExhaustion()
