"""Validation for application, version, volume and secret names."""
from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field

from ..errors import ValidationError

IDENTIFIER_PATTERN = r"^[A-Za-z0-9_-]+$"
_IDENTIFIER_RE = re.compile(IDENTIFIER_PATTERN)
# Names a version directory cannot take: they are the app's shared roots and
# its current link.
RESERVED_VERSIONS = frozenset({"current", "secrets", "volumes"})


def is_identifier(value: str) -> bool:
    """Return ``True`` when *value* is a non-empty identifier."""
    return bool(value) and _IDENTIFIER_RE.fullmatch(value) is not None


def validate_identifier(kind: str, value: str) -> str:
    """Return *value* or raise :class:`ValidationError` naming *kind*."""
    if not value:
        raise ValidationError(f"{kind} must not be empty.")
    if not is_identifier(value):
        raise ValidationError(
            f"{kind} {value!r} can only contain letters, numbers, dashes, and underscores."
        )
    return value


@dataclass(frozen=True)
class ReleaseRequest:
    """One (application, version) pair plus the named volumes it needs."""

    app: str
    version: str
    volumes: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def create(cls, app: str, version: str, volumes: Sequence[str] = ()) -> ReleaseRequest:
        """Build and validate a request; duplicate volume names collapse."""
        request = cls(app=app, version=version, volumes=tuple(dict.fromkeys(volumes)))
        request.validate()
        return request

    def validate(self) -> None:
        """Raise :class:`ValidationError` for any malformed identifier."""
        validate_identifier("App name", self.app)
        validate_identifier("App version", self.version)
        if self.version in RESERVED_VERSIONS:
            raise ValidationError(
                f"App version {self.version!r} is reserved; choose another version name."
            )
        for volume in self.volumes:
            validate_identifier("Volume name", volume)


__all__ = [
    "IDENTIFIER_PATTERN",
    "RESERVED_VERSIONS",
    "ReleaseRequest",
    "is_identifier",
    "validate_identifier",
]
