"""Package-name validation for incoming requests."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping, Optional

from ..constants import Constants
from .errors import ValidationError


_NAME_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


@dataclass(frozen=True)
class PackageRequest:
    """A validated package request.

    Attributes:
        requested_name: Name exactly as it appeared in the request path.
        normalized_name: Name after bootstrap-alias translation; this is the
            name the registry is queried with.
    """

    requested_name: str
    normalized_name: str

    @property
    def is_aliased(self) -> bool:
        return self.requested_name != self.normalized_name


def validate_package_name(name: Optional[str]) -> str:
    """Check a package name against the length and character rules.

    Args:
        name: Raw name taken from the request path.

    Returns:
        The unchanged name.

    Raises:
        ValidationError: If the name is missing, too short, too long, or
            contains characters outside ``[A-Za-z0-9_-]``.
    """
    if not name or not Constants.NAME_MIN_LENGTH <= len(name) <= Constants.NAME_MAX_LENGTH:
        raise ValidationError("Invalid package name")
    if not _NAME_PATTERN.fullmatch(name):
        raise ValidationError("Invalid package name characters")
    return name


def parse_package_request(
    name: Optional[str],
    aliases: Optional[Mapping[str, str]] = None,
) -> PackageRequest:
    """Validate ``name`` and apply the alias table.

    Raises:
        ValidationError: See ``validate_package_name``.
    """
    requested = validate_package_name(name)
    normalized = (aliases or {}).get(requested, requested)
    return PackageRequest(requested_name=requested, normalized_name=normalized)
