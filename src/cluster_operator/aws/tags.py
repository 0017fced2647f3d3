"""Tag conventions for resources this operator creates.

Every created resource carries a ``Name`` tag derived deterministically
from the owning resource and a managed-by tag. Discovery filters on both,
and nothing without the managed-by tag is ever deleted.
"""

from __future__ import annotations

import hashlib
from typing import Any

from ..errors import FatalConfigurationError

MANAGED_TAG_KEY = "cluster-operator.io/managed"
MANAGED_TAG_VALUE = "true"
TEAM_TAG_KEY = "cluster-operator.io/team"
NAME_TAG_KEY = "Name"


def tags_to_dict(tags: list[dict[str, str]] | None) -> dict[str, str]:
    """Convert an EC2/IAM tag list to a plain mapping."""
    return {tag["Key"]: tag["Value"] for tag in tags or []}


def to_tag_list(tags: dict[str, str]) -> list[dict[str, str]]:
    return [{"Key": key, "Value": value} for key, value in sorted(tags.items())]


def is_managed(tags: list[dict[str, str]] | dict[str, str] | None) -> bool:
    """Check for the managed-by tag in either list or mapping form."""
    mapping = tags if isinstance(tags, dict) else tags_to_dict(tags)
    return mapping.get(MANAGED_TAG_KEY) == MANAGED_TAG_VALUE


def is_owned(tags: list[dict[str, str]] | dict[str, str] | None, team: str) -> bool:
    """Managed by this operator on behalf of ``team``.

    An empty team only checks the managed-by tag.
    """
    mapping = tags if isinstance(tags, dict) else tags_to_dict(tags)
    if mapping.get(MANAGED_TAG_KEY) != MANAGED_TAG_VALUE:
        return False
    return not team or mapping.get(TEAM_TAG_KEY) == team


def scoped_name(*parts: str, limit: int) -> str:
    """Join name parts with dashes, hashing the tail when over ``limit``.

    The hash keeps truncated names distinct when they share a prefix.
    """
    name = "-".join(parts)
    if len(name) <= limit:
        return name
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:8]
    return f"{name[:limit - len(digest) - 1]}-{digest}"


def managed_tags(name: str, extra: dict[str, str] | None = None) -> dict[str, str]:
    """Name and managed-by tags merged over caller-supplied tags."""
    tags = dict(extra or {})
    tags[NAME_TAG_KEY] = name
    tags[MANAGED_TAG_KEY] = MANAGED_TAG_VALUE
    return tags


def tag_specifications(
    resource_type: str, name: str, extra: dict[str, str] | None = None
) -> list[dict[str, Any]]:
    """TagSpecifications argument so resources are tagged atomically on create."""
    return [{"ResourceType": resource_type, "Tags": to_tag_list(managed_tags(name, extra))}]


def name_filters(name: str, **filters: str) -> list[dict[str, Any]]:
    """Filters matching the deterministic name plus the managed-by tag.

    Keyword arguments add exact-match filters, with underscores in the key
    written as dashes (``vpc_id`` becomes ``vpc-id``).
    """
    result: list[dict[str, Any]] = [
        {"Name": f"tag:{NAME_TAG_KEY}", "Values": [name]},
        {"Name": f"tag:{MANAGED_TAG_KEY}", "Values": [MANAGED_TAG_VALUE]},
    ]
    for key, value in filters.items():
        result.append({"Name": key.replace("_", "-"), "Values": [value]})
    return result


def single(items: list[dict[str, Any]], what: str, name: str) -> dict[str, Any] | None:
    """Return the only match, None when nothing matched.

    Raises:
        FatalConfigurationError: If more than one resource carries the name.
    """
    if len(items) > 1:
        raise FatalConfigurationError(
            f"found {len(items)} {what} resources named {name}; expected at most one"
        )
    return items[0] if items else None
