"""Manifest loading with validation.

All file operations enforce size limits. Input validation is performed at
the boundary so the reconciler only ever sees well-formed resources.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES, MAX_MANIFEST_FILES
from .models import ManagedResource, get_resource_class
from .store import ResourceStore

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")


class SpecLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def parse_resource(raw_data: Any, source: str) -> ManagedResource:
    """Validate one Kubernetes-style document into a typed resource.

    Args:
        raw_data: Parsed YAML document.
        source: Where the document came from, for error messages.

    Raises:
        SpecLoadError: If the document is not a valid resource.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Manifest must contain a YAML mapping: {source}")

    if "kind" not in raw_data or "metadata" not in raw_data:
        raise SpecLoadError(f"Manifest requires kind and metadata: {source}")

    try:
        resource_class = get_resource_class(str(raw_data["kind"]))
    except ValueError as e:
        raise SpecLoadError(f"{source}: {e}") from e

    try:
        return resource_class.model_validate(raw_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e


def load_manifest_file(path: Path) -> list[ManagedResource]:
    """Load every resource document from one YAML file.

    Raises:
        SpecLoadError: If the file cannot be read or any document is invalid.
    """
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        documents = [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    return [
        parse_resource(doc, f"{path}" if len(documents) == 1 else f"{path}[{index}]")
        for index, doc in enumerate(documents)
    ]


def load_manifests(manifests_dir: Path) -> list[ManagedResource]:
    """Load all manifests below a directory, in sorted path order.

    Raises:
        SpecLoadError: If the directory is missing, holds too many files,
            contains an invalid manifest, or declares a key twice.
    """
    if not manifests_dir.is_dir():
        raise SpecLoadError(f"Manifests directory not found: {manifests_dir}")

    paths = sorted(p for p in manifests_dir.rglob("*") if p.suffix in MANIFEST_SUFFIXES)
    if len(paths) > MAX_MANIFEST_FILES:
        raise SpecLoadError(
            f"Manifests directory holds more than {MAX_MANIFEST_FILES} files: {manifests_dir}"
        )

    resources: list[ManagedResource] = []
    seen: dict[str, Path] = {}
    for path in paths:
        for resource in load_manifest_file(path):
            key = str(resource.key)
            if key in seen:
                raise SpecLoadError(f"Duplicate resource {key} in {path} and {seen[key]}")
            seen[key] = path
            resources.append(resource)

    logger.info(
        "Loaded manifests",
        extra={"manifests_dir": str(manifests_dir), "resources": len(resources)},
    )
    return resources


def load_into(store: ResourceStore, manifests_dir: Path) -> int:
    """Apply every manifest below a directory to a store.

    Returns:
        Number of resources applied.
    """
    resources = load_manifests(manifests_dir)
    for resource in resources:
        store.apply(resource)
    return len(resources)
