from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .errors import InvalidManifestError
from .targets import TARGETS, is_target

MANIFEST_FILENAME = "updose.json"


@dataclass(frozen=True)
class Manifest:
    name: str
    author: str
    version: str
    targets: tuple[str, ...]
    description: str | None = None
    tags: tuple[str, ...] | None = None
    warnings: tuple[str, ...] = field(default=(), compare=False)


def _require_string(obj: dict[str, Any], key: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str) or not value:
        raise InvalidManifestError(f'Invalid manifest: "{key}" is required and must be a non-empty string')
    return value


def _optional_string(obj: dict[str, Any], key: str) -> str | None:
    value = obj.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidManifestError(f'Invalid manifest: "{key}" must be a string')
    return value


def _require_targets(obj: dict[str, Any], warnings: list[str]) -> tuple[str, ...]:
    value = obj.get("targets")
    if not isinstance(value, list) or not value:
        raise InvalidManifestError('Invalid manifest: "targets" is required and must be a non-empty array')

    valid: list[str] = []
    for t in value:
        if is_target(t):
            if t not in valid:
                valid.append(t)
        elif isinstance(t, str):
            warnings.append(f'Unknown target "{t}" in manifest, ignored. Valid targets: {", ".join(TARGETS)}')

    if not valid:
        raise InvalidManifestError(f'Invalid manifest: "targets" must contain at least one of: {", ".join(TARGETS)}')
    return tuple(valid)


def _optional_string_list(obj: dict[str, Any], key: str) -> tuple[str, ...] | None:
    value = obj.get(key)
    if value is None:
        return None
    if not isinstance(value, list):
        raise InvalidManifestError(f'Invalid manifest: "{key}" must be an array')
    return tuple(v for v in value if isinstance(v, str))


def parse_manifest(raw: Any) -> Manifest:
    if not isinstance(raw, dict):
        raise InvalidManifestError("Invalid manifest: expected an object")

    warnings: list[str] = []
    return Manifest(
        name=_require_string(raw, "name"),
        author=_require_string(raw, "author"),
        version=_require_string(raw, "version"),
        targets=_require_targets(raw, warnings),
        description=_optional_string(raw, "description"),
        tags=_optional_string_list(raw, "tags"),
        warnings=tuple(warnings),
    )
