from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from .paths import to_posix
from .targets import is_target

LOCKFILE_NAME = "updose-lock.json"
LOCKFILE_VERSION = 1


@dataclass(frozen=True)
class SkillLockEntry:
    repo: str
    skill: str

    @property
    def key(self) -> str:
        return f"{self.repo}+{self.skill}"


@dataclass
class LockfileEntry:
    version: str
    targets: list[str]
    installed_at: str
    files: dict[str, list[str]] = field(default_factory=dict)
    skills: list[SkillLockEntry] = field(default_factory=list)


@dataclass
class Lockfile:
    version: int = LOCKFILE_VERSION
    packages: dict[str, LockfileEntry] = field(default_factory=dict)
    # Problems found while reading; never persisted.
    warnings: list[str] = field(default_factory=list)


def lockfile_path(project_root: Path) -> Path:
    return project_root / LOCKFILE_NAME


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _is_str_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


def _parse_skills(raw: Any) -> list[SkillLockEntry] | None:
    if raw is None:
        return []
    if not isinstance(raw, list):
        return None
    skills: list[SkillLockEntry] = []
    for item in raw:
        if not isinstance(item, dict):
            return None
        repo = item.get("repo")
        skill = item.get("skill")
        if not isinstance(repo, str) or not repo or not isinstance(skill, str) or not skill:
            return None
        skills.append(SkillLockEntry(repo=repo, skill=skill))
    return skills


def _parse_entry(raw: Any) -> tuple[LockfileEntry | None, str | None]:
    if not isinstance(raw, dict):
        return None, "entry is not an object"

    version = raw.get("version")
    installed_at = raw.get("installedAt")
    if not isinstance(version, str):
        return None, '"version" must be a string'
    if not isinstance(installed_at, str):
        return None, '"installedAt" must be a string'

    targets_raw = raw.get("targets")
    files_raw = raw.get("files")

    # Single-target entries written by older releases.
    if targets_raw is None and "target" in raw:
        legacy_target = raw.get("target")
        if not is_target(legacy_target):
            return None, f"unknown target {legacy_target!r}"
        if not _is_str_list(files_raw):
            return None, '"files" must be a list of strings'
        targets_raw = [legacy_target]
        files_raw = {legacy_target: files_raw}

    if not isinstance(targets_raw, list) or not targets_raw:
        return None, '"targets" must be a non-empty list'
    targets: list[str] = []
    for t in targets_raw:
        if not is_target(t):
            return None, f"unknown target {t!r}"
        if t not in targets:
            targets.append(t)

    if not isinstance(files_raw, dict):
        return None, '"files" must be an object keyed by target'
    files: dict[str, list[str]] = {}
    for target, paths in files_raw.items():
        if target not in targets:
            return None, f'"files" references undeclared target {target!r}'
        if not _is_str_list(paths):
            return None, f'"files.{target}" must be a list of strings'
        files[target] = list(paths)

    skills = _parse_skills(raw.get("skills"))
    if skills is None:
        return None, '"skills" must be a list of {repo, skill} objects'

    return LockfileEntry(version=version, targets=targets, installed_at=installed_at, files=files, skills=skills), None


def read_lockfile(project_root: Path) -> Lockfile:
    path = lockfile_path(project_root)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return Lockfile()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return Lockfile(
            warnings=[f"{LOCKFILE_NAME} is corrupted and will be reset. Existing install tracking may be lost."]
        )

    if not isinstance(data, dict) or not isinstance(data.get("packages"), dict):
        return Lockfile()

    lock = Lockfile()
    for key, raw in data["packages"].items():
        entry, reason = _parse_entry(raw)
        if entry is None:
            lock.warnings.append(f"Ignoring invalid {LOCKFILE_NAME} entry for {key}: {reason}")
            continue
        lock.packages[key] = entry
    return lock


def _dedupe(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def merge_skill_entries(*groups: Iterable[SkillLockEntry]) -> list[SkillLockEntry]:
    merged: dict[str, SkillLockEntry] = {}
    for group in groups:
        for s in group:
            merged.setdefault(s.key, s)
    return list(merged.values())


def _entry_to_json(entry: LockfileEntry) -> dict[str, Any]:
    return {
        "version": entry.version,
        "targets": list(entry.targets),
        "installedAt": entry.installed_at,
        "files": {t: _dedupe(to_posix(p) for p in paths) for t, paths in entry.files.items()},
        "skills": [{"repo": s.repo, "skill": s.skill} for s in entry.skills],
    }


def render_lockfile(lock: Lockfile) -> str:
    payload = {
        "version": LOCKFILE_VERSION,
        "packages": {key: _entry_to_json(lock.packages[key]) for key in sorted(lock.packages)},
    }
    return json.dumps(payload, indent=2, sort_keys=True) + "\n"


def write_lockfile(project_root: Path, lock: Lockfile) -> Path:
    path = lockfile_path(project_root)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(render_lockfile(lock), encoding="utf-8")
    tmp.replace(path)
    return path
