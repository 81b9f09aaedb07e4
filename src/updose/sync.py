from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from .client import BundleSource, RegistryClient, TreeEntry
from .errors import PathTraversalError, UpdoseError
from .installer import DecisionProvider, file_exists, install_file, resolve_conflict
from .lockfile import (
    LOCKFILE_NAME,
    Lockfile,
    LockfileEntry,
    SkillLockEntry,
    lockfile_path,
    merge_skill_entries,
    read_lockfile,
    utc_timestamp,
    write_lockfile,
)
from .manifest import Manifest
from .paths import ensure_within_dir, to_posix
from .skills import Skill, SkillOutcome, install_skills, parse_skills
from .targets import is_main_doc, map_to_local_path, should_skip_file, source_dir_for

# FileAction.status values
INSTALLED = "installed"
SKIPPED = "skipped"
MISSING = "missing"
REJECTED = "rejected"
FAILED = "failed"
PLANNED = "planned"


@dataclass(frozen=True)
class FileAction:
    target: str
    source_path: str
    dest: str
    status: str
    detail: str | None = None


@dataclass(frozen=True)
class AddResult:
    package_id: str
    manifest: Manifest | None = None
    targets: tuple[str, ...] = ()
    cancelled: bool = False
    dry_run: bool = False
    files: tuple[FileAction, ...] = ()
    skills: tuple[SkillOutcome, ...] = ()
    planned_skills: tuple[Skill, ...] = ()
    warnings: tuple[str, ...] = ()
    lock_path: Path | None = None

    @property
    def installed_count(self) -> int:
        return sum(1 for f in self.files if f.status == INSTALLED)

    @property
    def skipped_count(self) -> int:
        return sum(1 for f in self.files if f.status not in (INSTALLED, PLANNED))

    @property
    def skills_installed(self) -> int:
        return sum(1 for s in self.skills if s.ok)

    @property
    def skills_failed(self) -> tuple[SkillOutcome, ...]:
        return tuple(s for s in self.skills if not s.ok)


@dataclass(frozen=True)
class PackageUpdate:
    package_id: str
    status: str  # "up-to-date" | "updated" | "failed"
    current_version: str
    latest_version: str | None = None
    files: tuple[FileAction, ...] = ()
    skills: tuple[SkillOutcome, ...] = ()
    planned_skills: tuple[Skill, ...] = ()
    error: str | None = None

    @property
    def installed_count(self) -> int:
        return sum(1 for f in self.files if f.status == INSTALLED)

    @property
    def skipped_count(self) -> int:
        return sum(1 for f in self.files if f.status not in (INSTALLED, PLANNED))


@dataclass(frozen=True)
class UpdateResult:
    packages: tuple[PackageUpdate, ...] = ()
    dry_run: bool = False
    warnings: tuple[str, ...] = ()
    lock_path: Path | None = None

    @property
    def updated(self) -> tuple[PackageUpdate, ...]:
        return tuple(p for p in self.packages if p.status == "updated")


@dataclass(frozen=True)
class OutdatedRow:
    package_id: str
    current: str
    latest: str | None
    error: str | None = None

    @property
    def outdated(self) -> bool:
        return self.latest is not None and self.latest != self.current


@dataclass
class _PackageRun:
    actions: list[FileAction] = field(default_factory=list)
    # target -> project-relative POSIX paths written in this run
    written: dict[str, list[str]] = field(default_factory=dict)

    def record(self, action: FileAction) -> None:
        self.actions.append(action)
        if action.status == INSTALLED:
            self.written.setdefault(action.target, []).append(action.dest)


def filter_target_files(tree: Sequence[TreeEntry], target: str) -> list[tuple[TreeEntry, str]]:
    """Tree entries under the target's source dir, paired with their path relative to it."""
    prefix = source_dir_for(target) + "/"
    out: list[tuple[TreeEntry, str]] = []
    for entry in tree:
        if entry.type != "blob" or not entry.path.startswith(prefix):
            continue
        rel = entry.path[len(prefix) :]
        if not rel or should_skip_file(rel):
            continue
        out.append((entry, rel))
    return out


class BoilerplateManager:
    """
    Installs bundles into a project root and keeps updose-lock.json in sync.

    `source` provides remote bundle content, `decider` answers interactive
    questions (targets, conflicts) and `telemetry` receives download events.
    """

    def __init__(
        self,
        *,
        project_root: Path,
        source: BundleSource,
        decider: DecisionProvider | None = None,
        telemetry: RegistryClient | None = None,
    ) -> None:
        self.project_root = project_root.expanduser().resolve()
        self.source = source
        self.decider = decider
        self.telemetry = telemetry
        self.lock_path = lockfile_path(self.project_root)

    # -- shared steps -------------------------------------------------------

    def _plan_target(self, target: str, files: list[tuple[TreeEntry, str]], run: _PackageRun) -> None:
        for entry, rel in files:
            local_rel = map_to_local_path(target, rel)
            try:
                ensure_within_dir(self.project_root, local_rel)
            except PathTraversalError as e:
                run.record(FileAction(target, entry.path, to_posix(local_rel), REJECTED, str(e)))
                continue
            run.record(FileAction(target, entry.path, to_posix(local_rel), PLANNED))

    async def _apply_target(
        self,
        package_id: str,
        target: str,
        files: list[tuple[TreeEntry, str]],
        run: _PackageRun,
        *,
        skip_prompts: bool,
        prompt_main_doc_only: bool,
    ) -> None:
        # Sequential, in tree order: later entries win on destination collisions.
        for entry, rel in files:
            local_rel = map_to_local_path(target, rel)
            dest_rel = to_posix(local_rel)
            try:
                dest = ensure_within_dir(self.project_root, local_rel)
            except PathTraversalError as e:
                run.record(FileAction(target, entry.path, dest_rel, REJECTED, str(e)))
                continue

            main_doc = is_main_doc(target, rel)
            strategy = "overwrite"
            try:
                if file_exists(dest) and (main_doc or not prompt_main_doc_only):
                    strategy = resolve_conflict(dest_rel, main_doc, skip_prompts, self.decider)
                if strategy == "skip":
                    run.record(FileAction(target, entry.path, dest_rel, SKIPPED))
                    continue

                content = await self.source.fetch_file(package_id, entry.path)
                if content is None:
                    run.record(FileAction(target, entry.path, dest_rel, MISSING, f"Could not fetch {entry.path}"))
                    continue

                install_file(content, dest, strategy)
            except (OSError, UpdoseError) as e:
                run.record(FileAction(target, entry.path, dest_rel, FAILED, str(e)))
                continue
            run.record(FileAction(target, entry.path, dest_rel, INSTALLED, strategy))

    async def _load_skills(self, package_id: str, warnings: list[str]) -> list[Skill]:
        try:
            content = await self.source.fetch_skills_json(package_id)
        except UpdoseError as e:
            warnings.append(f"Could not fetch skills.json: {e}; skills skipped")
            return []
        if content is None:
            return []
        try:
            return parse_skills(json.loads(content))
        except (json.JSONDecodeError, UpdoseError):
            warnings.append("Invalid skills.json; skills installation skipped")
            return []

    @staticmethod
    def _skill_identities(package_id: str, outcomes: Sequence[SkillOutcome]) -> list[SkillLockEntry]:
        return [SkillLockEntry(repo=o.skill.repo or package_id, skill=o.skill.name) for o in outcomes if o.ok]

    @staticmethod
    def _merge_skill_files(run: _PackageRun, outcomes: Sequence[SkillOutcome]) -> None:
        for outcome in outcomes:
            for target, paths in outcome.files.items():
                run.written.setdefault(target, []).extend(paths)

    # -- add ----------------------------------------------------------------

    async def add(self, package_id: str, *, skip_prompts: bool = False, dry_run: bool = False) -> AddResult:
        warnings: list[str] = []

        manifest = await self.source.fetch_manifest(package_id)
        warnings.extend(manifest.warnings)

        if skip_prompts or len(manifest.targets) == 1 or self.decider is None:
            selected = list(manifest.targets)
        else:
            chosen = self.decider.choose_targets(manifest.targets)
            selected = [t for t in manifest.targets if t in chosen]
        if not selected:
            return AddResult(package_id=package_id, manifest=manifest, cancelled=True, warnings=tuple(warnings))

        tree = await self.source.fetch_tree(package_id)

        files_by_target = {t: files for t in selected if (files := filter_target_files(tree, t))}
        if not files_by_target:
            warnings.append(f"No files found for selected targets in {package_id}")
            return AddResult(package_id=package_id, manifest=manifest, targets=tuple(selected), warnings=tuple(warnings))

        run = _PackageRun()

        if dry_run:
            for target, files in files_by_target.items():
                self._plan_target(target, files, run)
            skills = await self._load_skills(package_id, warnings)
            return AddResult(
                package_id=package_id,
                manifest=manifest,
                targets=tuple(selected),
                dry_run=True,
                files=tuple(run.actions),
                planned_skills=tuple(skills),
                warnings=tuple(warnings),
            )

        for target, files in files_by_target.items():
            await self._apply_target(
                package_id, target, files, run, skip_prompts=skip_prompts, prompt_main_doc_only=False
            )

        outcomes: list[SkillOutcome] = []
        skills = await self._load_skills(package_id, warnings)
        if skills:
            outcomes = await install_skills(
                source=self.source,
                package_id=package_id,
                skills=skills,
                targets=selected,
                project_root=self.project_root,
                tree=tree,
                skip_prompts=skip_prompts,
                decider=self.decider,
            )
            self._merge_skill_files(run, outcomes)

        installed = sum(1 for a in run.actions if a.status == INSTALLED)
        skills_ok = sum(1 for o in outcomes if o.ok)
        lock_written: Path | None = None
        if installed + skills_ok > 0:
            lock = read_lockfile(self.project_root)
            warnings.extend(lock.warnings)
            self._merge_add(lock, package_id, manifest, selected, run, outcomes)
            lock_written = write_lockfile(self.project_root, lock)

            if self.telemetry is not None:
                await self.telemetry.record_download(package_id)

        return AddResult(
            package_id=package_id,
            manifest=manifest,
            targets=tuple(selected),
            files=tuple(run.actions),
            skills=tuple(outcomes),
            warnings=tuple(warnings),
            lock_path=lock_written,
        )

    def _merge_add(
        self,
        lock: Lockfile,
        package_id: str,
        manifest: Manifest,
        selected: Sequence[str],
        run: _PackageRun,
        outcomes: Sequence[SkillOutcome],
    ) -> None:
        existing = lock.packages.get(package_id)
        targets = list(existing.targets) if existing else []
        targets.extend(t for t in selected if t not in targets)

        files = {t: list(p) for t, p in existing.files.items()} if existing else {}
        for target, paths in run.written.items():
            if paths:
                files[target] = list(dict.fromkeys(paths))

        lock.packages[package_id] = LockfileEntry(
            version=manifest.version,
            targets=targets,
            installed_at=utc_timestamp(),
            files=files,
            skills=merge_skill_entries(existing.skills if existing else [], self._skill_identities(package_id, outcomes)),
        )

    # -- update -------------------------------------------------------------

    async def update(
        self,
        package_id: str | None = None,
        *,
        skip_prompts: bool = False,
        dry_run: bool = False,
    ) -> UpdateResult:
        lock = read_lockfile(self.project_root)
        warnings = list(lock.warnings)

        keys = sorted(lock.packages)
        if package_id is not None:
            if package_id not in lock.packages:
                raise UpdoseError(f'Package "{package_id}" is not installed. Check {LOCKFILE_NAME}.')
            keys = [package_id]

        results: list[PackageUpdate] = []
        for key in keys:
            results.append(
                await self._update_package(key, lock, warnings, skip_prompts=skip_prompts, dry_run=dry_run)
            )

        lock_written: Path | None = None
        changed = any(r.status == "updated" and (r.installed_count or any(s.ok for s in r.skills)) for r in results)
        if changed and not dry_run:
            lock_written = write_lockfile(self.project_root, lock)

        return UpdateResult(
            packages=tuple(results),
            dry_run=dry_run,
            warnings=tuple(warnings),
            lock_path=lock_written,
        )

    async def _update_package(
        self,
        key: str,
        lock: Lockfile,
        warnings: list[str],
        *,
        skip_prompts: bool,
        dry_run: bool,
    ) -> PackageUpdate:
        entry = lock.packages[key]
        try:
            manifest = await self.source.fetch_manifest(key)
        except UpdoseError as e:
            return PackageUpdate(package_id=key, status="failed", current_version=entry.version, error=str(e))
        warnings.extend(manifest.warnings)

        if manifest.version == entry.version:
            return PackageUpdate(
                package_id=key, status="up-to-date", current_version=entry.version, latest_version=manifest.version
            )

        try:
            tree = await self.source.fetch_tree(key)
        except UpdoseError as e:
            return PackageUpdate(
                package_id=key,
                status="failed",
                current_version=entry.version,
                latest_version=manifest.version,
                error=str(e),
            )

        run = _PackageRun()
        for target in entry.targets:
            files = filter_target_files(tree, target)
            if not files:
                warnings.append(f'No files found for target "{target}" in {key}')
                continue
            if dry_run:
                self._plan_target(target, files, run)
                continue
            # Only main documents are prompted for; bundle-owned files are refreshed.
            await self._apply_target(key, target, files, run, skip_prompts=skip_prompts, prompt_main_doc_only=True)

        if dry_run:
            return PackageUpdate(
                package_id=key,
                status="updated",
                current_version=entry.version,
                latest_version=manifest.version,
                files=tuple(run.actions),
                planned_skills=tuple(await self._load_skills(key, warnings)),
            )

        installed = sum(1 for a in run.actions if a.status == INSTALLED)
        outcomes: list[SkillOutcome] = []
        if installed > 0:
            skills = await self._load_skills(key, warnings)
            if skills:
                outcomes = await install_skills(
                    source=self.source,
                    package_id=key,
                    skills=skills,
                    targets=entry.targets,
                    project_root=self.project_root,
                    tree=tree,
                    skip_prompts=True,
                    decider=self.decider,
                )
                self._merge_skill_files(run, outcomes)

        if installed > 0 or any(o.ok for o in outcomes):
            files = {t: list(p) for t, p in entry.files.items()}
            for target, paths in run.written.items():
                # Union: files from older bundle versions stay tracked.
                files[target] = list(dict.fromkeys([*files.get(target, []), *paths]))
            lock.packages[key] = LockfileEntry(
                version=manifest.version,
                targets=list(entry.targets),
                installed_at=utc_timestamp(),
                files=files,
                skills=merge_skill_entries(entry.skills, self._skill_identities(key, outcomes)),
            )

        return PackageUpdate(
            package_id=key,
            status="updated",
            current_version=entry.version,
            latest_version=manifest.version,
            files=tuple(run.actions),
            skills=tuple(outcomes),
        )

    # -- outdated -----------------------------------------------------------

    async def outdated(self) -> tuple[list[OutdatedRow], list[str]]:
        lock = read_lockfile(self.project_root)
        keys = sorted(lock.packages)
        settled = await asyncio.gather(*(self.source.fetch_manifest(k) for k in keys), return_exceptions=True)

        rows: list[OutdatedRow] = []
        for key, result in zip(keys, settled):
            current = lock.packages[key].version
            if isinstance(result, UpdoseError):
                rows.append(OutdatedRow(package_id=key, current=current, latest=None, error=str(result)))
            elif isinstance(result, BaseException):
                raise result
            else:
                rows.append(OutdatedRow(package_id=key, current=current, latest=result.version))
        return rows, list(lock.warnings)
