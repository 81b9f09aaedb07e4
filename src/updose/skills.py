from __future__ import annotations

import asyncio
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from .client import BundleSource, TreeEntry
from .errors import InvalidManifestError, SkillCommandError, UnsafeCommandError, UpdoseError
from .installer import DecisionProvider, file_exists, install_file, resolve_conflict
from .paths import ensure_within_dir
from .targets import agent_name_for, should_skip_file, skills_dir_for

SKILL_CONCURRENCY = 5
SKILL_ENTRY_FILENAME = "SKILL.md"

_SKILL_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
# Shell metacharacters are never allowed in installer tokens, shell or not.
_UNSAFE_TOKEN_RE = re.compile(r"[;&|`$(){}<>\\!*?\[\]'\"\r\n]")

T = TypeVar("T")


@dataclass(frozen=True)
class Skill:
    name: str
    description: str
    path: str
    # Set when the skill lives in another repository and is installed by the external installer.
    repo: str | None = None

    @property
    def label(self) -> str:
        return f"{self.repo} > {self.name}" if self.repo else self.name


@dataclass(frozen=True)
class SkillOutcome:
    skill: Skill
    files: dict[str, tuple[str, ...]] = field(default_factory=dict)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_skills(raw: Any) -> list[Skill]:
    """
    Parse a skills.json document:

        {"skills": [{"name": "review", "description": "...", "path": "skills/review"}]}

    Entries with a missing or unsafe name, or a missing path, are dropped.
    """
    if not isinstance(raw, dict):
        raise InvalidManifestError("Invalid skills.json: expected an object")
    entries = raw.get("skills")
    if not isinstance(entries, list):
        raise InvalidManifestError('Invalid skills.json: "skills" must be an array')

    skills: list[Skill] = []
    for e in entries:
        if not isinstance(e, dict):
            continue
        name = e.get("name")
        path = e.get("path")
        if not isinstance(name, str) or not _SKILL_NAME_RE.match(name):
            continue
        if not isinstance(path, str) or not path.strip():
            continue
        description = e.get("description")
        repo = e.get("repo")
        skills.append(
            Skill(
                name=name,
                description=description if isinstance(description, str) else "",
                path=path.strip(),
                repo=repo.strip() if isinstance(repo, str) and repo.strip() else None,
            )
        )
    return skills


def skill_dir(target: str, skill_name: str) -> str:
    return f"{skills_dir_for(target)}/{skill_name}"


def skill_entry_path(target: str, skill_name: str) -> str:
    return f"{skill_dir(target, skill_name)}/{SKILL_ENTRY_FILENAME}"


async def _install_one(
    *,
    source: BundleSource,
    package_id: str,
    remote_path: str,
    dest_rel: str,
    project_root: Path,
    skip_prompts: bool,
    decider: DecisionProvider | None,
) -> bool | None:
    """Returns None when the remote file is missing, otherwise whether it was written."""
    dest = ensure_within_dir(project_root, dest_rel)
    content = await source.fetch_file(package_id, remote_path)
    if content is None:
        return None
    strategy = "overwrite"
    if file_exists(dest):
        strategy = resolve_conflict(dest_rel, False, skip_prompts, decider)
    return install_file(content, dest, strategy)


async def install_skill(
    *,
    source: BundleSource,
    package_id: str,
    skill: Skill,
    target: str,
    project_root: Path,
    tree: Sequence[TreeEntry],
    skip_prompts: bool,
    decider: DecisionProvider | None = None,
) -> list[str]:
    """
    Install one bundle skill for one target. Returns the project-relative paths
    that were written (empty if everything was skipped).
    """
    prefix = skill.path if skill.path.endswith("/") else skill.path + "/"
    skill_files = [e for e in tree if e.type == "blob" and e.path.startswith(prefix)]

    if skill_files:
        installed: list[str] = []
        for entry in skill_files:
            rel = entry.path[len(prefix) :]
            if not rel or should_skip_file(rel):
                continue
            dest_rel = f"{skill_dir(target, skill.name)}/{rel}"
            written = await _install_one(
                source=source,
                package_id=package_id,
                remote_path=entry.path,
                dest_rel=dest_rel,
                project_root=project_root,
                skip_prompts=skip_prompts,
                decider=decider,
            )
            if written:
                installed.append(dest_rel)
        return installed

    # Legacy single-file skill: the file becomes the skill's SKILL.md.
    dest_rel = skill_entry_path(target, skill.name)
    written = await _install_one(
        source=source,
        package_id=package_id,
        remote_path=skill.path,
        dest_rel=dest_rel,
        project_root=project_root,
        skip_prompts=skip_prompts,
        decider=decider,
    )
    if written is None:
        raise UpdoseError(f"Skill not found in repo: {skill.path}")
    return [dest_rel] if written else []


def build_skill_command(skill: Skill, agents: Sequence[str]) -> list[str]:
    if not skill.repo:
        raise UpdoseError(f"Skill {skill.name!r} has no source repository")
    argv = ["npx", "skills", "add", f"https://github.com/{skill.repo}", "--skill", skill.name]
    if agents:
        argv += ["-a", *agents]
    argv += ["--copy", "-y"]
    return argv


def validate_command(argv: Sequence[str]) -> None:
    if not argv:
        raise UnsafeCommandError("Invalid skill command: no tokens")
    for token in argv:
        if not token:
            raise UnsafeCommandError("Invalid skill command: empty token")
        m = _UNSAFE_TOKEN_RE.search(token)
        if m:
            raise UnsafeCommandError(f"Unsafe character {m.group(0)!r} in skill command token {token!r}")


async def run_skill_command(argv: Sequence[str], cwd: Path) -> None:
    """Run an external skill installer as an argument vector (never through a shell)."""
    validate_command(argv)
    executable = shutil.which(argv[0])
    if executable is None:
        raise UpdoseError(f"{argv[0]} not found on PATH")

    proc = await asyncio.create_subprocess_exec(
        executable,
        *argv[1:],
        cwd=str(cwd),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    _, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise SkillCommandError(proc.returncode or 1, stderr.decode("utf-8", errors="replace"))


async def settled_pool(tasks: Sequence[Callable[[], Awaitable[T]]], limit: int) -> list[T | Exception]:
    """
    Run tasks with at most `limit` in flight. Every task settles independently;
    results (or the exception raised) are returned in task order.
    """
    results: list[T | Exception] = [None] * len(tasks)  # type: ignore[list-item]
    next_index = 0

    async def worker() -> None:
        nonlocal next_index
        while next_index < len(tasks):
            i = next_index
            next_index += 1
            try:
                results[i] = await tasks[i]()
            except Exception as e:  # noqa: BLE001 - one failing task must not abort the others
                results[i] = e

    await asyncio.gather(*(worker() for _ in range(min(limit, len(tasks)))))
    return results


async def install_skills(
    *,
    source: BundleSource,
    package_id: str,
    skills: Sequence[Skill],
    targets: Sequence[str],
    project_root: Path,
    tree: Sequence[TreeEntry],
    skip_prompts: bool,
    decider: DecisionProvider | None = None,
    limit: int = SKILL_CONCURRENCY,
    runner: Callable[[Sequence[str], Path], Awaitable[None]] = run_skill_command,
) -> list[SkillOutcome]:
    async def _install(skill: Skill) -> dict[str, tuple[str, ...]]:
        if skill.repo:
            await runner(build_skill_command(skill, [agent_name_for(t) for t in targets]), project_root)
            return {}
        files: dict[str, tuple[str, ...]] = {}
        for target in targets:
            files[target] = tuple(
                await install_skill(
                    source=source,
                    package_id=package_id,
                    skill=skill,
                    target=target,
                    project_root=project_root,
                    tree=tree,
                    skip_prompts=skip_prompts,
                    decider=decider,
                )
            )
        return files

    tasks = [lambda s=skill: _install(s) for skill in skills]
    settled = await settled_pool(tasks, limit)

    outcomes: list[SkillOutcome] = []
    for skill, result in zip(skills, settled):
        if isinstance(result, Exception):
            outcomes.append(SkillOutcome(skill=skill, error=str(result) or type(result).__name__))
        else:
            outcomes.append(SkillOutcome(skill=skill, files=result))
    return outcomes
