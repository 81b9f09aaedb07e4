"""
Supported assistant targets and the pure path mapping rules for each of them.

Bundle layout (per target, the source directory is the target name):

    claude/CLAUDE.md            -> CLAUDE.md
    claude/commands/review.md   -> .claude/commands/review.md
    codex/AGENTS.md             -> AGENTS.md
    codex/utils/AGENTS.md       -> utils/AGENTS.md   (codex keeps files at the project root)
    gemini/commands/review.toml -> .gemini/commands/review.toml
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass

PLACEHOLDER_FILENAME = ".gitkeep"


@dataclass(frozen=True)
class TargetSpec:
    name: str
    main_doc: str
    local_dir: str  # "" means files are installed at the project root
    skills_dir: str
    agent_name: str


_SPECS: dict[str, TargetSpec] = {
    "claude": TargetSpec(
        name="claude",
        main_doc="CLAUDE.md",
        local_dir=".claude",
        skills_dir=".claude/skills",
        agent_name="claude-code",
    ),
    "codex": TargetSpec(
        name="codex",
        main_doc="AGENTS.md",
        local_dir="",
        skills_dir=".agents/skills",
        agent_name="codex",
    ),
    "gemini": TargetSpec(
        name="gemini",
        main_doc="GEMINI.md",
        local_dir=".gemini",
        skills_dir=".gemini/skills",
        agent_name="gemini-cli",
    ),
}

TARGETS: tuple[str, ...] = tuple(_SPECS)


def is_target(value: object) -> bool:
    return isinstance(value, str) and value in _SPECS


def target_spec(target: str) -> TargetSpec:
    try:
        return _SPECS[target]
    except KeyError as e:
        raise ValueError(f"Unknown target {target!r}. Valid targets: {', '.join(TARGETS)}") from e


def source_dir_for(target: str) -> str:
    return target_spec(target).name


def main_doc_for(target: str) -> str:
    return target_spec(target).main_doc


def skills_dir_for(target: str) -> str:
    return target_spec(target).skills_dir


def agent_name_for(target: str) -> str:
    return target_spec(target).agent_name


def is_main_doc(target: str, relative_path: str) -> bool:
    return relative_path == target_spec(target).main_doc


def map_to_local_path(target: str, relative_path: str) -> str:
    """Map a path relative to the target's source dir to a project-relative POSIX path."""
    spec = target_spec(target)
    if is_main_doc(target, relative_path):
        return spec.main_doc
    if not spec.local_dir:
        return relative_path
    return posixpath.join(spec.local_dir, relative_path)


def should_skip_file(relative_path: str) -> bool:
    return relative_path.endswith(PLACEHOLDER_FILENAME)
