from __future__ import annotations

import errno
from pathlib import Path
from typing import Literal, Protocol, Sequence

ConflictStrategy = Literal["overwrite", "append", "skip"]

APPEND_SEPARATOR = "\n\n---\n\n"


class DecisionProvider(Protocol):
    """
    Answers operator questions. Calls are synchronous and made from inside
    coroutines: a terminal prompt blocks the event loop until answered, which
    also keeps prompts from concurrent skill installs one at a time.
    """

    def choose_conflict_strategy(self, path: str, is_main_doc: bool) -> ConflictStrategy | None:
        """Return the chosen strategy, or None when the operator cancelled."""
        ...

    def choose_targets(self, available: Sequence[str]) -> list[str]:
        """Return the chosen targets; an empty list means cancel."""
        ...


def resolve_conflict(
    path: str,
    is_main_doc: bool,
    skip_prompts: bool,
    decider: DecisionProvider | None,
) -> ConflictStrategy:
    """
    Decide what to do with an existing destination file.

    Non-interactive runs append to main documents (they usually carry project
    edits) and overwrite everything else. Interactive runs ask; a cancelled or
    invalid answer means skip.
    """
    if skip_prompts:
        return "append" if is_main_doc else "overwrite"
    if decider is None:
        return "skip"
    choice = decider.choose_conflict_strategy(path, is_main_doc)
    if choice == "append" and not is_main_doc:
        return "skip"
    if choice in ("overwrite", "append", "skip"):
        return choice
    return "skip"


def file_exists(path: Path) -> bool:
    try:
        path.stat()
    except FileNotFoundError:
        return False
    except NotADirectoryError:
        return False
    except OSError as e:
        if e.errno == errno.ENOENT:
            return False
        raise
    return True


def install_file(content: str, dest_path: Path, strategy: ConflictStrategy) -> bool:
    """
    Write content to dest_path according to strategy.

    Returns True when the file was written, False when skipped. I/O errors are
    not caught here.
    """
    if strategy == "skip":
        return False

    dest_path.parent.mkdir(parents=True, exist_ok=True)

    if strategy == "append":
        try:
            existing = dest_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            existing = ""
        trimmed = existing.rstrip()
        incoming = content.rstrip()
        if incoming and trimmed.endswith(incoming):
            # Already appended by a previous run.
            return True
        separator = APPEND_SEPARATOR if trimmed else ""
        dest_path.write_text(trimmed + separator + content, encoding="utf-8")
        return True

    dest_path.write_text(content, encoding="utf-8")
    return True
