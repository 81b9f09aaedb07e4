from __future__ import annotations

from dataclasses import dataclass


class UpdoseError(RuntimeError):
    pass


class InvalidPackageIdError(UpdoseError):
    pass


class InvalidManifestError(UpdoseError):
    pass


class RepoNotFoundError(UpdoseError):
    pass


class RateLimitError(UpdoseError):
    pass


class AccessDeniedError(UpdoseError):
    pass


class PathTraversalError(UpdoseError):
    pass


class UnsafeCommandError(UpdoseError):
    pass


@dataclass(frozen=True)
class GitHubHTTPError(UpdoseError):
    status_code: int
    reason: str
    url: str

    def __str__(self) -> str:
        return f"GitHub API error: {self.status_code} {self.reason} ({self.url})"


@dataclass(frozen=True)
class SkillCommandError(UpdoseError):
    returncode: int
    stderr: str

    def __str__(self) -> str:
        detail = self.stderr.strip()
        if detail:
            return detail
        return f"skill installer exited with status {self.returncode}"
