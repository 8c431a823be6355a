"""Project identity detection.

The identifier is resolved in order from:
  1. an explicit override (``RUNDOWN_PROJECT_ID`` or ``set()``)
  2. the git ``origin`` remote (``owner/repo``)
  3. ``GITHUB_OWNER`` + ``GITHUB_REPO`` env vars
  4. the basename of the working directory
"""
from __future__ import annotations

import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger("rundown.project")

_OWNER_REPO_RE = re.compile(r"[:/]([^/]+)/([^/]+?)(?:\.git)?$")


def parse_owner_repo(remote_url: str) -> Optional[str]:
    """Extract ``owner/repo`` from HTTPS, SSH or git:// remote URLs."""
    match = _OWNER_REPO_RE.search((remote_url or "").strip())
    if not match:
        return None
    return f"{match.group(1)}/{match.group(2)}"


class ProjectIdentity:
    """Lazily detected, explicitly resettable project identifier."""

    def __init__(self, cwd: Path | str | None = None, override: str | None = None):
        self.cwd = Path(cwd) if cwd else Path.cwd()
        self._override = (override or "").strip() or None
        self._cached: Optional[str] = None

    def detect(self) -> str:
        if self._override:
            return self._override
        if self._cached is None:
            self._cached = (
                self._from_git_remote()
                or self._from_env()
                or self.cwd.resolve().name
            )
            logger.info(f"Detected project id: {self._cached}")
        return self._cached

    def set(self, project_id: str) -> None:
        self._override = (project_id or "").strip() or None

    def reset(self) -> None:
        self._override = None
        self._cached = None

    def resolve(self, explicit: str | None = None) -> str:
        """Use an explicit per-call project when given, else the detected one."""
        token = (explicit or "").strip()
        return token or self.detect()

    def _from_git_remote(self) -> Optional[str]:
        try:
            result = subprocess.run(
                ["git", "remote", "get-url", "origin"],
                cwd=str(self.cwd),
                capture_output=True,
                text=True,
                timeout=3,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug(f"git remote lookup failed: {exc}")
            return None
        if result.returncode != 0:
            return None
        return parse_owner_repo(result.stdout)

    @staticmethod
    def _from_env() -> Optional[str]:
        owner = os.getenv("GITHUB_OWNER", "").strip()
        repo = os.getenv("GITHUB_REPO", "").strip()
        if owner and repo:
            return f"{owner}/{repo}"
        return repo or None
