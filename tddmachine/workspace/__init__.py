"""
TDD Machine Workspace — git access for the step loop.

Thin wrapper over the git CLI. Supplies the repository snapshot that
feeds each StepContext, stages and commits successful steps, and
restores the working tree between failed attempts.
"""

from __future__ import annotations

import subprocess
from pathlib import Path

from loguru import logger


class VcsError(Exception):
    """A git command failed."""


class GitWorkspace:
    """
    Git repository rooted at `repo_path`.

    `protected` holds workspace-relative directories (plans, logs, state)
    that are ignored by the cleanliness check and survive restore().
    """

    def __init__(self, repo_path: Path, protected: list[str] | None = None):
        self.repo_path = repo_path.resolve()
        self.protected = [p.strip("/").replace("\\", "/") for p in (protected or [])]

    # -- lifecycle ----------------------------------------------------------

    def open_or_init(self) -> bool:
        """Open the repository, running `git init` if there is none. Returns True if created."""
        self.repo_path.mkdir(parents=True, exist_ok=True)
        if (self.repo_path / ".git").exists():
            return False
        self._git("init", "--quiet")
        logger.info(f"[GIT] Initialized repository at {self.repo_path}")
        return True

    def has_commits(self) -> bool:
        return self._run_cmd(
            ["git", "rev-parse", "--verify", "--quiet", "HEAD"],
            cwd=self.repo_path, check=False, capture=True,
        ).strip() != ""

    def head(self) -> str | None:
        if not self.has_commits():
            return None
        return self._git("rev-parse", "HEAD", capture=True).strip()

    # -- snapshot -----------------------------------------------------------

    def last_commit_message(self) -> str:
        if not self.has_commits():
            return ""
        return self._git("log", "-1", "--format=%B", capture=True).strip()

    def last_diff(self) -> str:
        """Patch introduced by HEAD (empty for a fresh repository)."""
        if not self.has_commits():
            return ""
        return self._git("show", "--format=", "--patch", "HEAD", capture=True)

    def tracked_files(self) -> list[str]:
        """Tracked plus untracked-but-not-ignored files, forward-slash relative."""
        out = self._git(
            "ls-files", "--cached", "--others", "--exclude-standard", "-z",
            capture=True,
        )
        files = {p.replace("\\", "/") for p in out.split("\0") if p}
        return sorted(f for f in files if not f.startswith(".git/"))

    def untracked_files(self, directory: str) -> list[str]:
        out = self._git(
            "ls-files", "--others", "--exclude-standard", "-z", "--", directory.strip("/"),
            capture=True,
        )
        return sorted(p.replace("\\", "/") for p in out.split("\0") if p)

    def dirty_files(self) -> list[str]:
        """`git status --porcelain` lines outside the protected directories."""
        status = self._git("status", "--porcelain", "--untracked-files=all", capture=True)
        dirty = []
        for line in status.splitlines():
            path = line[3:].strip().strip('"')
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            if not self._is_protected(path):
                dirty.append(line)
        return dirty

    def is_clean(self) -> bool:
        return not self.dirty_files()

    # -- mutation -----------------------------------------------------------

    def stage_all(self, exclude: list[str] | None = None) -> None:
        """Stage everything except the `exclude` directories (logs and state stay local)."""
        args = ["add", "-A", "--", "."]
        for path in exclude or []:
            args.append(f":(exclude){path.strip('/')}")
        self._git(*args)

    def stage_paths(self, paths: list[str]) -> None:
        """Stage only the given paths (missing ones are skipped)."""
        existing = [p for p in paths if (self.repo_path / p).exists()]
        if existing:
            self._git("add", "--", *existing)

    def has_staged_changes(self) -> bool:
        return self._git("diff", "--cached", "--name-only", capture=True).strip() != ""

    def commit_if_dirty(
        self,
        message: str,
        author_name: str,
        author_email: str,
        exclude: list[str] | None = None,
    ) -> str | None:
        """Stage everything outside `exclude` and commit it, if anything changed."""
        if self.is_clean():
            return None
        self.stage_all(exclude=exclude)
        if not self.has_staged_changes():
            return None
        return self.commit(message, author_name, author_email)

    def commit(self, message: str, author_name: str, author_email: str) -> str:
        """Commit the index and return the new commit id."""
        self._git(
            "-c", f"user.name={author_name}",
            "-c", f"user.email={author_email}",
            "-c", "commit.gpgsign=false",
            "commit", "--quiet", "--allow-empty", "-m", message,
        )
        sha = self._git("rev-parse", "HEAD", capture=True).strip()
        logger.info(f"[GIT] Committed {sha[:10]}")
        return sha

    def restore(self) -> None:
        """Discard every uncommitted change outside the protected directories."""
        if self.has_commits():
            self._git("reset", "--hard", "--quiet", "HEAD")
        else:
            self._git("rm", "-r", "--cached", "--quiet", "--ignore-unmatch", ".", check=False)
        args = ["clean", "-fd", "--quiet"]
        for path in self.protected:
            args += ["-e", f"/{path}/"]
        self._git(*args)
        logger.debug("[GIT] Working tree restored to HEAD")

    # -- helpers ------------------------------------------------------------

    def _is_protected(self, path: str) -> bool:
        path = path.replace("\\", "/")
        return any(path == p or path.startswith(p + "/") for p in self.protected)

    def _git(self, *args: str, check: bool = True, capture: bool = False) -> str:
        return self._run_cmd(["git", *args], cwd=self.repo_path, check=check, capture=capture)

    @staticmethod
    def _run_cmd(cmd: list[str], cwd: Path, check: bool = True, capture: bool = False) -> str:
        try:
            result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=60)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise VcsError(f"Git failed: {' '.join(cmd)}\n{e}") from e
        if check and result.returncode != 0:
            raise VcsError(f"Git failed: {' '.join(cmd)}\n{result.stderr}")
        return result.stdout if capture else ""
