"""Per-job workspace lifecycle: clone, branch, cleanup."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from ticket_agent.engine.models import JobSpec
from ticket_agent.errors import SandboxError

logger = logging.getLogger(__name__)

_GIT_TIMEOUT_SECONDS = 600
_BRANCH_SLUG_CHARS = 40
_SLUG_STRIP_RE = re.compile(r"[^\w\s-]")
_SLUG_SEPARATOR_RE = re.compile(r"[\s_-]+")
_HOSTS = ("github.com", "gitlab.com")


@dataclass(slots=True)
class SandboxInfo:
    path: Path
    branch_name: str


def slugify(text: str) -> str:
    """Lowercase dash-separated slug used in branch names."""

    slug = _SLUG_STRIP_RE.sub("", text.lower().strip())
    slug = _SLUG_SEPARATOR_RE.sub("-", slug)
    return slug.strip("-")


class SandboxManager:
    """Creates isolated repository clones under one base directory."""

    def __init__(
        self,
        base_path: Path,
        *,
        branch_prefix: str = "ticket-agent",
        instruction_file_name: str = "CLAUDE.md",
        init_overlay: bool = False,
        clone_depth: int = 1,
    ) -> None:
        self.base_path = base_path
        self.branch_prefix = branch_prefix
        self.instruction_file_name = instruction_file_name
        self.init_overlay = init_overlay
        self.clone_depth = clone_depth

    def create(self, job: JobSpec) -> SandboxInfo:
        base_path = Path(job.sandbox_base_path) if job.sandbox_base_path else self.base_path
        sandbox_id = f"{job.project_id[:8]}-{job.job_id[:8]}-{int(time.time() * 1000)}"
        path = base_path / sandbox_id
        branch_name = self.branch_name(job)

        try:
            base_path.mkdir(parents=True, exist_ok=True)
            _run_git(
                [
                    "git",
                    "clone",
                    "--depth",
                    str(self.clone_depth),
                    "--branch",
                    job.default_branch,
                    authenticated_url(job.repo_url, job.vcs_token, job.vcs_provider),
                    str(path),
                ],
                cwd=base_path,
                secret=job.vcs_token,
            )
            _run_git(["git", "checkout", "-b", branch_name], cwd=path, secret=job.vcs_token)
            if self.init_overlay:
                self._init_overlay(path)
            if job.instruction_template:
                (path / self.instruction_file_name).write_text(
                    job.instruction_template,
                    encoding="utf-8",
                )
        except (SandboxError, OSError) as error:
            shutil.rmtree(path, ignore_errors=True)
            if isinstance(error, SandboxError):
                raise
            raise SandboxError(f"Failed to create sandbox: {error}") from error

        logger.info("Sandbox created: %s (branch %s)", path, branch_name)
        return SandboxInfo(path=path, branch_name=branch_name)

    def cleanup(self, path: Path | str) -> None:
        """Remove a sandbox directory; failures are logged only."""

        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return
        except OSError:
            logger.exception("Failed to cleanup sandbox %s", path)
            return
        logger.info("Sandbox removed: %s", path)

    def exists(self, path: Path | str | None) -> bool:
        if not path:
            return False
        root = Path(path)
        return (root / ".git").exists() or (root / ".jj").exists()

    def branch_name(self, job: JobSpec) -> str:
        slug = slugify(job.title)[:_BRANCH_SLUG_CHARS]
        return f"{self.branch_prefix}/{job.external_ticket_id}-{slug}"

    def _init_overlay(self, path: Path) -> None:
        try:
            completed = subprocess.run(  # noqa: S603
                ["jj", "git", "init", "--colocate"],  # noqa: S607
                cwd=path,
                capture_output=True,
                text=True,
                check=False,
                timeout=_GIT_TIMEOUT_SECONDS,
            )
        except FileNotFoundError:
            logger.warning("jj is not installed; sandbox %s stays plain git", path)
            return
        if completed.returncode != 0:
            logger.warning("jj git init failed in %s: %s", path, completed.stderr.strip())


def authenticated_url(repo_url: str, token: str, vcs_provider: str = "github") -> str:
    """Embed the VCS credential into a hosted HTTPS or scp-style URL."""

    if not token:
        return repo_url
    user = "oauth2:" if vcs_provider == "gitlab" else ""
    for host in _HOSTS:
        scp_prefix = f"git@{host}:"
        https_prefix = f"https://{host}/"
        if repo_url.startswith(scp_prefix):
            repo_path = repo_url[len(scp_prefix) :]
        elif repo_url.startswith(https_prefix):
            repo_path = repo_url[len(https_prefix) :]
        else:
            continue
        repo_path = repo_path.removesuffix(".git")
        return f"https://{user}{token}@{host}/{repo_path}.git"
    return repo_url


def _run_git(argv: list[str], *, cwd: Path, secret: str) -> None:
    try:
        completed = subprocess.run(  # noqa: S603
            argv,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
            timeout=_GIT_TIMEOUT_SECONDS,
        )
    except FileNotFoundError as error:
        raise SandboxError("git executable not found") from error
    except subprocess.TimeoutExpired as error:
        raise SandboxError(f"git {argv[1]} timed out") from error
    if completed.returncode != 0:
        stderr = completed.stderr.strip()
        if secret:
            stderr = stderr.replace(secret, "***")
        raise SandboxError(f"Failed to create sandbox: git {argv[1]} failed: {stderr}")
