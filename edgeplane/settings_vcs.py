"""Version-controlled settings files backed by a local git repository.

All four settings domains share one working tree rooted at
``paths.settings_dir``. Every mutation lands as a new commit: ``apply``
commits the new file content, ``revert`` appends a commit that undoes an
earlier one. History is never rewritten.

Calls are blocking (``git`` subprocesses and file writes) and unsynchronised;
callers run them on a worker pool and serialise mutations themselves.
"""
from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping

from edgeplane.config import (
    PRIMARY_SETTINGS_RELPATH,
    ConfigPersistenceError,
    check_primary_settings,
    default_primary_settings,
    dump_yaml_text,
    get_cfg,
    reload_cfg,
    video_stream_from_primary,
)
from edgeplane.errors import (
    GitOperationError,
    RepositoryUninitialized,
    RevertConflict,
    VcsIoError,
)

log = logging.getLogger("settings_vcs")


class SettingsApp(str, Enum):
    PRIMARY = "edgeplane"
    OCTOPRINT = "octoprint"
    MOONRAKER = "moonraker"
    KLIPPER = "klipper"


class SettingsFormat(str, Enum):
    INI = "ini"
    JSON = "json"
    TOML = "toml"
    YAML = "yaml"


@dataclass(frozen=True)
class GitCommit:
    id: str
    header: str
    message: str
    ts: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SettingsFile:
    app: SettingsApp
    file_name: str
    file_format: SettingsFormat
    content: str


@dataclass(frozen=True)
class SettingsDomain:
    app: SettingsApp
    relpath: str
    file_format: SettingsFormat
    default_content: Callable[[], str]
    # Key under ``apps`` holding ``enabled`` and ``unit``; None for the primary domain.
    app_key: str | None = None


@dataclass(frozen=True)
class SettingsChange:
    """Outcome of ``apply`` or ``revert``."""

    file: SettingsFile
    git_head_commit: str
    git_history: list[GitCommit]


def _primary_default() -> str:
    return dump_yaml_text(default_primary_settings())


DOMAINS: dict[SettingsApp, SettingsDomain] = {
    SettingsApp.PRIMARY: SettingsDomain(
        app=SettingsApp.PRIMARY,
        relpath=PRIMARY_SETTINGS_RELPATH,
        file_format=SettingsFormat.YAML,
        default_content=_primary_default,
    ),
    SettingsApp.OCTOPRINT: SettingsDomain(
        app=SettingsApp.OCTOPRINT,
        relpath="octoprint/octoprint.yaml",
        file_format=SettingsFormat.YAML,
        default_content=lambda: "server:\n  host: 127.0.0.1\n  port: 5001\nwebcam:\n  webcamEnabled: true\n",
        app_key="octoprint",
    ),
    SettingsApp.MOONRAKER: SettingsDomain(
        app=SettingsApp.MOONRAKER,
        relpath="moonraker/moonraker.conf",
        file_format=SettingsFormat.INI,
        default_content=lambda: "[server]\nhost: 0.0.0.0\nport: 7125\n\n[authorization]\ncors_domains:\n  *.local\n",
        app_key="moonraker",
    ),
    SettingsApp.KLIPPER: SettingsDomain(
        app=SettingsApp.KLIPPER,
        relpath="klipper/printer.cfg",
        file_format=SettingsFormat.INI,
        default_content=lambda: "[printer]\nkinematics: none\nmax_velocity: 1000\nmax_accel: 1000\n",
        app_key="klipper",
    ),
}


def _try_restart_unit(unit: str) -> None:
    cmd = ["systemctl", "--no-ask-password", "try-restart", unit]
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True)
    except FileNotFoundError:
        log.warning("systemctl not found; %s not restarted", unit)
        return
    if proc.returncode != 0:
        log.warning(
            "systemctl try-restart %s failed (%s): %s",
            unit,
            proc.returncode,
            proc.stderr.strip() or proc.stdout.strip(),
        )
    else:
        log.info("Restarted %s after settings change", unit)


def parse_raw_log(payload: str) -> list[GitCommit]:
    """Parse ``git log --format=raw`` output, newest first."""
    commits: list[GitCommit] = []
    current: list[str] | None = None

    def _flush(lines: list[str]) -> None:
        sha = lines[0].split(None, 1)[1].strip()
        header_lines: list[str] = []
        message_lines: list[str] = []
        in_header = True
        for line in lines[1:]:
            if in_header:
                if line == "":
                    in_header = False
                    continue
                header_lines.append(line)
            else:
                message_lines.append(line[4:] if line.startswith("    ") else line)
        ts = 0
        for line in header_lines:
            if line.startswith("committer "):
                try:
                    ts = int(line.rsplit(" ", 2)[-2])
                except (IndexError, ValueError):
                    ts = 0
        commits.append(
            GitCommit(
                id=sha,
                header="\n".join(header_lines),
                message="\n".join(message_lines).strip("\n"),
                ts=ts,
            )
        )

    for line in payload.splitlines():
        if line.startswith("commit "):
            if current:
                _flush(current)
            current = [line]
        elif current is not None:
            current.append(line)
    if current:
        _flush(current)
    return commits


class SettingsRepository:
    def __init__(
        self,
        root: Path | str,
        *,
        git_name: str,
        git_email: str,
        default_branch: str = "main",
        apps_settings: Callable[[], Mapping[str, Any]] | None = None,
        restart_unit: Callable[[str], None] | None = None,
    ) -> None:
        self.root = Path(root)
        self.git_name = git_name
        self.git_email = git_email
        self.default_branch = default_branch
        self._apps_settings = apps_settings or (lambda: get_cfg().get("apps", {}))
        self._restart_unit = restart_unit or _try_restart_unit

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any], **kwargs: Any) -> "SettingsRepository":
        git_cfg = cfg.get("git", {})
        return cls(
            cfg.get("paths", {}).get("settings_dir", ""),
            git_name=str(git_cfg.get("name", "Edgeplane")),
            git_email=str(git_cfg.get("email", "")),
            default_branch=str(git_cfg.get("default_branch", "main")),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # git plumbing
    # ------------------------------------------------------------------

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        cmd = [
            "git",
            "-C",
            str(self.root),
            "-c",
            f"user.name={self.git_name}",
            "-c",
            f"user.email={self.git_email}",
            "-c",
            "commit.gpgsign=false",
            *args,
        ]
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, env=env)
        except FileNotFoundError as exc:
            raise GitOperationError("git executable not found") from exc
        log.debug("git %s -> %s %s", " ".join(args), proc.returncode, proc.stderr.strip())
        if check and proc.returncode != 0:
            raise GitOperationError(
                f"git {args[0]} failed ({proc.returncode}): {proc.stderr.strip()}",
                returncode=proc.returncode,
                stderr=proc.stderr,
            )
        return proc

    def is_initialized(self) -> bool:
        return (self.root / ".git").exists()

    def _require_repo(self) -> None:
        if not self.is_initialized():
            raise RepositoryUninitialized(f"{self.root} is not a settings repository")

    def _head_sha(self) -> str | None:
        self._require_repo()
        proc = self._git("rev-parse", "--verify", "-q", "HEAD", check=False)
        sha = proc.stdout.strip()
        return sha if proc.returncode == 0 and sha else None

    def head_commit(self) -> GitCommit:
        sha = self._head_sha()
        if sha is None:
            raise RepositoryUninitialized(f"{self.root} has no commits")
        proc = self._git("log", "-n", "1", "--format=raw", sha)
        return parse_raw_log(proc.stdout)[0]

    def _parent_count(self, sha: str) -> int:
        proc = self._git("rev-list", "--parents", "-n", "1", sha)
        return max(len(proc.stdout.split()) - 1, 0)

    def _log(self, *pathspec: str) -> list[GitCommit]:
        if self._head_sha() is None:
            raise RepositoryUninitialized(f"{self.root} has no commits")
        args = ["log", "--date-order", "--format=raw", "HEAD"]
        if pathspec:
            args.extend(["--", *pathspec])
        proc = self._git(*args)
        return parse_raw_log(proc.stdout)

    def repo_history(self) -> list[GitCommit]:
        return self._log()

    def history(self, app: SettingsApp) -> list[GitCommit]:
        return self._log(DOMAINS[app].relpath)

    # ------------------------------------------------------------------
    # files
    # ------------------------------------------------------------------

    def path_for(self, app: SettingsApp) -> Path:
        return self.root / DOMAINS[app].relpath

    def load(self, app: SettingsApp) -> SettingsFile:
        domain = DOMAINS[app]
        path = self.path_for(app)
        try:
            content = path.read_text(encoding="utf-8") if path.exists() else ""
        except OSError as exc:
            raise VcsIoError(f"Unable to read {path}: {exc}") from exc
        return SettingsFile(
            app=app,
            file_name=str(path),
            file_format=domain.file_format,
            content=content,
        )

    def load_all(self) -> list[SettingsFile]:
        return [self.load(app) for app in SettingsApp]

    def load_video_stream(self) -> dict[str, Any]:
        return video_stream_from_primary(self.load(SettingsApp.PRIMARY).content)

    def _write(self, path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(tmp_name, path)
        except OSError as exc:
            raise VcsIoError(f"Unable to write {path}: {exc}") from exc

    # ------------------------------------------------------------------
    # hooks
    # ------------------------------------------------------------------

    def pre_save(self, app: SettingsApp, content: str | None = None) -> None:
        log.debug("Running %s pre_save hook", app.value)
        if app is SettingsApp.PRIMARY and content is not None:
            try:
                check_primary_settings(content)
            except ConfigPersistenceError as exc:
                raise VcsIoError(f"Refusing to save {DOMAINS[app].relpath}: {exc.detail}") from exc

    def post_save(self, app: SettingsApp) -> None:
        log.debug("Running %s post_save hook", app.value)
        domain = DOMAINS[app]
        if domain.app_key is None:
            reload_cfg()
            return
        app_cfg = self._apps_settings().get(domain.app_key, {}) or {}
        unit = app_cfg.get("unit")
        if not app_cfg.get("enabled") or not unit:
            return
        self._restart_unit(str(unit))

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------

    def init_repo(self) -> GitCommit:
        """Create the repository and seed missing domain files. Idempotent."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise VcsIoError(f"Unable to create {self.root}: {exc}") from exc
        if not self.is_initialized():
            self._git("init", "-b", self.default_branch)
            log.info("Initialized settings repository at %s", self.root)
        self._git("config", "user.email", self.git_email)
        self._git("config", "user.name", self.git_name)
        self._git("config", "init.defaultBranch", self.default_branch)

        for domain in DOMAINS.values():
            path = self.root / domain.relpath
            if not path.exists():
                self._write(path, domain.default_content())

        self._git("add", "-A")
        status = self._git("status", "--porcelain").stdout.strip()
        if status or self._head_sha() is None:
            self._git("commit", "--allow-empty", "-m", "Initial settings")
        return self.head_commit()

    def apply(
        self, app: SettingsApp, content: str, commit_message: str | None = None
    ) -> SettingsChange:
        self._require_repo()
        domain = DOMAINS[app]
        self.pre_save(app, content)
        self._write(self.path_for(app), content)
        self._git("add", "-A")
        if not commit_message:
            head = self._head_sha()
            revision = 1 + (self._parent_count(head) if head else 0)
            commit_message = f"{domain.relpath} - revision #{revision}"
        self._git("commit", "--allow-empty", "-m", commit_message)
        head_commit = self.head_commit()
        log.info("Committed %s settings: %s (%s)", app.value, commit_message, head_commit.id[:10])
        self.post_save(app)
        return SettingsChange(
            file=self.load(app),
            git_head_commit=head_commit.id,
            git_history=self._history_from(app, head_commit),
        )

    def _resolve_commit(self, commit_id: str) -> str:
        proc = self._git("rev-parse", "--verify", "-q", f"{commit_id}^{{commit}}", check=False)
        sha = proc.stdout.strip()
        if proc.returncode != 0 or not sha:
            raise GitOperationError(f"Unknown commit {commit_id!r}", returncode=proc.returncode)
        return sha

    def revert(self, app: SettingsApp, commit_id: str) -> SettingsChange:
        if self._head_sha() is None:
            raise RepositoryUninitialized(f"{self.root} has no commits")
        sha = self._resolve_commit(commit_id)
        target = parse_raw_log(self._git("log", "-n", "1", "--format=raw", sha).stdout)[0]
        self.pre_save(app)
        # Staged without committing so a no-op target still appends a commit.
        proc = self._git("revert", "--no-commit", sha, check=False)
        if proc.returncode != 0:
            conflicted = bool(self._git("ls-files", "--unmerged", check=False).stdout.strip())
            self._git("revert", "--abort", check=False)
            self._git("reset", "--hard", "HEAD")
            if conflicted:
                raise RevertConflict(f"Reverting {sha[:10]} conflicts with HEAD: {proc.stdout.strip()}")
            raise GitOperationError(
                f"git revert failed ({proc.returncode}): {proc.stderr.strip() or proc.stdout.strip()}",
                returncode=proc.returncode,
                stderr=proc.stderr,
            )
        subject = target.message.splitlines()[0] if target.message else sha[:10]
        self._git(
            "commit",
            "--allow-empty",
            "-m",
            f'Revert "{subject}"',
            "-m",
            f"This reverts commit {sha}.",
        )
        head_commit = self.head_commit()
        log.info("Reverted %s as %s", sha[:10], head_commit.id[:10])
        self.post_save(app)
        return SettingsChange(
            file=self.load(app),
            git_head_commit=head_commit.id,
            git_history=self._history_from(app, head_commit),
        )

    def _history_from(self, app: SettingsApp, head_commit: GitCommit) -> list[GitCommit]:
        """Domain history led by ``head_commit``, even when HEAD left the domain file unchanged."""
        commits = self.history(app)
        if not commits or commits[0].id != head_commit.id:
            commits.insert(0, head_commit)
        return commits
