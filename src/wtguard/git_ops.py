"""Git operations used by the lifecycle transactions.

All git invocations are argv lists (no shell). Functions raise
FilesystemFailure (a RuntimeError) on failure so they can be used from
both the transaction layer and the CLI.
"""

from __future__ import annotations

import base64
import contextlib
import logging
import os
import re
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

from wtguard.errors import FilesystemFailure
from wtguard.paths import REPOS_DIR

log = logging.getLogger(__name__)

_GITDIR_RE = re.compile(r"^gitdir:\s*(.+)$", re.MULTILINE)
_SSH_URL_RE = re.compile(r"^[\w.-]+@[^:]+:(.+?)(?:\.git)?/?$")


def resolve_git_credentials(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Pick the transport token from the environment.

    GITHUB_TOKEN wins; GH_TOKEN (GitHub CLI) is the fallback.
    """
    source = os.environ if environ is None else environ
    env: dict[str, str] = {}
    if source.get("GITHUB_TOKEN"):
        env["GITHUB_TOKEN"] = source["GITHUB_TOKEN"]
    elif source.get("GH_TOKEN"):
        env["GH_TOKEN"] = source["GH_TOKEN"]
    return env


def compute_repo_slug(url: str) -> str:
    """Derive an ``org/repo`` slug from a remote URL.

    - ``git@github.com:preset-io/agor.git`` -> ``preset-io/agor``
    - ``https://github.com/preset-io/agor.git`` -> ``preset-io/agor``
    - ``file:///srv/repos/agor.git`` -> ``srv/repos/agor``
    - ``/local/path/to/repo`` -> ``local-path-to-repo``
    """
    ssh = _SSH_URL_RE.match(url)
    if ssh:
        return ssh.group(1)

    parsed = urlparse(url)
    if parsed.scheme and (parsed.netloc or parsed.path.startswith("/")):
        path = parsed.path.strip("/")
        return re.sub(r"\.git$", "", path)

    return re.sub(r"[^a-zA-Z0-9_-]", "-", url).strip("-")


def extract_repo_name(slug: str) -> str:
    return slug.rsplit("/", 1)[-1] or slug


def _git_env(env: Mapping[str, str] | None) -> dict[str, str]:
    merged = dict(os.environ)
    merged["GIT_TERMINAL_PROMPT"] = "0"
    if env:
        merged.update(env)
    return merged


def _auth_config_args(env: Mapping[str, str] | None) -> list[str]:
    """``-c http.extraHeader`` carrying the token, for HTTPS remotes."""
    if not env:
        return []
    token = env.get("GITHUB_TOKEN") or env.get("GH_TOKEN")
    if not token:
        return []
    basic = base64.b64encode(f"x-access-token:{token}".encode()).decode()
    return ["-c", f"http.https://github.com/.extraheader=AUTHORIZATION: basic {basic}"]


def _run_git(
    args: list[str],
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    what: str,
) -> subprocess.CompletedProcess[str]:
    cmd = ["git", *_auth_config_args(env), *args]
    try:
        return subprocess.run(
            cmd,
            cwd=str(cwd) if cwd is not None else None,
            env=_git_env(env),
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        raise FilesystemFailure(
            f"Failed to {what}: {e.stderr.strip()}",
            details={"args": args, "returncode": e.returncode},
        ) from None
    except FileNotFoundError:
        raise FilesystemFailure("git executable not found") from None


def _git_ok(args: list[str], cwd: str | Path) -> subprocess.CompletedProcess[str]:
    """Run a query command without raising."""
    return subprocess.run(["git", *args], cwd=str(cwd), capture_output=True, text=True)


@dataclass(frozen=True)
class CloneResult:
    path: str
    repo_name: str
    default_branch: str | None


def _default_branch(path: Path) -> str | None:
    head = _git_ok(["symbolic-ref", "--short", "HEAD"], path)
    if head.returncode != 0:
        return None
    return head.stdout.strip() or None


def clone_repo(
    url: str,
    target_dir: str | None = None,
    *,
    bare: bool = False,
    branch: str | None = None,
    env: Mapping[str, str] | None = None,
    repos_dir: Path = REPOS_DIR,
) -> CloneResult:
    """Clone *url*. Without *target_dir* the clone lands in ``repos_dir/<repo-name>``."""
    repo_name = extract_repo_name(compute_repo_slug(url))
    target = Path(target_dir) if target_dir else repos_dir / repo_name
    if target.exists() and any(target.iterdir()):
        raise FilesystemFailure(f"Clone target already exists and is not empty: {target}")

    target.parent.mkdir(parents=True, exist_ok=True)
    args = ["clone"]
    if bare:
        args.append("--bare")
    if branch:
        args += ["--branch", branch]
    args += [url, str(target)]
    _run_git(args, env=env, what=f"clone {url}")

    return CloneResult(
        path=str(target), repo_name=repo_name, default_branch=_default_branch(target)
    )


def _has_remote(repo_path: str, remote: str = "origin") -> bool:
    return _git_ok(["remote", "get-url", remote], repo_path).returncode == 0


def _ref_exists(repo_path: str, ref: str) -> bool:
    return _git_ok(["rev-parse", "--verify", "--quiet", ref], repo_path).returncode == 0


def create_worktree(
    repo_path: str,
    worktree_path: str,
    branch: str,
    *,
    create_branch: bool = False,
    pull_latest: bool = True,
    source_branch: str | None = None,
    env: Mapping[str, str] | None = None,
) -> None:
    """Create a worktree at *worktree_path* checked out on *branch*.

    With *create_branch*, *branch* is created from *source_branch* (default:
    the repository HEAD). With *pull_latest*, ``origin`` is fetched first and
    the remote-tracking ref is preferred as the starting point. A failed
    fetch is logged and the local refs are used.
    """
    fetched = False
    if pull_latest and _has_remote(repo_path):
        try:
            _run_git(["fetch", "origin"], cwd=repo_path, env=env, what="fetch origin")
            fetched = True
        except FilesystemFailure as exc:
            log.warning("Fetch failed in %s, using local refs: %s", repo_path, exc)

    Path(worktree_path).parent.mkdir(parents=True, exist_ok=True)

    if create_branch:
        base = source_branch or _default_branch(Path(repo_path)) or "HEAD"
        if fetched and _ref_exists(repo_path, f"origin/{base}"):
            base = f"origin/{base}"
        args = ["worktree", "add", "-b", branch, worktree_path, base]
    else:
        args = ["worktree", "add", worktree_path, branch]
    _run_git(args, cwd=repo_path, env=env, what=f"create worktree at {worktree_path}")

    if fetched and not create_branch:
        # Fast-forward an existing branch to its upstream; divergence is left alone.
        ff = subprocess.run(
            ["git", "merge", "--ff-only", "@{upstream}"],
            cwd=worktree_path,
            env=_git_env(env),
            capture_output=True,
            text=True,
        )
        if ff.returncode != 0:
            log.info("No fast-forward for %s: %s", branch, ff.stderr.strip())


def read_worktree_gitdir(worktree_path: str) -> Path | None:
    """Return the admin dir a worktree's ``.git`` link file points at.

    None when the worktree (or its link file) is gone. Raises
    FilesystemFailure when ``.git`` exists but is not a valid link file.
    """
    git_file = Path(worktree_path) / ".git"
    if not git_file.exists():
        return None
    if git_file.is_dir():
        raise FilesystemFailure(f"{worktree_path} is a main checkout, not a linked worktree")
    match = _GITDIR_RE.search(git_file.read_text())
    if not match:
        raise FilesystemFailure(f"Invalid .git file in worktree: {git_file}")
    gitdir = Path(match.group(1).strip())
    if not gitdir.is_absolute():
        gitdir = (Path(worktree_path) / gitdir).resolve()
    return gitdir


def repo_path_from_gitdir(gitdir: Path) -> str:
    """Walk ``<repo>/.git/worktrees/<name>`` back to ``<repo>``.

    For bare repositories (``<repo.git>/worktrees/<name>``) the bare
    directory itself is returned.
    """
    worktrees_dir = gitdir.parent
    if worktrees_dir.name != "worktrees":
        raise FilesystemFailure(f"Unexpected worktree gitdir layout: {gitdir}")
    common_dir = worktrees_dir.parent
    if common_dir.name == ".git":
        return str(common_dir.parent)
    return str(common_dir)


def remove_worktree(repo_path: str, worktree_path: str, *, force: bool = False) -> None:
    args = ["worktree", "remove"]
    if force:
        args.append("--force")
    args.append(worktree_path)
    _run_git(args, cwd=repo_path, what=f"remove worktree {worktree_path}")

    # Prune stale records left by manually deleted directories
    with contextlib.suppress(FilesystemFailure):
        _run_git(["worktree", "prune"], cwd=repo_path, what="prune worktrees")


def clean_worktree(worktree_path: str) -> int:
    """``git clean -fdx``; returns the number of removed entries."""
    if not Path(worktree_path).is_dir():
        raise FilesystemFailure(f"Worktree does not exist: {worktree_path}")
    result = _run_git(["clean", "-fdx"], cwd=worktree_path, what=f"clean {worktree_path}")
    return sum(1 for line in result.stdout.splitlines() if line.startswith("Removing "))
