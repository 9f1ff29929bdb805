"""Bare clone, fetch and inspection helpers built on GitPython."""

import os
import shutil
import uuid
from pathlib import Path

from git import InvalidGitRepositoryError, NoSuchPathError, Repo

HEADS_REFSPEC = "+refs/heads/*:refs/heads/*"


def bare_clone(remote_url: str, destination: Path, clean_url: str | None = None) -> Repo:
    """Clone ``remote_url`` without a working tree.

    The clone is written to a sibling directory and renamed onto
    ``destination`` only once git has finished, so an interrupted clone never
    leaves a half-written repository at the destination.

    When ``clean_url`` is given the stored origin URL is replaced with it, so
    credentials embedded in ``remote_url`` never land in the repository config.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    staging = destination.with_name(f".{destination.name}.clone-{uuid.uuid4().hex[:8]}")
    try:
        repo = Repo.clone_from(remote_url, str(staging), bare=True)
        if clean_url is not None:
            repo.remote("origin").set_url(clean_url)
        repo.close()
        if destination.exists():
            shutil.rmtree(destination)
        staging.rename(destination)
    finally:
        if staging.exists():
            shutil.rmtree(staging)
    return Repo(str(destination))


def is_git_repository(path: Path) -> bool:
    """Whether ``path`` opens as a git repository (HEAD, objects and refs present)."""
    try:
        Repo(str(path)).close()
    except (InvalidGitRepositoryError, NoSuchPathError):
        return False
    return True


def fetch_heads(path: Path, remote_url: str | None = None) -> None:
    """Fast-forward (or force) every branch to match the remote."""
    repo = Repo(str(path))
    repo.git.fetch(remote_url or "origin", HEADS_REFSPEC, "--prune")


def count_commits(path: Path) -> int:
    repo = Repo(str(path))
    if not repo.head.is_valid():
        return 0
    return int(repo.git.rev_list("--count", "HEAD"))


def directory_size(path: Path) -> int:
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            file_path = os.path.join(root, name)
            if not os.path.islink(file_path):
                total += os.path.getsize(file_path)
    return total
