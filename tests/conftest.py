"""
Shared pytest fixtures for Code Deployer tests.
"""

import os
import subprocess
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from code_deployer.exceptions import CheckoutConflictError
from code_deployer.models import DeploymentAction, DeploymentActionType, RepositoryEntry
from code_deployer.utils.exception_logger import ExceptionLogger
from code_deployer.vcs.git_backend import BackendBranch


@pytest.fixture(autouse=True)
def reset_exception_logger():
    """ExceptionLogger is a process singleton; give every test a clean slate."""
    ExceptionLogger._instance = None
    yield
    ExceptionLogger._instance = None


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture
def make_repository(fixed_now) -> Callable[..., RepositoryEntry]:
    """Factory for repository entries due for a check (last check 3h1m ago, interval 3h)."""

    def _make(index: int = 1, **overrides) -> RepositoryEntry:
        values = dict(
            name=f"Repository {index}",
            location_path=f"/srv/app{index}",
            remote_name="origin",
            check_interval=timedelta(hours=3),
            deployment_branch_name="Live",
            solution_file_to_build=f"/srv/app{index}/App.sln",
            build_configuration_name="Release",
            last_checked_at=fixed_now - timedelta(hours=3, minutes=1),
            deployment_actions=[
                DeploymentAction(
                    action_type=DeploymentActionType.EXECUTE_FILE,
                    action_parameters=["${REPO_FOLDER}/deploy.sh"],
                )
            ],
        )
        values.update(overrides)
        return RepositoryEntry(**values)

    return _make


@pytest.fixture
def four_repositories(make_repository) -> List[RepositoryEntry]:
    return [make_repository(i) for i in range(1, 5)]


def git(cwd: Path, *args: str) -> str:
    """Run a git command for test setup and return stdout."""
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
        env={
            "GIT_AUTHOR_NAME": "Test",
            "GIT_AUTHOR_EMAIL": "test@example.com",
            "GIT_COMMITTER_NAME": "Test",
            "GIT_COMMITTER_EMAIL": "test@example.com",
            "GIT_CONFIG_NOSYSTEM": "1",
            "HOME": str(cwd),
            "PATH": os.environ.get("PATH", ""),
        },
    )
    return result.stdout


@pytest.fixture
def git_remote_and_clone(tmp_path):
    """
    A bare "origin" with branches master and Live, and a clone of it.

    Returns (origin_path, clone_path, seed_path) where seed_path is a second
    working copy used to push new commits to origin.
    """
    origin = tmp_path / "origin.git"
    seed = tmp_path / "seed"
    clone = tmp_path / "clone"

    git(tmp_path, "init", "--bare", str(origin))
    git(tmp_path, "init", str(seed))
    git(seed, "checkout", "-b", "master")
    (seed / "app.txt").write_text("v1\n")
    git(seed, "add", "app.txt")
    git(seed, "commit", "-m", "initial")
    git(seed, "branch", "Live")
    git(seed, "remote", "add", "origin", str(origin))
    git(seed, "push", "origin", "master", "Live")

    git(tmp_path, "clone", str(origin), str(clone))
    git(clone, "checkout", "Live")

    return origin, clone, seed


@pytest.fixture
def run_git() -> Callable[..., str]:
    return git


class FakeBackend:
    """Minimal stand-in for GitBackend holding refs in dictionaries."""

    def __init__(self):
        self.local: Dict[str, str] = {"master": "c1"}
        self.remote: Dict[str, str] = {"origin/master": "c1"}
        self.head = "master"
        self.config: Dict[str, str] = {}
        self.distances: Dict[Tuple[str, str], Tuple[int, int]] = {}
        self.fetched: List[str] = []
        self.conflict_on_checkout = False
        self.closed = False
        self.calls: List[tuple] = []

    def close(self):
        self.closed = True

    def list_branches(self) -> List[BackendBranch]:
        branches = []
        for name, commit in self.local.items():
            remote = self.config.get(f"branch.{name}.remote")
            merge = self.config.get(f"branch.{name}.merge")
            upstream = None
            if remote and merge:
                upstream = f"refs/remotes/{remote}/{merge[len('refs/heads/'):]}"
            branches.append(
                BackendBranch(f"refs/heads/{name}", name, commit, False, name == self.head, upstream)
            )
        for name, commit in self.remote.items():
            branches.append(BackendBranch(f"refs/remotes/{name}", name, commit, True, False))
        return branches

    def ref_exists(self, ref_name: str) -> bool:
        return ref_name.startswith("refs/remotes/") and ref_name[len("refs/remotes/"):] in self.remote

    def fetch(self, remote_name: str) -> List[str]:
        self.calls.append(("fetch", remote_name))
        return list(self.fetched)

    def ahead_behind(self, local_ref: str, upstream_ref: str) -> Tuple[int, int]:
        return self.distances.get((local_ref, upstream_ref), (0, 0))

    def get_config(self, key: str) -> Optional[str]:
        return self.config.get(key)

    def set_config(self, key: str, value: str) -> None:
        self.config[key] = value

    def unset_config(self, key: str) -> None:
        self.config.pop(key, None)

    def create_branch(self, name: str, start_point: Optional[str] = None) -> None:
        self.calls.append(("create_branch", name, start_point))
        if start_point:
            self.local[name] = self.remote[start_point[len("refs/remotes/"):]]
        else:
            self.local[name] = self.local[self.head]

    def delete_branch(self, name: str) -> None:
        self.calls.append(("delete_branch", name))
        del self.local[name]

    def checkout(self, name: str, force: bool = False) -> None:
        self.calls.append(("checkout", name, force))
        if self.conflict_on_checkout and not force:
            raise CheckoutConflictError("local changes")
        self.head = name


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def backends() -> Dict[str, FakeBackend]:
    """One FakeBackend per repository path, created on first open."""
    return {}


@pytest.fixture
def backend_factory(backends) -> Callable[[Path], FakeBackend]:
    def _open(path: Path) -> FakeBackend:
        key = str(path)
        if key not in backends:
            backends[key] = FakeBackend()
        return backends[key]

    return _open
