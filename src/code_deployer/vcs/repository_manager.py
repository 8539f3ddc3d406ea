"""
Repository manager - branch session on top of a git working copy.

Wraps one opened repository at a time and implements the branch rules the
deployment service relies on: local-before-remote name resolution,
ahead/behind against a tracked remote branch, creation of a local branch
from its remote counterpart, and guarded branch removal.

Every branch operation is a no-op returning an empty or default value
unless the manager is OPENED.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple, Union

from ..config import load_repositories, save_repositories
from ..exceptions import (
    BranchCannotBeRemovedError,
    BranchDoesNotExistError,
    CheckoutConflictError,
)
from ..models import Branch, RepositoryEntry, RepositoryState
from .git_backend import LOCAL_PREFIX, BackendBranch, GitBackend

logger = logging.getLogger(__name__)

BackendFactory = Callable[[Path], GitBackend]


class GitRepositoryManager:
    """Session over a single git repository used by the deployment stages."""

    def __init__(
        self,
        backend_factory: Optional[BackendFactory] = None,
        default_remote_name: str = "origin",
    ):
        """
        Initialize the manager in UNKNOWN state.

        Args:
            backend_factory: Callable opening a backend for a path; raises on failure
            default_remote_name: Remote used for name resolution before any fetch
        """
        self._backend_factory: BackendFactory = backend_factory or GitBackend.open
        self._backend: Optional[GitBackend] = None
        self._state = RepositoryState.UNKNOWN
        self._branches_with_new_references: List[str] = []
        self._remote_name = default_remote_name

    @property
    def state(self) -> RepositoryState:
        return self._state

    @property
    def remote_name(self) -> str:
        return self._remote_name

    @property
    def branches_with_new_references(self) -> List[str]:
        """Raw ref names updated by the last download_references_from_remote call."""
        return list(self._branches_with_new_references)

    def _is_open(self) -> bool:
        return self._backend is not None and self._state == RepositoryState.OPENED

    def _raw_branches(self) -> List[BackendBranch]:
        if not self._is_open():
            return []
        assert self._backend is not None
        return self._backend.list_branches()

    @staticmethod
    def _to_branch(raw: BackendBranch) -> Branch:
        return Branch(name=raw.name, is_remote=raw.is_remote, is_current_head=raw.is_head)

    @property
    def all_branches(self) -> List[Branch]:
        return [self._to_branch(b) for b in self._raw_branches()]

    @property
    def all_local_branches(self) -> List[Branch]:
        return [self._to_branch(b) for b in self._raw_branches() if not b.is_remote]

    @property
    def all_remote_branches(self) -> List[Branch]:
        return [self._to_branch(b) for b in self._raw_branches() if b.is_remote]

    def open_repository(self, path: Union[str, Path], remote_name: Optional[str] = None) -> None:
        """
        Open the repository at path, closing any previous session first.

        Raises:
            Exception: Whatever the backend raised; state becomes FAULTED
        """
        self.close_repository()
        if remote_name:
            self._remote_name = remote_name

        try:
            self._backend = self._backend_factory(Path(path))
        except Exception:
            self._backend = None
            self._state = RepositoryState.FAULTED
            raise

        if self._backend is not None:
            self._state = RepositoryState.OPENED
            logger.debug(f"Opened repository {path}")
        else:
            self._state = RepositoryState.UNKNOWN

    def close_repository(self) -> None:
        """Release the backend. Safe to call in any state."""
        if self._backend is not None:
            self._backend.close()
            self._backend = None

        self._state = RepositoryState.CLOSED

    @contextmanager
    def session(
        self, path: Union[str, Path], remote_name: Optional[str] = None
    ) -> Iterator["GitRepositoryManager"]:
        """Open path for the duration of a with block."""
        self.open_repository(path, remote_name)
        try:
            yield self
        finally:
            self.close_repository()

    def download_references_from_remote(self, remote_name: str) -> None:
        """Fetch remote_name and record the raw names of the refs it updated."""
        if not self._is_open():
            return
        assert self._backend is not None

        self._branches_with_new_references = []
        self._remote_name = remote_name
        self._branches_with_new_references = self._backend.fetch(remote_name)

    def _remote_candidates(self, name: str) -> Tuple[str, str]:
        return name, f"{self._remote_name}/{name}"

    def _find_remote(self, name: str, branches: List[BackendBranch]) -> Optional[BackendBranch]:
        for candidate in self._remote_candidates(name):
            for branch in branches:
                if branch.is_remote and branch.name == candidate:
                    return branch
        return None

    @staticmethod
    def _find_local(name: str, branches: List[BackendBranch]) -> Optional[BackendBranch]:
        for branch in branches:
            if not branch.is_remote and branch.name == name:
                return branch
        return None

    def get_branch_from_name(self, branch_name: str) -> Optional[Branch]:
        """Resolve a name: local branch first, then remote by bare and {remote}/{name}."""
        branches = self._raw_branches()
        found = self._find_local(branch_name, branches) or self._find_remote(
            branch_name, branches
        )
        return self._to_branch(found) if found else None

    def _tracked_upstream(self, local: BackendBranch) -> Optional[str]:
        assert self._backend is not None
        if local.upstream and self._backend.ref_exists(local.upstream):
            return local.upstream
        return None

    def _position_from_tracking(self, local_branch_name: str) -> int:
        assert self._backend is not None
        local = self._find_local(local_branch_name, self._backend.list_branches())
        if local is None:
            return 0

        upstream = self._tracked_upstream(local)
        if upstream is None:
            return 0

        ahead, behind = self._backend.ahead_behind(local.ref_name, upstream)
        if ahead != 0:
            return abs(ahead)
        if behind != 0:
            return -abs(behind)
        return 0

    def get_relative_position_of_branch(self, local_branch_name: str) -> int:
        """
        Signed commit distance between a local branch and its remote counterpart.

        Returns +ahead, -behind or 0. Zero also means "no remote counterpart
        known"; callers that care must check for the remote branch separately.
        A local branch that does not track anything is compared against the
        remote branch of the same name by setting tracking configuration
        temporarily; the configuration is restored before returning.
        """
        if not self._is_open():
            return 0
        assert self._backend is not None

        branches = self._backend.list_branches()
        local = self._find_local(local_branch_name, branches)
        if local is None:
            return 0

        if self._tracked_upstream(local) is not None:
            return self._position_from_tracking(local_branch_name)

        remote = self._find_remote(local_branch_name, branches)
        if remote is None:
            return 0

        remote_key = f"branch.{local_branch_name}.remote"
        merge_key = f"branch.{local_branch_name}.merge"
        previous_remote = self._backend.get_config(remote_key)
        previous_merge = self._backend.get_config(merge_key)

        self._backend.set_config(remote_key, self._remote_name)
        self._backend.set_config(merge_key, f"{LOCAL_PREFIX}{local_branch_name}")
        try:
            return self._position_from_tracking(local_branch_name)
        finally:
            self._restore_config(remote_key, previous_remote)
            self._restore_config(merge_key, previous_merge)

    def _restore_config(self, key: str, value: Optional[str]) -> None:
        assert self._backend is not None
        if value is None:
            self._backend.unset_config(key)
        else:
            self._backend.set_config(key, value)

    def _local_name_for(self, name: str) -> str:
        prefix = f"{self._remote_name}/"
        return name[len(prefix) :] if name.startswith(prefix) else name

    def create_branch(self, branch_name: str) -> Optional[Branch]:
        """
        Get or create a local branch and check it out.

        An existing local branch is switched to and returned. Otherwise the
        branch is created at the tip of the matching remote branch (with
        tracking configured) or at HEAD when no remote branch exists. If the
        checkout conflicts with local changes the branch is still returned,
        with is_current_head=False.
        """
        if not self._is_open():
            return None
        assert self._backend is not None

        branches = self._backend.list_branches()
        if self._find_local(branch_name, branches) is not None:
            self.switch_branch(branch_name)
            return self.get_branch_from_name(branch_name)

        remote = self._find_remote(branch_name, branches)
        if remote is not None:
            self._backend.create_branch(branch_name, start_point=remote.ref_name)
            self._backend.set_config(f"branch.{branch_name}.remote", self._remote_name)
            self._backend.set_config(
                f"branch.{branch_name}.merge",
                f"{LOCAL_PREFIX}{self._local_name_for(remote.name)}",
            )
        else:
            self._backend.create_branch(branch_name)
        logger.info(f"Created local branch {branch_name}")

        try:
            self._backend.checkout(branch_name)
        except CheckoutConflictError as e:
            logger.warning(f"Branch {branch_name} created but not checked out: {e}")
            return Branch(name=branch_name, is_remote=False, is_current_head=False)

        return Branch(name=branch_name, is_remote=False, is_current_head=True)

    def switch_branch(self, branch: Union[Branch, str], force: bool = False) -> None:
        """
        Check out a branch.

        Local targets are checked out directly, force discarding local
        changes. Remote targets go through create_branch, which creates the
        tracking local branch and switches to it.

        Raises:
            BranchDoesNotExistError: If the target cannot be found
        """
        if not self._is_open() or branch is None:
            return
        assert self._backend is not None

        if isinstance(branch, str):
            resolved = self.get_branch_from_name(branch)
            if resolved is None:
                raise BranchDoesNotExistError(f"Branch {branch} does not exist")
            branch = resolved

        branches = self._backend.list_branches()
        if not branch.is_remote:
            if self._find_local(branch.name, branches) is None:
                raise BranchDoesNotExistError(f"Branch {branch.name} does not exist")
            self._backend.checkout(branch.name, force=force)
            logger.debug(f"Switched to branch {branch.name}")
            return

        remote = self._find_remote(branch.name, branches)
        if remote is None:
            raise BranchDoesNotExistError(f"Branch {branch.name} does not exist")
        self.create_branch(self._local_name_for(remote.name))

    def remove_branch(self, branch: Optional[Branch]) -> None:
        """
        Delete a local branch.

        Raises:
            BranchCannotBeRemovedError: If branch is remote or the current head
            BranchDoesNotExistError: If no local branch has that name
        """
        if not self._is_open() or branch is None:
            return
        assert self._backend is not None

        if branch.is_remote:
            raise BranchCannotBeRemovedError(
                f"Branch {branch.name} is a remote branch and cannot be removed"
            )
        if branch.is_current_head:
            raise BranchCannotBeRemovedError(
                f"Branch {branch.name} is the current head and cannot be removed"
            )

        local = self._find_local(branch.name, self._backend.list_branches())
        if local is None:
            raise BranchDoesNotExistError(
                f"Branch {branch.name} does not exist in this repository"
            )
        if local.is_head:
            raise BranchCannotBeRemovedError(
                f"Branch {branch.name} is the current head and cannot be removed"
            )

        self._backend.delete_branch(branch.name)
        logger.info(f"Removed local branch {branch.name}")

    def read_configuration(self, path: Optional[Path]) -> List[RepositoryEntry]:
        return load_repositories(path)

    def save_configuration(
        self, repositories: List[RepositoryEntry], path: Optional[Path]
    ) -> None:
        save_repositories(repositories, path)
