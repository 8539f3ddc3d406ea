"""
Git backend for the repository manager.

Thin wrapper around the git command line for a single working copy. It
knows nothing about deployment; GitRepositoryManager builds the branch
resolution rules on top of these primitives.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..exceptions import CheckoutConflictError, GitCommandError, RepositoryOpenError
from ..utils.git_runner import run_git_command, run_git_command_with_retry

logger = logging.getLogger(__name__)

LOCAL_PREFIX = "refs/heads/"
REMOTE_PREFIX = "refs/remotes/"
TAG_PREFIX = "refs/tags/"

# Fields are separated by NUL so branch names never collide with the separator
_BRANCH_FORMAT = "%(refname)%00%(objectname)%00%(HEAD)%00%(symref)%00%(upstream)"

_CONFLICT_MARKERS = (
    "would be overwritten by checkout",
    "conflict",
    "please commit your changes or stash them",
)


@dataclass
class BackendBranch:
    """Raw branch information as reported by git."""

    ref_name: str
    name: str
    commit: str
    is_remote: bool
    is_head: bool
    upstream: Optional[str] = None


class GitBackend:
    """Runs git commands against one local repository."""

    def __init__(self, repo_dir: Path, timeout: float = 300):
        """
        Initialize the backend without validating the path.

        Use GitBackend.open() to get a validated instance.

        Args:
            repo_dir: Path to the working copy
            timeout: Timeout in seconds applied to every git command
        """
        self.repo_dir = Path(repo_dir)
        self.timeout = timeout
        self.closed = False

    @classmethod
    def open(cls, repo_dir: Path, timeout: float = 300) -> "GitBackend":
        """
        Open a working copy.

        Raises:
            RepositoryOpenError: If repo_dir does not exist or is not a git repository
        """
        path = Path(repo_dir)
        if not path.is_dir():
            raise RepositoryOpenError(f"Repository path does not exist: {path}")

        backend = cls(path, timeout=timeout)
        try:
            backend._git("rev-parse", "--git-dir")
        except GitCommandError as e:
            raise RepositoryOpenError(f"Not a git repository: {path}", e.stderr)
        return backend

    def close(self) -> None:
        self.closed = True

    def _git(self, *args: str, check: bool = True):
        return run_git_command(
            ["git", *args], cwd=self.repo_dir, check=check, timeout=self.timeout
        )

    def list_branches(self) -> List[BackendBranch]:
        """List local and remote-tracking branches, skipping symbolic refs like origin/HEAD."""
        result = self._git(
            "for-each-ref", f"--format={_BRANCH_FORMAT}", "refs/heads", "refs/remotes"
        )

        branches = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            ref_name, commit, head, symref, upstream = (line.split("\0") + [""] * 5)[:5]
            if symref:
                continue

            if ref_name.startswith(LOCAL_PREFIX):
                name = ref_name[len(LOCAL_PREFIX) :]
                is_remote = False
            elif ref_name.startswith(REMOTE_PREFIX):
                name = ref_name[len(REMOTE_PREFIX) :]
                is_remote = True
            else:
                continue

            branches.append(
                BackendBranch(
                    ref_name=ref_name,
                    name=name,
                    commit=commit,
                    is_remote=is_remote,
                    is_head=head.strip() == "*",
                    upstream=upstream or None,
                )
            )

        return branches

    def ref_exists(self, ref_name: str) -> bool:
        result = self._git("rev-parse", "--verify", "--quiet", ref_name, check=False)
        return result.returncode == 0

    def snapshot_refs(self, remote_name: str) -> Dict[str, str]:
        """Map ref name to commit for the remote's branches and all tags."""
        result = self._git(
            "for-each-ref",
            "--format=%(refname)%00%(objectname)",
            f"{REMOTE_PREFIX}{remote_name}",
            "refs/tags",
        )
        refs = {}
        for line in result.stdout.splitlines():
            if "\0" in line:
                ref_name, commit = line.split("\0", 1)
                refs[ref_name] = commit
        return refs

    def fetch(self, remote_name: str) -> List[str]:
        """
        Fetch from remote_name.

        Returns:
            Raw names of every ref the fetch created or moved, in the order
            git lists them. Pruned refs are not reported.
        """
        before = self.snapshot_refs(remote_name)
        run_git_command_with_retry(
            ["git", "fetch", "--prune", "--tags", remote_name],
            cwd=self.repo_dir,
            timeout=self.timeout,
        )
        after = self.snapshot_refs(remote_name)

        updated = [ref for ref, commit in after.items() if before.get(ref) != commit]

        logger.debug(f"Fetch from {remote_name} updated {len(updated)} ref(s)")
        return updated

    def ahead_behind(self, local_ref: str, upstream_ref: str) -> Tuple[int, int]:
        """Count commits local_ref has that upstream_ref lacks, and the reverse."""
        result = self._git(
            "rev-list", "--left-right", "--count", f"{local_ref}...{upstream_ref}"
        )
        ahead, behind = result.stdout.split()
        return int(ahead), int(behind)

    def get_config(self, key: str) -> Optional[str]:
        result = self._git("config", "--local", "--get", key, check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def set_config(self, key: str, value: str) -> None:
        self._git("config", "--local", key, value)

    def unset_config(self, key: str) -> None:
        # Exit code 5 means the key was not set
        result = self._git("config", "--local", "--unset-all", key, check=False)
        if result.returncode not in (0, 5):
            raise GitCommandError(
                f"git config --unset-all {key}",
                result.returncode,
                result.stderr or "",
                str(self.repo_dir),
            )

    def create_branch(self, name: str, start_point: Optional[str] = None) -> None:
        args = ["branch", "--no-track", name]
        if start_point:
            args.append(start_point)
        self._git(*args)

    def delete_branch(self, name: str) -> None:
        self._git("branch", "-D", name)

    def checkout(self, name: str, force: bool = False) -> None:
        """
        Check out a local branch.

        Raises:
            CheckoutConflictError: If local changes would be overwritten
            GitCommandError: For any other failure
        """
        args = ["checkout"]
        if force:
            args.append("--force")
        args.extend([name, "--"])

        result = self._git(*args, check=False)
        if result.returncode == 0:
            return

        stderr = (result.stderr or "").lower()
        if any(marker in stderr for marker in _CONFLICT_MARKERS):
            raise CheckoutConflictError(
                f"Checkout of {name} conflicts with local changes", result.stderr
            )
        raise GitCommandError(
            "git " + " ".join(args), result.returncode, result.stderr or "", str(self.repo_dir)
        )
