"""
Integration tests against real git repositories.

A bare origin and a clone are created in tmp_path; commits are pushed from
a separate seed working copy to simulate upstream activity.
"""

import shutil
from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from code_deployer.build.project_builder import ProjectBuilder
from code_deployer.config import save_repositories
from code_deployer.deployment.action_executor import DeploymentActionExecutor
from code_deployer.exception_manager import ExceptionManager
from code_deployer.exceptions import BranchCannotBeRemovedError, RepositoryOpenError
from code_deployer.models import DeploymentAction, DeploymentActionType, RepositoryEntry
from code_deployer.services.deployment_service import DeploymentService
from code_deployer.vcs.git_backend import GitBackend
from code_deployer.vcs.repository_manager import GitRepositoryManager

pytestmark = [
    pytest.mark.slow,
    pytest.mark.skipif(shutil.which("git") is None, reason="git not installed"),
]


def push_commit(run_git, seed, content: str, branch: str = "Live"):
    run_git(seed, "checkout", branch)
    (seed / "app.txt").write_text(content)
    run_git(seed, "commit", "-am", f"update to {content.strip()}")
    run_git(seed, "push", "origin", branch)


class TestGitBackendAgainstRealRepository:
    def test_open_rejects_plain_directory(self, tmp_path):
        with pytest.raises(RepositoryOpenError):
            GitBackend.open(tmp_path)

    def test_lists_local_and_remote_branches(self, git_remote_and_clone):
        _, clone, _ = git_remote_and_clone

        branches = GitBackend.open(clone).list_branches()

        local = {b.name for b in branches if not b.is_remote}
        remote = {b.name for b in branches if b.is_remote}
        assert "Live" in local
        assert {"origin/Live", "origin/master"} <= remote
        assert "origin/HEAD" not in remote
        assert [b.name for b in branches if b.is_head] == ["Live"]

    def test_fetch_reports_moved_branch(self, git_remote_and_clone, run_git):
        _, clone, seed = git_remote_and_clone
        push_commit(run_git, seed, "v2\n")

        updated = GitBackend.open(clone).fetch("origin")

        assert updated == ["refs/remotes/origin/Live"]

    def test_fetch_without_changes(self, git_remote_and_clone):
        _, clone, _ = git_remote_and_clone

        assert GitBackend.open(clone).fetch("origin") == []


class TestRepositoryManagerAgainstRealRepository:
    def test_behind_after_upstream_push(self, git_remote_and_clone, run_git):
        _, clone, seed = git_remote_and_clone
        push_commit(run_git, seed, "v2\n")
        push_commit(run_git, seed, "v3\n")
        manager = GitRepositoryManager()

        with manager.session(clone):
            manager.download_references_from_remote("origin")
            assert manager.get_relative_position_of_branch("Live") == -2

    def test_untracked_branch_config_is_restored(self, git_remote_and_clone, run_git):
        _, clone, seed = git_remote_and_clone
        run_git(clone, "branch", "--unset-upstream", "Live")
        push_commit(run_git, seed, "v2\n")
        manager = GitRepositoryManager()

        with manager.session(clone):
            manager.download_references_from_remote("origin")
            assert manager.get_relative_position_of_branch("Live") == -1

        assert "branch.Live.merge" not in run_git(clone, "config", "--local", "--list")

    def test_head_cannot_be_removed(self, git_remote_and_clone):
        _, clone, _ = git_remote_and_clone
        manager = GitRepositoryManager()

        with manager.session(clone):
            with pytest.raises(BranchCannotBeRemovedError):
                manager.remove_branch(manager.get_branch_from_name("Live"))


class TestDeploymentCycleAgainstRealRepository:
    def test_cycle_deploys_new_upstream_commit(self, git_remote_and_clone, run_git, tmp_path):
        _, clone, seed = git_remote_and_clone
        target = tmp_path / "deployed.txt"
        (clone / "local-edit.txt").write_text("scratch")
        push_commit(run_git, seed, "v2\n")

        repository = RepositoryEntry(
            name="app",
            location_path=str(clone),
            check_interval=timedelta(hours=1),
            deployment_branch_name="Live",
            solution_file_to_build=str(clone / "app.txt"),
            build_configuration_name="Release",
            deployment_actions=[
                DeploymentAction(
                    action_type=DeploymentActionType.COPY_FILE,
                    action_parameters=["${REPO_FOLDER}/app.txt", str(target)],
                )
            ],
        )
        store = tmp_path / "repositories.json"
        save_repositories([repository], store)

        builder = Mock(spec=ProjectBuilder)
        builder.load_solution_file.return_value = True
        builder.build_solution.return_value = True
        service = DeploymentService(
            store,
            GitRepositoryManager(),
            builder,
            DeploymentActionExecutor(),
            ExceptionManager(),
            now_provider=lambda: datetime(2024, 3, 1, 12, 0),
        )

        result = service.run_cycle()

        assert result.updates_found and result.build_succeeded and result.deploy_succeeded
        assert target.read_text() == "v2\n"
        assert run_git(clone, "rev-parse", "--abbrev-ref", "HEAD").strip() == "Live"
        assert "TempBranch" not in run_git(clone, "branch", "--list")
        entry = service.all_repositories[0]
        assert not (entry.needs_update or entry.needs_build or entry.needs_deployment)

    def test_deleted_upstream_branch_is_not_an_update(
        self, git_remote_and_clone, run_git, tmp_path
    ):
        _, clone, seed = git_remote_and_clone
        run_git(seed, "push", "origin", "--delete", "Live")

        store = tmp_path / "repositories.json"
        save_repositories(
            [
                RepositoryEntry(
                    name="app",
                    location_path=str(clone),
                    check_interval=timedelta(hours=1),
                    deployment_branch_name="Live",
                )
            ],
            store,
        )
        service = DeploymentService(
            store,
            GitRepositoryManager(),
            Mock(spec=ProjectBuilder),
            DeploymentActionExecutor(),
            ExceptionManager(),
            now_provider=lambda: datetime(2024, 3, 1, 12, 0),
        )

        assert service.check_repositories_for_updates() is False
        service.update_repositories()

        entry = service.all_repositories[0]
        assert not entry.needs_update
        assert not entry.needs_build
        assert "origin/Live" not in run_git(clone, "branch", "-r")
