"""
Deployment Service - the check, update, build, deploy pipeline.

Each tracked repository carries three progress flags (needs_update,
needs_build, needs_deployment). A cycle runs four stages in order; each
stage consumes one flag and sets the next, and the repository store is
rewritten after every change so a restarted daemon resumes where it
stopped. Repositories are processed one at a time.

Every call into git, the builder or the action executor goes through the
ExceptionManager, whose policy decides whether a failure is contained to
the repository being processed or aborts the cycle.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..build.project_builder import ProjectBuilder
from ..deployment.action_executor import DeploymentActionExecutor
from ..deployment.tokens import build_replacements_table, replace_tokens
from ..exception_manager import ExceptionManager
from ..models import Branch, DeploymentAction, RepositoryEntry, RepositoryState
from ..vcs.repository_manager import GitRepositoryManager

logger = logging.getLogger(__name__)

TEMP_BRANCH_PREFIX = "TempBranch"


@dataclass
class CycleResult:
    """Outcome of one full pipeline cycle."""

    updates_found: bool
    build_succeeded: bool
    deploy_succeeded: bool


class DeploymentService:
    """Drives tracked repositories through check, update, build and deploy."""

    def __init__(
        self,
        repositories_path: Path,
        repository_manager: GitRepositoryManager,
        project_builder: ProjectBuilder,
        action_executor: DeploymentActionExecutor,
        exception_manager: ExceptionManager,
        read_configuration: bool = True,
        policy_name: Optional[str] = None,
        now_provider: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the deployment service.

        Args:
            repositories_path: Path of the repository store
            repository_manager: Git session manager
            project_builder: Builder used by the build stage
            action_executor: Executor used by the deploy stage
            exception_manager: Applies the error policy to backend calls
            read_configuration: Load the repository store immediately
            policy_name: Exception policy, defaults to the manager's default
            now_provider: Clock used for check scheduling

        Raises:
            ValueError: If repositories_path is None
            ConfigurationMissingError: If read_configuration and the store is missing
            ConfigurationInvalidError: If read_configuration and the store is malformed
        """
        if repositories_path is None:
            raise ValueError("A valid path to the repository store has not been provided")

        self.repositories_path = Path(repositories_path)
        self.repository_manager = repository_manager
        self.project_builder = project_builder
        self.action_executor = action_executor
        self.exception_manager = exception_manager
        self.policy_name = policy_name
        self._now = now_provider
        self._repositories: List[RepositoryEntry] = []

        if read_configuration:
            self.read_configuration()

    @property
    def all_repositories(self) -> List[RepositoryEntry]:
        return list(self._repositories)

    @property
    def repositories_needing_update(self) -> List[RepositoryEntry]:
        return [r for r in self._repositories if r.needs_update]

    @property
    def repositories_to_build(self) -> List[RepositoryEntry]:
        return [r for r in self._repositories if r.needs_build]

    @property
    def repositories_to_deploy(self) -> List[RepositoryEntry]:
        return [r for r in self._repositories if r.needs_deployment]

    @property
    def next_check_time(self) -> datetime:
        """Earliest next check across repositories, datetime.max when there are none."""
        if not self._repositories:
            return datetime.max
        return min(r.next_check_time for r in self._repositories)

    def _process(
        self,
        action: Callable[[], Any],
        default: Any = None,
        repository: Optional[RepositoryEntry] = None,
        stage: Optional[str] = None,
    ) -> Any:
        context: Dict[str, Any] = {}
        if repository is not None:
            context["repository"] = repository.name
            context["location"] = repository.location_path
        if stage:
            context["stage"] = stage
        return self.exception_manager.process(
            action, default=default, policy_name=self.policy_name, context=context
        )

    def read_configuration(self) -> None:
        """Load the repository store. Missing or malformed stores are fatal."""
        self._repositories = self.repository_manager.read_configuration(
            self.repositories_path
        )
        logger.info(
            f"Loaded {len(self._repositories)} repositories from {self.repositories_path}"
        )

    def save_configuration(self) -> None:
        """Persist every repository and its flags."""
        self._process(
            lambda: self.repository_manager.save_configuration(
                self._repositories, self.repositories_path
            ),
            stage="save",
        )

    def _open(self, repository: RepositoryEntry, stage: str) -> bool:
        manager = self.repository_manager
        self._process(
            lambda: manager.open_repository(
                repository.location_path, repository.remote_name
            ),
            repository=repository,
            stage=stage,
        )
        if manager.state != RepositoryState.OPENED:
            logger.warning(
                f"Could not open {repository.name} at {repository.location_path}"
            )
            return False
        return True

    def check_repositories_for_updates(self) -> bool:
        """
        Fetch every due repository and flag those whose deployment branch changed.

        Returns:
            True if any repository needs an update after the check
        """
        now = self._now()

        for repository in self._repositories:
            if not repository.is_due(now):
                continue

            logger.info(f"Checking {repository.name} for updates")
            try:
                if self._open(repository, "check"):
                    needs_update = self._process(
                        lambda: self._detect_update(repository),
                        repository=repository,
                        stage="check",
                    )
                    if needs_update is not None:
                        repository.needs_update = needs_update
                        if needs_update:
                            logger.info(
                                f"{repository.name}: branch {repository.deployment_branch_name} needs updating"
                            )
                repository.last_checked_at = now
            finally:
                self.repository_manager.close_repository()

        result = any(r.needs_update for r in self._repositories)
        self.save_configuration()

        return result

    def _detect_update(self, repository: RepositoryEntry) -> bool:
        manager = self.repository_manager
        branch_name = repository.deployment_branch_name
        remote_name = repository.remote_name

        manager.download_references_from_remote(remote_name)

        raw_ref = f"refs/remotes/{remote_name}/{branch_name}"
        if raw_ref in manager.branches_with_new_references:
            return True

        if manager.get_relative_position_of_branch(branch_name) < 0:
            return True

        local_names = {b.name for b in manager.all_local_branches}
        remote_names = {b.name for b in manager.all_remote_branches}
        return branch_name not in local_names and (
            branch_name in remote_names or f"{remote_name}/{branch_name}" in remote_names
        )

    def _get_temporary_branch_name(self) -> str:
        existing = {b.name for b in self.repository_manager.all_branches}
        index = 1
        while f"{TEMP_BRANCH_PREFIX}{index}" in existing:
            index += 1
        return f"{TEMP_BRANCH_PREFIX}{index}"

    def update_repositories(self) -> None:
        """Recreate the local deployment branch of every repository needing an update."""
        for repository in self.repositories_needing_update:
            logger.info(f"Updating {repository.name}")
            try:
                if self._open(repository, "update"):
                    self._update_repository(repository)
            finally:
                self.repository_manager.close_repository()

    def _update_repository(self, repository: RepositoryEntry) -> None:
        manager = self.repository_manager
        branch_name = repository.deployment_branch_name

        local_branches = self._process(
            lambda: manager.all_local_branches, default=[], repository=repository, stage="update"
        )
        deployment_branch = next((b for b in local_branches if b.name == branch_name), None)
        temp_branch: Optional[Branch] = None

        if deployment_branch is not None:
            if deployment_branch.is_current_head:
                # The head cannot be deleted, so park HEAD on a throwaway branch
                temp_name = self._process(
                    self._get_temporary_branch_name, repository=repository, stage="update"
                )
                if temp_name:
                    temp_branch = self._process(
                        lambda: manager.create_branch(temp_name),
                        repository=repository,
                        stage="update",
                    )
                if temp_branch is not None:
                    self._process(
                        lambda: manager.switch_branch(temp_branch, force=True),
                        repository=repository,
                        stage="update",
                    )

            self._process(
                lambda: manager.remove_branch(manager.get_branch_from_name(branch_name)),
                repository=repository,
                stage="update",
            )
            remaining = self._process(
                lambda: manager.all_local_branches, default=[], repository=repository, stage="update"
            )
            if any(b.name == branch_name for b in remaining):
                logger.error(
                    f"{repository.name}: stale branch {branch_name} could not be removed, will retry"
                )
                if temp_branch is not None:
                    self._process(
                        lambda: manager.switch_branch(branch_name, force=True),
                        repository=repository,
                        stage="update",
                    )
                    self._process(
                        lambda: manager.remove_branch(manager.get_branch_from_name(temp_branch.name)),
                        repository=repository,
                        stage="update",
                    )
                return

        recreated = self._process(
            lambda: manager.create_branch(branch_name), repository=repository, stage="update"
        )
        if recreated is not None:
            self._process(
                lambda: manager.switch_branch(recreated, force=True),
                repository=repository,
                stage="update",
            )

        if temp_branch is not None:
            self._process(
                lambda: manager.remove_branch(manager.get_branch_from_name(temp_branch.name)),
                repository=repository,
                stage="update",
            )

        current = self._process(
            lambda: manager.get_branch_from_name(branch_name),
            repository=repository,
            stage="update",
        )
        if current is None or current.is_remote or not current.is_current_head:
            logger.error(
                f"{repository.name}: branch {branch_name} could not be checked out, will retry"
            )
            return

        repository.needs_update = False
        repository.needs_build = True
        self.save_configuration()
        logger.info(f"{repository.name}: updated to latest {branch_name}")

    def build_repositories(self) -> bool:
        """
        Build every repository needing a build.

        A stage with nothing to build reports success, so an idle cycle is
        not counted as a failed build.

        Returns:
            True only if every repository built successfully
        """
        result = True

        for repository in self.repositories_to_build:
            logger.info(f"Building {repository.name}")
            loaded = self._process(
                lambda: self.project_builder.load_solution_file(
                    repository.solution_file_to_build
                ),
                default=False,
                repository=repository,
                stage="build",
            )
            if not loaded:
                logger.error(
                    f"{repository.name}: could not load {repository.solution_file_to_build}"
                )
                result = False
                continue

            built = self._process(
                lambda: self.project_builder.build_solution(
                    repository.build_configuration_name
                ),
                default=False,
                repository=repository,
                stage="build",
            )
            if not built:
                logger.error(f"{repository.name}: build failed")
                result = False
                continue

            repository.needs_build = False
            repository.needs_deployment = True
            self.save_configuration()

        return result

    def deploy_repositories(self) -> bool:
        """
        Run the deployment actions of every repository needing deployment.

        A repository whose deployment fails keeps needs_deployment set and is
        retried next cycle without rebuilding.

        Returns:
            True only if every repository deployed successfully
        """
        result = True

        for repository in self.repositories_to_deploy:
            logger.info(f"Deploying {repository.name}")
            succeeded = self._deploy_repository(repository)
            repository.needs_deployment = not succeeded
            self.save_configuration()

            if succeeded:
                logger.info(f"{repository.name}: deployed")
            result = result and succeeded

        return result

    def _deploy_repository(self, repository: RepositoryEntry) -> bool:
        replacements = build_replacements_table(repository)

        for position, action in enumerate(repository.deployment_actions, start=1):
            if self._execute_action(action, replacements, repository):
                continue

            if action.is_key_to_deployment:
                logger.error(
                    f"{repository.name}: key action {position} ({action.action_type.value}) failed, "
                    f"running {len(action.rollback_actions)} rollback action(s)"
                )
                self._run_rollback(action, replacements, repository)
                return False

            logger.warning(
                f"{repository.name}: action {position} ({action.action_type.value}) failed, continuing"
            )

        return True

    def _execute_action(
        self,
        action: DeploymentAction,
        replacements: Dict[str, str],
        repository: RepositoryEntry,
    ) -> bool:
        parameters = replace_tokens(action.action_parameters, replacements)
        return bool(
            self._process(
                lambda: self.action_executor.execute(action.action_type, *parameters),
                default=False,
                repository=repository,
                stage="deploy",
            )
        )

    def _run_rollback(
        self,
        action: DeploymentAction,
        replacements: Dict[str, str],
        repository: RepositoryEntry,
    ) -> None:
        for rollback in action.rollback_actions:
            if not self._execute_action(rollback, replacements, repository):
                logger.error(
                    f"{repository.name}: rollback action {rollback.action_type.value} failed"
                )

    def run_cycle(self) -> CycleResult:
        """Run check, update, build and deploy once."""
        logger.info("Checking repositories for updates")
        updates_found = self.check_repositories_for_updates()

        logger.info("Updating repositories")
        self.update_repositories()

        logger.info("Building repositories")
        build_succeeded = self.build_repositories()
        if build_succeeded:
            logger.info("Repositories built successfully")
        else:
            logger.warning("Problem building repositories")

        logger.info("Deploying repositories")
        deploy_succeeded = self.deploy_repositories()
        if deploy_succeeded:
            logger.info("Repositories deployed successfully")
        else:
            logger.warning("Problem deploying repositories")

        return CycleResult(
            updates_found=updates_found,
            build_succeeded=build_succeeded,
            deploy_succeeded=deploy_succeeded,
        )
