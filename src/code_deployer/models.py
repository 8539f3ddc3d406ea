"""Domain models for Code Deployer.

Repository entries and their deployment actions are pydantic models so the
repository store can round-trip them through JSON. Branches and repository
session states are transient and never persisted.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, List

from pydantic import BaseModel, Field, field_validator


class DeploymentActionType(Enum):
    """Kinds of deployment action a repository can run after a build."""

    NONE = "None"
    EXECUTE_FILE = "ExecuteFile"
    COPY_FILE = "CopyFile"
    SEND_EMAIL = "SendEmail"
    CHECK_UNIT_TESTS = "CheckUnitTests"
    RUN_DATABASE_SCRIPT = "RunDatabaseScript"


class RepositoryState(Enum):
    """Session state of a GitRepositoryManager."""

    UNKNOWN = "unknown"
    OPENED = "opened"
    CLOSED = "closed"
    FAULTED = "faulted"


@dataclass(frozen=True)
class Branch:
    """A branch as seen by the backend at query time."""

    name: str
    is_remote: bool = False
    is_current_head: bool = False


class DeploymentAction(BaseModel):
    """A single deployment step with optional rollback steps.

    Two actions are equal when their type and parameters match; rollback
    actions and the key flag are not part of the identity.
    """

    action_type: DeploymentActionType = Field(
        default=DeploymentActionType.NONE, description="Kind of action to run"
    )
    action_parameters: List[str] = Field(
        default_factory=list,
        description="Positional parameters, meaning depends on action_type",
    )
    rollback_actions: List["DeploymentAction"] = Field(
        default_factory=list,
        description="Actions run in order when this key action fails",
    )
    is_key_to_deployment: bool = Field(
        default=True,
        description="When true a failure stops the repository's deployment",
    )

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, DeploymentAction):
            return False
        return (
            self.action_type == other.action_type
            and self.action_parameters == other.action_parameters
        )

    def __hash__(self) -> int:
        return hash((self.action_type, tuple(self.action_parameters)))


DeploymentAction.model_rebuild()


class RepositoryEntry(BaseModel):
    """A tracked repository and its pipeline progress flags."""

    name: str = Field(default="", description="Display name")
    location_path: str = Field(
        default="", description="Path to the local working copy"
    )
    remote_name: str = Field(default="origin", description="Remote to fetch from")
    check_interval: timedelta = Field(
        default=timedelta(0), description="Minimum time between update checks"
    )
    deployment_branch_name: str = Field(
        default="", description="Branch whose updates trigger a deployment"
    )
    solution_file_to_build: str = Field(
        default="", description="Project or solution file passed to the builder"
    )
    build_configuration_name: str = Field(
        default="", description="Build configuration, e.g. Release"
    )
    last_checked_at: datetime = Field(
        default=datetime.min, description="When the repository was last checked"
    )
    needs_update: bool = False
    needs_build: bool = False
    needs_deployment: bool = False
    deployment_actions: List[DeploymentAction] = Field(default_factory=list)

    @field_validator("check_interval", mode="before")
    @classmethod
    def empty_interval_is_zero(cls, v: Any) -> Any:
        """Treat a blank or missing duration as zero."""
        if v is None or v == "":
            return timedelta(0)
        return v

    @field_validator("last_checked_at")
    @classmethod
    def naive_local_time(cls, v: datetime) -> datetime:
        """Store timestamps as naive local time so they compare with datetime.now()."""
        if v.tzinfo is not None:
            return v.astimezone().replace(tzinfo=None)
        return v

    @property
    def next_check_time(self) -> datetime:
        """Earliest time the repository is due for another check."""
        try:
            return self.last_checked_at + self.check_interval
        except OverflowError:
            return datetime.max

    def is_due(self, now: datetime) -> bool:
        return now >= self.next_check_time
