"""
Exception handling policies for backend calls.

Every call the deployment service makes into git, the builder or the action
executor goes through ExceptionManager.process(). The named policy decides
whether an error is logged and swallowed (the caller gets its default value
back) or propagated, which aborts the rest of the cycle.
"""

import logging
from typing import Any, Callable, Dict, Optional, TypeVar

from .config import DEFAULT_POLICY_NAME, ExceptionPolicyConfig
from .utils.exception_logger import ExceptionLogger

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExceptionManager:
    """Applies named exception handling policies to callables."""

    def __init__(
        self,
        policies: Optional[Dict[str, ExceptionPolicyConfig]] = None,
        default_policy_name: str = DEFAULT_POLICY_NAME,
    ):
        if policies is None:
            policies = {DEFAULT_POLICY_NAME: ExceptionPolicyConfig()}
        self.policies = dict(policies)
        self.default_policy_name = default_policy_name

    def _should_rethrow(self, error: Exception, policy: Optional[ExceptionPolicyConfig]) -> bool:
        if policy is None or policy.action == "rethrow":
            return True
        names = {cls.__name__ for cls in type(error).__mro__}
        return bool(names.intersection(policy.rethrow_types))

    def process(
        self,
        action: Callable[[], T],
        default: Any = None,
        policy_name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Run action under a policy.

        Args:
            action: Zero-argument callable to run
            default: Value returned when the policy swallows an error
            policy_name: Policy to apply, defaults to the manager's default policy
            context: Extra details recorded in the exception log

        Returns:
            The action's result, or default if an error was swallowed

        Raises:
            Exception: The original error when the policy rethrows it, or
                when the policy name is unknown
        """
        if action is None:
            raise ValueError("action must be provided")

        name = policy_name or self.default_policy_name
        try:
            return action()
        except Exception as e:
            policy = self.policies.get(name)
            if policy is None:
                logger.error(f"Unknown exception policy '{name}', rethrowing {e!r}")
                raise

            exception_logger = ExceptionLogger.get_instance()
            if exception_logger:
                exception_logger.log_exception(
                    e, context={"policy": name, **(context or {})}
                )

            if self._should_rethrow(e, policy):
                logger.error(f"Policy '{name}' rethrowing: {e}", exc_info=True)
                raise

            logger.warning(f"Policy '{name}' handled error: {e}", exc_info=True)
            return default
