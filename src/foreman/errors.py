"""Exception taxonomy for the orchestration engine.

Every failure inside a feature task is caught at the task boundary and
converted into a terminal event; these types exist so that boundary (and the
HTTP layer) can tell the failures apart.
"""

from __future__ import annotations


class ForemanError(Exception):
    """Base class for all domain errors."""


class AlreadyRunningError(ForemanError):
    """A feature or project loop is already active."""


class NotRunningError(ForemanError):
    """Stop/follow-up was requested for something that is not running."""


class FeatureNotFoundError(ForemanError):
    def __init__(self, feature_id: str):
        super().__init__(f"Feature {feature_id} not found")
        self.feature_id = feature_id


class DependencyUnsatisfiedError(ForemanError):
    """Admission deferred until the listed dependencies are verified."""

    def __init__(self, feature_id: str, unmet: list[str]):
        super().__init__(
            f"Feature {feature_id} is waiting on dependencies: {', '.join(unmet)}"
        )
        self.feature_id = feature_id
        self.unmet = unmet


class GitCommandError(ForemanError):
    """A git subprocess exited non-zero."""

    def __init__(self, args: tuple[str, ...], returncode: int, stdout: str, stderr: str):
        self.args_ = args
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout).strip() or f"exit code {returncode}"
        super().__init__(f"git {' '.join(args)} failed: {detail}")


class WorktreeCreationError(ForemanError):
    pass


class WorktreeNotFoundError(ForemanError):
    pass


class MergeConflictError(ForemanError):
    """Merge failed; the message is git's own output."""


class ShellNotFoundError(ForemanError):
    pass


class InitScriptNotFoundError(ForemanError):
    pass


class AgentTaskError(ForemanError):
    """Raised by the agent runner; ``is_auth`` marks credential failures."""

    def __init__(self, message: str, *, is_auth: bool = False):
        super().__init__(message)
        self.is_auth = is_auth


class InvalidFeatureIdError(ForemanError):
    """A feature id that cannot be used as a directory name."""


class InvalidBranchNameError(ForemanError):
    """A branch name git would reject or misread as an option."""


class AccessDeniedError(ForemanError):
    """A path fell outside every allowed root."""
