"""Custom exceptions for the cluster bootstrap orchestrator."""


class ClusterBootstrapError(Exception):
    """Base exception for all cluster bootstrap errors."""

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class ValidationError(ClusterBootstrapError):
    """Exception raised for validation errors."""

    pass


class ConfigurationError(ClusterBootstrapError):
    """Exception raised for configuration errors."""

    pass


class RemoteExecutionError(ClusterBootstrapError):
    """Exception raised when a remote command cannot be run."""

    pass


class RemoteConnectionError(RemoteExecutionError):
    """Exception raised when a node cannot be reached over SSH.

    Treated as transient while a node is rebooting.
    """

    pass


class RemoteCommandError(RemoteExecutionError):
    """Exception raised when a remote command exits with a non-zero status."""

    def __init__(self, message: str, details: str = None, exit_code: int | None = None):
        self.exit_code = exit_code
        super().__init__(message, details)


class InstallFailure(ClusterBootstrapError):
    """Exception raised when the base OS cannot be installed on a node."""

    pass


class Timeout(ClusterBootstrapError):
    """Exception raised when a readiness gate expires."""

    pass


class RebootTimeout(Timeout):
    """Exception raised when a node does not come back after a reboot."""

    pass


class InitializationTimeout(Timeout):
    """Exception raised when the cluster API never reports ready."""

    pass


class ConfigRenderError(ClusterBootstrapError):
    """Exception raised when node configuration cannot be rendered.

    Rendering is pure, so this indicates a programming defect.
    """

    pass


class JoinPreconditionUnmet(ClusterBootstrapError):
    """Exception raised when a join is attempted without a published cluster token.

    The barrier makes this impossible; any occurrence is an ordering bug.
    """

    pass


class SecretConflict(ClusterBootstrapError):
    """Exception raised when a secret exists with different content."""

    pass


class AddonApplyFailure(ClusterBootstrapError):
    """Exception raised when the add-on bundle cannot be applied."""

    pass


class BootstrapAborted(ClusterBootstrapError):
    """Exception raised in node tasks when the whole run is aborted."""

    pass
