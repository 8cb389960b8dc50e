"""Error taxonomy for DevHost.

Every error carries a machine-readable ``code``, a human ``message`` and an
optional ``suggestion`` (rendered by the CLI), plus the process exit code the
CLI should use when the error reaches the top level:

- 1: validation / conflict errors, raised before any mutation
- 2: an external system (engine, CA, tunnel, bootstrap tool) failed
- 3: rollback failed and artifacts were left behind
"""


class DevHostError(Exception):
    """Base exception for DevHost errors."""

    exit_code = 1
    retryable = False

    def __init__(
        self,
        code: str,
        message: str,
        suggestion: str | None = None,
        project: str | None = None,
        step: str | None = None,
    ):
        self.code = code
        self.message = message
        self.suggestion = suggestion
        self.project = project
        self.step = step
        super().__init__(message)


class InvalidName(DevHostError):
    def __init__(self, name: str):
        super().__init__(
            code="INVALID_NAME",
            message=f"Invalid project name '{name}'",
            suggestion=(
                "Project names use lowercase letters, numbers and hyphens,"
                " start and end with a letter or number"
                " and are at most 32 characters long"
            ),
            project=name,
            step="validate",
        )


class NameConflict(DevHostError):
    def __init__(self, name: str, state: str = "active"):
        super().__init__(
            code="NAME_CONFLICT",
            message=f"Project '{name}' already exists (state: {state})",
            suggestion="Choose a different name or delete the existing project first",
            project=name,
            step="validate",
        )


class ProjectNotFound(DevHostError):
    def __init__(self, name: str):
        super().__init__(
            code="PROJECT_NOT_FOUND",
            message=f"Project '{name}' does not exist",
            suggestion="Run 'devhost list' to see available projects",
            project=name,
        )


class AlreadyExists(DevHostError):
    def __init__(self, name: str, path: str):
        super().__init__(
            code="ALREADY_EXISTS",
            message=f"Directory '{path}' for project '{name}' is not empty",
            suggestion="Move the existing directory away or pick another name",
            project=name,
            step="filesystem",
        )


class ProjectBusy(DevHostError):
    def __init__(self, name: str):
        super().__init__(
            code="PROJECT_BUSY",
            message=f"Project '{name}' is being modified by another invocation",
            suggestion="Try again once the other operation has finished",
            project=name,
        )


class ProvisioningCancelled(DevHostError):
    def __init__(self, name: str, step: str):
        super().__init__(
            code="CANCELLED",
            message=f"Provisioning of '{name}' was cancelled before step '{step}'",
            project=name,
            step=step,
        )


class ScaffoldSourceUnavailable(DevHostError):
    exit_code = 2
    retryable = True

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("step", "scaffold")
        kwargs.setdefault("suggestion", "Check network connectivity and the source URL")
        super().__init__(code="SCAFFOLD_SOURCE_UNAVAILABLE", message=message, **kwargs)


class ScaffoldToolFailed(DevHostError):
    exit_code = 2

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("step", "scaffold")
        super().__init__(code="SCAFFOLD_TOOL_FAILED", message=message, **kwargs)


class EngineUnreachable(DevHostError):
    exit_code = 2
    retryable = True

    def __init__(self, engine: str, message: str, **kwargs):
        kwargs.setdefault("step", f"database:{engine}")
        kwargs.setdefault("suggestion", f"Check that the {engine} server is running")
        super().__init__(code="ENGINE_UNREACHABLE", message=message, **kwargs)


class GrantDenied(DevHostError):
    exit_code = 2

    def __init__(self, engine: str, message: str, **kwargs):
        kwargs.setdefault("step", f"database:{engine}")
        kwargs.setdefault(
            "suggestion",
            f"Check that the configured {engine} admin account may create databases and users",
        )
        super().__init__(code="GRANT_DENIED", message=message, **kwargs)


class PermissionSetupFailed(DevHostError):
    exit_code = 2

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("step", "permissions")
        kwargs.setdefault("suggestion", "Run devhost as root (sudo) and check the principals exist")
        super().__init__(code="PERMISSION_SETUP_FAILED", message=message, **kwargs)


class DomainChallengeFailed(DevHostError):
    exit_code = 2

    def __init__(self, domain: str, message: str, **kwargs):
        kwargs.setdefault("step", "tls")
        kwargs.setdefault("suggestion", "Check the DNS credentials and try 'devhost tls refresh'")
        super().__init__(code="DOMAIN_CHALLENGE_FAILED", message=message, **kwargs)
        self.domain = domain


class WebServerError(DevHostError):
    exit_code = 2

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("step", "virtual-host")
        kwargs.setdefault("suggestion", "Check 'nginx -t' and 'systemctl status nginx'")
        super().__init__(code="WEB_SERVER_ERROR", message=message, **kwargs)


class TunnelError(DevHostError):
    exit_code = 2

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("step", "tunnel")
        kwargs.setdefault("suggestion", "Check the Cloudflare token, zone and tunnel settings")
        super().__init__(code="TUNNEL_ERROR", message=message, **kwargs)


class DatabaseOperationFailed(DevHostError):
    exit_code = 2

    def __init__(self, engine: str, message: str, **kwargs):
        kwargs.setdefault("step", f"database:{engine}")
        super().__init__(code="DATABASE_OPERATION_FAILED", message=message, **kwargs)


class ProvisioningFailed(DevHostError):
    """An unexpected error (OS, driver, bug) interrupted a workflow step."""

    exit_code = 2

    def __init__(self, name: str, step: str | None, cause: Exception):
        where = f" during {step}" if step else ""
        super().__init__(
            code="PROVISIONING_FAILED",
            message=f"Project '{name}' failed{where}: {cause}",
            suggestion="Check the log for details",
            project=name,
            step=step,
        )
        self.cause = cause


class RollbackFailed(DevHostError):
    """Raised when compensating actions could not undo a failed workflow.

    ``artifacts`` names every resource that may still exist; ``cause`` is the
    error that triggered the rollback.
    """

    exit_code = 3

    def __init__(
        self,
        project: str,
        artifacts: list[str],
        cause: Exception | None = None,
    ):
        listing = ", ".join(artifacts)
        reason = f" after: {cause}" if cause else ""
        super().__init__(
            code="ROLLBACK_FAILED",
            message=f"Rollback of project '{project}' left artifacts behind{reason}",
            suggestion=f"Remove manually: {listing}",
            project=project,
            step="rollback",
        )
        self.artifacts = artifacts
        self.cause = cause
