"""Error taxonomy for the build and publish core.

The inspector and the remote build bridge never raise these to their callers;
they return structured results instead. Lock acquisition and the publish
coordinator raise them so request handlers can short-circuit.
"""


class AppForgeError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(AppForgeError):
    """Required external-system configuration is absent or malformed."""


class BuildConfigurationError(ConfigurationError):
    """An app configuration cannot be turned into a project tree."""


class ToolingUnavailableError(AppForgeError):
    """An expected external binary could not be spawned."""

    def __init__(self, tool: str, message: str | None = None) -> None:
        super().__init__(message or f"{tool} is not available")
        self.tool = tool


class ValidationError(AppForgeError):
    """Store-policy violations, always reported as a list."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors) or "Validation failed")
        self.errors = list(errors)


class LockConflictError(AppForgeError):
    """Another live lock holder exists for the requested name."""

    conflict = True

    def __init__(self, name: str, message: str | None = None) -> None:
        resource = name.split(":", 1)[0] if ":" in name else "operation"
        super().__init__(message or f"A {resource} is already in progress for this app.")
        self.name = name
        self.resource = resource


class UpstreamApiError(AppForgeError):
    """A remote HTTP API returned a non-success status or a malformed body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ArtifactMissingError(AppForgeError):
    """The expected binary is absent from disk."""


class CredentialError(AppForgeError):
    """Publishing credentials are missing or cannot be decrypted."""


class NotFoundError(AppForgeError):
    """A referenced record does not exist."""
