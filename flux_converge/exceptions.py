"""Exceptions related to flux-converge."""

__all__ = [
    "ConvergeException",
    "InputException",
    "BuildException",
    "ApplyException",
]


class ConvergeException(Exception):
    """Generic base exception used for this library."""


class InputException(ConvergeException):
    """Raised when the object spec or annotations are not formatted as expected.

    Input errors are terminal, they will not go away without a spec change.
    """


class InvalidAnnotationError(InputException):
    """Raised when a well-known annotation holds a value that can't be parsed."""

    def __init__(self, key: str, value: str, reason: str) -> None:
        super().__init__(f"invalid annotation {key}={value!r}: {reason}")
        self.key = key
        self.value = value


class BuildException(InputException):
    """Raised when the desired resources can't be rendered from the spec."""


class ObjectNotFoundError(ConvergeException):
    """Raised when an object is not found in the store."""


class ConflictError(ConvergeException):
    """Raised when a write to the store conflicts with a concurrent writer."""


class DependencyNotReadyError(ConvergeException):
    """Raised when a dependency is missing or not ready."""

    def __init__(self, dependency_id: str, message: str) -> None:
        super().__init__(f"dependency {dependency_id} {message}")
        self.dependency_id = dependency_id


class ApplyException(ConvergeException):
    """Raised when the store rejects a resource during apply or delete."""

    def __init__(self, resource_name: str, message: str) -> None:
        super().__init__(f"{resource_name} {message}")
        self.resource_name = resource_name


class ResourceFailedError(ConvergeException):
    """Raised when a resource reconciliation has failed and is in a terminal state."""

    def __init__(self, resource_name: str, message: str | None) -> None:
        super().__init__(
            f"Resource {resource_name} failed: {message or 'Unknown error'}"
        )
        self.resource_name = resource_name
        self.message = message


class HealthCheckError(ConvergeException):
    """Raised when applied resources don't become ready in time."""


class ArtifactException(ConvergeException):
    """Raised when the digest of a remote artifact can't be resolved."""


class StatusPatchError(ConvergeException):
    """Raised when the status of a managed object could not be persisted."""
