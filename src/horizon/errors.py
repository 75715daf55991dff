"""Exception hierarchy for the reconciliation engine."""

from typing import Iterable, Optional


class HorizonError(Exception):
    """Base class for all horizon errors."""


class ConfigValidationError(HorizonError):
    """Configuration is malformed. Fatal, raised before any mutation."""


class CircularDependencyError(ConfigValidationError):
    """Layer dependency graph contains a cycle."""

    def __init__(self, unresolved: Iterable[str]):
        self.unresolved = sorted(unresolved)
        super().__init__(
            f"Circular dependency detected in layers: {', '.join(self.unresolved)}"
        )


class MissingDependencyError(ConfigValidationError):
    """A layer depends on a layer that is not declared."""

    def __init__(self, layer: str, dependency: str):
        self.layer = layer
        self.dependency = dependency
        super().__init__(f"Layer '{layer}' depends on non-existent layer '{dependency}'")


class ContainerError(HorizonError):
    """A container operation failed.

    ``step`` names the sub-step that failed (``create``, ``install_packages``,
    ``post_command``, ``start``, ``stop``, ``remove``, ``export_binaries``).
    """

    def __init__(self, name: str, step: str, message: str):
        self.name = name
        self.step = step
        super().__init__(f"Container {name}: {step} failed: {message}")


class DuplicateContainerError(ContainerError):
    """A container with the same name is already registered."""

    def __init__(self, name: str):
        super().__init__(name, "create", "a container with this name already exists")


class ContainerNotFoundError(HorizonError):
    """Container is not in the registry."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Container {name} not found")


class LayerError(HorizonError):
    """A layer operation was refused or failed."""


class LiveUpdateError(HorizonError):
    """A live update could not be completed."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class ApplyError(LiveUpdateError):
    """Applying a single change failed."""


class UnsupportedChangeError(ApplyError):
    """The change type cannot be applied on a live system."""


class RollbackError(LiveUpdateError):
    """Restoring the pre-update snapshot failed.

    The system is in an unknown state; this is more severe than the
    failure that triggered the rollback.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None,
                 original: Optional[BaseException] = None):
        super().__init__(message, cause)
        self.original = original


class StateSyncError(HorizonError):
    """Reading, writing or restoring persisted state failed."""
