"""Exceptions raised across the control plane."""


class LaunchpadError(Exception):
    """Base exception for all Launchpad errors."""

    status_code = 500


class ValidationError(LaunchpadError):
    """Malformed request; no pipeline is started."""

    status_code = 400


class NotFoundError(LaunchpadError):
    """Requested record does not exist."""

    status_code = 404


class ConflictError(LaunchpadError):
    """Record already exists."""

    status_code = 409


class DetectionError(LaunchpadError):
    """Source clone or language detection failed."""


class BuildError(LaunchpadError):
    """Descriptor render or image build failed."""


class ImageResolutionError(LaunchpadError):
    """Image could not be found by tag and no fallback id was captured."""


class SecretError(LaunchpadError):
    """A secret value could not be encrypted or decrypted."""


class InvalidTransitionError(LaunchpadError):
    """Application status change outside the allowed lifecycle."""


class BackendUnavailableError(LaunchpadError):
    """Requested container backend is not present on this host."""

    status_code = 400

    def __init__(self, backend, message=None):
        self.backend = getattr(backend, 'value', backend)
        super().__init__(message or f"Runtime {self.backend} is not available")


class RuntimeBackendError(LaunchpadError):
    """A container backend call failed."""

    def __init__(self, backend, detail, message=None):
        self.backend = getattr(backend, 'value', backend)
        self.detail = detail
        super().__init__(message or f"[{self.backend}] {detail}")


class ContainerNotFoundError(RuntimeBackendError):
    """The backend has no container with the given id."""
