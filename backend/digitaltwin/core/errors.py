"""
Error taxonomy for the asset pipeline.

Services raise these exceptions; the FastAPI exception handlers registered in
``digitaltwin.main`` turn them into ``{"error": message}`` JSON bodies with
the matching HTTP status. Partial batch failures are not exceptions: they are
reported through ``BatchReport`` with status 207.
"""


class AssetPipelineError(RuntimeError):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BadRequestError(AssetPipelineError):
    status_code = 400


class UnauthorizedError(AssetPipelineError):
    status_code = 401


class ForbiddenError(AssetPipelineError):
    status_code = 403


class NotFoundError(AssetPipelineError):
    status_code = 404


class ConflictError(AssetPipelineError):
    status_code = 409


class InternalError(AssetPipelineError):
    status_code = 500


class StoragePathError(BadRequestError):
    """Raised when a blob path escapes the storage root."""

    def __init__(self, path: str):
        super().__init__(f"Invalid path: path traversal detected ({path})")
        self.path = path
