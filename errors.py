"""Error taxonomy for the render-and-publish pipeline."""


class Html2DriveError(Exception):
    """Base class for every error the core components raise."""

    status_code = 500


class AuthExchangeError(Html2DriveError):
    """The authorization code (or state) was rejected by the provider."""


class NotAuthenticatedError(Html2DriveError):
    status_code = 401


class RenderError(Html2DriveError):
    pass


class RenderTimeoutError(RenderError):
    """The document did not settle within the load timeout."""


class RenderBusyError(RenderError):
    """Every render slot stayed busy for longer than the admission timeout."""

    status_code = 503


class UploadError(Html2DriveError):
    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status
