"""
Error taxonomy for the relay service.

Every error that should reach an HTTP client derives from ProxyError and
carries its status code. The API layer renders them as ``{"error": ...}``.
Cache failures have no class here: the cache store logs and absorbs them.
"""


class ProxyError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ProxyError):
    """Unknown source, or a source of the wrong type for the route."""
    status_code = 404


class BadRequestError(ProxyError):
    """Missing required parameter or unknown action."""
    status_code = 400


class UpstreamError(ProxyError):
    """Provider unreachable, non-success status, or unparseable payload."""
    status_code = 500


class ProcessSpawnError(ProxyError):
    """FFmpeg could not be started. Raised before any bytes are sent."""
    status_code = 500
