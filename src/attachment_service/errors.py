"""
Exception hierarchy for the attachment service.

Every error carries the HTTP status it maps to at the request boundary and a
client-safe ``detail`` string. Internal context (upstream response bodies,
owner addresses) goes into the exception message for logging only.
"""


class AttachmentServiceError(Exception):
    """Base exception for attachment service errors."""

    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, message: str | None = None, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(message or self.detail)


# --- 4xx: client-visible errors ---


class BadRequestError(AttachmentServiceError):
    """Raised when the request or the requested content is malformed."""

    status_code = 400
    default_detail = "Bad request"


class InvalidHashError(BadRequestError):
    """Raised when a string is neither a CID nor a SHA-256 hex digest."""

    default_detail = "Invalid hash"


class UnsupportedHashVersionError(InvalidHashError):
    """Raised for CIDv1 identifiers, which the service does not store."""

    default_detail = "Unsupported CID version"


class IntegrityCheckFailedError(BadRequestError):
    """Raised when retrieved bytes do not hash to the recorded integrity hash."""

    default_detail = "Attachment failed integrity check"


class UnknownFilenameError(BadRequestError):
    """Raised when a filename is needed but neither storage nor peer supplied one."""

    default_detail = "Unable to determine attachment filename"


class UnauthorizedError(AttachmentServiceError):
    """Raised when a request carries no valid bearer token."""

    status_code = 401
    default_detail = "Unauthorized"


class ForbiddenError(AttachmentServiceError):
    """Raised when access is denied. Never says why."""

    status_code = 403
    default_detail = "Forbidden"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message, self.default_detail)


class NotFoundError(AttachmentServiceError):
    """Base class for missing resources."""

    status_code = 404
    default_detail = "Not found"


class AttachmentNotFoundError(NotFoundError):
    """Raised when an attachment record or its stored bytes are missing."""

    default_detail = "Attachment not found"


class IdentityNotFoundError(NotFoundError):
    """Raised when the identity directory does not know an alias or address."""

    default_detail = "Identity not found"


class PayloadTooLargeError(AttachmentServiceError):
    """Raised when an upload exceeds the configured size ceiling."""

    status_code = 413
    default_detail = "Attachment too large"


# --- 5xx: upstream dependency failures ---


class UpstreamServiceError(AttachmentServiceError):
    """Base class for failures of services this one depends on."""

    status_code = 502
    default_detail = "Upstream service error"


class StorageUnavailableError(UpstreamServiceError):
    """Raised when the storage backend rejects or fails an operation."""

    status_code = 503
    default_detail = "Storage backend unavailable"


class IdentityServiceError(UpstreamServiceError):
    """Raised when the identity directory returns an unexpected response."""

    default_detail = "Identity service error"


class OidcDiscoveryFailedError(UpstreamServiceError):
    """Raised when a peer's OIDC discovery document cannot be fetched."""

    default_detail = "Failed to fetch OIDC configuration"


class TokenExchangeFailedError(UpstreamServiceError):
    """Raised when a client-credentials grant is rejected."""

    default_detail = "Failed to obtain access token"


class PeerFetchFailedError(UpstreamServiceError):
    """Raised when a peer refuses to return an attachment."""

    default_detail = "Failed to fetch attachment"


# --- 500: local failures ---


class NoCredentialsError(AttachmentServiceError):
    """Raised when no federation credentials exist for an owner."""

    default_detail = "No external credentials configured for owner"


class CredentialsFileError(AttachmentServiceError):
    """Raised when the credentials file cannot be read or parsed."""

    default_detail = "Failed to load external credentials"


class UnknownError(AttachmentServiceError):
    """Raised for unexpected identity failures while building responses."""

    default_detail = "Unknown error"
