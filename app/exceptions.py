"""
ManifestVault - Custom Exceptions and Exception Handlers
"""
import structlog
from flask import jsonify
from werkzeug.exceptions import HTTPException

logger = structlog.get_logger('exceptions')


class VaultException(Exception):
    """Base exception for ManifestVault"""
    def __init__(self, message: str, code: str = "VAULT_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)

    def to_dict(self):
        return {
            'error': True,
            'code': self.code,
            'message': self.message
        }


class ArchiveException(VaultException):
    """Uploaded archive could not be read"""
    def __init__(self, message: str, code: str = "ARCHIVE_ERROR"):
        super().__init__(message, code=code)
        logger.error(f"Archive error: {message}")


class EmptyArchiveException(ArchiveException):
    """Archive holds neither scripts nor manifest files. Fatal to the ingestion call."""
    def __init__(self, message: str = "Archive contains no script or manifest files"):
        super().__init__(message, code="EMPTY_ARCHIVE")


class UnextractableTitleIdException(VaultException):
    """Script filename carries no title ID. Skips that title only."""
    def __init__(self, filename: str):
        self.filename = filename
        super().__init__(
            f"Could not extract title ID from '{filename}'. File should be named <titleId>.lua",
            code="UNEXTRACTABLE_TITLE_ID",
        )
        logger.warning(f"Unextractable title ID: {filename}")


class UnresolvedKeyException(VaultException):
    """No decryption key for a depot. Skips that depot only."""
    def __init__(self, title_id: str, depot_id: str, manifest_filename: str = None):
        self.title_id = title_id
        self.depot_id = depot_id
        self.manifest_filename = manifest_filename
        super().__init__(f"No depot key found for depot {depot_id} (title {title_id})", code="UNRESOLVED_KEY")


class StoreWriteException(VaultException):
    """Version store write failed after all retries. Fatal to that title only."""
    def __init__(self, title_id: str, message: str, attempts: int = 0):
        self.title_id = title_id
        self.attempts = attempts
        super().__init__(f"Store write failed for {title_id} after {attempts} attempt(s): {message}", code="STORE_WRITE_FAILURE")
        logger.error(f"Store error: {self.message}")


class StoreReadException(VaultException):
    """Version store read failed"""
    def __init__(self, title_id: str, message: str):
        self.title_id = title_id
        super().__init__(f"Store read failed for {title_id}: {message}", code="STORE_READ_FAILURE")
        logger.error(f"Store error: {self.message}")


class CatalogServiceException(VaultException):
    """Catalog service unavailable or returned unusable data"""
    def __init__(self, message: str, title_id: str = None):
        self.title_id = title_id
        super().__init__(message, code="CATALOG_UNAVAILABLE")
        logger.warning(f"Catalog error: {message}")


class ValidationException(VaultException):
    """Validation-related exceptions"""
    def __init__(self, message: str):
        super().__init__(message, code="VALIDATION_ERROR")
        logger.warning(f"Validation error: {message}")


# Most specific first
HTTP_STATUS = (
    (EmptyArchiveException, 422),
    (ArchiveException, 422),
    (StoreWriteException, 500),
    (StoreReadException, 500),
    (CatalogServiceException, 502),
    (ValidationException, 400),
    (VaultException, 400),
)


def http_status_for(error):
    for exc_type, status in HTTP_STATUS:
        if isinstance(error, exc_type):
            return status
    return 500


def register_exception_handlers(app):
    """Register exception handlers with Flask app"""

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        """Handle HTTP exceptions"""
        return jsonify({
            'error': True,
            'code': e.name.upper().replace(' ', '_'),
            'message': e.description
        }), e.code

    @app.errorhandler(VaultException)
    def handle_vault_exception(e):
        """Handle ManifestVault custom exceptions"""
        return jsonify(e.to_dict()), http_status_for(e)

    @app.errorhandler(Exception)
    def handle_generic_exception(e):
        """Handle all other exceptions"""
        logger.error(f"Unhandled exception: {e}", exc_info=True)
        return jsonify({
            'error': True,
            'code': 'INTERNAL_ERROR',
            'message': 'An unexpected error occurred'
        }), 500
