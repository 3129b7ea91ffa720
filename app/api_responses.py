"""
API Response Utilities - Standardized error handling and responses
Responses are (dict, status) pairs so flask_restx resources and plain Flask
views can both return them.
"""

import logging

logger = logging.getLogger(__name__)


# API Error Codes
class ErrorCode:
    SUCCESS = "SUCCESS"
    ACCEPTED = "ACCEPTED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"


def success_response(data=None, message=None, status_code=200, code=ErrorCode.SUCCESS):
    """
    Standard success response format for API endpoints
    """
    response = {"code": code, "success": True}

    if data is not None:
        response["data"] = data

    if message:
        response["message"] = message

    return response, status_code


def error_response(
    error_code=ErrorCode.INTERNAL_ERROR,
    message=None,
    details=None,
    status_code=400,
    log_error=True,
):
    """
    Standard error response format for API endpoints
    """
    response = {"code": error_code, "success": False}

    if message:
        response["message"] = message
    elif error_code == ErrorCode.NOT_FOUND:
        response["message"] = "Resource not found"
    elif error_code == ErrorCode.VALIDATION_ERROR:
        response["message"] = "Invalid request parameters"
    elif error_code == ErrorCode.INTERNAL_ERROR:
        response["message"] = "An unexpected error occurred"

    if details:
        response["details"] = details

    if log_error and error_code in [ErrorCode.INTERNAL_ERROR, ErrorCode.VALIDATION_ERROR]:
        logger.error(f"{error_code}: {message} | Details: {details}")

    return response, status_code


def validation_error_response(field, message):
    """
    Convenience function for validation errors
    """
    return error_response(
        ErrorCode.VALIDATION_ERROR,
        message=f"Validation failed for field: {field}",
        details={"field": field, "error": message},
        status_code=400,
    )


def not_found_response(resource_type, resource_id=None):
    """
    Convenience function for not found errors
    """
    if resource_id:
        message = f"{resource_type} with ID '{resource_id}' not found"
    else:
        message = f"{resource_type} not found"
    return error_response(ErrorCode.NOT_FOUND, message=message, status_code=404)
