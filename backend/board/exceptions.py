"""
Board errors and the DRF exception handler.

Every failure reaches the caller as {"error": "<message>"}.
"""
from rest_framework.views import exception_handler
from rest_framework.response import Response
from rest_framework import status
from rest_framework.exceptions import ValidationError
from django.conf import settings
from django.core.exceptions import RequestDataTooBig, SuspiciousOperation
from django.db import IntegrityError
import logging

logger = logging.getLogger(__name__)


class BoardError(Exception):
    """Base class for rejected board mutations."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = 'Request failed'

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(BoardError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = 'Not found'


class Forbidden(BoardError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = 'You can only change your own content'


class AlreadyLiked(BoardError):
    status_code = status.HTTP_409_CONFLICT
    default_message = 'Already liked'


class NotLiked(BoardError):
    status_code = status.HTTP_409_CONFLICT
    default_message = 'Not liked'


class DepthLimitExceeded(BoardError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = 'Maximum nesting depth reached'


def _error(message, status_code, details=None):
    body = {'error': message}
    if details is not None:
        body['details'] = details
    return Response(body, status=status_code)


def custom_exception_handler(exc, context):
    """
    Render every failure as {"error": ...}.

    ORDER:
    1. Board errors: their own message and status
    2. Errors DRF knows (validation, parse, throttling, 404/405):
       validation failures keep the per-field messages under "details"
    3. Oversized request body: 413; other suspicious requests: 400
    4. IntegrityError that escaped a service: 409
    5. Anything else: logged with traceback, generic 500
    """
    if isinstance(exc, BoardError):
        return _error(exc.message, exc.status_code)

    response = exception_handler(exc, context)
    if response is not None:
        if isinstance(exc, ValidationError):
            return _error('Invalid request', response.status_code, details=response.data)
        detail = response.data.get('detail') if isinstance(response.data, dict) else None
        if isinstance(detail, str):
            response.data = {'error': detail}
        else:
            response.data = {'error': str(exc), 'details': response.data}
        return response

    if isinstance(exc, RequestDataTooBig):
        limit = settings.DATA_UPLOAD_MAX_MEMORY_SIZE
        logger.warning(f"Rejected request body over {limit} bytes")
        return _error(
            f"Request body too large (limit is {limit} bytes)",
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
        )

    if isinstance(exc, SuspiciousOperation):
        logger.warning(f"Suspicious request: {exc}")
        return _error('Bad request.', status.HTTP_400_BAD_REQUEST)

    if isinstance(exc, IntegrityError):
        logger.warning(f"IntegrityError: {exc}")
        return _error('Conflicting change, please retry.', status.HTTP_409_CONFLICT)

    view = context.get('view')
    logger.exception(f"Unhandled exception in {type(view).__name__}: {exc}")
    return _error('An unexpected error occurred.', status.HTTP_500_INTERNAL_SERVER_ERROR)
