# -*- coding: utf-8 -*-
"""
Cloudy Exceptions - Layer 1
Raised by core/, translated to JSON responses in api/.
"""


class CloudyError(Exception):
    status_code = 500
    code = 'INTERNAL_ERROR'

    def __init__(self, message: str = None, code: str = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {'error': self.message, 'code': self.code}


class ValidationError(CloudyError):
    status_code = 400
    code = 'VALIDATION_ERROR'


class NotFoundError(CloudyError):
    status_code = 404
    code = 'NOT_FOUND'


class PermissionDeniedError(CloudyError):
    status_code = 403
    code = 'FORBIDDEN'


class InsufficientCreditsError(CloudyError):
    status_code = 402
    code = 'INSUFFICIENT_CREDITS'


class NotConfiguredError(CloudyError):
    status_code = 503
    code = 'PROXMOX_NOT_CONFIGURED'


class ProxmoxError(CloudyError):
    """Proxmox (or PBS) answered with an error or could not be reached

    status is the upstream HTTP status, None when we never got a response
    """
    status_code = 502
    code = 'PROXMOX_ERROR'

    def __init__(self, message: str, status: int = None, code: str = None):
        super().__init__(message, code)
        self.status = status
        if status is None and not code:
            self.code = 'PROXMOX_UNAVAILABLE'
            self.status_code = 503
