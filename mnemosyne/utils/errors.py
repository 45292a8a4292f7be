"""
Error taxonomy shared by the memory store, services and pipeline engine.
"""

from typing import Any, Dict


class MnemosyneError(Exception):
    """Base class for all errors reported by the core."""
    status_code = 500

    def __init__(self, message: str = ''):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Structured error object for tool and transport callers."""
        return {'error': type(self).__name__, 'message': self.message, 'status_code': self.status_code}


class NotFoundError(MnemosyneError):
    """A memorygram, relationship, run or manifest does not exist."""
    status_code = 404


class InvalidArgumentError(MnemosyneError):
    """Input failed validation."""
    status_code = 400


class ConflictError(MnemosyneError):
    """The entity already exists."""
    status_code = 409


class UpstreamError(MnemosyneError):
    """An embedding, language model or other upstream service call failed."""
    status_code = 502


class StoreError(MnemosyneError):
    """The graph or vector backend is unavailable or a query failed."""
    status_code = 503


class InternalError(MnemosyneError):
    """Anything unexpected."""
    status_code = 500
