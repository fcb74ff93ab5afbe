"""
Exceptions shared by the board services, the sync engine and the HTTP API.

Hierarchy:
- TabletopError
  - AuthorizationDenied (caller holds no valid token for the piece)
  - NotFound (board, piece, snapshot or asset absent)
  - InvalidPayload (client sent something we cannot interpret)
  - TransientStoreFailure (state store read/write failed)
"""


class TabletopError(Exception):
    """Base exception for board sync errors."""
    retryable: bool = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__


class AuthorizationDenied(TabletopError):
    retryable = False


class NotFound(TabletopError):
    retryable = False


class InvalidPayload(TabletopError):
    retryable = False


class TransientStoreFailure(TabletopError):
    # the client may re-issue the action; nothing retries automatically
    retryable = True
