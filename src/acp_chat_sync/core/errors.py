from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by the session sync core."""


class PreconditionError(SyncError):
    """A local precondition failed before any side effect took place."""


class ProtocolError(SyncError):
    """An inbound event or decision was rejected; existing state is untouched."""


class TransportError(SyncError):
    """The collaborator transport failed; the operation can be retried."""


class NoActiveSession(PreconditionError):
    """Raised when a response is composed without a session identifier."""


class NoCredentials(PreconditionError):
    """Raised when the active session cannot provide an auth token."""


class UnsupportedPlatform(PreconditionError):
    """Raised when uploads are not available in the current runtime."""


class InvalidImage(PreconditionError):
    """Raised when a local image fails pre-flight validation."""


class UnsupportedMediaType(InvalidImage):
    pass


class ImageTooLarge(InvalidImage):
    pass


class UploadAlreadyInProgress(PreconditionError):
    pass


class InvalidDecisionShape(PreconditionError):
    """Raised when a permission decision carries fields it must not carry."""


class InvalidSelection(PreconditionError):
    """Raised for out-of-range indices or a selection mode mismatch."""


class OutOfOrderEvent(ProtocolError):
    pass


class StalePermissionDecision(ProtocolError):
    pass


class ToolAlreadyResolved(ProtocolError):
    pass


class MalformedEvent(ProtocolError):
    pass


class DuplicateMessage(ProtocolError):
    pass


class UnknownMessage(ProtocolError):
    pass


class UploadFailed(TransportError):
    pass


class SendFailed(TransportError):
    pass
