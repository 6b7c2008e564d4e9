# certregistry/errors.py


class RegistryError(Exception):
    """Base class for every registry failure. `kind` is stable across adapters."""

    kind = "RegistryError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind


class InvalidFingerprint(RegistryError):
    kind = "InvalidFingerprint"


class EmptyLabel(RegistryError):
    kind = "EmptyLabel"


class LabelTooLong(RegistryError):
    kind = "LabelTooLong"


class AlreadyExists(RegistryError):
    kind = "AlreadyExists"


class NotFound(RegistryError):
    kind = "NotFound"


class InvalidStatus(RegistryError):
    kind = "InvalidStatus"


class StatusUnchanged(RegistryError):
    kind = "StatusUnchanged"


class Unauthorized(RegistryError):
    kind = "Unauthorized"


class TransitionRejected(RegistryError):
    """Ledger-level failure that is none of the above (reverted tx, out of gas, RPC down)."""

    kind = "TransitionRejected"
