from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import PublishResult


class SplitNoteError(RuntimeError):
    pass


class UnsupportedCurrency(SplitNoteError):
    pass


class AllRateSourcesUnavailable(SplitNoteError):
    def __init__(self, message: str, last_error: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.last_error = last_error


class DecryptionFailed(SplitNoteError):
    """Wrong password or tampered ciphertext; the two are not distinguished."""


InvalidPassword = DecryptionFailed


class InvalidSplit(SplitNoteError):
    pass


class InvalidPublicKey(SplitNoteError):
    pass


class RequestNotFound(SplitNoteError):
    pass


class RequestNotPublished(SplitNoteError):
    pass


class ParticipantNotFound(SplitNoteError):
    pass


class KeyNotFound(SplitNoteError):
    pass


class RelayTimeout(SplitNoteError):
    pass


class NoRelaysAccepted(SplitNoteError):
    def __init__(self, message: str, result: "Optional[PublishResult]" = None) -> None:
        super().__init__(message)
        self.result = result
