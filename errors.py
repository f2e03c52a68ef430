from typing import Any, Dict, Optional


class ProvenanceError(Exception):
    category = "error"
    kind: str = "ProvenanceError"

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.context: Dict[str, Any] = context

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        cls.kind = cls.__name__

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"kind": self.kind, "category": self.category, "detail": self.message}
        if self.context:
            body["context"] = {k: str(v) for k, v in self.context.items()}
        return body


# ---------- validation ----------
class ValidationError(ProvenanceError):
    category = "validation"


class PayloadTooLarge(ValidationError):
    pass


# ---------- authorization ----------
class AuthorizationError(ProvenanceError):
    category = "authorization"


class Unauthorized(AuthorizationError):
    pass


class NotOwner(AuthorizationError):
    pass


class IneligibleTransfer(AuthorizationError):
    pass


# ---------- state ----------
class StateError(ProvenanceError):
    category = "state"


class AlreadyInitialized(StateError):
    pass


class TerminalState(StateError):
    pass


class NotInitialized(StateError):
    pass


class UnknownBatch(StateError):
    pass


class StaleRecord(StateError):
    """The ledger moved on between reconstruction and write."""


class InconsistentHistory(StateError):
    pass


# ---------- network ----------
class NetworkError(ProvenanceError):
    category = "network"


class LedgerUnavailable(NetworkError):
    pass


class ReconstructionUnavailable(NetworkError):
    pass


class GatewayTimeout(NetworkError):
    pass


class GatewayError(NetworkError):
    pass


class AllGatewaysFailed(NetworkError):
    def __init__(self, message: str = "", last_error: Optional[BaseException] = None, **context: Any):
        super().__init__(message, **context)
        self.last_error = last_error


class UploadFailed(NetworkError):
    pass


class UploadRejected(UploadFailed):
    pass


# ---------- ledger write rejections ----------
class LedgerRejected(ProvenanceError):
    category = "ledger"


class SignatureRejected(LedgerRejected):
    pass


class InsufficientFunds(LedgerRejected):
    pass


class TransactionReverted(LedgerRejected):
    pass


# revert reasons emitted by the on-chain contracts
_REVERT_REASONS = (
    ("Must be farmer", Unauthorized, "Only producers can perform this action"),
    ("Must be admin", Unauthorized, "Only administrators can perform this action"),
    ("Not token owner", NotOwner, "Caller is not the current owner"),
    ("Already initialized", AlreadyInitialized, "Provenance already initialized"),
    ("Invalid state transition", IneligibleTransfer, "Transition not allowed"),
    ("Token doesn't exist", UnknownBatch, "The requested batch does not exist"),
    ("Batch too large", ValidationError, "Batch quantity exceeds the configured maximum"),
    ("Must start with 'ipfs://'", ValidationError, "Metadata reference must be an ipfs:// URI"),
)


def map_ledger_error(error: BaseException) -> ProvenanceError:
    """Translate a ledger collaborator failure into the local taxonomy."""
    if isinstance(error, ProvenanceError):
        return error

    text = str(error)
    lowered = text.lower()
    code = getattr(error, "code", None)

    if code == 4001 or "user rejected" in lowered:
        return SignatureRejected("Transaction was rejected by the signer", reason=text)
    if "insufficient funds" in lowered:
        return InsufficientFunds("Insufficient funds to complete the transaction", reason=text)
    for needle, cls, message in _REVERT_REASONS:
        if needle.lower() in lowered:
            return cls(message, reason=text)
    if "revert" in lowered:
        return TransactionReverted(text)
    if isinstance(error, (ConnectionError, TimeoutError, OSError)) or "network" in lowered:
        return LedgerUnavailable(text or type(error).__name__)
    return TransactionReverted(text or type(error).__name__)
