"""Error taxonomy for the certificate lifecycle engine."""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from localpki.models.chain import ChainResult


class PKIError(Exception):
    """
    Base class for all lifecycle errors.

    Carries enough structured context (store, fingerprint, stage) for the
    top-level orchestration to decide between fatal and warning handling.
    """

    def __init__(
        self,
        message: str,
        store: Optional[str] = None,
        fingerprint: Optional[str] = None,
        stage: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.store = store
        self.fingerprint = fingerprint
        self.stage = stage

    def context(self) -> dict:
        """Return the structured context as a dictionary (None values dropped)."""
        data = {"store": self.store, "fingerprint": self.fingerprint, "stage": self.stage}
        return {key: value for key, value in data.items() if value is not None}

    def __str__(self) -> str:
        context = self.context()
        if not context:
            return self.message
        details = ", ".join(f"{key}={value}" for key, value in context.items())
        return f"{self.message} ({details})"


class GenerationError(PKIError):
    """RNG or signing primitive failed while producing key material."""


class InvalidInputError(PKIError, ValueError):
    """Malformed subject, SAN list, selector or a policy violation."""


class SigningError(PKIError):
    """Root key material is unusable for signing (mismatched, not a CA, expired)."""


class StoreUnavailable(PKIError):
    """Backing store path is missing, unwritable or the handle is closed."""


class DuplicateKeyConflict(PKIError):
    """An entry with the same fingerprint but different bytes already exists."""


class CertificateNotFound(PKIError):
    """No entry with the requested fingerprint exists in the store."""


class MissingCertificateFile(PKIError):
    """Install-only invocation referenced a bundle file that does not exist."""


class InvalidTransitionError(PKIError):
    """Lifecycle state machine was asked for a transition it does not allow."""


class ChainValidationFailure(PKIError):
    """
    Chain validation produced a defect.

    ``is_soft`` is True when the only defect is an untrusted self-signed root,
    the accepted development-CA case.
    """

    def __init__(self, message: str, result: "ChainResult", **context):
        super().__init__(message, **context)
        self.result = result

    @property
    def is_soft(self) -> bool:
        return self.result.only_untrusted_root
