"""Chain validation result models."""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Optional, Tuple

from cryptography import x509
from pydantic import BaseModel, Field

from localpki.exceptions import ChainValidationFailure
from localpki.models.certificate import CertificateInfo


class ChainStatus(str, Enum):
    """Status codes reported by the chain validator."""

    VALID = "Valid"
    UNTRUSTED_ROOT = "UntrustedRoot"
    EXPIRED = "Expired"
    NOT_YET_VALID = "NotYetValid"
    SIGNATURE_MISMATCH = "SignatureMismatch"
    ROOT_NOT_FOUND = "RootNotFound"


# Structural defects: the walk could not reach a well-formed terminal
HARD_FAILURES = frozenset({ChainStatus.SIGNATURE_MISMATCH, ChainStatus.ROOT_NOT_FOUND})

ACCEPTABLE = frozenset({ChainStatus.VALID, ChainStatus.UNTRUSTED_ROOT})


@dataclass(frozen=True)
class ChainResult:
    """Outcome of a chain walk from leaf to root."""

    elements: Tuple[x509.Certificate, ...]
    status_codes: FrozenSet[ChainStatus]
    message: str = ""
    terminal_fingerprint: Optional[str] = field(default=None, compare=False)

    @property
    def valid(self) -> bool:
        return bool(self.status_codes) and self.status_codes <= ACCEPTABLE

    @property
    def is_trusted(self) -> bool:
        return self.status_codes == frozenset({ChainStatus.VALID})

    @property
    def only_untrusted_root(self) -> bool:
        return self.status_codes == frozenset({ChainStatus.UNTRUSTED_ROOT})

    @property
    def hard_failures(self) -> FrozenSet[ChainStatus]:
        return self.status_codes & HARD_FAILURES

    def raise_for_status(self, allow_untrusted_root: bool = False, **context) -> "ChainResult":
        """
        Raise ChainValidationFailure unless the chain is acceptable.

        Args:
            allow_untrusted_root: Treat a chain whose sole defect is an untrusted
                self-signed root as acceptable
            **context: store/fingerprint/stage forwarded to the exception

        Returns:
            The result itself, so calls can be chained

        Raises:
            ChainValidationFailure: If the chain is not acceptable
        """
        if self.is_trusted:
            return self
        if self.only_untrusted_root and allow_untrusted_root:
            return self

        codes = ", ".join(sorted(code.value for code in self.status_codes)) or "none"
        raise ChainValidationFailure(f"Chain validation failed: {codes}. {self.message}".strip(), self, **context)


class ChainSummary(BaseModel):
    """API representation of a chain result."""

    valid: bool
    trusted: bool
    status_codes: list[ChainStatus]
    message: str = ""
    elements: list[CertificateInfo] = Field(default_factory=list)
