"""Trust path building and classification."""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Set

from cryptography import x509

from localpki.models.chain import ChainResult, ChainStatus, ChainSummary
from localpki.services.identity_store import StoreHandle
from localpki.services.parser_service import CertificateParser
from localpki.utils.time_utils import as_utc

logger = logging.getLogger("localpki")

# Two-level chains only need two hops; the cap stops issuer loops
MAX_CHAIN_DEPTH = 8


class ChainValidator:
    """Builds the chain from a leaf to a self-signed root and classifies it."""

    def __init__(self, expiry_warning_days: int = 30):
        self.expiry_warning_days = expiry_warning_days

    def validate(
        self,
        leaf: x509.Certificate,
        root_handle: Optional[StoreHandle],
        now: Optional[datetime] = None,
        candidates: Iterable[x509.Certificate] = (),
    ) -> ChainResult:
        """
        Walk from the leaf towards a self-signed root.

        Issuers are looked up in the trusted-root store and in the optional
        candidate certificates (e.g. roots shipped inside a bundle). Only
        roots present in the trusted-root store make the chain ``VALID``.
        Time validity is checked for every element without stopping the walk.

        Args:
            leaf: Certificate to validate
            root_handle: Open handle on the trusted-root store, or None
            now: Reference time (defaults to the current UTC time)
            candidates: Extra, untrusted issuer candidates

        Returns:
            ChainResult with elements ordered leaf to root
        """
        now = as_utc(now)

        trusted: Set[str] = set()
        pool: dict[str, x509.Certificate] = {}
        if root_handle is not None:
            for stored in root_handle.list():
                trusted.add(stored.fingerprint)
                pool[stored.fingerprint] = stored.certificate
        for certificate in candidates:
            pool.setdefault(CertificateParser.compute_fingerprint(certificate), certificate)

        # Trusted issuers first, then by fingerprint, so the walk is deterministic
        ordered_pool = [pool[fp] for fp in sorted(pool, key=lambda fp: (fp not in trusted, fp))]

        elements: List[x509.Certificate] = [leaf]
        codes: Set[ChainStatus] = set()
        messages: List[str] = []
        seen = {CertificateParser.compute_fingerprint(leaf)}
        current = leaf
        terminal_trusted = False

        while True:
            self._check_time(current, now, codes, messages)
            name = CertificateParser.get_cn(current)

            if CertificateParser.is_self_signed(current):
                fingerprint = CertificateParser.compute_fingerprint(current)
                if not CertificateParser.verify_signature(current, current):
                    codes.add(ChainStatus.SIGNATURE_MISMATCH)
                    messages.append(f"Self-signature of '{name}' does not verify.")
                elif fingerprint in trusted:
                    terminal_trusted = True
                else:
                    codes.add(ChainStatus.UNTRUSTED_ROOT)
                    messages.append(f"Root '{name}' is not in the trusted-root store.")
                break

            if len(elements) >= MAX_CHAIN_DEPTH:
                codes.add(ChainStatus.ROOT_NOT_FOUND)
                messages.append(f"No self-signed root within {MAX_CHAIN_DEPTH} certificates.")
                break

            issuers = [
                c
                for c in ordered_pool
                if c.subject == current.issuer and CertificateParser.compute_fingerprint(c) not in seen
            ]
            if not issuers:
                codes.add(ChainStatus.ROOT_NOT_FOUND)
                messages.append(
                    f"Issuer '{CertificateParser.subject_string(current.issuer)}' of '{name}' was not found."
                )
                break

            issuer = next((c for c in issuers if CertificateParser.verify_signature(current, c)), None)
            if issuer is None:
                codes.add(ChainStatus.SIGNATURE_MISMATCH)
                messages.append(f"No issuer candidate verifies the signature of '{name}'.")
                break

            logger.debug(f"Chain step: '{name}' issued by '{CertificateParser.get_cn(issuer)}'")
            seen.add(CertificateParser.compute_fingerprint(issuer))
            elements.append(issuer)
            current = issuer

        if not codes and terminal_trusted:
            codes.add(ChainStatus.VALID)

        result = ChainResult(
            elements=tuple(elements),
            status_codes=frozenset(codes),
            message=" ".join(messages),
            terminal_fingerprint=CertificateParser.compute_fingerprint(current),
        )

        status = ", ".join(sorted(code.value for code in result.status_codes))
        if result.is_trusted:
            logger.info(f"Chain for '{CertificateParser.get_cn(leaf)}' is valid ({len(elements)} elements)")
        else:
            logger.warning(f"Chain for '{CertificateParser.get_cn(leaf)}': {status}. {result.message}")
        return result

    def summarize(self, result: ChainResult) -> ChainSummary:
        """Convert a chain result into its API representation."""
        return ChainSummary(
            valid=result.valid,
            trusted=result.is_trusted,
            status_codes=sorted(result.status_codes, key=lambda code: code.value),
            message=result.message,
            elements=[CertificateParser.describe(cert, self.expiry_warning_days) for cert in result.elements],
        )

    @staticmethod
    def _check_time(cert: x509.Certificate, now: datetime, codes: Set[ChainStatus], messages: List[str]) -> None:
        name = CertificateParser.get_cn(cert)
        if now < cert.not_valid_before_utc:
            codes.add(ChainStatus.NOT_YET_VALID)
            messages.append(f"'{name}' is not valid before {cert.not_valid_before_utc:%Y-%m-%d %H:%M} UTC.")
        elif now > cert.not_valid_after_utc:
            codes.add(ChainStatus.EXPIRED)
            messages.append(f"'{name}' expired on {cert.not_valid_after_utc:%Y-%m-%d %H:%M} UTC.")
