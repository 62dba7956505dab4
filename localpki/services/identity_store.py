"""Filesystem-backed certificate store keyed by fingerprint."""

import fcntl
import logging
import os
import shutil
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from localpki.exceptions import (
    CertificateNotFound,
    DuplicateKeyConflict,
    InvalidInputError,
    PKIError,
    StoreUnavailable,
)
from localpki.models.certificate import EncryptedPrivateKeyBundle, InstalledEntry, OpenMode, StoreName
from localpki.models.config import StoreLocationConfig
from localpki.services.key_material import KeyMaterialGenerator
from localpki.services.parser_service import CertificateParser
from localpki.services.yaml_service import YAMLService
from localpki.utils.file_utils import PRIVATE_DIR_MODE, PUBLIC_FILE_MODE, SECRET_FILE_MODE, FileUtils
from localpki.utils.validators import normalize_fingerprint, subject_matches

logger = logging.getLogger("localpki")

CERT_FILE = "cert.pem"
KEY_FILE = "key.pem"
BUNDLE_FILE = "bundle.p12"
CHAIN_FILE = "chain.pem"
METADATA_FILE = "entry.yaml"
LOCK_FILE = ".lock"


@dataclass(frozen=True)
class StoredCertificate:
    """A certificate read back from the store, with access to its key material."""

    certificate: x509.Certificate
    entry: InstalledEntry
    path: Path

    @property
    def fingerprint(self) -> str:
        return self.entry.fingerprint

    @property
    def cert_path(self) -> Path:
        return self.path / CERT_FILE

    @property
    def key_path(self) -> Path:
        return self.path / KEY_FILE

    def load_private_key(self):
        """
        Load the entry's private key.

        Raises:
            InvalidInputError: If the entry was installed without key material
        """
        if not self.key_path.exists():
            raise InvalidInputError(
                "Certificate entry has no private key",
                store=self.entry.store_name.value,
                fingerprint=self.fingerprint,
            )
        return serialization.load_pem_private_key(FileUtils.read_binary_file(self.key_path), password=None)

    def load_chain(self) -> list[x509.Certificate]:
        """Return the issuer certificates that arrived in the entry's bundle."""
        chain_path = self.path / CHAIN_FILE
        if not chain_path.exists():
            return []
        return [
            CertificateParser.load_certificate(block)
            for block in CertificateParser.split_pem_bundle(FileUtils.read_binary_file(chain_path))
        ]

    def load_bundle(self, password: str):
        """
        Decrypt the PKCS#12 bundle the entry was installed with.

        Returns:
            Tuple of (private key, certificate, additional certificates)
        """
        bundle_path = self.path / BUNDLE_FILE
        if not bundle_path.exists():
            raise InvalidInputError(
                "Certificate entry has no bundle",
                store=self.entry.store_name.value,
                fingerprint=self.fingerprint,
            )
        return KeyMaterialGenerator.load_bundle(FileUtils.read_binary_file(bundle_path), password)


class StoreListing:
    """Lazy, finite and restartable view over a store's entries."""

    def __init__(self, handle: "StoreHandle", subject_pattern: Optional[str] = None):
        self._handle = handle
        self._subject_pattern = subject_pattern

    def __iter__(self) -> Iterator[StoredCertificate]:
        # Every iteration re-reads the directory, so the view reflects current state
        for entry_dir in FileUtils.list_directories(self._handle.path):
            stored = self._handle._load_entry(entry_dir, missing_ok=True)
            if stored is None:
                continue
            if self._subject_pattern and not subject_matches(stored.entry.subject, self._subject_pattern):
                continue
            yield stored


class StoreHandle:
    """
    Scoped access to one logical store.

    Use as a context manager so the handle is released on every exit path.
    Writes run inside an exclusive ``flock`` on the store's lock file; readers
    take no lock and rely on entries appearing via atomic directory renames.
    """

    def __init__(self, store_name: StoreName, location: StoreLocationConfig, mode: OpenMode, path: Path):
        self.store_name = store_name
        self.location = location
        self.mode = mode
        self.path = path
        self.closed = False
        self._lock_fd: Optional[int] = None
        self._lock_depth = 0

    def __enter__(self) -> "StoreHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else self.mode.value
        return f"<StoreHandle {self.location.scope.value}/{self.store_name.value} ({state})>"

    def close(self) -> None:
        """Release the handle (and the lock, if a transaction was left open)."""
        if self._lock_fd is not None:
            self._release_lock()
        self.closed = True

    @contextmanager
    def transaction(self) -> Iterator["StoreHandle"]:
        """
        Hold the store's exclusive lock for a group of writes.

        Re-entrant: nested transactions share the outer lock.
        """
        self._ensure_writable()
        if self._lock_depth == 0:
            self._acquire_lock()
        self._lock_depth += 1
        try:
            yield self
        finally:
            self._lock_depth -= 1
            if self._lock_depth == 0:
                self._release_lock()

    def install(
        self,
        certificate_bytes: bytes,
        bundle: Union[EncryptedPrivateKeyBundle, bytes, None] = None,
        password: Optional[str] = None,
    ) -> InstalledEntry:
        """
        Install a certificate (and optionally its key bundle), keyed by fingerprint.

        Installing byte-identical material again leaves a single entry and
        returns it with ``created=False``. A key supplied for an entry that was
        installed without one is attached to it.

        Args:
            certificate_bytes: Certificate in PEM or DER form
            bundle: PKCS#12 bundle holding the matching private key
            password: Bundle password (required with a bundle)

        Returns:
            The installed entry

        Raises:
            InvalidInputError: If the certificate or bundle is malformed or mismatched
            DuplicateKeyConflict: If a different certificate is stored under the same fingerprint
            StoreUnavailable: If the store cannot be written
        """
        self._ensure_writable()

        certificate = CertificateParser.load_certificate(certificate_bytes)
        fingerprint = CertificateParser.compute_fingerprint(certificate)
        key_material = self._prepare_key_material(certificate, fingerprint, bundle, password)

        entry_dir = self.path / fingerprint
        try:
            with self.transaction():
                if entry_dir.exists():
                    return self._reinstall(entry_dir, certificate, fingerprint, key_material)
                return self._write_new_entry(entry_dir, certificate, fingerprint, key_material)
        except PKIError:
            raise
        except OSError as e:
            logger.error(f"Failed to install {fingerprint} into {self.path}: {e}")
            raise StoreUnavailable(
                f"Cannot write to store at {self.path}: {e}",
                store=self.store_name.value,
                fingerprint=fingerprint,
                stage="install",
            ) from e

    def remove_by_subject_pattern(self, pattern: str, keep: Optional[str] = None) -> int:
        """
        Remove every entry whose subject matches the pattern.

        Removed entries are moved to the store's ``_trash`` folder.

        Args:
            pattern: RFC 4514 subject; glob wildcards are honoured
            keep: Fingerprint exempt from removal (e.g. the root about to be installed)

        Returns:
            Number of entries removed
        """
        self._ensure_writable()
        removed = self._remove_entries(StoreListing(self, pattern), [keep] if keep else [])
        if removed:
            logger.warning(f"Removed {removed} certificate(s) matching '{pattern}' from {self.store_name.value} store")
        return removed

    def remove_by_subject(self, subject: x509.Name, keep: Iterable[str] = ()) -> int:
        """
        Remove every entry whose subject equals ``subject``.

        Names are compared as decoded X.509 names, so wildcard characters
        inside an RDN value carry no special meaning.

        Args:
            subject: Subject to remove
            keep: Fingerprints exempt from removal

        Returns:
            Number of entries removed
        """
        self._ensure_writable()
        with self.transaction():
            matching = [stored for stored in StoreListing(self) if stored.certificate.subject == subject]
            removed = self._remove_entries(matching, keep)
        if removed:
            logger.warning(
                f"Removed {removed} certificate(s) with subject "
                f"'{CertificateParser.subject_string(subject)}' from {self.store_name.value} store"
            )
        return removed

    def remove_by_fingerprint(self, fingerprint: str) -> bool:
        """
        Remove one entry.

        Returns:
            True if an entry was removed, False if none existed
        """
        self._ensure_writable()
        fingerprint = normalize_fingerprint(fingerprint)

        with self.transaction():
            entry_dir = self.path / fingerprint
            if not entry_dir.exists():
                return False
            FileUtils.move_to_trash(entry_dir)

        logger.info(f"Removed {fingerprint} from {self.store_name.value} store")
        return True

    def find_by_fingerprint(self, fingerprint: str) -> StoredCertificate:
        """
        Look up an entry by exact fingerprint.

        Raises:
            CertificateNotFound: If no such entry exists
        """
        self._ensure_open()
        fingerprint = normalize_fingerprint(fingerprint)

        stored = self._load_entry(self.path / fingerprint, missing_ok=True)
        if stored is None:
            raise CertificateNotFound(
                f"Certificate not found in {self.store_name.value} store",
                store=self.store_name.value,
                fingerprint=fingerprint,
            )
        return stored

    def contains(self, fingerprint: str) -> bool:
        self._ensure_open()
        return (self.path / normalize_fingerprint(fingerprint) / CERT_FILE).exists()

    def list(self, subject_pattern: Optional[str] = None) -> StoreListing:
        """Return a lazy, restartable view of the entries, optionally filtered by subject."""
        self._ensure_open()
        return StoreListing(self, subject_pattern)

    def _remove_entries(self, entries: Iterable[StoredCertificate], keep: Iterable[str]) -> int:
        keep = {normalize_fingerprint(fingerprint) for fingerprint in keep}
        removed = 0
        with self.transaction():
            for stored in entries:
                if stored.fingerprint in keep:
                    continue
                FileUtils.move_to_trash(stored.path)
                removed += 1
                logger.info(
                    f"Removed {stored.entry.subject} ({stored.fingerprint}) from {self.store_name.value} store"
                )
        return removed

    def _prepare_key_material(self, certificate, fingerprint, bundle, password) -> Optional[tuple[bytes, bytes, bytes]]:
        if bundle is None:
            return None

        data = bundle.data if isinstance(bundle, EncryptedPrivateKeyBundle) else bundle
        if not password:
            raise InvalidInputError(
                "A password is required to install a key bundle", store=self.store_name.value, fingerprint=fingerprint
            )

        private_key, bundle_cert, additional = KeyMaterialGenerator.load_bundle(data, password)
        if CertificateParser.compute_fingerprint(bundle_cert) != fingerprint:
            raise InvalidInputError(
                "Key bundle belongs to a different certificate", store=self.store_name.value, fingerprint=fingerprint
            )
        if not CertificateParser.verify_key_pair(certificate, private_key):
            raise InvalidInputError(
                "Private key in bundle does not match the certificate",
                store=self.store_name.value,
                fingerprint=fingerprint,
            )
        chain_pem = b"".join(CertificateParser.to_pem(cert) for cert in additional)
        return data, KeyMaterialGenerator.private_key_to_pem(private_key), chain_pem

    def _write_new_entry(self, entry_dir: Path, certificate, fingerprint: str, key_material) -> InstalledEntry:
        tmp_dir = self.path / f".{fingerprint}.tmp-{uuid.uuid4().hex[:8]}"
        FileUtils.ensure_directory(tmp_dir, mode=PRIVATE_DIR_MODE)
        try:
            FileUtils.write_file(tmp_dir / CERT_FILE, CertificateParser.to_pem(certificate), mode=PUBLIC_FILE_MODE)
            if key_material:
                bundle_data, key_pem, chain_pem = key_material
                FileUtils.write_secure_file(tmp_dir / BUNDLE_FILE, bundle_data)
                FileUtils.write_secure_file(tmp_dir / KEY_FILE, key_pem)
                if chain_pem:
                    FileUtils.write_file(tmp_dir / CHAIN_FILE, chain_pem, mode=PUBLIC_FILE_MODE)

            entry = self._build_entry(entry_dir, certificate, fingerprint, key_material is not None, created=True)
            self._write_metadata(tmp_dir, entry)
            os.rename(tmp_dir, entry_dir)
        except BaseException:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise

        logger.info(
            f"Installed {entry.subject} ({fingerprint}) into {self.location.scope.value}/{self.store_name.value}"
            + (" with private key" if entry.has_private_key else "")
        )
        return entry

    def _reinstall(self, entry_dir: Path, certificate, fingerprint: str, key_material) -> InstalledEntry:
        existing = self._load_entry(entry_dir)
        if CertificateParser.to_der(existing.certificate) != CertificateParser.to_der(certificate):
            raise DuplicateKeyConflict(
                "A different certificate is already stored under this fingerprint",
                store=self.store_name.value,
                fingerprint=fingerprint,
                stage="install",
            )

        entry = existing.entry
        if key_material and not entry.has_private_key:
            bundle_data, key_pem, chain_pem = key_material
            FileUtils.atomic_write(entry_dir / BUNDLE_FILE, bundle_data, mode=SECRET_FILE_MODE)
            FileUtils.atomic_write(entry_dir / KEY_FILE, key_pem, mode=SECRET_FILE_MODE)
            if chain_pem:
                FileUtils.atomic_write(entry_dir / CHAIN_FILE, chain_pem, mode=PUBLIC_FILE_MODE)
            entry = entry.model_copy(update={"has_private_key": True})
            self._write_metadata(entry_dir, entry, atomic=True)
            logger.info(f"Attached private key to existing entry {fingerprint} in {self.store_name.value} store")
        else:
            logger.info(f"Certificate {fingerprint} already present in {self.store_name.value} store")

        return entry.model_copy(update={"created": False})

    def _load_entry(self, entry_dir: Path, missing_ok: bool = False) -> Optional[StoredCertificate]:
        cert_path = entry_dir / CERT_FILE
        try:
            certificate = CertificateParser.load_certificate(FileUtils.read_binary_file(cert_path))
        except FileNotFoundError:
            if missing_ok:
                return None
            raise
        except InvalidInputError as e:
            logger.warning(f"Skipping unreadable store entry {entry_dir}: {e}")
            if missing_ok:
                return None
            raise

        fingerprint = CertificateParser.compute_fingerprint(certificate)
        metadata_path = entry_dir / METADATA_FILE
        metadata = YAMLService.load_entry_yaml(metadata_path) if metadata_path.exists() else {}

        entry = self._build_entry(
            entry_dir,
            certificate,
            fingerprint,
            has_private_key=(entry_dir / KEY_FILE).exists(),
            created=False,
            installed_at=metadata.get("installed_at"),
        )
        return StoredCertificate(certificate=certificate, entry=entry, path=entry_dir)

    def _build_entry(
        self,
        entry_dir: Path,
        certificate,
        fingerprint: str,
        has_private_key: bool,
        created: bool,
        installed_at: Optional[datetime] = None,
    ) -> InstalledEntry:
        return InstalledEntry(
            store_name=self.store_name,
            store_scope=self.location.scope,
            fingerprint=fingerprint,
            path=str(entry_dir),
            subject=CertificateParser.subject_string(certificate.subject),
            issuer=CertificateParser.subject_string(certificate.issuer),
            serial_number=format(certificate.serial_number, "X"),
            not_before=certificate.not_valid_before_utc,
            not_after=certificate.not_valid_after_utc,
            has_private_key=has_private_key,
            installed_at=installed_at or datetime.now(),
            created=created,
        )

    @staticmethod
    def _write_metadata(entry_dir: Path, entry: InstalledEntry, atomic: bool = False) -> None:
        content = YAMLService.dump_yaml(entry.model_dump(exclude={"path", "created"}))
        if atomic:
            FileUtils.atomic_write(entry_dir / METADATA_FILE, content)
        else:
            FileUtils.write_file(entry_dir / METADATA_FILE, content)

    def _ensure_open(self) -> None:
        if self.closed:
            raise StoreUnavailable(f"Store handle for {self.path} is closed", store=self.store_name.value)

    def _ensure_writable(self) -> None:
        self._ensure_open()
        if self.mode != OpenMode.READ_WRITE:
            raise InvalidInputError(f"Store {self.store_name.value} was opened read-only", store=self.store_name.value)

    def _acquire_lock(self) -> None:
        lock_path = self.path / LOCK_FILE
        try:
            self._lock_fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, SECRET_FILE_MODE)
            fcntl.flock(self._lock_fd, fcntl.LOCK_EX)
        except OSError as e:
            if self._lock_fd is not None:
                os.close(self._lock_fd)
                self._lock_fd = None
            raise StoreUnavailable(f"Cannot lock store at {lock_path}: {e}", store=self.store_name.value) from e
        logger.debug(f"Acquired store lock {lock_path}")

    def _release_lock(self) -> None:
        try:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        finally:
            os.close(self._lock_fd)
            self._lock_fd = None
            self._lock_depth = 0
        logger.debug(f"Released store lock for {self.path}")


class IdentityStore:
    """Opens handles on the logical stores below a configured location."""

    def __init__(self, location: StoreLocationConfig):
        """
        Initialize identity store.

        Args:
            location: Store root and scope, resolved once at process start
        """
        self.location = location

    def open(self, store_name: StoreName, mode: OpenMode = OpenMode.READ_ONLY) -> StoreHandle:
        """
        Open a logical store.

        Read-write handles create the backing directory if needed; read-only
        handles require it to exist.

        Args:
            store_name: Logical store
            mode: Access mode

        Returns:
            Store handle (use as a context manager)

        Raises:
            StoreUnavailable: If the backing path is missing or not writable
        """
        path = self.location.store_path(store_name)

        if mode == OpenMode.READ_WRITE:
            try:
                FileUtils.ensure_directory(path, mode=PRIVATE_DIR_MODE)
            except OSError as e:
                raise StoreUnavailable(f"Cannot create store directory {path}: {e}", store=store_name.value) from e
            if not os.access(path, os.W_OK | os.X_OK):
                raise StoreUnavailable(f"Store directory is not writable: {path}", store=store_name.value)
        elif not path.is_dir():
            raise StoreUnavailable(f"Store directory does not exist: {path}", store=store_name.value)

        logger.debug(f"Opened {store_name.value} store at {path} ({mode.value})")
        return StoreHandle(store_name, self.location, mode, path)
