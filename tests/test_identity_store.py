"""Tests for the identity store."""

import fcntl
import os
import stat

import pytest

from localpki.exceptions import (
    CertificateNotFound,
    DuplicateKeyConflict,
    InvalidInputError,
    StoreUnavailable,
)
from localpki.models.certificate import OpenMode, StoreName, StoreScope, Subject
from localpki.models.config import StoreLocationConfig
from localpki.services.identity_store import IdentityStore
from localpki.services.parser_service import CertificateParser


@pytest.mark.integration
class TestInstall:
    """Test installing certificates."""

    def test_install_root(self, identity_store, root_pair):
        """Test installing a root certificate without key material."""
        root_cert, _ = root_pair

        with identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            entry = handle.install(CertificateParser.to_pem(root_cert))

        assert entry.created is True
        assert entry.fingerprint == CertificateParser.compute_fingerprint(root_cert)
        assert entry.store_name == StoreName.ROOT_TRUST
        assert entry.subject == "CN=Test Root CA,O=Test Organization,C=US"
        assert entry.has_private_key is False
        assert (identity_store.location.store_path(StoreName.ROOT_TRUST) / entry.fingerprint / "cert.pem").exists()

    def test_install_is_idempotent(self, identity_store, root_pair):
        """Test installing the same bytes N times leaves exactly one entry."""
        root_cert, _ = root_pair
        pem = CertificateParser.to_pem(root_cert)

        with identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            first = handle.install(pem)
            repeats = [handle.install(pem) for _ in range(3)]
            entries = list(handle.list())

        assert len(entries) == 1
        assert all(entry.created is False for entry in repeats)
        assert {entry.fingerprint for entry in repeats} == {first.fingerprint}

    def test_fingerprint_stable_across_encodings(self, identity_store, root_pair):
        """Test PEM and DER installs of the same certificate share an entry."""
        root_cert, _ = root_pair

        with identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            from_pem = handle.install(CertificateParser.to_pem(root_cert))
            from_der = handle.install(CertificateParser.to_der(root_cert))
            found = handle.find_by_fingerprint(from_pem.fingerprint)

        assert from_pem.fingerprint == from_der.fingerprint
        assert found.certificate == root_cert

    def test_install_leaf_with_bundle(self, identity_store, leaf_pair, leaf_bundle, bundle_password):
        """Test a leaf installed with its bundle exposes an owner-only private key."""
        leaf_cert, leaf_key = leaf_pair

        with identity_store.open(StoreName.PERSONAL, OpenMode.READ_WRITE) as handle:
            entry = handle.install(CertificateParser.to_pem(leaf_cert), leaf_bundle, bundle_password)
            stored = handle.find_by_fingerprint(entry.fingerprint)

        assert entry.has_private_key is True
        assert CertificateParser.verify_key_pair(leaf_cert, stored.load_private_key())
        assert stat.S_IMODE(stored.key_path.stat().st_mode) == 0o600
        assert stat.S_IMODE(stored.path.stat().st_mode) == 0o700

        key, cert, _ = stored.load_bundle(bundle_password)
        assert cert == leaf_cert
        assert CertificateParser.verify_key_pair(leaf_cert, key)

    def test_bundle_issuers_are_kept(self, identity_store, leaf_pair, leaf_bundle, bundle_password, root_pair):
        """Test issuer certificates shipped in the bundle are stored with the entry."""
        with identity_store.open(StoreName.PERSONAL, OpenMode.READ_WRITE) as handle:
            handle.install(CertificateParser.to_pem(leaf_pair[0]), leaf_bundle, bundle_password)
            stored = handle.find_by_fingerprint(leaf_bundle.fingerprint)

        assert stored.load_chain() == [root_pair[0]]

    def test_reinstall_attaches_missing_key(self, identity_store, leaf_pair, leaf_bundle, bundle_password):
        """Test a later install with key material completes an entry installed without it."""
        leaf_cert, _ = leaf_pair
        pem = CertificateParser.to_pem(leaf_cert)

        with identity_store.open(StoreName.PERSONAL, OpenMode.READ_WRITE) as handle:
            handle.install(pem)
            entry = handle.install(pem, leaf_bundle.data, bundle_password)

        assert entry.created is False
        assert entry.has_private_key is True

    def test_bundle_without_password_fails(self, identity_store, leaf_pair, leaf_bundle):
        """Test a bundle cannot be installed without its password."""
        leaf_cert, _ = leaf_pair

        with identity_store.open(StoreName.PERSONAL, OpenMode.READ_WRITE) as handle:
            with pytest.raises(InvalidInputError, match="password is required"):
                handle.install(CertificateParser.to_pem(leaf_cert), leaf_bundle)
            assert list(handle.list()) == []

    def test_bundle_for_other_certificate_fails(self, identity_store, root_pair, leaf_bundle, bundle_password):
        """Test the bundle must belong to the certificate being installed."""
        root_cert, _ = root_pair

        with identity_store.open(StoreName.PERSONAL, OpenMode.READ_WRITE) as handle:
            with pytest.raises(InvalidInputError, match="different certificate"):
                handle.install(CertificateParser.to_pem(root_cert), leaf_bundle, bundle_password)

    def test_garbage_certificate_fails(self, identity_store):
        """Test malformed certificate bytes are rejected."""
        with identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            with pytest.raises(InvalidInputError, match="Failed to parse"):
                handle.install(b"not a certificate")

    def test_conflicting_entry_raises(self, identity_store, root_pair, impostor_root_pair):
        """Test different bytes stored under an existing fingerprint are a conflict."""
        root_cert, _ = root_pair
        impostor_cert, _ = impostor_root_pair
        fingerprint = CertificateParser.compute_fingerprint(root_cert)

        with identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            handle.install(CertificateParser.to_pem(root_cert))
            # Corrupt the entry so its content no longer matches its key
            (handle.path / fingerprint / "cert.pem").write_bytes(CertificateParser.to_pem(impostor_cert))

            with pytest.raises(DuplicateKeyConflict) as exc_info:
                handle.install(CertificateParser.to_pem(root_cert))

        assert exc_info.value.fingerprint == fingerprint
        assert exc_info.value.store == "root-trust"

    def test_no_temporary_directories_left(self, identity_store, root_pair):
        """Test the staging directory is renamed into place."""
        root_cert, _ = root_pair

        with identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            handle.install(CertificateParser.to_pem(root_cert))
            leftovers = [p for p in handle.path.iterdir() if ".tmp-" in p.name]

        assert leftovers == []


@pytest.mark.integration
class TestRemoval:
    """Test removing certificates."""

    def test_remove_by_subject_keeps_exempt_fingerprint(self, identity_store, root_pair, impostor_root_pair):
        """Test same-subject roots are removed except the one being kept."""
        root_cert, _ = root_pair
        impostor_cert, _ = impostor_root_pair
        keep = CertificateParser.compute_fingerprint(root_cert)

        with identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            handle.install(CertificateParser.to_pem(impostor_cert))
            handle.install(CertificateParser.to_pem(root_cert))

            removed = handle.remove_by_subject_pattern("CN=Test Root CA,O=Test Organization,C=US", keep=keep)
            remaining = [stored.fingerprint for stored in handle.list()]

        assert removed == 1
        assert remaining == [keep]

    def test_remove_by_subject_glob(self, identity_store, root_pair, impostor_root_pair):
        """Test wildcard subject patterns."""
        with identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            handle.install(CertificateParser.to_pem(root_pair[0]))
            handle.install(CertificateParser.to_pem(impostor_root_pair[0]))

            assert handle.remove_by_subject_pattern("CN=Other*") == 0
            assert handle.remove_by_subject_pattern("CN=Test Root*") == 2
            assert list(handle.list()) == []

    def test_remove_by_exact_subject(self, identity_store, root_pair, impostor_root_pair, leaf_pair):
        """Test exact subject removal honours the kept fingerprints and ignores other subjects."""
        root_cert, _ = root_pair
        keep = CertificateParser.compute_fingerprint(root_cert)

        with identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            handle.install(CertificateParser.to_pem(root_cert))
            handle.install(CertificateParser.to_pem(impostor_root_pair[0]))

            assert handle.remove_by_subject(leaf_pair[0].subject) == 0
            assert handle.remove_by_subject(root_cert.subject, keep=[keep]) == 1
            assert [stored.fingerprint for stored in handle.list()] == [keep]

    def test_remove_by_subject_with_wildcard_characters(self, identity_store, generator):
        """Test a subject containing glob characters matches itself exactly."""
        root_cert, _ = generator.generate_root_certificate(Subject(common_name="Dev Root [lab]"))

        with identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            handle.install(CertificateParser.to_pem(root_cert))

            assert handle.remove_by_subject_pattern("CN=Dev Root [lab]") == 0
            assert handle.remove_by_subject(root_cert.subject) == 1
            assert list(handle.list()) == []

    def test_removed_entries_go_to_trash(self, identity_store, root_pair):
        """Test removal moves the entry to the store's trash."""
        with identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            entry = handle.install(CertificateParser.to_pem(root_pair[0]))

            assert handle.remove_by_fingerprint(entry.fingerprint) is True
            assert handle.remove_by_fingerprint(entry.fingerprint) is False
            trashed = list((handle.path / "_trash").iterdir())

        assert len(trashed) == 1
        assert trashed[0].name.startswith(entry.fingerprint)


@pytest.mark.integration
class TestLookup:
    """Test finding and listing certificates."""

    def test_find_normalizes_fingerprint(self, identity_store, root_pair):
        """Test lookups accept colon-separated lower-case thumbprints."""
        with identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            entry = handle.install(CertificateParser.to_pem(root_pair[0]))

        pretty = ":".join(entry.fingerprint[i : i + 2] for i in range(0, 64, 2)).lower()
        with identity_store.open(StoreName.ROOT_TRUST) as handle:
            assert handle.find_by_fingerprint(pretty).fingerprint == entry.fingerprint
            assert handle.contains(pretty)

    def test_find_missing_raises(self, identity_store):
        """Test a missing fingerprint raises CertificateNotFound."""
        with identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            with pytest.raises(CertificateNotFound):
                handle.find_by_fingerprint("A" * 64)

    def test_malformed_fingerprint_raises(self, identity_store):
        """Test a selector that is not a SHA-256 thumbprint is invalid input."""
        with identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            with pytest.raises(InvalidInputError):
                handle.find_by_fingerprint("not-a-thumbprint")

    def test_list_is_restartable(self, identity_store, root_pair, impostor_root_pair):
        """Test the listing can be iterated repeatedly and reflects new entries."""
        with identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            handle.install(CertificateParser.to_pem(root_pair[0]))
            listing = handle.list()

            first = [stored.fingerprint for stored in listing]
            second = [stored.fingerprint for stored in listing]
            handle.install(CertificateParser.to_pem(impostor_root_pair[0]))
            third = [stored.fingerprint for stored in listing]

        assert first == second
        assert len(third) == 2

    def test_list_filters_by_subject(self, identity_store, root_pair, leaf_pair):
        """Test subject filtering in listings."""
        with identity_store.open(StoreName.PERSONAL, OpenMode.READ_WRITE) as handle:
            handle.install(CertificateParser.to_pem(root_pair[0]))
            handle.install(CertificateParser.to_pem(leaf_pair[0]))

            leaves = list(handle.list("CN=localhost*"))

        assert [stored.entry.subject for stored in leaves] == ["CN=localhost,O=Test Organization"]

    def test_scopes_are_isolated(self, tmp_path, root_pair):
        """Test the same store name in different scopes holds different entries."""
        user = IdentityStore(StoreLocationConfig(root=tmp_path, scope=StoreScope.CURRENT_USER))
        machine = IdentityStore(StoreLocationConfig(root=tmp_path, scope=StoreScope.LOCAL_MACHINE))

        with user.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            handle.install(CertificateParser.to_pem(root_pair[0]))
        with machine.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            assert list(handle.list()) == []


@pytest.mark.integration
class TestHandles:
    """Test handle lifecycle and locking."""

    def test_read_only_missing_store_unavailable(self, identity_store):
        """Test opening a store that was never created read-only fails."""
        with pytest.raises(StoreUnavailable, match="does not exist"):
            identity_store.open(StoreName.ROOT_TRUST)

    def test_read_only_handle_rejects_writes(self, identity_store, root_pair):
        """Test writes need a read-write handle."""
        identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE).close()

        with identity_store.open(StoreName.ROOT_TRUST) as handle:
            with pytest.raises(InvalidInputError, match="read-only"):
                handle.install(CertificateParser.to_pem(root_pair[0]))

    def test_closed_handle_unavailable(self, identity_store):
        """Test a closed handle cannot be used."""
        with identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            pass

        assert handle.closed
        with pytest.raises(StoreUnavailable, match="closed"):
            handle.list()

    def test_unwritable_store_unavailable(self, tmp_path):
        """Test a store root that cannot be created is reported as unavailable."""
        blocker = tmp_path / "blocker"
        blocker.write_text("a file where a directory should be")
        store = IdentityStore(StoreLocationConfig(root=blocker))

        with pytest.raises(StoreUnavailable):
            store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE)

    def test_transaction_holds_exclusive_lock(self, identity_store):
        """Test the lock file is exclusively locked during a transaction and released after."""
        with identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            lock_path = handle.path / ".lock"
            with handle.transaction():
                with handle.transaction():
                    fd = os.open(lock_path, os.O_RDWR)
                    try:
                        with pytest.raises(BlockingIOError):
                            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    finally:
                        os.close(fd)

            fd = os.open(lock_path, os.O_RDWR)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    def test_lock_released_on_error(self, identity_store):
        """Test an exception inside a transaction releases the lock."""
        with identity_store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as handle:
            with pytest.raises(RuntimeError):
                with handle.transaction():
                    raise RuntimeError("boom")

            assert handle._lock_fd is None
            assert handle._lock_depth == 0
