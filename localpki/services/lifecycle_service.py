"""Certificate lifecycle orchestration."""

import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from cryptography import x509

from localpki.exceptions import (
    CertificateNotFound,
    InvalidInputError,
    MissingCertificateFile,
    PKIError,
    StoreUnavailable,
)
from localpki.models.certificate import OpenMode, StoreName
from localpki.models.chain import ChainResult
from localpki.models.config import AppConfig
from localpki.models.lifecycle import (
    InstallRequest,
    LifecycleResult,
    LifecycleState,
    LifecycleTracker,
    SetupRequest,
)
from localpki.services.chain_validator import ChainValidator
from localpki.services.identity_store import IdentityStore
from localpki.services.key_material import KeyMaterialGenerator
from localpki.services.parser_service import CertificateParser
from localpki.utils.file_utils import PRIVATE_DIR_MODE, PUBLIC_FILE_MODE, SECRET_FILE_MODE, FileUtils
from localpki.utils.validators import normalize_fingerprint

logger = logging.getLogger("localpki")

ROOT_CERT_FILE = Path("roots") / "root-ca.crt"
ROOT_KEY_FILE = Path("private") / "root-ca.key"
LEAF_CERT_FILE = Path("leaf") / "server.crt"
LEAF_KEY_FILE = Path("private") / "server.key"
PASSWORD_FILE = Path("private") / "bundle-password.txt"
BUNDLES_DIR = Path("bundles")
BUNDLE_EXTENSIONS = (".pfx", ".p12")


class CertificateLifecycleManager:
    """Drives generation, store installation, fingerprint recording and validation."""

    def __init__(
        self,
        config: AppConfig,
        store: Optional[IdentityStore] = None,
        generator: Optional[KeyMaterialGenerator] = None,
        validator: Optional[ChainValidator] = None,
    ):
        """
        Initialize lifecycle manager.

        Args:
            config: Application configuration
            store: Identity store (defaults to the configured location)
            generator: Key material generator
            validator: Chain validator
        """
        self.config = config
        self.store = store or IdentityStore(config.store_location())
        self.generator = generator or KeyMaterialGenerator(config.security.min_password_length)
        self.validator = validator or ChainValidator(config.security.expiry_warning_days)

    def full_setup(self, request: SetupRequest) -> LifecycleResult:
        """
        Generate root and leaf, install both and validate the chain.

        With ``force=False`` a run whose recorded fingerprint still names a
        valid installed leaf returns ``already_satisfied`` and writes nothing.

        Args:
            request: Setup parameters

        Returns:
            Lifecycle result

        Raises:
            PKIError: On any failure; the exception carries store/fingerprint/stage
        """
        tracker = LifecycleTracker("full-setup")
        output_dir = Path(request.output_dir or self.config.paths.output_dir).expanduser()
        reference_path = self._reference_path()

        if not request.force:
            existing = self._check_existing_setup(output_dir, reference_path)
            if existing is not None:
                fingerprint, chain = existing
                tracker.advance(LifecycleState.VALIDATED)
                tracker.advance(LifecycleState.COMPLETE)
                logger.info(f"Setup already satisfied by installed leaf {fingerprint}")
                return LifecycleResult(
                    states=tracker.history,
                    fingerprint=fingerprint,
                    root_fingerprints=[chain.terminal_fingerprint] if chain.terminal_fingerprint else [],
                    already_satisfied=True,
                    chain=self.validator.summarize(chain),
                )

        # Resolve inputs before generating anything
        root_defaults = self.config.defaults["root"]
        leaf_defaults = self.config.defaults["leaf"]
        root_subject = request.root_subject or self.config.subjects.root
        leaf_subject = request.leaf_subject or self.config.subjects.leaf
        sans = request.sans if request.sans is not None else self.config.subjects.sans
        cleanup = request.cleanup if request.cleanup is not None else self.config.store.cleanup_before_install
        password = request.password.get_secret_value() if request.password else self.generator.generate_password()
        self.generator.check_password(password)

        try:
            root_cert, root_key = self.generator.generate_root_certificate(
                root_subject,
                validity_days=request.root_validity_days or root_defaults.validity_days,
                key_size=request.root_key_size or root_defaults.key_size,
            )
            tracker.advance(LifecycleState.ROOT_GENERATED)

            leaf_cert, leaf_key = self.generator.generate_leaf_certificate(
                leaf_subject,
                sans,
                root_cert,
                root_key,
                validity_days=request.leaf_validity_days or leaf_defaults.validity_days,
                key_size=request.leaf_key_size or leaf_defaults.key_size,
            )
            tracker.advance(LifecycleState.LEAF_GENERATED)

            bundle = self.generator.bundle_private_key(leaf_cert, leaf_key, root_cert, password)
            tracker.advance(LifecycleState.BUNDLED)
            fingerprint = bundle.fingerprint
            root_fingerprint = CertificateParser.compute_fingerprint(root_cert)

            # Write artifacts (existing files are backed up first)
            backup_dir = output_dir / "backup" / datetime.now().strftime("%Y%m%d_%H%M%S")
            artifacts = {
                "root_certificate": (ROOT_CERT_FILE, CertificateParser.to_pem(root_cert), PUBLIC_FILE_MODE),
                "root_key": (ROOT_KEY_FILE, self.generator.private_key_to_pem(root_key, password), SECRET_FILE_MODE),
                "leaf_certificate": (LEAF_CERT_FILE, CertificateParser.to_pem(leaf_cert), PUBLIC_FILE_MODE),
                "leaf_key": (LEAF_KEY_FILE, self.generator.private_key_to_pem(leaf_key, password), SECRET_FILE_MODE),
                "bundle": (BUNDLES_DIR / f"{fingerprint}.pfx", bundle.data, SECRET_FILE_MODE),
            }
            if self.config.security.write_password_file:
                artifacts["password_file"] = (PASSWORD_FILE, password + "\n", SECRET_FILE_MODE)
            written = self._write_artifacts(output_dir, backup_dir, artifacts)

            with self.store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as roots:
                roots.install(CertificateParser.to_pem(root_cert))
            tracker.advance(LifecycleState.ROOT_INSTALLED)

            with self.store.open(StoreName.PERSONAL, OpenMode.READ_WRITE) as personal:
                personal.install(CertificateParser.to_pem(leaf_cert), bundle, password)
            tracker.advance(LifecycleState.LEAF_INSTALLED)

            chain = self._validate(leaf_cert)
            chain.raise_for_status(store=StoreName.PERSONAL.value, fingerprint=fingerprint, stage="validate")
            tracker.advance(LifecycleState.VALIDATED)

            # Superseded roots and the previous leaf stay installed until the new chain validates
            if cleanup:
                self._remove_superseded([root_cert], fingerprint, self.read_fingerprint_reference(reference_path))
            self.write_fingerprint_reference(fingerprint, reference_path)
            tracker.advance(LifecycleState.COMPLETE)
        except PKIError as e:
            logger.error(f"Full setup failed in state {tracker.state.value}: {e}")
            raise

        written["reference"] = str(reference_path)
        logger.info(f"Full setup complete: leaf {fingerprint} chained to root {root_fingerprint}")
        return LifecycleResult(
            states=tracker.history,
            fingerprint=fingerprint,
            root_fingerprints=[root_fingerprint],
            chain=self.validator.summarize(chain),
            artifacts=written,
        )

    def install_only(self, request: InstallRequest) -> LifecycleResult:
        """
        Install externally supplied roots and leaf bundle, then validate.

        Every input is checked before the first store write, so a failure
        leaves the stores and the fingerprint reference untouched.

        Args:
            request: Install parameters

        Returns:
            Lifecycle result; an untrusted self-signed root is reported as a warning when allowed

        Raises:
            MissingCertificateFile: If the selected bundle does not exist
            InvalidInputError: If the selector is ambiguous or the material does not match
            ChainValidationFailure: If the installed chain is not acceptable
        """
        tracker = LifecycleTracker("install-only")
        warnings: List[str] = []

        if request.password is None or not request.password.get_secret_value():
            raise InvalidInputError("A bundle password is required for install-only", stage="resolve")
        password = request.password.get_secret_value()

        # Validate inputs
        bundle_path, selected = self._resolve_bundle(request)
        bundle_data = FileUtils.read_binary_file(bundle_path)
        leaf_key, leaf_cert, bundled_certs = self.generator.load_bundle(bundle_data, password)
        fingerprint = CertificateParser.compute_fingerprint(leaf_cert)

        if selected and selected != fingerprint:
            raise InvalidInputError(
                f"Bundle {bundle_path.name} holds certificate {fingerprint}, not the selected one",
                fingerprint=selected,
                stage="resolve",
            )
        if not CertificateParser.verify_key_pair(leaf_cert, leaf_key):
            raise InvalidInputError("Bundle private key does not match its certificate", fingerprint=fingerprint)

        roots = self._load_roots(request.roots_dir, warnings) if request.roots_dir else []
        root_fingerprints = [CertificateParser.compute_fingerprint(root) for root in roots]
        allow_untrusted = (
            request.allow_untrusted_root
            if request.allow_untrusted_root is not None
            else self.config.security.untrusted_root_allowed(self.config.app.profile)
        )

        try:
            if roots:
                with self.store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as trust:
                    with trust.transaction():
                        for root in roots:
                            trust.install(CertificateParser.to_pem(root))
                tracker.advance(LifecycleState.ROOT_INSTALLED)

            with self.store.open(StoreName.PERSONAL, OpenMode.READ_WRITE) as personal:
                personal.install(CertificateParser.to_pem(leaf_cert), bundle_data, password)
            tracker.advance(LifecycleState.LEAF_INSTALLED)

            chain = self._validate(leaf_cert, candidates=bundled_certs)
            chain.raise_for_status(
                allow_untrusted_root=allow_untrusted,
                store=StoreName.PERSONAL.value,
                fingerprint=fingerprint,
                stage="validate",
            )
            if chain.only_untrusted_root:
                warnings.append(f"Leaf {fingerprint} chains to a root that is not in the trusted-root store")
                logger.warning(f"Accepting untrusted root for leaf {fingerprint}")
            tracker.advance(LifecycleState.VALIDATED)

            if request.cleanup and roots:
                self._remove_superseded(roots, fingerprint)
            reference_path = self._reference_path()
            self.write_fingerprint_reference(fingerprint, reference_path)
            tracker.advance(LifecycleState.COMPLETE)
        except PKIError as e:
            logger.error(f"Install-only failed in state {tracker.state.value}: {e}")
            raise

        logger.info(f"Installed leaf {fingerprint} from {bundle_path.name}")
        return LifecycleResult(
            states=tracker.history,
            fingerprint=fingerprint,
            root_fingerprints=root_fingerprints,
            chain=self.validator.summarize(chain),
            warnings=warnings,
            artifacts={"bundle": str(bundle_path), "reference": str(reference_path)},
        )

    def validate_installed(self, fingerprint: Optional[str] = None) -> Tuple[str, ChainResult]:
        """
        Validate the chain of an installed leaf.

        Args:
            fingerprint: Leaf fingerprint (defaults to the TLS setting, then the reference file)

        Returns:
            Tuple of (fingerprint, chain result)

        Raises:
            CertificateNotFound: If no fingerprint is known or the leaf is not installed
        """
        fingerprint = fingerprint or self.config.tls.fingerprint or self.read_fingerprint_reference()
        if not fingerprint:
            raise CertificateNotFound("No leaf fingerprint configured or recorded", stage="validate")
        fingerprint = normalize_fingerprint(fingerprint)

        with self.store.open(StoreName.PERSONAL) as personal:
            stored = personal.find_by_fingerprint(fingerprint)
        return fingerprint, self._validate(stored.certificate, candidates=stored.load_chain())

    def cleanup(self, remove_roots: bool = True, remove_leaf: bool = True, root_subject: Optional[str] = None) -> int:
        """
        Remove the recorded leaf and same-subject roots, then delete the reference.

        Args:
            remove_roots: Remove roots matching ``root_subject`` (or the recorded leaf's issuer)
            remove_leaf: Remove the recorded leaf from the personal store
            root_subject: Subject pattern for root removal (glob wildcards honoured)

        Returns:
            Number of store entries removed
        """
        reference_path = self._reference_path()
        fingerprint = self.read_fingerprint_reference(reference_path)
        issuer: Optional[x509.Name] = None
        removed = 0

        with self.store.open(StoreName.PERSONAL, OpenMode.READ_WRITE) as personal:
            if fingerprint and root_subject is None and personal.contains(fingerprint):
                issuer = personal.find_by_fingerprint(fingerprint).certificate.issuer
            if remove_leaf and fingerprint and personal.remove_by_fingerprint(fingerprint):
                removed += 1

        if remove_roots and (root_subject or issuer is not None):
            with self.store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as roots:
                if root_subject:
                    removed += roots.remove_by_subject_pattern(root_subject)
                else:
                    removed += roots.remove_by_subject(issuer)

        if reference_path.exists():
            FileUtils.move_to_trash(reference_path)
        logger.info(f"Cleanup removed {removed} store entries")
        return removed

    def read_fingerprint_reference(self, path: Optional[Path] = None) -> Optional[str]:
        """
        Read the recorded leaf fingerprint.

        Returns:
            Normalized fingerprint, or None if no reference exists or it is unusable
        """
        path = path or self._reference_path()
        if not path.exists():
            return None

        value = FileUtils.read_file(path).strip()
        if not value:
            return None
        try:
            return normalize_fingerprint(value)
        except InvalidInputError:
            logger.warning(f"Ignoring malformed fingerprint reference in {path}")
            return None

    def write_fingerprint_reference(self, fingerprint: str, path: Optional[Path] = None) -> Path:
        """Record the leaf fingerprint atomically."""
        path = path or self._reference_path()
        FileUtils.atomic_write(path, normalize_fingerprint(fingerprint) + "\n", mode=PUBLIC_FILE_MODE)
        logger.info(f"Recorded fingerprint reference {fingerprint} in {path}")
        return path

    def _reference_path(self) -> Path:
        # Always the configured location, whatever output directory a run uses
        return self.config.paths.reference_path()

    def _remove_superseded(
        self, roots: List[x509.Certificate], fingerprint: str, previous: Optional[str] = None
    ) -> int:
        """Remove same-subject roots other than ``roots`` and the previously recorded leaf."""
        keep = [CertificateParser.compute_fingerprint(root) for root in roots]
        removed = 0

        with self.store.open(StoreName.ROOT_TRUST, OpenMode.READ_WRITE) as trust:
            with trust.transaction():
                subjects: List[x509.Name] = []
                for root in roots:
                    if root.subject not in subjects:
                        subjects.append(root.subject)
                for subject in subjects:
                    removed += trust.remove_by_subject(subject, keep=keep)

        if previous and previous != fingerprint:
            with self.store.open(StoreName.PERSONAL, OpenMode.READ_WRITE) as personal:
                if personal.remove_by_fingerprint(previous):
                    removed += 1
        return removed

    def _validate(self, leaf: x509.Certificate, candidates=()) -> ChainResult:
        # The trusted-root store may not exist yet; validation then reports an untrusted root
        if not self.store.location.store_path(StoreName.ROOT_TRUST).is_dir():
            return self.validator.validate(leaf, None, candidates=candidates)
        with self.store.open(StoreName.ROOT_TRUST) as roots:
            return self.validator.validate(leaf, roots, candidates=candidates)

    def _check_existing_setup(self, output_dir: Path, reference_path: Path) -> Optional[Tuple[str, ChainResult]]:
        fingerprint = self.read_fingerprint_reference(reference_path)
        if not fingerprint:
            return None

        required = [ROOT_CERT_FILE, ROOT_KEY_FILE, LEAF_CERT_FILE, LEAF_KEY_FILE, BUNDLES_DIR / f"{fingerprint}.pfx"]
        missing = [str(name) for name in required if not (output_dir / name).exists()]
        if missing:
            logger.info(f"Existing setup incomplete, missing: {', '.join(missing)}")
            return None

        try:
            leaf_on_disk = CertificateParser.load_certificate_file(output_dir / LEAF_CERT_FILE)
            if CertificateParser.compute_fingerprint(leaf_on_disk) != fingerprint:
                logger.info("Leaf certificate on disk does not match the recorded fingerprint")
                return None
            _, chain = self.validate_installed(fingerprint)
        except (CertificateNotFound, StoreUnavailable, InvalidInputError) as e:
            logger.info(f"Existing setup not usable: {e}")
            return None

        if not chain.is_trusted:
            logger.info(f"Existing leaf {fingerprint} no longer validates, regenerating")
            return None
        return fingerprint, chain

    def _resolve_bundle(self, request: InstallRequest) -> Tuple[Path, Optional[str]]:
        """
        Pick the bundle to install.

        Order: explicit fingerprint, configured/environment fingerprint,
        selector file, then the single bundle present.
        """
        bundles_dir = request.bundles_dir.expanduser()
        selected = request.fingerprint or self.config.tls.fingerprint

        if not selected and request.selector_file:
            selector_file = request.selector_file.expanduser()
            if selector_file.exists():
                value = FileUtils.read_file(selector_file).strip()
                selected = normalize_fingerprint(value) if value else None
            else:
                logger.debug(f"Selector file {selector_file} not present")

        if selected:
            for extension in BUNDLE_EXTENSIONS:
                candidate = bundles_dir / f"{selected}{extension}"
                if candidate.exists():
                    return candidate, selected
            raise MissingCertificateFile(
                f"No bundle named {selected}.pfx or {selected}.p12 in {bundles_dir}; regenerate the certificate",
                fingerprint=selected,
                stage="resolve",
            )

        bundles = [path for ext in BUNDLE_EXTENSIONS for path in FileUtils.list_files(bundles_dir, f"*{ext}")]
        if not bundles:
            raise MissingCertificateFile(f"No certificate bundles found in {bundles_dir}", stage="resolve")
        if len(bundles) > 1:
            raise InvalidInputError(
                f"{len(bundles)} bundles found in {bundles_dir}; select one by fingerprint", stage="resolve"
            )
        return bundles[0], None

    @staticmethod
    def _load_roots(roots_dir: Path, warnings: List[str]) -> List[x509.Certificate]:
        roots: dict[str, x509.Certificate] = {}
        for path in FileUtils.list_files(roots_dir.expanduser()):
            data = FileUtils.read_binary_file(path)
            blocks = CertificateParser.split_pem_bundle(data) or [data]
            for block in blocks:
                try:
                    certificate = CertificateParser.load_certificate(block)
                except InvalidInputError:
                    warnings.append(f"Skipped unreadable root file {path.name}")
                    logger.warning(f"Skipping {path}: not a certificate")
                    break
                if not CertificateParser.is_self_signed(certificate):
                    warnings.append(f"Skipped non-self-signed certificate in {path.name}")
                    logger.warning(f"Skipping {path}: '{CertificateParser.get_cn(certificate)}' is not a root")
                    continue
                roots.setdefault(CertificateParser.compute_fingerprint(certificate), certificate)
        return list(roots.values())

    @staticmethod
    def _write_artifacts(output_dir: Path, backup_dir: Path, artifacts: dict) -> dict[str, str]:
        FileUtils.ensure_directory(output_dir)
        FileUtils.ensure_directory(output_dir / "private", mode=PRIVATE_DIR_MODE)

        written: dict[str, str] = {}
        for label, (relative, content, mode) in artifacts.items():
            path = output_dir / relative
            FileUtils.backup_file(path, backup_dir / relative.parent)
            FileUtils.write_file(path, content, mode=mode)
            written[label] = str(path)
        logger.info(f"Wrote {len(written)} artifacts to {output_dir}")
        return written
