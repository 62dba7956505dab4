"""Command line interface.

Exit codes: ``0`` success, ``1`` fatal error or failed validation, ``2``
warnings only (``validate --soft-fail``).
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from localpki.config import ENV_PASSWORD, load_config
from localpki.exceptions import ChainValidationFailure, PKIError
from localpki.models.certificate import StoreName, Subject
from localpki.models.config import AppConfig
from localpki.models.lifecycle import InstallRequest, LifecycleResult, SetupRequest
from localpki.services.health_service import HealthCheckService
from localpki.services.identity_store import IdentityStore
from localpki.services.lifecycle_service import CertificateLifecycleManager
from localpki.utils.logger import setup_logger

logger = logging.getLogger("localpki")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="localpki", description="Provision and validate a local TLS trust chain")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml (default: $LOCALPKI_CONFIG)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug messages")
    subparsers = parser.add_subparsers(dest="command", required=True)

    setup = subparsers.add_parser("setup", help="Generate root and leaf, install and validate")
    setup.add_argument("--root-cn", help="Root CA common name")
    setup.add_argument("--leaf-cn", help="Leaf common name")
    setup.add_argument("--san", action="append", dest="sans", help="DNS name or IP (repeatable)")
    setup.add_argument("--root-days", type=int, help="Root validity in days")
    setup.add_argument("--leaf-days", type=int, help="Leaf validity in days")
    setup.add_argument("--output-dir", type=Path, help="Artifact directory")
    setup.add_argument("--force", action="store_true", help="Regenerate even if a valid setup exists")
    setup.add_argument(
        "--no-cleanup", action="store_true", help="Keep existing roots with the same subject in the trust store"
    )

    install = subparsers.add_parser("install", help="Install supplied roots and leaf bundle, then validate")
    install.add_argument("--bundles-dir", type=Path, required=True, help="Directory of <fingerprint>.pfx bundles")
    install.add_argument("--roots-dir", type=Path, help="Directory of root certificates")
    install.add_argument("--fingerprint", help="Leaf fingerprint selector")
    install.add_argument("--selector-file", type=Path, help="File holding the leaf fingerprint")
    install.add_argument("--cleanup", action="store_true", help="Remove same-subject roots before installing")
    install.add_argument("--strict", action="store_true", help="Fail when the root is not trusted")

    validate = subparsers.add_parser("validate", help="Check the installed leaf, its chain and file permissions")
    validate.add_argument("--fingerprint", help="Leaf fingerprint (default: configured or recorded)")
    validate.add_argument("--soft-fail", action="store_true", help="Exit 2 instead of 1 when only warnings are found")

    list_cmd = subparsers.add_parser("list", help="List store entries")
    list_cmd.add_argument("store", choices=[name.value for name in StoreName], help="Logical store")
    list_cmd.add_argument("--subject", help="RFC 4514 subject, glob wildcards allowed")

    cleanup = subparsers.add_parser("cleanup", help="Remove the recorded leaf and its roots")
    cleanup.add_argument("--keep-roots", action="store_true", help="Leave the trust store untouched")
    cleanup.add_argument("--keep-leaf", action="store_true", help="Leave the personal store untouched")
    cleanup.add_argument("--root-subject", help="Subject pattern of roots to remove")

    serve = subparsers.add_parser("serve", help="Run the status API over TLS")
    serve.add_argument("--host", help="Bind address")
    serve.add_argument("--port", type=int, help="Port")

    return parser


def cmd_setup(args, config: AppConfig, environ) -> int:
    request = SetupRequest(
        root_subject=Subject(common_name=args.root_cn) if args.root_cn else None,
        leaf_subject=Subject(common_name=args.leaf_cn) if args.leaf_cn else None,
        sans=args.sans,
        root_validity_days=args.root_days,
        leaf_validity_days=args.leaf_days,
        password=environ.get(ENV_PASSWORD) or None,
        output_dir=args.output_dir,
        force=args.force,
        cleanup=False if args.no_cleanup else None,
    )
    result = CertificateLifecycleManager(config).full_setup(request)
    _print_result(result)
    return 0


def cmd_install(args, config: AppConfig, environ) -> int:
    request = InstallRequest(
        bundles_dir=args.bundles_dir,
        roots_dir=args.roots_dir,
        password=environ.get(ENV_PASSWORD) or None,
        fingerprint=args.fingerprint,
        selector_file=args.selector_file,
        cleanup=args.cleanup,
        allow_untrusted_root=False if args.strict else None,
    )
    result = CertificateLifecycleManager(config).install_only(request)
    _print_result(result)
    return 0


def cmd_validate(args, config: AppConfig, environ) -> int:
    report = HealthCheckService(config).run(args.fingerprint)
    for check in report.checks:
        print(f"[{check.status.value.upper():7}] {check.name}: {check.message}")

    code = report.exit_code(args.soft_fail)
    print(f"Result: {len(report.failures)} failed, {len(report.warnings)} warnings (exit {code})")
    return code


def cmd_list(args, config: AppConfig, environ) -> int:
    store = IdentityStore(config.store_location())
    with store.open(StoreName(args.store)) as handle:
        entries = [stored.entry for stored in handle.list(args.subject)]

    for entry in entries:
        key = " [key]" if entry.has_private_key else ""
        print(f"{entry.fingerprint}  {entry.not_after:%Y-%m-%d}  {entry.subject}{key}")
    print(f"{len(entries)} certificate(s) in {config.store.scope.value}/{args.store}")
    return 0


def cmd_cleanup(args, config: AppConfig, environ) -> int:
    removed = CertificateLifecycleManager(config).cleanup(
        remove_roots=not args.keep_roots, remove_leaf=not args.keep_leaf, root_subject=args.root_subject
    )
    print(f"Removed {removed} certificate(s)")
    return 0


def cmd_serve(args, config: AppConfig, environ) -> int:
    import main as server

    server.run(host=args.host, port=args.port)
    return 0


COMMANDS = {
    "setup": cmd_setup,
    "install": cmd_install,
    "validate": cmd_validate,
    "list": cmd_list,
    "cleanup": cmd_cleanup,
    "serve": cmd_serve,
}


def main(argv: Optional[Sequence[str]] = None, environ=None) -> int:
    """Run the CLI and return the process exit code."""
    args = build_parser().parse_args(argv)
    environ = os.environ if environ is None else environ

    try:
        config = load_config(args.config, environ)
        setup_logger(config, level="DEBUG" if args.verbose else None)
        return COMMANDS[args.command](args, config, environ)
    except ChainValidationFailure as e:
        codes = ", ".join(sorted(code.value for code in e.result.status_codes))
        print(f"ERROR: chain validation failed ({codes}): {e}", file=sys.stderr)
        return 1
    except PKIError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"ERROR: invalid input: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        logger.error(f"Filesystem error: {e}")
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


def _print_result(result: LifecycleResult) -> None:
    if result.already_satisfied:
        print(f"Already satisfied: leaf {result.fingerprint} is installed and valid")
        return

    print(f"Leaf fingerprint: {result.fingerprint}")
    for root_fingerprint in result.root_fingerprints:
        print(f"Root fingerprint: {root_fingerprint}")
    if result.chain:
        print(f"Chain: {', '.join(code.value for code in result.chain.status_codes)}")
    for name, path in result.artifacts.items():
        print(f"  {name}: {path}")
    for warning in result.warnings:
        print(f"WARNING: {warning}")


if __name__ == "__main__":
    sys.exit(main())
