#!/usr/bin/env python3
"""
Manage the system trust store of root certificate authorities.

The store is compiled from the vendor certificates, the operator's local
trusted certificates and the operator's distrust list. Every change to the
local sources regenerates the whole store.
"""

import argparse
import logging
import sys

from trust_config import TrustConfig
from trust_errors import EXIT_FAILURE, EXIT_INVALID_ARGS, EXIT_OK, EXIT_PERMISSION, TrustError
from trust_ops import TrustManager, require_privilege

LOGGER = logging.getLogger("ca_trust")

MUTATING_COMMANDS = {"generate", "add", "remove", "restore"}


class TrustArgumentParser(argparse.ArgumentParser):
    """Report usage errors with the invalid-arguments exit code."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_INVALID_ARGS, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = TrustArgumentParser(
        prog="ca-trust",
        description="Compile and manage the trusted root CA store.",
    )
    parser.add_argument("--store", help="Deployed trust store directory (default: $CA_TRUST_STORE_PATH)")
    parser.add_argument("--local", help="Local source directory (default: $CA_TRUST_LOCAL_SOURCE_PATH)")
    parser.add_argument("--vendor", help="Vendor source directory (default: $CA_TRUST_VENDOR_SOURCE_PATH)")
    parser.add_argument("-j", "--jobs", type=int, default=1, help="Inspect certificates in parallel")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print debug output")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("generate", help="Rebuild the trust store from its sources")

    p_add = sub.add_parser("add", help="Trust additional root certificates")
    p_add.add_argument("files", nargs="+", help="Certificate files or http(s) URLs")
    p_add.add_argument("-f", "--force", action="store_true", help="Accept certificates that are not self-signed")

    p_remove = sub.add_parser("remove", help="Withdraw trust from certificates")
    p_remove.add_argument("certs", nargs="+", help="Certificate files, ids (as shown by list) or anchor file names")
    p_remove.add_argument("-f", "--force", action="store_true",
                          help="Also delete local copies of certificates that are already distrusted")

    p_restore = sub.add_parser("restore", help="Trust previously removed vendor certificates again")
    p_restore.add_argument("certs", nargs="+", help="Certificate files, ids or distrusted file names")

    sub.add_parser("list", help="List the trusted certificates")
    sub.add_parser("check", help="Check the local sources for structural problems")
    return parser


def print_error(error: TrustError) -> None:
    print(f"Error: {error}", file=sys.stderr)
    for detail in error.details:
        print(f"  {detail}", file=sys.stderr)


def report_generate(result) -> None:
    deployment = result.deployment
    print(f"Deployed {len(deployment.anchors)} anchors into {deployment.store_path}.")
    for warning in deployment.warnings:
        print(f"Warning: compat bundle {warning}", file=sys.stderr)


def cmd_generate(manager: TrustManager, args) -> int:
    report_generate(manager.generate())
    return EXIT_OK


def cmd_add(manager: TrustManager, args) -> int:
    result = manager.add(args.files, force=args.force)
    for label in result.plan.satisfied:
        print(f"{label}: already trusted")
    if result.generated is not None:
        report_generate(result.generated)
    return EXIT_OK


def _report_mutation(result, done: str, done_list) -> int:
    for error in result.plan.errors:
        print(f"Error: {error}", file=sys.stderr)
    if result.generated is None:
        print("Nothing to do.")
        return EXIT_OK
    for fp in done_list:
        print(f"{done} {fp}")
    report_generate(result.generated)
    return EXIT_OK


def cmd_remove(manager: TrustManager, args) -> int:
    result = manager.remove(args.certs, force=args.force)
    return _report_mutation(result, "Removed", result.plan.removed)


def cmd_restore(manager: TrustManager, args) -> int:
    result = manager.restore(args.certs)
    return _report_mutation(result, "Restored", result.plan.restored)


def cmd_list(manager: TrustManager, args) -> int:
    for entry in manager.list_anchors():
        info = entry.info
        print(f"id: {info.fingerprint}")
        print(f"\tFile: {entry.path.name}")
        print(f"\tAuthority: {info.issuer}")
        print(f"\tExpires: {info.expiry.strftime('%Y-%m-%d %H:%M:%S %Z')}")
    return EXIT_OK


def cmd_check(manager: TrustManager, args) -> int:
    manager.check()
    print("Local sources OK.")
    return EXIT_OK


COMMANDS = {
    "generate": cmd_generate,
    "add": cmd_add,
    "remove": cmd_remove,
    "restore": cmd_restore,
    "list": cmd_list,
    "check": cmd_check,
}


def main(argv=None, environ=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    config = TrustConfig.from_env(
        environ,
        store_path=args.store,
        local_source_path=args.local,
        vendor_source_path=args.vendor,
    )
    manager = TrustManager(config, workers=args.jobs)
    try:
        if args.command in MUTATING_COMMANDS:
            require_privilege(config)
        return COMMANDS[args.command](manager, args)
    except TrustError as e:
        print_error(e)
        return e.exit_code
    except PermissionError as e:
        print(f"Error: permission denied: {e}", file=sys.stderr)
        return EXIT_PERMISSION
    except Exception as e:
        LOGGER.debug("Unexpected failure", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
