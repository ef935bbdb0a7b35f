from __future__ import annotations

import argparse
import dataclasses
import sys

try:
    from .backends import SUITE_NAMES
    from .config import SETUP_NAMES, HarnessConfig
    from .exceptions import HarnessError, MissingToolError
    from .logging_utils import configure_logging
    from .matrix import TEST_MATRIX, expand_matrix
    from .pipeline import SuitePipeline
    from .results import Outcome
    from .runner import MatrixRunner
    from .sanitizer import build_setup
except ModuleNotFoundError as exc:
    if exc.name in ("pkcs11", "asn1crypto"):
        raise SystemExit(
            f"Missing dependency: {exc.name}\n"
            "Install it with:\n"
            "  python3 -m pip install -e ."
        ) from exc
    raise


class _HelpFormatter(
    argparse.RawTextHelpFormatter,
    argparse.ArgumentDefaultsHelpFormatter,
):
    """Keep multiline examples readable and include defaults."""


CLI_HELP_EPILOG = """Environment:
  Required:
    TESTSSRCDIR               # openssl.cnf.in, test-wrapper, explicit EC keys
    TESTBLDDIR                # tmp.<suite> working directories live here

  Optional:
    LIBSPATH, SHARED_EXT, KRYOPTIC, SOFTOKNPATH, P11KITCLIENTPATH
    PKCS11_HARNESS_PIN=12345678
    PKCS11_HARNESS_TIMEOUT=30
    PKCS11_HARNESS_JOBS=<cpu count>
    PKCS11_HARNESS_SETUP=address|valgrind
    PKCS11_HARNESS_PRELOAD_LIBASAN=auto|no|<path>
    PKCS11_HARNESS_VERIFY=true

Examples:
  # Provision the SoftHSM token and print the testvars path
  pkcs11-harness setup softhsm

  # Run every test declared for softokn and kryoptic, four at a time
  pkcs11-harness run --suite softokn --suite kryoptic --jobs 4

  # Run the TLS tests under AddressSanitizer
  pkcs11-harness run --test tls --setup address
"""


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pkcs11-harness",
        description=(
            "Provision PKCS#11 token backends with a deterministic chain of trust "
            "and run the conformance test matrix against them."
        ),
        formatter_class=_HelpFormatter,
        epilog=CLI_HELP_EPILOG,
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Also log to stderr.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    setup_parser = subparsers.add_parser(
        "setup",
        help="Provision one suite's token and write its testvars.",
        formatter_class=_HelpFormatter,
    )
    setup_parser.add_argument("suite", choices=SUITE_NAMES, help="Backend suite to provision.")

    run_parser = subparsers.add_parser(
        "run",
        help="Provision suites and run their tests.",
        formatter_class=_HelpFormatter,
    )
    _add_filter_args(run_parser)
    run_parser.add_argument(
        "--test",
        dest="tests",
        action="append",
        choices=sorted(TEST_MATRIX),
        default=None,
        help="Only run this test (repeatable).",
    )
    run_parser.add_argument("--jobs", type=int, default=None, help="Parallel test processes.")
    run_parser.add_argument(
        "--setup",
        choices=SETUP_NAMES,
        default=None,
        help="Instrumentation to run every test under.",
    )
    run_parser.add_argument(
        "--timeout",
        type=int,
        default=None,
        help="Per-test timeout in seconds, before the setup multiplier.",
    )

    list_parser = subparsers.add_parser(
        "list",
        help="Print the (test, suite) pairs the matrix declares.",
        formatter_class=_HelpFormatter,
    )
    _add_filter_args(list_parser)
    return parser


def _add_filter_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--suite",
        dest="suites",
        action="append",
        choices=SUITE_NAMES,
        default=None,
        help="Only use this suite (repeatable).",
    )


def _config_from_args(args: argparse.Namespace) -> HarnessConfig:
    config = HarnessConfig.from_env()
    overrides: dict[str, object] = {}
    if getattr(args, "jobs", None) is not None:
        overrides["jobs"] = args.jobs
    if getattr(args, "setup", None) is not None:
        overrides["setup"] = args.setup
    if getattr(args, "timeout", None) is not None:
        overrides["timeout_seconds"] = args.timeout
    if overrides:
        config = dataclasses.replace(config, **overrides)
    return config


def _run_setup(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    configure_logging(console=args.verbose, secrets=[config.pin])
    result = SuitePipeline(config, args.suite).run()
    if result.is_ok:
        print(result.unwrap().testvars)
    elif result.is_skipped:
        print(result.describe())
    else:
        print(f"{args.suite}: {result.describe()}", file=sys.stderr)
    return result.exit_code


def _run_matrix(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    configure_logging(console=args.verbose, secrets=[config.pin])
    try:
        setup = build_setup(config)
    except MissingToolError as exc:
        print(f"skipped: {exc}")
        return 0

    report = MatrixRunner(config, setup=setup).run(suites=args.suites, tests=args.tests)
    for suite, step in report.provisioning.items():
        print(f"{suite:<9} {'setup':<10} {step.describe()}")
    for result in report.results:
        print(result.describe())
    print(
        " ".join(
            f"{outcome.value}={len(report.by_outcome(outcome))}" for outcome in Outcome
        )
    )
    return report.exit_code


def _run_list(args: argparse.Namespace) -> int:
    for invocation in expand_matrix(suites=args.suites):
        policy = "parallel" if invocation.is_parallel else "serial"
        print(f"{invocation.suite:<9} {invocation.test:<10} {policy}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        if args.command == "setup":
            return _run_setup(args)
        if args.command == "run":
            return _run_matrix(args)
        if args.command == "list":
            return _run_list(args)
        raise ValueError("Unsupported command.")
    except (HarnessError, ValueError) as exc:
        print(f"pkcs11-harness error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
