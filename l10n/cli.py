"""Command-line entry point: ``l10n translate|check|status|clean``."""
import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from l10n.app_config import AppConfig, load_app_config
from l10n.commands import (
    Reporter,
    check_command,
    clean_command,
    status_command,
    translate_command,
)
from l10n.errors import L10nError, TranslationFailed
from l10n.llm_client import LLMClient
from l10n.orchestrator import Translator
from l10n.plan import find_root

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="l10n",
        description="Translate project files declared in L10N.md descriptors with an LLM backend.",
    )
    parser.add_argument(
        "-C", "--root",
        default=None,
        help="Project root. Defaults to the nearest directory above the working directory holding .git.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    translate = subparsers.add_parser("translate", help="Translate stale source/language pairs.")
    translate.add_argument("--force", action="store_true", help="Translate every pair, even up-to-date ones.")
    translate.add_argument(
        "--retries",
        type=int,
        default=None,
        help="Retries per pair after the first attempt. Negative values defer to the descriptors.",
    )
    translate.add_argument("--dry-run", action="store_true", help="List pairs and token estimates; write nothing.")
    translate.add_argument("--check-cmd", default="", help="Check command overriding check_cmd/check_cmds.")
    translate.add_argument(
        "--continue-on-error",
        action="store_true",
        default=None,
        help="Keep translating other pairs after one fails.",
    )

    check = subparsers.add_parser("check", help="Validate existing outputs against their sources.")
    check.add_argument("--check-cmd", default="", help="Check command overriding check_cmd/check_cmds.")

    subparsers.add_parser("status", help="Show which pairs are ok, stale or missing.")

    clean = subparsers.add_parser("clean", help="Remove planned outputs and lock files.")
    clean.add_argument("--dry-run", action="store_true", help="Report what would be removed.")
    clean.add_argument("--orphans", action="store_true", help="Also remove outputs of sources no longer planned.")

    return parser


def run(args: argparse.Namespace, app_config: AppConfig, reporter: Reporter) -> int:
    if args.command == "translate":
        client = LLMClient(app_config.request_timeout_seconds, app_config.requests_per_minute)
        result = asyncio.run(translate_command(
            app_config,
            Translator(client),
            force=args.force,
            retries=args.retries,
            dry_run=args.dry_run,
            check_cmd=args.check_cmd,
            continue_on_error=args.continue_on_error,
            reporter=reporter,
        ))
        if result.failures:
            reporter.log("Failed", f"{len(result.failures)} translation(s) failed")
            return 1
        return 0

    if args.command == "check":
        check_command(app_config, check_cmd=args.check_cmd, reporter=reporter)
        return 0

    if args.command == "status":
        summary = status_command(app_config, reporter=reporter)
        if not summary.clean:
            logger.error("translations out of date")
            return 1
        return 0

    if args.command == "clean":
        clean_command(app_config, dry_run=args.dry_run, orphans=args.orphans, reporter=reporter)
        return 0

    raise ValueError(f"unknown command {args.command!r}")


def main(argv: Optional[List[str]] = None) -> int:
    """Run the l10n CLI.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:]).

    Returns:
        Exit code: 0 on success, 1 on error or when anything is left stale.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    root = os.path.abspath(args.root) if args.root else find_root(os.getcwd())
    app_config = load_app_config(root)
    reporter = Reporter()

    try:
        return run(args, app_config, reporter)
    except TranslationFailed as exc:
        logger.error("%s", exc)
        return 1
    except L10nError as exc:
        logger.error("%s", exc)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
