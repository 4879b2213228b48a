"""dataloop CLI - argparse setup and command dispatch."""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from dataloop import __version__
from dataloop.commands.chat import cmd_chat
from dataloop.commands.config_cmd import cmd_config
from dataloop.config import GlobalConfig, apply_profile, get_global_config, reload_global_config


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _load_config(args) -> GlobalConfig:
    """Resolve config for a command: profile, --config overlay, then flags."""
    profile = getattr(args, "profile", None)
    if profile:
        apply_profile(profile)

    overlay = getattr(args, "config", None)
    if overlay:
        gcfg = reload_global_config(overlay=Path(overlay).expanduser())
    else:
        gcfg = get_global_config()

    # CLI flags override config values
    if getattr(args, "model", None):
        gcfg.model = args.model
    if getattr(args, "max_depth", None) is not None:
        gcfg.max_followup_depth = args.max_depth
    if getattr(args, "no_followup", False):
        gcfg.auto_followup = False
    return gcfg


def _handle_chat(args) -> int:
    return cmd_chat(_load_config(args), args)


def _handle_config(args) -> int:
    return cmd_config(_load_config(args))


_COMMAND_HANDLERS = {
    "chat": _handle_chat,
    "config": _handle_config,
}


def _dispatch_command(command: str, args) -> int:
    """Dispatch to appropriate command handler."""
    handler = _COMMAND_HANDLERS.get(command)
    if handler is None:
        print(f"dataloop: unknown command '{command}'", file=sys.stderr)
        return 1
    return handler(args)


def _add_config_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--profile", "-p", help="Config profile ([profiles.<name>])")
    p.add_argument("--config", help="Extra config.toml applied last")


def _add_chat_parser(subparsers) -> None:
    """Add chat subcommand with all its options."""
    p = subparsers.add_parser("chat", help="Chat with a model about a dataset")
    p.add_argument("data", help="Dataset file (csv, tsv, parquet, json, jsonl)")
    p.add_argument("--model", "-m", help="Model identifier (overrides config)")
    p.add_argument(
        "--max-depth",
        type=int,
        help="Max automatic follow-ups per message (0 = unlimited)",
    )
    p.add_argument(
        "--no-followup",
        action="store_true",
        help="Do not follow up automatically after successful code",
    )
    p.add_argument("--chat-id", help="Resume or name a chat")
    p.add_argument("--store", help="Directory for chat transcripts")
    p.add_argument("--no-save", action="store_true", help="Keep the transcript in memory only")
    p.add_argument("--describe", default="", help="Extra description of the dataset")
    p.add_argument("--message", help="Send one message and exit")
    _add_config_options(p)


def _create_parser() -> argparse.ArgumentParser:
    """Create argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="dataloop",
        description="dataloop - approve, run and follow up on model-written analysis code",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="dataloop commands", required=False)
    _add_chat_parser(subparsers)
    config_p = subparsers.add_parser("config", help="Show effective configuration")
    _add_config_options(config_p)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for dataloop CLI."""
    parser = _create_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.command is None:
        parser.print_help()
        return 0

    return _dispatch_command(args.command, args)


if __name__ == "__main__":
    sys.exit(main())
