#!/usr/bin/env python3
"""modlinker: Entry Point"""

import argparse
import asyncio
import faulthandler
import logging
import os
import sys
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

DEFAULT_HOME = Path.home() / ".modlinker"

# Answers picked by --yes, most preferred first.
AUTO_ANSWERS = ("Continue", "I'm sure", "Deploy", "Quit")


def setup_logging(log_dir: Path, verbose: bool = False) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "modlinker.log"

    handler = RotatingFileHandler(
        log_file,
        maxBytes=1 * 1024 * 1024,  # 1 MB
        backupCount=2,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"))

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)
    root.addHandler(console)
    return logging.getLogger("modlinker")


def install_crash_handler(logger: logging.Logger, log_dir: Path):
    # Python-level unhandled exceptions
    def handle_exception(exc_type, exc_value, exc_tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        logger.critical(
            "Unhandled exception:\n%s",
            "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
        )

    sys.excepthook = handle_exception

    # C-level crashes go to a separate file, logging is unusable by then
    crash_file = log_dir / "crash.log"
    faulthandler.enable(open(crash_file, "w"), all_threads=True)


class ConsolePrompt:
    """Asks questions on the terminal, or answers them itself with --yes."""

    def __init__(self, assume_yes: bool = False):
        self.assume_yes = assume_yes

    async def ask(self, kind: str, title: str, body: str, choices: list[str]) -> str:
        if self.assume_yes:
            for answer in AUTO_ANSWERS:
                if answer in choices:
                    return answer
            return choices[0]
        print(f"\n{title}\n{body}\n", file=sys.stderr)
        for number, choice in enumerate(choices, 1):
            print(f"  {number}) {choice}", file=sys.stderr)
        while True:
            reply = (await asyncio.to_thread(input, "> ")).strip()
            if reply.isdigit() and 1 <= int(reply) <= len(choices):
                return choices[int(reply) - 1]
            if reply in choices:
                return reply

    async def select_dir(self, default_path: str, title: str) -> Optional[str]:
        if self.assume_yes:
            return None
        reply = (await asyncio.to_thread(input, f"{title} [{default_path}]: ")).strip()
        return reply or default_path


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="modlinker", description="Deploy staged mods into game directories")
    parser.add_argument("--state-file", default=str(DEFAULT_HOME / "state.json"))
    parser.add_argument("--log-dir", default=os.environ.get("MODLINKER_LOG_DIR", str(DEFAULT_HOME / "logs")))
    parser.add_argument("--staging-root", help="Default parent of per-game staging folders")
    parser.add_argument("--game", help="Game id, defaults to the active profile's game")
    parser.add_argument("--yes", action="store_true", help="Confirm all questions")
    parser.add_argument("--in-process", action="store_true", help="Run the link worker inside this process")
    parser.add_argument("-v", "--verbose", action="store_true")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("activate", help="Activate a game: check staging, deployment method and mod list")
    sub.add_parser("deploy", help="Deploy all enabled mods")
    sub.add_parser("purge", help="Remove all deployed links")
    remove = sub.add_parser("remove", help="Undeploy and delete a mod")
    remove.add_argument("mod_id")
    sub.add_parser("worker", help="Run the link worker on stdin/stdout")
    return parser.parse_args(argv)


def build_manager(args: argparse.Namespace, logger: logging.Logger):
    from app_state import AppState
    from deployment_manager import DeploymentManager
    from deployment_methods import MethodRegistry
    from errors import LoggingErrorReporter
    from games import load_games
    from link_client import LinkWorkerClient, LocalChannel, SubprocessChannel
    from symlink_activator import SymlinkActivator

    channel = LocalChannel if args.in_process else SubprocessChannel
    state = AppState.load(args.state_file)
    registry = MethodRegistry([SymlinkActivator(lambda: LinkWorkerClient(channel))])
    manager = DeploymentManager(
        state,
        load_games(state),
        registry,
        ConsolePrompt(args.yes),
        reporter=LoggingErrorReporter(logger),
        staging_root=args.staging_root,
    )
    manager.register()
    return manager


async def dispatch(args: argparse.Namespace, logger: logging.Logger) -> int:
    from errors import ProcessCanceled, UserCanceled, report_error

    manager = build_manager(args, logger)
    game_id = args.game or manager.state.active_game_id()
    if game_id is None:
        logger.error("No game given and no active profile")
        return 2

    try:
        if args.command == "activate":
            await manager.events.emit("game-mode-activated", game_id)
        elif args.command == "deploy":
            await manager.deploy_mods(game_id)
        elif args.command == "purge":
            await manager.purge_mods(game_id)
        elif args.command == "remove":
            await manager.remove_mod(game_id, args.mod_id)
    except UserCanceled:
        logger.info("Canceled")
        return 1
    except ProcessCanceled as err:
        logger.warning("%s", err)
        return 2
    except Exception as err:
        report_error(manager.reporter, f"{args.command} failed", err)
        return 3
    return 0


def run(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    if args.command == "worker":
        from link_worker import main as worker_main
        worker_main()
        return 0

    log_dir = Path(args.log_dir).expanduser()
    logger = setup_logging(log_dir, args.verbose)
    install_crash_handler(logger, log_dir)
    logger.debug("Starting modlinker %s", args.command)
    return asyncio.run(dispatch(args, logger))


if __name__ == "__main__":
    sys.exit(run())
