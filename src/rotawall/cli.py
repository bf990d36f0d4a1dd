from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from rich.console import Console

from .config import DEFAULT_CONFIG_PATH, AppConfig, load_or_create_config
from .daemon import RotationDaemon, build_engine, read_mode_state
from .errors import ConfigError, DisplayError, NoCandidatesError, RotawallError
from .logging_utils import configure_logging
from .models import Mode
from .status import print_status, render_cache_table
from .transcode import Detector, RenditionCache
from .utils import parse_env_bool
from .version import __version__

LOGGER = logging.getLogger(__name__)


def _mode_arg(value: str) -> Mode:
    try:
        return Mode.parse(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rotawall",
        description="Weighted wallpaper rotation for video and still wallpapers.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(os.getenv("ROTAWALL_CONFIG", str(DEFAULT_CONFIG_PATH))),
        help="Path to the YAML configuration (created with defaults when missing)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging on the console")
    parser.add_argument("--log-level", default=None, help="Root log level (DEBUG, INFO, WARNING, ...)")
    parser.add_argument("--log-file", type=Path, default=None, help="Also write logs to this file")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("daemon", help="Run the rotation loop in the foreground")
    subparsers.add_parser("next", help="Switch to the next wallpaper in the current mode")
    subparsers.add_parser("video", help="Switch to video wallpapers")
    subparsers.add_parser("picture", help="Switch to still wallpapers")

    mode_help = "video or picture (defaults to the current mode)"
    reset = subparsers.add_parser("reset", help="Rescan a wallpaper directory and update its weights")
    reset.add_argument("-m", "--mode", type=_mode_arg, default=None, help=mode_help)
    status = subparsers.add_parser("status", help="Show the pool and its weights")
    status.add_argument("-m", "--mode", type=_mode_arg, default=None, help=mode_help)
    status.add_argument("-n", "--limit", type=int, default=None, help="Only list the N highest weights")
    cache = subparsers.add_parser("cache", help="Show the rendition cache")
    cache.add_argument("-m", "--mode", type=_mode_arg, default=None, help=mode_help)
    cache.add_argument("--prune", action="store_true", help="Drop renditions whose source changed or vanished")
    return parser


def _resolve_mode(config: AppConfig, requested: Optional[Mode]) -> Mode:
    return requested or read_mode_state(config.paths.mode_state)


def _cmd_daemon(config: AppConfig, args: argparse.Namespace, console: Console) -> int:
    daemon = RotationDaemon(config)
    daemon.install_signal_handlers()
    daemon.run_forever()
    return 0


def _switch(config: AppConfig, console: Console, mode: Optional[Mode] = None) -> int:
    daemon = RotationDaemon(config, background=False)
    if mode is not None:
        daemon.set_mode(mode)
    served = daemon.switch()
    console.print(f"[green]✓[/green] {daemon.mode.label}: {served.name}")
    return 0


def _cmd_next(config: AppConfig, args: argparse.Namespace, console: Console) -> int:
    return _switch(config, console)


def _cmd_video(config: AppConfig, args: argparse.Namespace, console: Console) -> int:
    return _switch(config, console, Mode.VIDEO)


def _cmd_picture(config: AppConfig, args: argparse.Namespace, console: Console) -> int:
    return _switch(config, console, Mode.IMAGE)


def _cmd_reset(config: AppConfig, args: argparse.Namespace, console: Console) -> int:
    mode = _resolve_mode(config, args.mode)
    engine = build_engine(config, mode)
    result = engine.rescan()
    console.print(
        f"Rescanned {config.media_dir(mode)}: {len(engine)} wallpaper(s), "
        f"{len(result.added)} added, {len(result.removed)} removed"
    )
    if mode is Mode.VIDEO and config.transcode.enabled:
        cache = RenditionCache(config.transcode.cache_dir, config.transcode.max_cache_bytes, Detector(config.transcode))
        pruned = cache.supersede_stale()
        if pruned:
            console.print(f"Dropped {pruned} stale rendition(s)")
    return 0


def _cmd_status(config: AppConfig, args: argparse.Namespace, console: Console) -> int:
    mode = _resolve_mode(config, args.mode)
    engine = build_engine(config, mode)
    engine.load()
    cooldowns = engine.cooldowns()
    if args.limit is not None:
        cooldowns = cooldowns[: max(0, args.limit)]
    print_status(console, config, mode, engine.stats(), cooldowns, persistence_error=engine.persistence_error)
    return 0


def _cmd_cache(config: AppConfig, args: argparse.Namespace, console: Console) -> int:
    mode = _resolve_mode(config, args.mode)
    if mode is not Mode.VIDEO:
        console.print("Still wallpapers are displayed as-is; there is no rendition cache for them.")
        return 0
    if not config.transcode.enabled:
        console.print("Transcoding is disabled in the configuration.")
        return 0
    detector = Detector(config.transcode)
    cache = RenditionCache(config.transcode.cache_dir, config.transcode.max_cache_bytes, detector)
    if args.prune:
        console.print(f"Dropped {cache.supersede_stale()} stale rendition(s)")
    console.print(render_cache_table(cache, detector.profile(), detector.vram()))
    return 0


COMMANDS = {
    "daemon": _cmd_daemon,
    "next": _cmd_next,
    "video": _cmd_video,
    "picture": _cmd_picture,
    "reset": _cmd_reset,
    "status": _cmd_status,
    "cache": _cmd_cache,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    verbose = args.verbose or bool(parse_env_bool(os.getenv("ROTAWALL_DEBUG")))
    console_level = "DEBUG" if verbose else None
    configure_logging(args.log_level or console_level, console_level=console_level, log_file=args.log_file)

    console = Console()
    try:
        config = load_or_create_config(args.config)
    except (ConfigError, OSError, ValueError) as exc:
        LOGGER.error("Failed to load config %s: %s", args.config, exc)
        return 2

    handler = COMMANDS[args.command]
    try:
        return handler(config, args, console)
    except NoCandidatesError as exc:
        LOGGER.error("%s", exc)
        return 1
    except DisplayError as exc:
        LOGGER.error("Failed to display wallpaper: %s", exc)
        return 1
    except RotawallError as exc:
        LOGGER.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
