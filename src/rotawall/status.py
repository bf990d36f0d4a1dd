from __future__ import annotations

import time
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .version import __version__
from .config import AppConfig
from .models import CooldownInfo, Mode, PoolStats
from .transcode import HardwareProfile, RenditionCache
from .transcode.detector import VramInfo
from .utils import format_bytes

COOLING_COLOR = "yellow"
READY_COLOR = "green"
DIM_COLOR = "dim"


def _format_timestamp(value: Optional[float]) -> str:
    if value is None:
        return f"[{DIM_COLOR}]never[/{DIM_COLOR}]"
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(value))


def render_overview(
    config: AppConfig,
    mode: Mode,
    stats: PoolStats,
    *,
    persistence_error: Optional[str] = None,
) -> Panel:
    """Summarise one pool: engine, interval and weight distribution."""
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("Key", style="cyan bold", no_wrap=True)
    table.add_column("Value")

    table.add_row("Mode", f"[bold]{mode.label}[/bold]")
    table.add_row("Engine", config.engine_type(mode))
    table.add_row("Interval", f"{config.interval(mode)}s")
    table.add_row("Directory", str(config.media_dir(mode)))
    table.add_row("Wallpapers", str(stats.count))
    if stats.count:
        table.add_row("Weight (min/mean/max)", f"{stats.min_weight:.2f} / {stats.mean_weight:.2f} / {stats.max_weight:.2f}")
        table.add_row("Total weight", f"{stats.total_weight:.2f}")
        table.add_row("Skip streak total", str(stats.total_skips))
    if persistence_error:
        table.add_row("Snapshot", f"[red]stale: {persistence_error}[/red]")

    return Panel(table, title=f"rotawall {__version__}", border_style="cyan", expand=False)


def render_pool_table(cooldowns: list[CooldownInfo], *, limit: Optional[int] = None) -> Table:
    table = Table(title="Wallpapers", show_header=True, header_style="bold")
    table.add_column("#", justify="right", style=DIM_COLOR)
    table.add_column("Weight", justify="right")
    table.add_column("Gap", justify="right")
    table.add_column("Skips", justify="right")
    table.add_column("Last shown")
    table.add_column("File", style="cyan")

    rows = cooldowns if limit is None else cooldowns[:limit]
    for index, info in enumerate(rows, start=1):
        color = COOLING_COLOR if info.cooling else READY_COLOR
        table.add_row(
            str(index),
            f"[{color}]{info.weight:.2f}[/{color}]",
            f"{info.gap_to_top:.2f}",
            str(info.skip_streak),
            _format_timestamp(info.last_selected_at),
            Path(info.key).name,
        )
    return table


def render_cache_table(
    cache: RenditionCache,
    profile: Optional[HardwareProfile] = None,
    vram: Optional[VramInfo] = None,
) -> Table:
    budget = cache.budget_bytes
    total = cache.total_size()
    title = f"Rendition Cache ({format_bytes(total)} / {format_bytes(budget) if budget else 'unlimited'})"
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Rendition", style="cyan")
    table.add_column("Target")
    table.add_column("Encoder")
    table.add_column("Size", justify="right")
    table.add_column("Last used")

    # Most recently used first; the bottom rows are evicted next
    for entry in reversed(cache.entries()):
        table.add_row(
            Path(entry.key.source).name,
            entry.key.spec,
            entry.key.encoder,
            format_bytes(entry.size),
            _format_timestamp(entry.last_used),
        )

    captions = []
    if profile is not None:
        captions.append(f"target {profile.label}")
    if vram is not None:
        captions.append(f"VRAM {vram.used_mb}/{vram.total_mb} MiB ({vram.usage_percent:.0f}%)")
    if captions:
        table.caption = ", ".join(captions)
    return table


def print_status(
    console: Console,
    config: AppConfig,
    mode: Mode,
    stats: PoolStats,
    cooldowns: list[CooldownInfo],
    *,
    persistence_error: Optional[str] = None,
) -> None:
    console.print(render_overview(config, mode, stats, persistence_error=persistence_error))
    if cooldowns:
        console.print(render_pool_table(cooldowns))


__all__ = ["print_status", "render_cache_table", "render_overview", "render_pool_table"]
