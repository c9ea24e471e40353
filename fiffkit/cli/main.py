"""fiffkit CLI — command-line inspection of .fif files.

Commands:
    fiffkit info <file>           Show measurement summary and channels
    fiffkit tree <file>           Show the block tree
    fiffkit dir <file>            List the tag directory
    fiffkit copy <src> <dst>      Copy raw data, optionally a subset
"""

from __future__ import annotations

import logging
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from fiffkit.errors import FiffError

console = Console()


def _fail(file: Path, exc: Exception) -> None:
    console.print(f"[red]Error reading {file}: {exc}[/red]")
    raise SystemExit(1)


@click.group()
@click.version_option(version="0.1.0", prog_name="fiffkit")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """fiffkit — read and write FIFF biosignal recordings."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


@cli.command()
@click.argument("file", type=click.Path(exists=True, path_type=Path))
@click.option("--json", "as_json", is_flag=True, default=False, help="Print measurement info as JSON")
def info(file: Path, as_json: bool) -> None:
    """Show measurement summary and channel list."""
    from fiffkit import Recording

    try:
        recording = Recording(file, allow_maxshield=True)
    except FiffError as e:
        _fail(file, e)

    with recording:
        if as_json:
            click.echo(recording.info.to_json())
            return

        console.print()
        console.print(Panel.fit(f"[bold]{recording.name}[/bold]", subtitle=f"{file}"))

        meta_table = Table(show_header=False, box=None, padding=(0, 2))
        meta_table.add_column("Key", style="dim")
        meta_table.add_column("Value")
        meta_table.add_row("Channels", str(len(recording.channels)))
        meta_table.add_row("Sampling rate", f"{recording.sfreq:g} Hz")
        meta_table.add_row("Samples", f"{recording.first_samp}..{recording.raw.last_samp}")
        meta_table.add_row("Duration", f"{recording.duration:.2f} s")
        if recording.info.lowpass is not None:
            meta_table.add_row("Lowpass", f"{recording.info.lowpass:g} Hz")
        if recording.info.highpass is not None:
            meta_table.add_row("Highpass", f"{recording.info.highpass:g} Hz")
        if recording.info.bads:
            meta_table.add_row("Bad channels", ", ".join(recording.info.bads))
        meta_table.add_row("Projections", str(len(recording.info.projs)))
        console.print(meta_table)

        console.print()
        ch_table = Table(title="Channels")
        ch_table.add_column("#", justify="right")
        ch_table.add_column("Name")
        ch_table.add_column("Kind")
        ch_table.add_column("Range", justify="right")
        ch_table.add_column("Cal", justify="right")
        for i, ch in enumerate(recording.channel_infos):
            ch_table.add_row(str(i), ch.ch_name, ch.kind_name, f"{ch.range:g}", f"{ch.cal:.4g}")
        console.print(ch_table)
        console.print()


@cli.command()
@click.argument("file", type=click.Path(exists=True, path_type=Path))
def tree(file: Path) -> None:
    """Show the block tree with the number of tags in each block."""
    from fiffkit import open_fiff

    try:
        reader = open_fiff(file)
    except FiffError as e:
        _fail(file, e)

    with reader:
        dir_tree = reader.tree
        root = dir_tree.root
        view = Tree(f"[bold]{file.name}[/bold] ({len(dir_tree.entries(root))} tags)")
        nodes = {root.index: view}
        for _, block in dir_tree.walk():
            if block.parent is None:
                continue
            label = f"{block.name} [dim]({len(dir_tree.entries(block))} tags)[/dim]"
            nodes[block.index] = nodes[block.parent].add(label)
        console.print(view)


@cli.command(name="dir")
@click.argument("file", type=click.Path(exists=True, path_type=Path))
@click.option("--walk", is_flag=True, default=False, help="Ignore the stored index and walk the tags")
@click.option("--limit", default=50, help="Maximum number of entries to show (0 for all)")
def dir_(file: Path, walk: bool, limit: int) -> None:
    """List the tag directory."""
    from fiffkit import open_fiff

    try:
        reader = open_fiff(file, use_index=not walk)
    except FiffError as e:
        _fail(file, e)

    with reader:
        entries = reader.directory
        table = Table(title=f"{len(entries)} tags")
        table.add_column("Offset", justify="right")
        table.add_column("Kind", justify="right")
        table.add_column("Type", justify="right")
        table.add_column("Size", justify="right")
        shown = entries if limit <= 0 else entries[:limit]
        for ent in shown:
            table.add_row(str(ent.pos), str(ent.kind), f"{ent.type:#x}", str(ent.size))
        if len(shown) < len(entries):
            table.add_row("...", f"({len(entries) - len(shown)} more)", "", "")
        console.print(table)


@cli.command()
@click.argument("src", type=click.Path(exists=True, path_type=Path))
@click.argument("dst", type=click.Path(path_type=Path))
@click.option("--channel", "-c", multiple=True, help="Channels to copy (default: all)")
@click.option("--start", default=0, help="First sample, relative to the recording start")
@click.option("--end", default=None, type=int, help="End sample (exclusive)")
@click.option("--chunk", default=10000, type=click.IntRange(min=1), help="Samples read per step")
@click.option("--format", "-f", "fmt", type=click.Choice(["single", "double", "int", "short"]),
              default="single", help="Stored sample format")
def copy(
    src: Path,
    dst: Path,
    channel: tuple[str, ...],
    start: int,
    end: int | None,
    chunk: int,
    fmt: str,
) -> None:
    """Copy raw data to a new file, optionally a subset of channels and samples."""
    from fiffkit import open_raw, start_writing_raw

    try:
        raw = open_raw(src, allow_maxshield=True)
    except FiffError as e:
        _fail(src, e)

    with raw:
        if channel:
            missing = [c for c in channel if c not in raw.ch_names]
            if missing:
                console.print(f"[red]Channels not found: {', '.join(missing)}[/red]")
                raise SystemExit(1)
            sel = [raw.ch_names.index(c) for c in channel]
        else:
            sel = list(range(raw.nchan))

        end = raw.n_times if end is None else min(end, raw.n_times)
        first = raw.first_samp + start
        last = raw.first_samp + end - 1

        try:
            with start_writing_raw(dst, raw.info, sel=sel, first_sample=first, fmt=fmt) as writer:
                for lo in range(first, last + 1, chunk):
                    hi = min(lo + chunk - 1, last)
                    writer.write_raw_buffer(raw.read_samples(lo, hi, picks=sel))
        except FiffError as e:
            _fail(dst, e)

    console.print(f"  Created: {dst}")
    console.print(
        f"[green]Copied {max(last - first + 1, 0)} samples of {len(sel)} channel(s)[/green]"
    )


if __name__ == "__main__":
    cli()
