"""
Rich Output Utilities
=====================

Terminal output for the codecontext command-line tools using the Rich
library: themed console, tables, panels, spinners and logging setup.
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Confirm
from rich.rule import Rule
from rich.status import Status
from rich.table import Table
from rich.text import Text
from rich.theme import Theme


# =============================================================================
# Color Scheme & Theme
# =============================================================================

@dataclass(frozen=True)
class ContextColors:
    """Palette using hex for truecolor terminal support."""
    ink: str = "#E6E6E6"       # primary text
    dim: str = "#9AA4B2"       # muted text
    accent: str = "#A78BFA"    # memory violet
    cool: str = "#22D3EE"      # secondary accent
    steel: str = "#94A3B8"
    ok: str = "#22C55E"
    warn: str = "#FBBF24"
    err: str = "#EF4444"


def context_theme(colors: ContextColors = ContextColors()) -> Theme:
    """
    Rich Theme for the codecontext CLI.

    Style names are semantic so you can use them everywhere:
      console.print("...", style="cc.ok")
    """
    return Theme(
        {
            "cc.banner": f"bold {colors.accent}",
            "cc.subtitle": f"{colors.dim}",
            "cc.border": f"{colors.accent}",
            "cc.accent": f"bold {colors.accent}",
            "cc.muted": f"{colors.dim}",
            "cc.text": f"{colors.ink}",

            "cc.ok": f"bold {colors.ok}",
            "cc.warn": f"bold {colors.warn}",
            "cc.err": f"bold {colors.err}",
            "cc.info": f"{colors.cool}",

            "cc.key": f"{colors.steel}",
            "cc.value": f"{colors.ink}",
            "cc.number": f"bold {colors.accent}",
            "cc.path": f"{colors.cool}",
            "cc.timestamp": f"{colors.dim}",

            "cc.kind.conversation": f"{colors.cool}",
            "cc.kind.decision": f"bold {colors.warn}",
            "cc.kind.pattern": f"bold {colors.ok}",

            "cc.table.header": f"bold {colors.cool}",
        }
    )


# =============================================================================
# Unicode / ASCII Fallbacks
# =============================================================================

def _can_use_unicode() -> bool:
    """Check if the terminal can handle Unicode characters."""
    if os.name == 'nt':
        try:
            encoding = sys.stdout.encoding or 'utf-8'
            "✓✗•".encode(encoding)
            return True
        except (UnicodeEncodeError, LookupError, AttributeError):
            return False
    return True


_UNICODE_ICONS = {
    "check": "✓",
    "cross": "✗",
    "warning": "⚠️",
    "info": "ℹ",
    "bullet": "•",
    "brain": "\U0001F9E0",
}

_ASCII_ICONS = {
    "check": "[OK]",
    "cross": "[X]",
    "warning": "[!]",
    "info": "[i]",
    "bullet": "-",
    "brain": "[M]",
}

_ICONS = _UNICODE_ICONS if _can_use_unicode() else _ASCII_ICONS


def icon(name: str) -> str:
    """Get an icon by name, using ASCII fallback if needed."""
    return _ICONS.get(name, "")


# =============================================================================
# Global Console Instance
# =============================================================================

console = Console(theme=context_theme())


# =============================================================================
# Basic Message Functions
# =============================================================================

def print_success(message: str) -> None:
    """Print a success message with checkmark."""
    console.print(f"[cc.ok]{icon('check')} {message}[/]")


def print_error(message: str) -> None:
    """Print an error message with X."""
    console.print(f"[cc.err]{icon('cross')} {message}[/]")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[cc.warn]{icon('warning')} {message}[/]")


def print_info(message: str) -> None:
    console.print(f"[cc.info]{icon('info')} {message}[/]")


def print_muted(message: str) -> None:
    console.print(f"[cc.muted]{message}[/]")


def print_header(title: str, style: str = "cc.accent") -> None:
    """Print a prominent section header with rule lines."""
    console.print()
    console.print(Rule(f"[{style}]{title}[/]", style=style))
    console.print()


# =============================================================================
# Data Display Functions
# =============================================================================

def print_key_value_table(
    data: Dict[str, Any],
    *,
    title: Optional[str] = None,
    border_style: str = "cc.border",
) -> None:
    """Print multiple key-value pairs in a clean table format."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="cc.key")
    table.add_column("Value", style="cc.value")

    for key, value in data.items():
        table.add_row(key, str(value))

    if title:
        console.print(Panel(table, title=f"[bold]{title}[/]", border_style=border_style))
    else:
        console.print(table)


def create_table(
    *,
    title: Optional[str] = None,
    columns: Optional[List[str]] = None,
    show_header: bool = True,
    border_style: str = "cc.border",
    header_style: str = "cc.table.header",
) -> Table:
    """Create a styled Rich Table."""
    table = Table(
        title=title,
        show_header=show_header,
        header_style=header_style,
        border_style=border_style,
        title_style="cc.accent",
    )

    if columns:
        for col in columns:
            table.add_column(col)

    return table


def print_table(table: Table) -> None:
    console.print(table)


def print_panel(content: str, *, title: Optional[str] = None, border_style: str = "cc.border") -> None:
    """Print content in a bordered panel."""
    console.print(Panel(content, title=f"[bold]{title}[/]" if title else None, border_style=border_style))


# =============================================================================
# Progress & Prompts
# =============================================================================

@contextmanager
def spinner(message: str, *, style: str = "cc.accent") -> Iterator[Status]:
    """
    Context manager for showing a spinner during long operations.

    Usage:
        with spinner("Loading memory..."):
            load_memory()
    """
    with console.status(f"[{style}]{message}[/]", spinner="dots") as status:
        yield status


def confirm(message: str, *, default: bool = False) -> bool:
    """Ask for yes/no confirmation."""
    return Confirm.ask(f"[cc.accent]{message}[/]", default=default, console=console)


def print_banner(*, subtitle: str = "Project Memory Engine", version: Optional[str] = None) -> Console:
    """Print the CLI banner and return the console."""
    footer = subtitle.strip()
    if version:
        footer = f"{footer}  {icon('bullet')}  {version.strip()}"

    console.print(Panel(
        Text.assemble(Text(f"{icon('brain')} codecontext", style="cc.banner"), "\n", Text(footer, style="cc.subtitle")),
        border_style="cc.border",
        padding=(1, 2),
    ))
    return console


# =============================================================================
# Logging Integration
# =============================================================================

def setup_rich_logging(level: int = logging.INFO) -> None:
    """
    Configure Python logging to use Rich for log output.

    Usage:
        setup_rich_logging()
        logging.info("This will be pretty!")
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(
            console=console,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )],
    )
