"""
Rich Output Utilities
=====================

Terminal output for canarypilot using the Rich library: a themed console,
basic message helpers, and renderers for release phases, audit entries,
assistant messages, telemetry and model comparisons.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.rule import Rule
from rich.table import Table
from rich.theme import Theme

from canarypilot.models import (
    AgentMessage,
    LogEntry,
    MessageKind,
    MetricDelta,
    MetricSample,
    Phase,
    Sender,
    Severity,
)


# =============================================================================
# Color Scheme & Theme
# =============================================================================

@dataclass(frozen=True)
class PilotColors:
    """canarypilot palette using hex for truecolor terminal support."""
    ink: str = "#334155"       # primary text
    dim: str = "#94A3B8"       # muted text
    primary: str = "#2563EB"   # accent blue
    ok: str = "#16A34A"        # success green
    warn: str = "#D97706"      # warning amber
    err: str = "#DC2626"       # error red


def pilot_theme(colors: PilotColors = PilotColors()) -> Theme:
    """
    Rich Theme for the canarypilot CLI.

    Style names are semantic so you can use them everywhere:
      console.print("...", style="cp.ok")
    """
    return Theme(
        {
            "cp.accent": f"bold {colors.primary}",
            "cp.border": f"{colors.primary}",
            "cp.muted": f"{colors.dim}",
            "cp.text": f"{colors.ink}",

            # Status
            "cp.ok": f"bold {colors.ok}",
            "cp.warn": f"bold {colors.warn}",
            "cp.err": f"bold {colors.err}",
            "cp.info": f"{colors.primary}",

            # Data display
            "cp.key": f"{colors.dim}",
            "cp.value": f"{colors.ink}",
            "cp.number": f"bold {colors.primary}",
            "cp.timestamp": f"{colors.dim}",
            "cp.table.header": f"bold {colors.primary}",

            # Release phases
            "cp.phase.setup": f"bold {colors.primary}",
            "cp.phase.live": f"bold {colors.ok}",
            "cp.phase.alert": f"bold {colors.err}",
            "cp.phase.done": f"bold {colors.dim}",
        }
    )


# =============================================================================
# Unicode / ASCII Fallbacks
# =============================================================================

def _can_use_unicode() -> bool:
    """Check if the terminal can handle Unicode characters."""
    if os.name == "nt":
        try:
            encoding = sys.stdout.encoding or "utf-8"
            "✓✗•".encode(encoding)
            return True
        except (UnicodeEncodeError, LookupError, AttributeError):
            return False
    return True


_UNICODE_ICONS = {
    "check": "✓",
    "cross": "✗",
    "warning": "⚠",
    "info": "ℹ",
    "bullet": "•",
    "arrow_right": "→",
    "agent": "◆",
    "user": "▶",
    "bar_filled": "█",
}

_ASCII_ICONS = {
    "check": "[OK]",
    "cross": "[X]",
    "warning": "[!]",
    "info": "[i]",
    "bullet": "-",
    "arrow_right": "->",
    "agent": "*",
    "user": ">",
    "bar_filled": "#",
}

_ICONS = _UNICODE_ICONS if _can_use_unicode() else _ASCII_ICONS


def icon(name: str) -> str:
    """Get an icon by name, using ASCII fallback if needed."""
    return _ICONS.get(name, "")


# =============================================================================
# Global Console Instance
# =============================================================================

console = Console(theme=pilot_theme())


# =============================================================================
# Basic Message Functions
# =============================================================================

def print_success(message: str) -> None:
    console.print(f"[cp.ok]{icon('check')} {message}[/]")


def print_error(message: str) -> None:
    console.print(f"[cp.err]{icon('cross')} {message}[/]")


def print_warning(message: str) -> None:
    console.print(f"[cp.warn]{icon('warning')} {message}[/]")


def print_info(message: str) -> None:
    console.print(f"[cp.info]{icon('info')} {message}[/]")


def print_muted(message: str) -> None:
    console.print(f"[cp.muted]{message}[/]")


def print_header(title: str, style: str = "cp.accent") -> None:
    """Print a prominent section header with rule lines."""
    console.print()
    console.print(Rule(f"[{style}]{title}[/]", style=style))
    console.print()


def print_key_value_table(
    data: Dict[str, Any],
    *,
    title: Optional[str] = None,
    border_style: str = "cp.border",
) -> None:
    """Print multiple key-value pairs in a clean table format."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="cp.key")
    table.add_column("Value", style="cp.value")

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
    border_style: str = "cp.border",
) -> Table:
    """Create a styled Rich Table."""
    table = Table(
        title=title,
        show_header=show_header,
        header_style="cp.table.header",
        border_style=border_style,
        title_style="cp.accent",
    )
    for col in columns or []:
        table.add_column(col)
    return table


def print_panel(
    content: str,
    *,
    title: Optional[str] = None,
    border_style: str = "cp.border",
    padding: tuple = (1, 2),
) -> None:
    console.print(Panel(
        content,
        title=f"[bold]{title}[/]" if title else None,
        border_style=border_style,
        padding=padding,
    ))


# =============================================================================
# Interactive Prompts
# =============================================================================

def confirm(message: str, *, default: bool = False) -> bool:
    """Ask for yes/no confirmation."""
    return Confirm.ask(f"[cp.accent]{message}[/]", default=default, console=console)


def select(message: str, choices: Sequence[str], *, default: Optional[str] = None) -> str:
    """Present a selection menu and return the chosen option."""
    return Prompt.ask(
        f"[cp.accent]{message}[/]",
        choices=list(choices),
        default=default,
        console=console,
    )


# =============================================================================
# Release Rendering
# =============================================================================

_PHASE_STYLES = {
    Phase.IDLE: "cp.phase.done",
    Phase.SHADOW_TEST: "cp.phase.setup",
    Phase.CANARY_SETUP: "cp.phase.setup",
    Phase.MONITORING: "cp.phase.live",
    Phase.ANOMALY_DETECTED: "cp.phase.alert",
    Phase.ROLLBACK_CONFIRM: "cp.phase.alert",
    Phase.ROLLED_BACK: "cp.phase.done",
}

_SEVERITY_STYLES = {
    Severity.INFO: "cp.info",
    Severity.SUCCESS: "cp.ok",
    Severity.WARNING: "cp.warn",
    Severity.ERROR: "cp.err",
}

_KIND_STYLES = {
    MessageKind.NORMAL: "cp.text",
    MessageKind.ALERT: "cp.warn",
    MessageKind.RECOMMENDATION: "cp.accent",
    MessageKind.SUCCESS: "cp.ok",
}


def phase_label(phase: Phase) -> str:
    return phase.value.replace("_", " ").upper()


def print_phase(phase: Phase, previous: Optional[Phase] = None) -> None:
    """Print a phase change banner."""
    style = _PHASE_STYLES.get(phase, "cp.accent")
    if previous is None or previous == phase:
        console.print(f"[{style}][{phase_label(phase)}][/]")
    else:
        console.print(
            f"[cp.muted]{phase_label(previous)}[/] [cp.muted]{icon('arrow_right')}[/] "
            f"[{style}]{phase_label(phase)}[/]"
        )


def print_log_entry(entry: LogEntry) -> None:
    style = _SEVERITY_STYLES.get(entry.severity, "cp.info")
    time_str = entry.timestamp.strftime("%H:%M:%S")
    console.print(
        f"[cp.timestamp]{time_str}[/] [{style}]{entry.event}[/] [cp.muted]{entry.details}[/]"
    )


def print_agent_message(message: AgentMessage) -> None:
    if message.sender == Sender.USER:
        console.print(f"  [cp.key]{icon('user')} you:[/] {message.text}")
        return
    style = _KIND_STYLES.get(message.kind, "cp.text")
    console.print(f"  [cp.accent]{icon('agent')}[/] [{style}]{message.text}[/]")
    if message.metadata:
        meta = ", ".join(f"{k}={v}" for k, v in message.metadata.items())
        console.print(f"    [cp.muted]{meta}[/]")


def print_audit_log(entries: Sequence[LogEntry], *, limit: Optional[int] = None) -> None:
    """Audit entries as a table, in the order given (newest first from AuditLog)."""
    table = create_table(title="Audit Log", columns=["Time", "Event", "Details", "Severity"])
    for entry in list(entries)[:limit]:
        style = _SEVERITY_STYLES.get(entry.severity, "cp.info")
        table.add_row(
            f"[cp.timestamp]{entry.timestamp.strftime('%H:%M:%S')}[/]",
            f"[{style}]{entry.event}[/]",
            entry.details,
            f"[{style}]{entry.severity.value}[/]",
        )
    console.print(table)


def print_metric_history(samples: Sequence[MetricSample], *, last: int = 10) -> None:
    table = create_table(title="Canary Telemetry", columns=["Tick", "Latency", "Error rate", "Drift (region)"])
    for sample in list(samples)[-last:]:
        tick = "warm-up" if sample.is_warmup else str(sample.tick_index)
        table.add_row(
            tick,
            f"{sample.latency_ms:.0f}ms",
            f"{sample.error_rate * 100:.2f}%",
            f"{sample.drift_user_region:.3f}",
        )
    console.print(table)


def print_model_comparison(deltas: Sequence[MetricDelta], baseline: str, candidate: str) -> None:
    table = create_table(title="Model Comparison", columns=["Metric", baseline, candidate, "Change"])
    for delta in deltas:
        if delta.is_neutral:
            style = "cp.muted"
        elif delta.is_better:
            style = "cp.ok"
        else:
            style = "cp.err"
        table.add_row(
            delta.label,
            f"{delta.baseline:g}",
            f"{delta.candidate:g}",
            f"[{style}]{delta.percent:+.1f}%[/]",
        )
    console.print(table)


# =============================================================================
# Logging Integration
# =============================================================================

def setup_rich_logging(level: int = logging.INFO) -> None:
    """
    Configure Python logging to use Rich for log output.

    Usage:
        setup_rich_logging(logging.DEBUG)
        logging.getLogger("canarypilot").debug("visible")
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
