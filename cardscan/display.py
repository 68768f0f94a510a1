"""Live terminal view of the scanner using rich."""

import threading
import time
from collections import deque
from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from cardscan.fusion import expand_condition
from cardscan.models import MatchResult, PipelineState, ScanStatus

STATE_STYLES = {
    PipelineState.IDLE: "dim",
    PipelineState.ENGINES_LOADING: "yellow",
    PipelineState.CAMERA_READY: "cyan",
    PipelineState.SCANNING: "green",
    PipelineState.PAUSED: "yellow",
    PipelineState.ERROR: "bold red",
}


class ScanDisplay:
    """Subscribes to a ScanController and renders its status, match and activity."""

    def __init__(self, condition: Optional[str] = "NM", printing: Optional[str] = None):
        self.lock = threading.Lock()
        self.condition = condition
        self.printing = printing
        self.status: Optional[ScanStatus] = None
        self.log: deque = deque(maxlen=100)
        self.activity_log_max_lines = 10
        self._last_message: Optional[str] = None

        self.console = Console()
        self.live: Optional[Live] = None
        self.running = False
        self.display_thread: Optional[threading.Thread] = None

    def update(self, status: ScanStatus) -> None:
        """Status listener: store the snapshot and log message changes."""
        with self.lock:
            self.status = status
            message = status.status_message
            if message and message != self._last_message:
                self._last_message = message
                self.log.append(f"[{time.strftime('%H:%M:%S')}] {message}")

    def add_log(self, message: str) -> None:
        with self.lock:
            self.log.append(f"[{time.strftime('%H:%M:%S')}] {message}")

    def _status_panel(self) -> Panel:
        with self.lock:
            status = self.status
        text = Text()
        text.append(" Card Scanner ", style="bold green on dark_blue")
        text.append(" (Press Ctrl+C to stop)\n\n", style="dim")
        if status is None:
            text.append("Starting...\n", style="dim")
        else:
            text.append("State: ", style="dim")
            text.append(f"{status.state.value}\n", style=STATE_STYLES.get(status.state, "bright_white"))
            text.append("Status: ", style="dim")
            text.append(f"{status.status_message}\n", style="bright_white")
            if status.last_confidence is not None:
                text.append("OCR confidence: ", style="dim")
                text.append(f"~{status.last_confidence}%\n", style="bright_white")
            if status.error:
                text.append(f"\n{status.error}\n", style="red")
        return Panel(text, title="Status", border_style="green")

    def _match_panel(self) -> Panel:
        with self.lock:
            match = self.status.last_match if self.status else None
        if match is None:
            body = Text("No match yet. Keep the card steady, front-lit, and fill more of the frame.", style="dim")
            return Panel(body, title="Current match", border_style="cyan")
        return Panel(self._match_table(match), title="Current match", border_style="cyan")

    def _match_table(self, match: MatchResult) -> Table:
        record = match.record
        table = Table.grid(padding=(0, 1))
        table.add_column(style="dim")
        table.add_column(style="bright_white")
        table.add_row("Name", Text(record.name, style="bold"))
        table.add_row("Set", record.set_name or "—")
        table.add_row("Number", f"#{record.number}" if record.number else "—")
        table.add_row("Rarity", record.rarity or "—")
        label = f"{expand_condition(self.condition) or 'Any'} price"
        if self.printing:
            label = f"{label} ({self.printing})"
        if match.price is not None and match.price.price is not None:
            price = f"{match.price.price:.2f}"
            if match.price.printing:
                price += f" ({match.price.printing})"
        else:
            price = "—"
        table.add_row(label, Text(price, style="bold green"))
        if match.scores is not None:
            table.add_row(
                "Scores",
                f"text {match.scores.text_score:.2f} · image {match.scores.image_score:.2f} · "
                f"final {match.scores.final_score:.2f}",
            )

        variants = Table(show_header=True, header_style="bold yellow", box=None)
        variants.add_column("Condition")
        variants.add_column("Printing")
        variants.add_column("Price", justify="right")
        variants.add_column("Updated", justify="right")
        for variant in record.variants:
            updated = (datetime.fromtimestamp(variant.last_updated).strftime('%Y-%m-%d')
                       if variant.last_updated else "—")
            variants.add_row(
                variant.condition or "—",
                variant.printing or "—",
                f"{variant.price:.2f}" if variant.price is not None else "—",
                updated,
            )

        outer = Table.grid()
        outer.add_row(table)
        if record.variants:
            outer.add_row(Text(""))
            outer.add_row(variants)
        return outer

    def _log_panel(self) -> Panel:
        with self.lock:
            messages = list(self.log)[-self.activity_log_max_lines:]
        text = Text()
        if messages:
            for msg in reversed(messages):
                text.append(f"{msg}\n", style="dim")
        else:
            text.append("No activity yet...\n", style="dim")
        return Panel(text, title="Activity Log", border_style="blue")

    def _create_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(self._status_panel(), size=9),
            Layout(self._match_panel()),
            Layout(self._log_panel(), size=self.activity_log_max_lines + 2),
        )
        return layout

    def start(self) -> None:
        """Render in a background thread until stop() is called."""
        def run_display():
            try:
                with Live(self._create_layout(), refresh_per_second=4, screen=False, console=self.console) as live:
                    self.live = live
                    while self.running:
                        live.update(self._create_layout())
                        time.sleep(0.25)
            finally:
                self.running = False

        self.running = True
        self.display_thread = threading.Thread(target=run_display, daemon=True)
        self.display_thread.start()

    def stop(self) -> None:
        self.running = False
        if self.display_thread is not None:
            self.display_thread.join(timeout=1.0)
            self.display_thread = None
