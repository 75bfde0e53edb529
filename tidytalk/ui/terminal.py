"""
Rich-based terminal user interface.

Prompts for hold-to-talk recording, shows a spinner while transcribing and
refining, and renders results and transcript history.
"""

from typing import List, Optional
import asyncio
import time

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.status import Status
from rich.table import Table
from rich.text import Text

from ..audio.recorder import AudioRecorderError, MicrophonePermissionError
from ..audio.transcriber import TranscriptionError
from ..cleanup.cleaner import PipelineResult
from ..storage.history import STATUS_OK, TranscriptRecord

# Most specific first
ERROR_HINTS = (
    (MicrophonePermissionError, "Allow microphone access for your terminal and try again."),
    (AudioRecorderError, "Check that an input device is connected."),
    (TranscriptionError, "Check the transcriber section of your config file."),
    (FileNotFoundError, "The recording was not written; check the data directory."),
)

PREVIEW_CHARS = 80


class TerminalUI:
    """Terminal front end for a dictation session."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self._status: Optional[Status] = None
        self._started_at: Optional[float] = None

    async def _wait_for_enter(self, prompt: str) -> bool:
        """Block on Enter in a worker thread. False on Ctrl+C or EOF."""
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.console.input, prompt)
        except (KeyboardInterrupt, EOFError):
            return False
        return True

    async def prompt_start_recording(self) -> bool:
        """
        Wait for the user to start a recording.

        Returns:
            False if the user quit instead.
        """
        self.console.rule("[bold magenta]tidytalk[/bold magenta]")
        self.console.print(
            '[dim]Say "comma", "period", "new line" or "next point" to add structure.[/dim]'
        )
        return await self._wait_for_enter("[green]Enter[/green] to record, [red]Ctrl+C[/red] to quit ")

    async def show_recording_status(self) -> None:
        self._started_at = time.monotonic()
        self.console.print("[bold red]● Recording[/bold red] [dim]Enter to stop[/dim]")

    async def prompt_stop_recording(self) -> bool:
        """Wait for Enter to stop. False if the user aborted instead."""
        if not await self._wait_for_enter(""):
            return False
        if self._started_at is not None:
            self.console.print(f"[dim]Stopped after {time.monotonic() - self._started_at:.1f}s[/dim]")
            self._started_at = None
        return True

    async def show_transcription_progress(self, message: str) -> None:
        """Start the spinner, or change its message if it is already running."""
        if self._status is None:
            self._status = self.console.status(message, spinner="dots")
            self._status.start()
        else:
            self._status.update(message)
        # Let the spinner draw before the caller blocks
        await asyncio.sleep(0)

    def _stop_progress(self) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None

    async def display_result(self, result: PipelineResult) -> None:
        """Show raw and final text side by side with the refinement verdict."""
        self._stop_progress()

        table = Table(box=box.SIMPLE_HEAVY, expand=True)
        table.add_column("Heard", style="dim", ratio=1)
        table.add_column("Final", ratio=1)
        table.add_row(escape(result.raw_text), escape(result.final_text))
        self.console.print(table)

        outcome = result.refinement
        if outcome is None:
            verdict = "[dim]rules only[/dim]"
        elif outcome.accepted:
            verdict = f"[green]refined by local model in {outcome.processing_time:.1f}s[/green]"
        else:
            detail = outcome.validation.detail
            verdict = f"[yellow]model output rejected ({outcome.reason.value})[/yellow]"
            if detail:
                verdict += f" [dim]{escape(detail)}[/dim]"
        self.console.print(verdict)

    def display_history(self, records: List[TranscriptRecord]) -> None:
        """Render transcript history, latest first."""
        if not records:
            self.console.print("[dim]No transcripts yet.[/dim]")
            return

        table = Table(title="History", box=box.SIMPLE_HEAVY)
        table.add_column("#", justify="right", style="cyan")
        table.add_column("When", style="magenta", no_wrap=True)
        table.add_column("", no_wrap=True)
        table.add_column("Text")

        for record in records:
            text = record.final_text or ""
            if len(text) > PREVIEW_CHARS:
                text = text[:PREVIEW_CHARS] + "…"
            marker = "[green]✓[/green]" if record.status == STATUS_OK else "[red]✗[/red]"
            table.add_row(str(record.id), (record.created_at or "")[:16].replace("T", " "), marker, escape(text))

        self.console.print(table)

    def display_record(self, record: TranscriptRecord) -> None:
        """Render a single stored transcript."""
        self.console.print(Panel(Text(record.raw_text or ""), title="Heard", border_style="dim"))
        self.console.print(Panel(Text(record.final_text or ""), title="Final", border_style="green"))
        self.console.print(
            f"[dim]#{record.id} · {record.created_at} · {record.model or 'unknown model'} · {record.status}[/dim]"
        )

    async def show_error(self, error: Exception) -> None:
        self._stop_progress()

        body = Text(str(error) or type(error).__name__, style="red")
        for error_type, hint in ERROR_HINTS:
            if isinstance(error, error_type):
                body.append(f"\n\n{hint}", style="dim")
                break

        self.console.print(Panel(body, title="Error", border_style="red", box=box.ROUNDED))

    async def show_success(self, message: str) -> None:
        """Confirm the clipboard copy with a preview of the text."""
        self._stop_progress()

        preview = message if len(message) <= PREVIEW_CHARS * 2 else message[:PREVIEW_CHARS * 2] + "…"
        self.console.print(Panel(Text(preview), title="Copied to clipboard", border_style="green", box=box.ROUNDED))
