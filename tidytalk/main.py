"""
Main application entry point for tidytalk.

This module provides the command-line interface and orchestrates the
recording, transcription, formatting/refinement and history pipeline.
"""

import asyncio
import logging
import sys
import time
from pathlib import Path
from typing import Optional

import click
import pyperclip
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .audio.recorder import AudioRecorder, AudioRecorderError
from .audio.transcriber import Transcriber, TranscriptionError, create_transcriber
from .cleanup.cleaner import PipelineResult, TranscriptPipeline
from .cleanup.guard import RefinementCancelled
from .cleanup.providers import LocalLlamaClient
from .config import AppConfig, ConfigError, load_config
from .storage.history import (
    STATUS_ERROR,
    STATUS_OK,
    TranscriptNotFoundError,
    TranscriptRecord,
    TranscriptStore,
)
from .ui.terminal import TerminalUI

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Log to stderr through Rich and, if given, to a fresh debug log file."""
    package_logger = logging.getLogger("tidytalk")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    package_logger.setLevel(logging.DEBUG)
    package_logger.propagate = False

    console_handler = RichHandler(console=Console(stderr=True), show_path=False)
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    package_logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        # Truncated on every start so the log only covers the current run
        file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        package_logger.addHandler(file_handler)


class DictationApp:
    """
    Main application class that coordinates all components.

    Handles the pipeline from recording through transcription, formatting,
    refinement, history and clipboard. Only the latest transcription may
    refine: starting a new recording abandons the previous refinement.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        ui: Optional[TerminalUI] = None,
        recorder: Optional[AudioRecorder] = None,
        transcriber: Optional[Transcriber] = None,
        pipeline: Optional[TranscriptPipeline] = None,
        store: Optional[TranscriptStore] = None
    ):
        self.config = config or AppConfig()
        self.ui = ui or TerminalUI()
        self.recorder = recorder or AudioRecorder()
        self.transcriber = transcriber or create_transcriber(self.config.transcriber)
        self.pipeline = pipeline or TranscriptPipeline.from_config(self.config)
        self.store = store or TranscriptStore(self.config.database_path)

        self.recordings_dir = self.config.recordings_dir
        self._cancel_event: Optional[asyncio.Event] = None

    def cancel_pending(self) -> None:
        """Abandon the in-flight refinement, if any."""
        if self._cancel_event is not None and not self._cancel_event.is_set():
            logger.info("Cancelling previous refinement")
            self._cancel_event.set()

    async def process_transcript(self, raw_text: str) -> Optional[PipelineResult]:
        """
        Run the pipeline for the newest transcript.

        Returns:
            PipelineResult, or None if a newer transcript superseded this one.
        """
        self.cancel_pending()
        cancel_event = asyncio.Event()
        self._cancel_event = cancel_event
        try:
            return await self.pipeline.process(raw_text, cancel_event=cancel_event)
        except RefinementCancelled:
            logger.info("Discarding refinement for superseded transcript")
            return None
        finally:
            if self._cancel_event is cancel_event:
                self._cancel_event = None

    async def run_session(self) -> Optional[TranscriptRecord]:
        """
        Run a complete dictation session.

        Returns:
            The stored transcript, or None if the session was cancelled or failed.
        """
        if not await self.ui.prompt_start_recording():
            return None

        audio_path = await self._record_audio()
        if audio_path is None:
            return None

        return await self._finish_session(audio_path, self.recorder.last_duration_ms)

    async def run_loop(self) -> None:
        """Dictate repeatedly; each new recording supersedes the previous refinement."""
        pending: Optional[asyncio.Task] = None
        try:
            while await self.ui.prompt_start_recording():
                audio_path = await self._record_audio()
                if audio_path is None:
                    continue
                if pending is not None:
                    await pending
                pending = asyncio.create_task(
                    self._finish_session(audio_path, self.recorder.last_duration_ms)
                )
                # Let the session start before blocking on the next prompt
                await asyncio.sleep(0)
        finally:
            if pending is not None:
                await pending

    async def rerun(self, transcript_id: int, refine: bool = True) -> TranscriptRecord:
        """Re-run the pipeline on a stored transcript and update it in place."""
        record = self.store.require_transcript(transcript_id)
        result = await self.pipeline.process(record.raw_text or "", refine=refine)
        self.store.update_final_text(transcript_id, result.final_text)
        record.final_text = result.final_text
        return record

    async def _record_audio(self) -> Optional[Path]:
        """
        Record audio from microphone until the user presses Enter.

        Returns:
            Path to the recorded WAV file, or None if recording failed.
        """
        try:
            await self.recorder.start_recording()
            # A new recording makes any pending refinement stale
            self.cancel_pending()
            await self.ui.show_recording_status()

            if not await self.ui.prompt_stop_recording():
                await self.recorder.stop_recording()
                return None

            audio_path = self.recordings_dir / f"recording_{int(time.time() * 1000)}.wav"
            return await self.recorder.stop_recording_to_file(audio_path)

        except (AudioRecorderError, RuntimeError, OSError) as e:
            logger.error(f"Recording failed: {e}")
            await self.ui.show_error(e)
            return None

    async def _finish_session(self, audio_path: Path, duration_ms: Optional[int]) -> Optional[TranscriptRecord]:
        """Transcribe, format, store and copy one recording."""
        try:
            await self.ui.show_transcription_progress("Transcribing audio...")
            transcription = await self.transcriber.transcribe_file(audio_path)
        except (TranscriptionError, FileNotFoundError) as e:
            logger.error(f"Transcription failed: {e}")
            self.store.insert_transcript(TranscriptRecord(
                raw_text="",
                final_text="",
                status=STATUS_ERROR,
                audio_path=str(audio_path),
                duration_ms=duration_ms,
                model=self.transcriber.model_name
            ))
            await self.ui.show_error(e)
            return None

        if not transcription.text.strip():
            await self.ui.show_error(Exception("No speech detected in recording."))
            return None

        await self.ui.show_transcription_progress("Formatting transcript...")
        result = await self.process_transcript(transcription.text)
        final_text = result.final_text if result else self.pipeline.format(transcription.text)

        record = TranscriptRecord(
            raw_text=transcription.text,
            final_text=final_text,
            status=STATUS_OK,
            audio_path=str(audio_path),
            duration_ms=duration_ms,
            model=transcription.model
        )
        self.store.insert_transcript(record)

        if result is None:
            # Superseded by a newer recording; keep it in history only
            return record

        await self.ui.display_result(result)
        if self.config.copy_to_clipboard and final_text:
            self._copy_to_clipboard(final_text)
            await self.ui.show_success(final_text)
        return record

    def _copy_to_clipboard(self, text: str) -> None:
        """
        Copy text to system clipboard.

        Args:
            text: Text to copy
        """
        try:
            pyperclip.copy(text)
        except pyperclip.PyperclipException as e:
            logger.warning(f"Could not copy to clipboard: {e}")
            self.ui.console.print(f"[yellow]⚠️  Could not copy to clipboard: {e}[/yellow]")


def _read_text(text: Optional[str]) -> str:
    """Use the argument, or read stdin when it is missing or '-'."""
    if text is None or text == "-":
        return click.get_text_stream("stdin").read()
    return text


def _open_store(config: AppConfig) -> TranscriptStore:
    return TranscriptStore(config.database_path)


@click.group()
@click.version_option(version=__version__)
@click.option(
    '--config', 'config_path',
    type=click.Path(dir_okay=False),
    default=None,
    help='Path to config.json (default: ~/.config/tidytalk/config.json)'
)
@click.option('--verbose', '-v', is_flag=True, help='Show debug logging')
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], verbose: bool) -> None:
    """
    tidytalk - dictation with rule-based formatting and guarded LLM refinement.

    Spoken commands ("comma", "period", "new line", "next point") become
    punctuation and structure; an optional local model adds structure but
    can never change the words you said.
    """
    try:
        config = load_config(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e))

    configure_logging("DEBUG" if verbose else config.log_level, config.log_path)
    ctx.obj = config


@main.command("format")
@click.argument('text', required=False)
@click.option('--no-casing', is_flag=True, help='Skip sentence casing')
@click.option('--no-commands', is_flag=True, help='Keep spoken commands as words')
@click.option('--no-cleanup', is_flag=True, help='Skip whitespace/punctuation cleanup')
@click.pass_obj
def format_command(config: AppConfig, text: Optional[str], no_casing: bool, no_commands: bool, no_cleanup: bool) -> None:
    """Format TEXT (or stdin) with the rule-based formatter only."""
    options = config.formatting
    options.sentence_casing = options.sentence_casing and not no_casing
    options.spoken_commands = options.spoken_commands and not no_commands
    options.cleanup = options.cleanup and not no_cleanup

    pipeline = TranscriptPipeline.from_config(config)
    click.echo(pipeline.format(_read_text(text)))


@main.command()
@click.argument('text', required=False)
@click.option('--no-llm', is_flag=True, help='Skip LLM refinement')
@click.pass_obj
def refine(config: AppConfig, text: Optional[str], no_llm: bool) -> None:
    """Format TEXT (or stdin) and refine it with the local model."""
    pipeline = TranscriptPipeline.from_config(config)
    result = asyncio.run(pipeline.process(_read_text(text), refine=not no_llm))

    if result.refinement is not None and not result.refinement.accepted:
        click.echo(f"Refinement rejected ({result.refinement.reason.value}); using rule-based text", err=True)
    click.echo(result.final_text)


@main.command()
@click.argument('audio', type=click.Path(exists=True, dir_okay=False))
@click.option('--no-llm', is_flag=True, help='Skip LLM refinement')
@click.option('--no-save', is_flag=True, help='Do not store the transcript in history')
@click.pass_obj
def transcribe(config: AppConfig, audio: str, no_llm: bool, no_save: bool) -> None:
    """Transcribe an AUDIO file and print the formatted text."""
    async def _run() -> PipelineResult:
        transcriber = create_transcriber(config.transcriber)
        transcription = await transcriber.transcribe_file(audio)
        pipeline = TranscriptPipeline.from_config(config)
        result = await pipeline.process(transcription.text, refine=not no_llm)
        if not no_save:
            with _open_store(config) as store:
                store.insert_transcript(TranscriptRecord(
                    raw_text=result.raw_text,
                    final_text=result.final_text,
                    audio_path=str(Path(audio).resolve()),
                    model=transcription.model
                ))
        return result

    try:
        result = asyncio.run(_run())
    except TranscriptionError as e:
        raise click.ClickException(str(e))
    click.echo(result.final_text)


@main.command()
@click.option('--loop', 'loop_mode', is_flag=True, help='Keep dictating until Ctrl+C')
@click.pass_obj
def dictate(config: AppConfig, loop_mode: bool) -> None:
    """Record from the microphone, transcribe, format and copy to clipboard."""
    app = DictationApp(config)
    try:
        if loop_mode:
            asyncio.run(app.run_loop())
        else:
            asyncio.run(app.run_session())
    except KeyboardInterrupt:
        click.echo("\nSession cancelled by user.")
        sys.exit(0)
    finally:
        app.store.close()


@main.command()
@click.option('--limit', default=50, show_default=True, help='Number of transcripts to show')
@click.pass_obj
def history(config: AppConfig, limit: int) -> None:
    """List recent transcripts, latest first."""
    with _open_store(config) as store:
        TerminalUI().display_history(store.get_history(limit))


@main.command()
@click.argument('transcript_id', type=int)
@click.pass_obj
def show(config: AppConfig, transcript_id: int) -> None:
    """Show one stored transcript."""
    with _open_store(config) as store:
        record = store.get_transcript(transcript_id)
    if record is None:
        raise click.ClickException(f"Transcript {transcript_id} not found")
    TerminalUI().display_record(record)


@main.command()
@click.argument('transcript_id', type=int)
@click.option('--no-llm', is_flag=True, help='Skip LLM refinement')
@click.pass_obj
def rerun(config: AppConfig, transcript_id: int, no_llm: bool) -> None:
    """Re-format a stored transcript and update its final text."""
    with _open_store(config) as store:
        pipeline = TranscriptPipeline.from_config(config)
        try:
            record = store.require_transcript(transcript_id)
        except TranscriptNotFoundError as e:
            raise click.ClickException(str(e))

        result = asyncio.run(pipeline.process(record.raw_text or "", refine=not no_llm))
        store.update_final_text(transcript_id, result.final_text)
    click.echo(result.final_text)


@main.command()
@click.argument('transcript_id', type=int)
@click.option('--keep-audio', is_flag=True, help='Leave the WAV file on disk')
@click.pass_obj
def delete(config: AppConfig, transcript_id: int, keep_audio: bool) -> None:
    """Delete a stored transcript and its recording."""
    with _open_store(config) as store:
        if store.get_transcript(transcript_id) is None:
            raise click.ClickException(f"Transcript {transcript_id} not found")
        audio_path = store.delete_transcript(transcript_id)

    if audio_path and not keep_audio:
        Path(audio_path).unlink(missing_ok=True)
    click.echo(f"Deleted transcript {transcript_id}")


@main.command("check-server")
@click.pass_obj
def check_server(config: AppConfig) -> None:
    """Check that the local llama-server is up."""
    client = LocalLlamaClient.from_config(config.refinement)
    if asyncio.run(client.is_ready()):
        click.echo(f"llama-server ready at {client.server_root}")
    else:
        raise click.ClickException(f"llama-server not reachable at {client.server_root}")


if __name__ == "__main__":
    main()
