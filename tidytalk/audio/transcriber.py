"""
Speech-to-text transcription.

Two interchangeable backends turn a recorded audio file into a plain-text
transcript: Faster Whisper in-process, or the whisper.cpp ``whisper-cli``
binary run as a subprocess.
"""

from abc import ABC, abstractmethod
from typing import Optional, List, Union
from pathlib import Path
from dataclasses import dataclass
import asyncio
import time
import logging

try:
    from faster_whisper import WhisperModel
    FASTER_WHISPER_AVAILABLE = True
except ImportError:
    FASTER_WHISPER_AVAILABLE = False
    WhisperModel = None

from ..config import TranscriberConfig

logger = logging.getLogger(__name__)


class TranscriptionError(Exception):
    """Raised when speech-to-text fails, exits non-zero or times out."""
    pass


@dataclass
class TranscriptionResult:
    """Transcript text with metadata."""
    text: str                                # Full transcribed text
    model: str                               # Backend/model that produced it
    language: Optional[str] = None           # Detected language
    duration: Optional[float] = None         # Audio duration in seconds
    processing_time: Optional[float] = None  # Time taken to transcribe


class Transcriber(ABC):
    """Abstract speech-to-text backend."""

    def __init__(self, timeout: float = 120.0):
        self.timeout = timeout

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Human-readable backend and model, stored with each transcript."""
        pass

    @abstractmethod
    async def _transcribe(self, file_path: Path) -> TranscriptionResult:
        pass

    async def transcribe_file(self, file_path: Union[str, Path]) -> TranscriptionResult:
        """
        Transcribe an audio file to text.

        Args:
            file_path: Path to the WAV file to transcribe

        Returns:
            TranscriptionResult with the transcribed text.

        Raises:
            FileNotFoundError: If the audio file doesn't exist.
            TranscriptionError: If the backend fails or exceeds the timeout.
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise FileNotFoundError(f"Audio file not found: {file_path}")

        logger.info(f"Transcribing: {file_path}")
        try:
            result = await asyncio.wait_for(self._transcribe(file_path), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TranscriptionError(f"Transcription timed out after {self.timeout}s") from e

        preview = result.text[:100] + ("..." if len(result.text) > 100 else "")
        logger.info(f'Transcription complete: "{preview}"')
        return result


class WhisperTranscriber(Transcriber):
    """
    Faster Whisper-based transcriber.

    The model is loaded lazily on first use and reused afterwards.
    """

    AVAILABLE_MODELS = [
        "large-v3-turbo",
        "large-v3",
        "medium",
        "small",
        "base",
        "tiny"
    ]

    def __init__(
        self,
        model_size: str = "base",
        device: str = "cpu",
        compute_type: str = "int8",
        language: Optional[str] = "en",
        beam_size: int = 5,
        vad_filter: bool = True,
        timeout: float = 120.0
    ):
        super().__init__(timeout)
        self.model_size = model_size
        self.device = device
        self.compute_type = compute_type
        self.language = language
        self.beam_size = beam_size
        self.vad_filter = vad_filter
        self._model: Optional[WhisperModel] = None

    @property
    def model_name(self) -> str:
        return f"faster-whisper {self.model_size}"

    def get_available_models(self) -> List[str]:
        """Get list of supported Whisper model sizes."""
        return self.AVAILABLE_MODELS.copy()

    def is_model_loaded(self) -> bool:
        return self._model is not None

    def load_model(self) -> None:
        """
        Load the Whisper model.

        Raises:
            TranscriptionError: If Faster Whisper is missing or the model fails to load.
        """
        if self._model is not None:
            return
        if not FASTER_WHISPER_AVAILABLE:
            raise TranscriptionError(
                "faster-whisper not available. Install with: pip install faster-whisper"
            )

        logger.info(f"Loading Whisper model: {self.model_size} on {self.device} with {self.compute_type}")
        try:
            self._model = WhisperModel(
                self.model_size,
                device=self.device,
                compute_type=self.compute_type
            )
        except Exception as e:
            raise TranscriptionError(f"Failed to load model '{self.model_size}': {e}") from e

    def _sync_transcribe(self, file_path: Path) -> TranscriptionResult:
        """Synchronous transcription to be run in an executor."""
        self.load_model()
        start_time = time.time()

        segments, info = self._model.transcribe(
            str(file_path),
            language=self.language,
            beam_size=self.beam_size,
            vad_filter=self.vad_filter
        )
        # Segments are a lazy generator; decoding happens while iterating
        text = " ".join(segment.text.strip() for segment in segments if segment.text.strip())

        return TranscriptionResult(
            text=text,
            model=self.model_name,
            language=getattr(info, "language", self.language),
            duration=getattr(info, "duration", None),
            processing_time=time.time() - start_time
        )

    async def _transcribe(self, file_path: Path) -> TranscriptionResult:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._sync_transcribe, file_path)
        except TranscriptionError:
            raise
        except Exception as e:
            logger.error(f"Transcription failed: {e}")
            raise TranscriptionError(f"Transcription failed: {e}") from e


class WhisperCppTranscriber(Transcriber):
    """
    Transcriber that runs whisper.cpp's ``whisper-cli`` per file.

    Invoked as ``whisper-cli -m MODEL -f WAV -nt -np`` (no timestamps, no
    progress) so stdout carries only the transcript.
    """

    def __init__(
        self,
        cli_path: Union[str, Path],
        model_path: Union[str, Path],
        timeout: float = 120.0
    ):
        super().__init__(timeout)
        self.cli_path = Path(cli_path)
        self.model_path = Path(model_path)

    @property
    def model_name(self) -> str:
        return f"whisper.cpp {self.model_path.stem}"

    def build_command(self, file_path: Path) -> List[str]:
        return [
            str(self.cli_path),
            "-m", str(self.model_path),
            "-f", str(file_path),
            "-nt",
            "-np"
        ]

    async def _transcribe(self, file_path: Path) -> TranscriptionResult:
        start_time = time.time()
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(file_path),
                cwd=str(self.cli_path.parent),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise TranscriptionError(f"Failed to spawn whisper-cli: {e}") from e

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            # Timed out or abandoned: don't leave the binary running
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            error_output = stderr.decode("utf-8", errors="replace").strip()
            logger.error(f"whisper-cli exited with code {process.returncode}: {error_output}")
            raise TranscriptionError(f"whisper-cli exited with code {process.returncode}: {error_output}")

        lines = stdout.decode("utf-8", errors="replace").splitlines()
        text = " ".join(line.strip() for line in lines if line.strip())

        return TranscriptionResult(
            text=text,
            model=self.model_name,
            processing_time=time.time() - start_time
        )


def create_transcriber(config: TranscriberConfig) -> Transcriber:
    """Create the backend selected in configuration."""
    if config.backend == "whisper.cpp":
        if not config.cli_path or not config.model_path:
            raise TranscriptionError("whisper.cpp backend needs both cli_path and model_path")
        return WhisperCppTranscriber(config.cli_path, config.model_path, timeout=config.timeout)

    return WhisperTranscriber(
        model_size=config.model_size,
        language=config.language,
        timeout=config.timeout
    )
