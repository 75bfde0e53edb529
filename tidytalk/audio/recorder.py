"""
Hold-to-talk microphone capture.

Audio is read by PyAudio's own callback thread into an in-memory frame list
and written out as 16 kHz mono 16-bit WAV, the format both Whisper backends
read directly.
"""

import io
import logging
import threading
import wave
from pathlib import Path
from typing import List, Optional, Union

import pyaudio

logger = logging.getLogger(__name__)

SAMPLE_WIDTH = 2  # bytes per sample for paInt16


class AudioRecorderError(Exception):
    """Base exception for audio recorder errors."""
    pass


class MicrophonePermissionError(AudioRecorderError):
    """Raised when the OS refuses access to the microphone."""
    pass


class DeviceError(AudioRecorderError):
    """Raised when there is no usable input device."""
    pass


class AudioRecorder:
    """
    Records from an input device between start and stop.

    Example:
        >>> recorder = AudioRecorder()
        >>> await recorder.start_recording()
        >>> path = await recorder.stop_recording_to_file("take.wav")
        >>> recorder.last_duration_ms
        2310

    Args:
        sample_rate: Capture rate in Hz
        chunk_size: Frames per PyAudio buffer
        channels: 1 for mono, 2 for stereo
        device_index: PyAudio input device, or None for the system default
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        chunk_size: int = 1024,
        channels: int = 1,
        device_index: Optional[int] = None
    ):
        if sample_rate <= 0 or chunk_size <= 0:
            raise ValueError("sample_rate and chunk_size must be positive")
        if channels not in (1, 2):
            raise ValueError(f"channels must be 1 or 2, got {channels}")

        self.sample_rate = sample_rate
        self.chunk_size = chunk_size
        self.channels = channels
        self.device_index = device_index

        self._pa: Optional[pyaudio.PyAudio] = None
        self._stream = None
        self._frames: List[bytes] = []
        self._frames_lock = threading.Lock()
        self.last_duration_ms: Optional[int] = None

    def is_recording(self) -> bool:
        return self._stream is not None

    async def start_recording(self) -> None:
        """
        Open the input stream and start capturing.

        Raises:
            RuntimeError: If a recording is already running
            DeviceError: If there is no input device
            MicrophonePermissionError: If the stream cannot be opened
        """
        if self.is_recording():
            raise RuntimeError("Recording already in progress")

        self._pa = pyaudio.PyAudio()
        try:
            if not any(
                self._pa.get_device_info_by_index(i).get("maxInputChannels", 0) > 0
                for i in range(self._pa.get_device_count())
            ):
                raise DeviceError("No audio input devices found")

            with self._frames_lock:
                self._frames = []

            try:
                self._stream = self._pa.open(
                    format=pyaudio.paInt16,
                    channels=self.channels,
                    rate=self.sample_rate,
                    input=True,
                    input_device_index=self.device_index,
                    frames_per_buffer=self.chunk_size,
                    stream_callback=self._on_audio
                )
            except OSError as e:
                raise MicrophonePermissionError(
                    f"Could not open the microphone ({e}). "
                    "Check that your terminal is allowed to use it."
                ) from e

            self._stream.start_stream()
        except Exception:
            self._release()
            raise

        logger.info(f"Recording started ({self.sample_rate}Hz, {self.channels}ch)")

    def _on_audio(self, in_data, frame_count, time_info, status):
        # Runs on PyAudio's thread
        if status & pyaudio.paInputOverflow:
            logger.debug("Input overflow, some audio was dropped")
        with self._frames_lock:
            self._frames.append(in_data)
        return (None, pyaudio.paContinue)

    async def stop_recording(self) -> bytes:
        """
        Stop capturing and return the recording as WAV bytes.

        Raises:
            RuntimeError: If nothing is being recorded
        """
        if not self.is_recording():
            raise RuntimeError("Not currently recording")

        self._release()

        with self._frames_lock:
            pcm = b"".join(self._frames)
            self._frames = []

        frames = len(pcm) // (SAMPLE_WIDTH * self.channels)
        self.last_duration_ms = int(frames * 1000 / self.sample_rate)
        logger.info(f"Recording stopped ({self.last_duration_ms}ms)")

        buffer = io.BytesIO()
        with wave.open(buffer, "wb") as wav:
            wav.setnchannels(self.channels)
            wav.setsampwidth(SAMPLE_WIDTH)
            wav.setframerate(self.sample_rate)
            wav.writeframes(pcm)
        return buffer.getvalue()

    async def stop_recording_to_file(self, path: Union[str, Path]) -> Path:
        """Stop capturing and write the WAV to ``path``."""
        data = await self.stop_recording()
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.debug(f"Saved recording to {path}")
        return path

    def _release(self) -> None:
        if self._stream is not None:
            try:
                self._stream.stop_stream()
                self._stream.close()
            except OSError as e:
                logger.warning(f"Error closing audio stream: {e}")
            self._stream = None
        if self._pa is not None:
            self._pa.terminate()
            self._pa = None

    async def __aenter__(self) -> "AudioRecorder":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.is_recording():
            self._release()
