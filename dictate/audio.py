"""Microphone capture, speech endpointing and file loading."""

import logging
import math
import threading
from typing import Optional

import numpy as np

from .features import DEFAULT_SAMPLE_RATE

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_RECORD_SECONDS = 35
DEFAULT_BLOCK_SIZE = 2048
DEFAULT_VAD_FRAME_MS = 30
DEFAULT_VAD_MODE = 2
DEFAULT_VAD_SILENCE_MS = 800


def int16_to_float(pcm: np.ndarray) -> np.ndarray:
    return pcm.astype(np.float32) / 32768.0


class AudioMic:
    """Mono int16 recorder that hands back normalized float samples on stop.

    The buffer is preallocated; recording stops itself once it is full.
    """

    def __init__(
        self,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        max_seconds: float = DEFAULT_MAX_RECORD_SECONDS,
        device: Optional[int] = None,
        block_size: int = DEFAULT_BLOCK_SIZE,
    ):
        self.sample_rate = sample_rate
        self.device = device
        self.block_size = block_size
        self.max_samples = int(max_seconds * sample_rate)
        self._buffer = np.zeros(self.max_samples, dtype=np.int16)
        self._filled = 0
        self._last_block = np.zeros(0, dtype=np.int16)
        self._lock = threading.Lock()
        self._stream = None
        self._recording = False
        self.on_block = None

    def _callback(self, indata, frames, time_info, status):
        """Copy the block out of the PortAudio thread and stop at capacity."""
        if status:
            LOGGER.debug("Input stream status: %s", status)
        block = indata.reshape(-1).copy()
        with self._lock:
            n = min(block.size, self.max_samples - self._filled)
            self._buffer[self._filled : self._filled + n] = block[:n]
            self._filled += n
            self._last_block = block
            full = self._filled >= self.max_samples
        if self.on_block is not None:
            self.on_block(block)
        if full:
            import sounddevice as sd

            LOGGER.info("Recording reached %.0f s; stopping", self.max_samples / self.sample_rate)
            self._recording = False
            raise sd.CallbackStop()

    def start(self) -> None:
        if self._recording:
            return
        import sounddevice as sd

        kwargs = {}
        if self.device is not None:
            kwargs["device"] = self.device
        with self._lock:
            self._filled = 0
            self._last_block = np.zeros(0, dtype=np.int16)
        self._stream = sd.InputStream(
            samplerate=self.sample_rate,
            blocksize=self.block_size,
            channels=1,
            dtype="int16",
            callback=self._callback,
            **kwargs,
        )
        self._stream.start()
        self._recording = True

    def stop(self) -> np.ndarray:
        """Stop capture and return the take as float32 in [-1, 1]."""
        if self._stream is None:
            return np.zeros(0, dtype=np.float32)
        self._recording = False
        stream, self._stream = self._stream, None
        try:
            stream.stop()
        finally:
            stream.close()
        with self._lock:
            pcm = self._buffer[: self._filled].copy()
        return int16_to_float(pcm)

    def is_active(self) -> bool:
        return self._recording

    def level(self) -> float:
        """Peak amplitude of the newest block, for a level meter."""
        with self._lock:
            block = self._last_block
        if block.size == 0:
            return 0.0
        return float(np.abs(block.astype(np.int32)).max()) / 32768.0


class SpeechEndpointer:
    """Report end of utterance: speech followed by enough silence."""

    def __init__(
        self,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        frame_ms: int = DEFAULT_VAD_FRAME_MS,
        mode: int = DEFAULT_VAD_MODE,
        silence_ms: int = DEFAULT_VAD_SILENCE_MS,
    ):
        if frame_ms not in (10, 20, 30):
            raise ValueError("vad_frame_ms must be one of: 10, 20, 30")
        if not (0 <= mode <= 3):
            raise ValueError("vad_mode must be between 0 and 3")
        import webrtcvad

        self.sample_rate = sample_rate
        self.vad = webrtcvad.Vad(mode)
        self.frame_samples = int(sample_rate * frame_ms / 1000)
        self.silence_frames = int(math.ceil(silence_ms / frame_ms))
        self.reset()

    def reset(self) -> None:
        self.residual = np.array([], dtype=np.int16)
        self.speech_detected = False
        self.silence_count = 0
        self.state = "silence"

    def update(self, frame: np.ndarray) -> bool:
        """Feed int16 samples; True once the utterance has ended."""
        if frame.size == 0:
            return False
        self.residual = np.concatenate([self.residual, frame.astype(np.int16)])

        while self.residual.size >= self.frame_samples:
            chunk = self.residual[: self.frame_samples]
            self.residual = self.residual[self.frame_samples :]
            if self.vad.is_speech(chunk.tobytes(), self.sample_rate):
                self.state = "speech"
                self.speech_detected = True
                self.silence_count = 0
            elif self.speech_detected:
                self.state = "silence"
                self.silence_count += 1
                if self.silence_count >= self.silence_frames:
                    self.reset()
                    return True
            else:
                self.state = "silence"
        return False


def load_audio(path: str, sample_rate: int = DEFAULT_SAMPLE_RATE) -> np.ndarray:
    """Read an audio file as mono float32; it must already be at ``sample_rate``."""
    import soundfile as sf

    data, sr = sf.read(path, dtype="float32", always_2d=True)
    if sr != sample_rate:
        raise ValueError(f"{path}: expected {sample_rate} Hz audio, got {sr} Hz")
    return data.mean(axis=1)

