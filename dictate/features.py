"""
Log-mel feature extraction for the encoder.

Audio is padded or truncated to a fixed 30 s window, framed with a Hann
window, transformed with a radix-2 FFT and projected onto a triangular mel
filterbank. The FFT size stays at 512 even though the window is 400 samples;
the filterbank bin edges are computed for that size.
"""

import math
from dataclasses import dataclass

import numpy as np

DEFAULT_SAMPLE_RATE = 16000
DEFAULT_N_FFT = 512
DEFAULT_WIN_LENGTH = 400
DEFAULT_HOP_LENGTH = 160
DEFAULT_N_MELS = 80
DEFAULT_CHUNK_SECONDS = 30
DEFAULT_N_FRAMES = 3000
LOG_FLOOR = -11.0
LOG_EPS = 1e-10


@dataclass(frozen=True)
class MelConfig:
    sample_rate: int = DEFAULT_SAMPLE_RATE
    n_fft: int = DEFAULT_N_FFT
    win_length: int = DEFAULT_WIN_LENGTH
    hop_length: int = DEFAULT_HOP_LENGTH
    n_mels: int = DEFAULT_N_MELS
    f_min: float = 0.0
    f_max: float = 8000.0
    chunk_seconds: int = DEFAULT_CHUNK_SECONDS
    n_frames: int = DEFAULT_N_FRAMES
    floor: float = LOG_FLOOR
    log_eps: float = LOG_EPS

    @property
    def n_samples(self) -> int:
        return self.chunk_seconds * self.sample_rate

    @property
    def n_freqs(self) -> int:
        return self.n_fft // 2 + 1


def hz_to_mel(hz):
    return 2595.0 * np.log10(1.0 + np.asarray(hz, dtype=np.float64) / 700.0)


def mel_to_hz(mel):
    return 700.0 * (10.0 ** (np.asarray(mel, dtype=np.float64) / 2595.0) - 1.0)


def hann_window(length: int) -> np.ndarray:
    """Symmetric Hann window (denominator ``length - 1``)."""
    n = np.arange(length, dtype=np.float64)
    return 0.5 * (1.0 - np.cos(2.0 * math.pi * n / (length - 1)))


def mel_filterbank(
    sample_rate: int,
    n_fft: int,
    n_mels: int,
    f_min: float = 0.0,
    f_max: float = 8000.0,
) -> np.ndarray:
    """Triangular filters of shape [n_mels, n_fft // 2 + 1].

    Edges are spaced evenly on the mel scale and snapped down to FFT bins,
    clamped to the valid bin range. Collapsed edges give a zero-width ramp
    instead of a division by zero.
    """
    n_freqs = n_fft // 2 + 1
    mels = np.linspace(hz_to_mel(f_min), hz_to_mel(f_max), n_mels + 2)
    hz = mel_to_hz(mels)
    bins = np.floor((n_fft + 1) * hz / sample_rate).astype(np.int64)
    bins = np.clip(bins, 0, n_freqs - 1)

    filters = np.zeros((n_mels, n_freqs), dtype=np.float64)
    k = np.arange(n_freqs)
    for m in range(n_mels):
        left, center, right = bins[m], bins[m + 1], bins[m + 2]
        rising = (k >= left) & (k < center)
        falling = (k >= center) & (k < right)
        filters[m, rising] = (k[rising] - left) / max(center - left, 1)
        filters[m, falling] = (right - k[falling]) / max(right - center, 1)
    filters.setflags(write=False)
    return filters


class RadixTwoFFT:
    """Iterative decimation-in-time FFT for a fixed power-of-two size.

    The bit-reversal permutation and twiddle table are built once; each call
    transforms a whole batch of frames at once (shape [..., n]).
    """

    def __init__(self, n: int):
        if n < 2 or n & (n - 1):
            raise ValueError(f"FFT size must be a power of two, got {n}")
        self.n = n
        bits = n.bit_length() - 1
        idx = np.arange(n)
        rev = np.zeros(n, dtype=np.int64)
        for b in range(bits):
            rev |= ((idx >> b) & 1) << (bits - 1 - b)
        self._bit_reverse = rev
        angles = -2.0 * math.pi * np.arange(n // 2) / n
        self._twiddles = np.cos(angles) + 1j * np.sin(angles)
        self._bit_reverse.setflags(write=False)
        self._twiddles.setflags(write=False)

    def __call__(self, frames: np.ndarray) -> np.ndarray:
        data = np.asarray(frames, dtype=np.complex128)[..., self._bit_reverse]
        lead = data.shape[:-1]
        size = 2
        while size <= self.n:
            half = size // 2
            w = self._twiddles[:: self.n // size][:half]
            blocks = data.reshape(*lead, self.n // size, size)
            even = blocks[..., :half]
            odd = blocks[..., half:] * w
            blocks = np.concatenate([even + odd, even - odd], axis=-1)
            data = blocks.reshape(*lead, self.n)
            size *= 2
        return data


class LogMelExtractor:
    """Turn a sample buffer into the fixed-size [n_mels, n_frames] log-mel matrix.

    Window, twiddles and filterbank are read-only after construction, so a
    single extractor can serve concurrent requests.
    """

    def __init__(self, config: MelConfig = None):
        self.config = config or MelConfig()
        cfg = self.config
        if cfg.win_length > cfg.n_fft:
            raise ValueError("win_length must not exceed n_fft")
        self.window = hann_window(cfg.win_length)
        self.window.setflags(write=False)
        self.filters = mel_filterbank(
            cfg.sample_rate, cfg.n_fft, cfg.n_mels, cfg.f_min, cfg.f_max
        )
        self.fft = RadixTwoFFT(cfg.n_fft)

    def pad_or_trim(self, samples) -> np.ndarray:
        """Right-pad with zeros or truncate to exactly ``n_samples``."""
        x = np.asarray(samples, dtype=np.float32).reshape(-1)
        target = self.config.n_samples
        if x.size >= target:
            return x[:target]
        out = np.zeros(target, dtype=np.float32)
        out[: x.size] = x
        return out

    def frame_count(self, n_samples: int) -> int:
        cfg = self.config
        if n_samples < cfg.win_length:
            return 0
        return 1 + (n_samples - cfg.win_length) // cfg.hop_length

    def power_spectrum(self, x: np.ndarray) -> np.ndarray:
        """Squared magnitude of bins 0..n_fft/2 per frame, shape [frames, n_freqs]."""
        cfg = self.config
        n = self.frame_count(x.size)
        if n == 0:
            return np.zeros((0, cfg.n_freqs), dtype=np.float64)
        starts = np.arange(n) * cfg.hop_length
        frames = x[starts[:, None] + np.arange(cfg.win_length)].astype(np.float64)
        padded = np.zeros((n, cfg.n_fft), dtype=np.float64)
        padded[:, : cfg.win_length] = frames * self.window
        spectrum = self.fft(padded)[:, : cfg.n_freqs]
        return spectrum.real ** 2 + spectrum.imag ** 2

    def __call__(self, samples) -> np.ndarray:
        return self.compute(samples)

    def compute(self, samples) -> np.ndarray:
        """Return the log-mel matrix; frames past the audio keep the floor value."""
        cfg = self.config
        x = self.pad_or_trim(samples)
        power = self.power_spectrum(x)

        out = np.full((cfg.n_mels, cfg.n_frames), cfg.floor, dtype=np.float32)
        t = min(cfg.n_frames, power.shape[0])
        if t:
            energies = power[:t] @ self.filters.T
            out[:, :t] = np.log(energies + cfg.log_eps).T
        return out
