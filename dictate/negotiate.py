"""
Encoder input-layout discovery.

Exported encoders disagree on rank, axis order and whether they take an
explicit sequence length. Each :class:`ShapeCandidate` is a pure view builder
over the log-mel matrix; :class:`EncoderShapeNegotiator` tries them in order
against the live encoder and remembers the winner.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from .engine import (
    ErrorCode,
    InferenceError,
    InferenceModule,
    SafeForward,
    ShapeNegotiationError,
    first_tensor,
)

LOGGER = logging.getLogger(__name__)

FULL_FRAMES = 3000
SHORT_FRAMES = 256

# Engine messages meaning the handle's execution state is unusable until reload.
RELOAD_ERROR_PATTERNS = ("Inputs can not be set mid execution",)


def crop_time(features: np.ndarray, frames: int) -> np.ndarray:
    """First ``frames`` columns of [bands, time]; zero-filled past the end."""
    bands, available = features.shape
    out = np.zeros((bands, frames), dtype=features.dtype)
    n = min(frames, available)
    out[:, :n] = features[:, :n]
    return out


@dataclass(frozen=True)
class ShapeCandidate:
    """One hypothesis about the encoder's input signature."""

    frames: int
    time_major: bool = False
    batched: bool = False
    with_length: bool = False

    @property
    def name(self) -> str:
        dims = ("{t}x80" if self.time_major else "80x{t}").format(t=self.frames)
        if self.batched:
            dims = "1x" + dims
        return dims + (" + len" if self.with_length else "")

    def build(self, features: np.ndarray) -> Tuple:
        """Encoder inputs for this layout; never resamples, only crops."""
        view = features
        if view.shape[1] != self.frames:
            view = crop_time(view, self.frames)
        if self.time_major:
            view = view.T
        view = np.ascontiguousarray(view, dtype=np.float32)
        if self.batched:
            view = view[None]
        if self.with_length:
            return (view, int(self.frames))
        return (view,)


DEFAULT_CANDIDATES: Tuple[ShapeCandidate, ...] = (
    ShapeCandidate(FULL_FRAMES),
    ShapeCandidate(FULL_FRAMES, time_major=True),
    ShapeCandidate(FULL_FRAMES, batched=True),
    ShapeCandidate(FULL_FRAMES, time_major=True, batched=True),
    ShapeCandidate(SHORT_FRAMES),
    ShapeCandidate(SHORT_FRAMES, time_major=True),
    ShapeCandidate(SHORT_FRAMES, batched=True),
    ShapeCandidate(SHORT_FRAMES, time_major=True, batched=True),
    ShapeCandidate(FULL_FRAMES, with_length=True),
    ShapeCandidate(FULL_FRAMES, time_major=True, with_length=True),
    ShapeCandidate(SHORT_FRAMES, with_length=True),
    ShapeCandidate(SHORT_FRAMES, time_major=True, with_length=True),
)


def needs_reload(error: InferenceError) -> bool:
    return any(p in error.message for p in RELOAD_ERROR_PATTERNS)


class EncoderShapeNegotiator:
    """Find an accepted encoder layout and keep the encoder handle current.

    ``reload`` rebuilds the encoder from its backing asset; it is used once per
    candidate when the engine reports a contaminated execution state.
    """

    def __init__(
        self,
        encoder: Optional[InferenceModule],
        reload: Callable[[], Optional[InferenceModule]],
        forward: Optional[SafeForward] = None,
        candidates: Sequence[ShapeCandidate] = DEFAULT_CANDIDATES,
    ):
        self.encoder = encoder
        self.reload = reload
        self.forward = forward or SafeForward()
        self.candidates = tuple(candidates)
        self.preferred: Optional[ShapeCandidate] = None

    def _ordered(self) -> List[ShapeCandidate]:
        if self.preferred is None:
            return list(self.candidates)
        return [self.preferred] + [c for c in self.candidates if c != self.preferred]

    def _attempt(self, candidate: ShapeCandidate, features: np.ndarray) -> np.ndarray:
        outputs = self.forward(self.encoder, candidate.build(features))
        tensor = first_tensor(outputs)
        if tensor is None or tensor.size == 0:
            raise InferenceError(ErrorCode.EMPTY_OUTPUT, "empty output tensor")
        return tensor

    def _replace_encoder(self) -> bool:
        old = self.encoder
        if old is not None:
            try:
                old.close()
            except Exception as exc:
                LOGGER.debug("Closing stale encoder failed: %s", exc)
        self.encoder = self.reload()
        self.preferred = None
        return self.encoder is not None

    def negotiate(self, features: np.ndarray) -> np.ndarray:
        """Return the encoder output for the first layout the encoder accepts."""
        for candidate in self._ordered():
            if self.encoder is None:
                break
            try:
                out = self._attempt(candidate, features)
            except InferenceError as err:
                LOGGER.warning("Encoder rejected %s: %s", candidate.name, err.message)
                if not needs_reload(err):
                    continue
                if not self._replace_encoder():
                    LOGGER.warning("Encoder reload failed; retry of %s skipped", candidate.name)
                    continue
                try:
                    out = self._attempt(candidate, features)
                except InferenceError as retry_err:
                    LOGGER.warning(
                        "Encoder rejected %s after reload: %s",
                        candidate.name,
                        retry_err.message,
                    )
                    continue
                LOGGER.info("Encoder accepted %s after reload", candidate.name)
            else:
                LOGGER.info("Encoder accepted %s -> %s", candidate.name, list(out.shape))
            self.preferred = candidate
            return out
        raise ShapeNegotiationError()
