"""Greedy autoregressive decoding against an external decode-step module."""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from .engine import (
    DecodeError,
    ErrorCode,
    InferenceError,
    InferenceModule,
    SafeForward,
    first_tensor,
)
from .vocab import Vocabulary

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 224


@dataclass(frozen=True)
class DecoderConfig:
    max_steps: int = DEFAULT_MAX_STEPS
    # False keeps decoding after a special token without feeding it back.
    stop_on_special: bool = True


def tokens_to_tensor(tokens: Tuple[int, ...]) -> np.ndarray:
    """[1, len] int32 ids; exported decoders expect 32-bit ids."""
    return np.asarray(tokens, dtype=np.int32).reshape(1, len(tokens))


def last_position_logits(logits: np.ndarray) -> np.ndarray:
    """Vocabulary scores for the newest position of [B, T, V], [B, V] or [V]."""
    if logits.size == 0:
        raise DecodeError(
            ErrorCode.EMPTY_OUTPUT, f"decoder returned empty logits {logits.shape}"
        )
    if logits.ndim >= 3:
        return logits[0, logits.shape[1] - 1]
    if logits.ndim == 2:
        return logits[0]
    return logits.reshape(-1)


def greedy_pick(scores: np.ndarray) -> int:
    """Index of the highest score; the lowest index wins ties, NaN never wins."""
    scores = np.asarray(scores, dtype=np.float64)
    if scores.size == 0:
        raise DecodeError(ErrorCode.EMPTY_OUTPUT, "logits have no vocabulary axis")
    return int(np.argmax(np.where(np.isnan(scores), -np.inf, scores)))


class GreedyDecoder:
    """Run decode steps until a special token or the step budget.

    The token sequence is an immutable tuple that is rebuilt each step; the
    decoder module sees the whole sequence every call.
    """

    def __init__(
        self,
        decoder: Optional[InferenceModule],
        vocab: Vocabulary,
        forward: Optional[SafeForward] = None,
        config: Optional[DecoderConfig] = None,
    ):
        self.decoder = decoder
        self.vocab = vocab
        self.forward = forward or SafeForward()
        self.config = config or DecoderConfig()
        if not self.config.stop_on_special:
            LOGGER.info(
                "Special tokens will not stop decoding; they are skipped as context"
            )

    def step(self, tokens: Tuple[int, ...], encoder_output: np.ndarray) -> np.ndarray:
        """One decode-step call; retries once with the arguments swapped."""
        ids = tokens_to_tensor(tokens)
        try:
            outputs = self.forward(self.decoder, (ids, encoder_output))
        except InferenceError as first:
            if first.code is ErrorCode.NOT_LOADED:
                raise DecodeError(first.code, first.message) from first
            try:
                outputs = self.forward(self.decoder, (encoder_output, ids))
            except InferenceError as second:
                LOGGER.error(
                    "Decoder forward failed:\n1) %s\n2) %s", first.message, second.message
                )
                raise DecodeError(second.code, second.message) from second

        logits = first_tensor(outputs)
        if logits is None:
            raise DecodeError(ErrorCode.EMPTY_OUTPUT, "decoder returned no logits")
        return logits

    def decode(self, encoder_output: np.ndarray, max_steps: Optional[int] = None) -> str:
        """Generate text for one encoder output; raises DecodeError on engine failure."""
        if max_steps is None:
            max_steps = self.config.max_steps
        tokens: Tuple[int, ...] = tuple(self.vocab.prompt_ids())
        generated: List[int] = []

        for _ in range(max_steps):
            logits = self.step(tokens, encoder_output)
            best = greedy_pick(last_position_logits(logits))
            generated.append(best)
            if self.vocab.is_special(best):
                if self.config.stop_on_special:
                    break
                continue
            tokens = tokens + (best,)

        LOGGER.debug("Generated %d tokens", len(generated))
        return self.vocab.decode(generated)
