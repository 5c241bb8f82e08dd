import numpy as np
import pytest

from dictate.vocab import Vocabulary

EOS, SOT, TRANSCRIBE, NO_TS = 0, 1, 2, 3
HELLO, WORLD, EXTRA, AGAIN, BANG = 4, 5, 6, 7, 8

FIXTURE_TOKENS = [
    "<|endoftext|>",
    "<|startoftranscript|>",
    "<|transcribe|>",
    "<|notimestamps|>",
    "Ġhello",
    "Ġworld",
    "Ġextra",
    "▁again",
    "!",
]


class StubModule:
    """Engine module double: records every call and delegates to ``fn``."""

    def __init__(self, fn):
        self.fn = fn
        self.calls = []
        self.closed = False

    def forward(self, *inputs):
        self.calls.append(inputs)
        return self.fn(*inputs)

    def close(self):
        self.closed = True


def one_hot_logits(token_id, vocab_size=len(FIXTURE_TOKENS), steps=1):
    logits = np.full((1, steps, vocab_size), -5.0, dtype=np.float32)
    logits[0, -1, token_id] = 5.0
    return logits


@pytest.fixture
def vocab():
    return Vocabulary(
        FIXTURE_TOKENS,
        eos_id=EOS,
        sot_id=SOT,
        transcribe_id=TRANSCRIBE,
        no_timestamps_id=NO_TS,
    )


@pytest.fixture
def features():
    rng = np.random.default_rng(42)
    return rng.standard_normal((80, 3000)).astype(np.float32)
