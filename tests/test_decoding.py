"""Tests for greedy decoding."""

import time

import numpy as np
import pytest

from dictate.decoding import (
    DecoderConfig,
    GreedyDecoder,
    greedy_pick,
    last_position_logits,
    tokens_to_tensor,
)
from dictate.engine import DecodeError, ErrorCode, InferenceError, SafeForward

from .conftest import EOS, FIXTURE_TOKENS, HELLO, NO_TS, WORLD, StubModule, one_hot_logits

ENCODED = np.zeros((1, 1500, 8), dtype=np.float32)
VOCAB_SIZE = len(FIXTURE_TOKENS)


def constant_step(token_id):
    def fn(ids, encoded):
        return [one_hot_logits(token_id, steps=ids.shape[1])]

    return fn


def make_decoder(module, vocab, **config):
    return GreedyDecoder(
        module, vocab, forward=SafeForward(timeout_ms=None), config=DecoderConfig(**config)
    )


class TestArgmax:
    def test_tie_goes_to_lowest_index(self):
        assert greedy_pick(np.array([0.0, 3.0, 1.0, 3.0])) == 1

    def test_nan_never_wins(self):
        assert greedy_pick(np.array([np.nan, -1.0, 2.0])) == 2

    def test_all_negative_infinity(self):
        assert greedy_pick(np.full(4, -np.inf)) == 0

    def test_empty_vocabulary_axis(self):
        with pytest.raises(DecodeError):
            greedy_pick(np.zeros(0))


class TestLogitLayouts:
    def test_rank3_uses_last_position(self):
        logits = np.zeros((1, 3, 5))
        logits[0, 0, 1] = 9.0
        logits[0, 2, 4] = 1.0
        assert greedy_pick(last_position_logits(logits)) == 4

    def test_rank2(self):
        logits = np.zeros((1, 5))
        logits[0, 3] = 1.0
        assert greedy_pick(last_position_logits(logits)) == 3

    def test_token_tensor(self):
        ids = tokens_to_tensor((1, 2, 3))
        assert ids.shape == (1, 3)
        assert ids.dtype == np.int32


class TestGreedyDecoder:
    def test_special_token_stops_after_one_step(self, vocab):
        module = StubModule(constant_step(EOS))
        text = make_decoder(module, vocab, max_steps=10).decode(ENCODED)
        assert text == ""
        assert len(module.calls) == 1

    def test_text_token_runs_to_max_steps(self, vocab):
        module = StubModule(constant_step(HELLO))
        text = make_decoder(module, vocab, max_steps=4).decode(ENCODED)
        assert len(module.calls) == 4
        assert text == vocab.decode([HELLO] * 4)
        assert [c[0].shape[1] for c in module.calls] == [3, 4, 5, 6]

    def test_prompt_is_first_context(self, vocab):
        module = StubModule(constant_step(EOS))
        make_decoder(module, vocab).decode(ENCODED)
        ids, encoded = module.calls[0]
        assert ids.tolist() == [vocab.prompt_ids()]
        assert encoded is ENCODED

    def test_scripted_sequence(self, vocab):
        script = [HELLO, WORLD, EOS]

        def fn(ids, encoded):
            return [one_hot_logits(script[ids.shape[1] - 3], steps=ids.shape[1])]

        text = make_decoder(StubModule(fn), vocab).decode(ENCODED)
        assert text == "hello world"

    def test_rank2_logits(self, vocab):
        def fn(ids, encoded):
            logits = np.zeros((1, VOCAB_SIZE), dtype=np.float32)
            logits[0, WORLD] = 1.0
            return [logits]

        assert make_decoder(StubModule(fn), vocab, max_steps=2).decode(ENCODED) == "world world"

    def test_max_steps_override(self, vocab):
        module = StubModule(constant_step(HELLO))
        make_decoder(module, vocab, max_steps=10).decode(ENCODED, max_steps=2)
        assert len(module.calls) == 2

    def test_keep_decoding_after_special(self, vocab):
        module = StubModule(constant_step(NO_TS))
        text = make_decoder(module, vocab, max_steps=3, stop_on_special=False).decode(
            ENCODED
        )
        assert len(module.calls) == 3
        # Special ids are recorded but never fed back as context.
        assert [c[0].shape[1] for c in module.calls] == [3, 3, 3]
        assert text == ""


class TestDecodeStepFallback:
    def test_swapped_arguments_retry(self, vocab):
        def fn(first, second):
            if first.dtype != np.float32:
                raise RuntimeError("expected encoder hidden states first")
            return [one_hot_logits(EOS, steps=second.shape[1])]

        module = StubModule(fn)
        make_decoder(module, vocab).decode(ENCODED)
        assert len(module.calls) == 2
        assert module.calls[1][0] is ENCODED

    def test_both_orders_fail(self, vocab):
        def fn(*_):
            raise RuntimeError("bad decoder")

        module = StubModule(fn)
        with pytest.raises(DecodeError) as exc_info:
            make_decoder(module, vocab).decode(ENCODED)
        assert exc_info.value.code is ErrorCode.RUNTIME
        assert len(module.calls) == 2

    def test_no_outputs(self, vocab):
        with pytest.raises(DecodeError) as exc_info:
            make_decoder(StubModule(lambda *_: []), vocab).decode(ENCODED)
        assert exc_info.value.code is ErrorCode.EMPTY_OUTPUT

    def test_missing_decoder(self, vocab):
        with pytest.raises(DecodeError) as exc_info:
            make_decoder(None, vocab).decode(ENCODED)
        assert exc_info.value.code is ErrorCode.NOT_LOADED

    @pytest.mark.parametrize("shape", [(1, 0, VOCAB_SIZE), (0, VOCAB_SIZE)])
    def test_empty_logits(self, vocab, shape):
        module = StubModule(lambda *_: [np.zeros(shape, dtype=np.float32)])
        with pytest.raises(InferenceError) as exc_info:
            make_decoder(module, vocab).decode(ENCODED)
        assert isinstance(exc_info.value, DecodeError)
        assert exc_info.value.code is ErrorCode.EMPTY_OUTPUT
        assert len(module.calls) == 1

    def test_both_orders_time_out(self, vocab):
        def slow(*_):
            time.sleep(0.3)
            return [one_hot_logits(EOS)]

        module = StubModule(slow)
        decoder = GreedyDecoder(module, vocab, forward=SafeForward(timeout_ms=50))
        with pytest.raises(DecodeError) as exc_info:
            decoder.decode(ENCODED)
        assert exc_info.value.code is ErrorCode.TIMEOUT
        assert len(module.calls) == 2
