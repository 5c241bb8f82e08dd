"""Tests for the engine call guard and asset loader."""

import time

import numpy as np
import pytest

from dictate.engine import (
    ErrorCode,
    InferenceError,
    ModelLoader,
    SafeForward,
    ShapeNegotiationError,
    first_tensor,
)

from .conftest import StubModule


class TestSafeForward:
    def test_returns_outputs(self):
        module = StubModule(lambda x: [x * 2])
        out = SafeForward(timeout_ms=None)(module, (np.ones(3),))
        np.testing.assert_array_equal(out[0], np.full(3, 2.0))

    def test_missing_module(self):
        with pytest.raises(InferenceError) as exc_info:
            SafeForward()(None, (np.ones(1),))
        assert exc_info.value.code is ErrorCode.NOT_LOADED

    def test_no_inputs(self):
        with pytest.raises(InferenceError) as exc_info:
            SafeForward()(StubModule(lambda: [1]), ())
        assert exc_info.value.code is ErrorCode.BAD_INPUT

    def test_engine_exception_becomes_runtime(self):
        def boom(*_):
            raise RuntimeError("kernel exploded")

        with pytest.raises(InferenceError) as exc_info:
            SafeForward()(StubModule(boom), (np.ones(1),))
        err = exc_info.value
        assert err.code is ErrorCode.RUNTIME
        assert "kernel exploded" in err.message
        assert isinstance(err.__cause__, RuntimeError)

    def test_empty_output_list(self):
        with pytest.raises(InferenceError) as exc_info:
            SafeForward()(StubModule(lambda *_: []), (np.ones(1),))
        assert exc_info.value.code is ErrorCode.EMPTY_OUTPUT

    def test_timeout(self):
        def slow(*_):
            time.sleep(0.5)
            return [np.ones(1)]

        guard = SafeForward(timeout_ms=50)
        with pytest.raises(InferenceError) as exc_info:
            guard(StubModule(slow), (np.ones(1),))
        assert exc_info.value.code is ErrorCode.TIMEOUT

    def test_usable_after_timeout(self):
        guard = SafeForward(timeout_ms=50)
        with pytest.raises(InferenceError):
            guard(StubModule(lambda *_: time.sleep(0.3) or [1]), (1,))
        out = guard(StubModule(lambda *_: [np.zeros(2)]), (1,))
        assert out[0].shape == (2,)


class TestFirstTensor:
    def test_first_of_many(self):
        assert first_tensor([np.ones(2), np.zeros(3)]).shape == (2,)

    def test_missing(self):
        assert first_tensor([]) is None
        assert first_tensor(None) is None


class TestErrors:
    def test_shape_negotiation_error_code(self):
        err = ShapeNegotiationError()
        assert err.code is ErrorCode.SHAPE_NEGOTIATION_EXHAUSTED
        assert "shape_negotiation_exhausted" in str(err)


class TestModelLoader:
    def test_list_assets_sorted(self, tmp_path):
        for name in ("b.mlxfn", "a.json"):
            (tmp_path / name).write_bytes(b"x")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "enc.mlxfn").write_bytes(b"x")
        loader = ModelLoader(tmp_path)
        assert loader.list_assets() == ["a.json", "b.mlxfn", "sub"]
        assert loader.list_assets("sub") == ["sub/enc.mlxfn"]

    def test_list_assets_missing_prefix(self, tmp_path):
        assert ModelLoader(tmp_path).list_assets("nope") == []

    def test_load_missing_asset_returns_none(self, tmp_path):
        assert ModelLoader(tmp_path).load_module("encoder.mlxfn") is None

    def test_load_empty_asset_returns_none(self, tmp_path):
        (tmp_path / "encoder.mlxfn").write_bytes(b"")
        assert ModelLoader(tmp_path).load_module("encoder.mlxfn") is None

    def test_load_corrupt_asset_returns_none(self, tmp_path):
        (tmp_path / "encoder.mlxfn").write_bytes(b"not an exported function")
        assert ModelLoader(tmp_path).load_module("encoder.mlxfn") is None
