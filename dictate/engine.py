"""
Boundary to the external inference engine.

The pipeline only needs ``forward(*inputs) -> outputs``; everything else about
the runtime stays behind :class:`InferenceModule`. :class:`SafeForward` turns
engine failures into :class:`InferenceError` with a stable :class:`ErrorCode`.
The shipped backend runs functions exported with ``mx.export_function``.
"""

import concurrent.futures
import enum
import logging
from pathlib import Path
from typing import Any, List, Optional, Protocol, Sequence, Union

import numpy as np

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 5000
DEFAULT_ENCODER_ASSET = "whisper_encoder.mlxfn"
DEFAULT_DECODER_ASSET = "whisper_decoder.mlxfn"
DEFAULT_TOKENIZER_ASSET = "tokenizer.json"
DEFAULT_CONFIG_ASSET = "config.json"
ASSET_PATTERNS = ["*.mlxfn", "*.json"]


# =============================================================================
# Errors
# =============================================================================


class ErrorCode(enum.Enum):
    NOT_LOADED = "not_loaded"
    BAD_INPUT = "bad_input"
    EMPTY_OUTPUT = "empty_output"
    TIMEOUT = "timeout"
    RUNTIME = "runtime"
    SHAPE_NEGOTIATION_EXHAUSTED = "shape_negotiation_exhausted"


class InferenceError(Exception):
    """An engine call (or a stage built on engine calls) produced no result."""

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(f"{code.value}: {message}")
        self.code = code
        self.message = message


class ShapeNegotiationError(InferenceError):
    def __init__(self, message: str = "no encoder input layout was accepted"):
        super().__init__(ErrorCode.SHAPE_NEGOTIATION_EXHAUSTED, message)


class DecodeError(InferenceError):
    pass


# =============================================================================
# Engine contract
# =============================================================================


class InferenceModule(Protocol):
    def forward(self, *inputs: Any) -> Sequence[Any]: ...

    def close(self) -> None: ...


def first_tensor(outputs: Optional[Sequence[Any]]) -> Optional[np.ndarray]:
    """First output as a numpy array, or None when missing or not array-like."""
    if not outputs:
        return None
    try:
        return np.asarray(outputs[0])
    except (TypeError, ValueError) as exc:
        LOGGER.debug("Output 0 is not a tensor: %s", exc)
        return None


class SafeForward:
    """Run ``module.forward`` with input checks, optional timeout and error mapping.

    A timed-out call keeps running on its worker thread; its result is
    discarded. Callers decide whether to retry.
    """

    def __init__(self, timeout_ms: Optional[int] = DEFAULT_TIMEOUT_MS):
        self.timeout_ms = timeout_ms
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None

    def _pool(self) -> concurrent.futures.ThreadPoolExecutor:
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="dictate-engine"
            )
        return self._executor

    def __call__(
        self, module: Optional[InferenceModule], inputs: Sequence[Any]
    ) -> List[Any]:
        if module is None:
            raise InferenceError(ErrorCode.NOT_LOADED, "module is not loaded")
        if not inputs:
            raise InferenceError(ErrorCode.BAD_INPUT, "no inputs")

        try:
            if self.timeout_ms is None:
                outputs = module.forward(*inputs)
            else:
                future = self._pool().submit(module.forward, *inputs)
                outputs = future.result(timeout=self.timeout_ms / 1000.0)
        except concurrent.futures.TimeoutError as exc:
            # The stuck worker would block every later call on this pool.
            self.shutdown()
            raise InferenceError(
                ErrorCode.TIMEOUT, f"forward exceeded {self.timeout_ms} ms"
            ) from exc
        except Exception as exc:
            LOGGER.debug("forward error: %s", exc, exc_info=True)
            raise InferenceError(
                ErrorCode.RUNTIME, f"{type(exc).__name__}: {exc}"
            ) from exc

        if outputs is None or len(outputs) == 0:
            raise InferenceError(ErrorCode.EMPTY_OUTPUT, "no outputs")
        return list(outputs)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None


# =============================================================================
# MLX backend
# =============================================================================


class MlxFunctionModule:
    """A function exported with ``mx.export_function``, loaded for inference."""

    def __init__(self, path: Union[str, Path]):
        import mlx.core as mx

        self._mx = mx
        self.path = Path(path)
        self._fn = mx.import_function(str(self.path))

    def forward(self, *inputs: Any) -> List[np.ndarray]:
        if self._fn is None:
            raise RuntimeError(f"{self.path.name} has been closed")
        mx = self._mx
        args = []
        for x in inputs:
            if isinstance(x, (int, np.integer)):
                args.append(mx.array(int(x), dtype=mx.int64))
            else:
                args.append(mx.array(np.ascontiguousarray(x)))
        outputs = self._fn(*args)
        if isinstance(outputs, mx.array):
            outputs = [outputs]
        mx.eval(outputs)
        return [np.array(o) for o in outputs]

    def close(self) -> None:
        self._fn = None

    def __repr__(self) -> str:
        return f"MlxFunctionModule({self.path.name!r})"


class ModelLoader:
    """Resolve model assets locally or from the Hub and load them as modules."""

    def __init__(self, model: Union[str, Path]):
        self.model = str(model)
        self._root: Optional[Path] = None

    @property
    def root(self) -> Path:
        """Local directory with the assets; downloads on first use."""
        if self._root is None:
            local = Path(self.model).expanduser()
            if not local.exists():
                from huggingface_hub import snapshot_download

                local = Path(
                    snapshot_download(self.model, allow_patterns=ASSET_PATTERNS)
                )
            self._root = local
        return self._root

    def asset_path(self, name: str) -> Path:
        return self.root / name

    def list_assets(self, prefix: str = "") -> List[str]:
        """Relative asset paths under ``prefix``, sorted; empty if unreadable."""
        try:
            base = self.root / prefix if prefix else self.root
            names = sorted(p.name for p in base.iterdir())
        except Exception as exc:
            LOGGER.error("Cannot list assets under %r: %s", prefix, exc)
            return []
        return [f"{prefix}/{n}" if prefix else n for n in names]

    def load_module(self, asset: str) -> Optional[InferenceModule]:
        """Load one asset; logs and returns None on failure."""
        try:
            path = self.asset_path(asset)
            if not path.is_file() or path.stat().st_size == 0:
                LOGGER.error("Asset %s is missing or empty (%s)", asset, path)
                return None
            module = MlxFunctionModule(path)
        except Exception as exc:
            LOGGER.error("Failed to load %s: %s", asset, exc)
            return None
        LOGGER.info("Loaded %s (%d B)", asset, path.stat().st_size)
        return module
