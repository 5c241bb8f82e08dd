"""Samples -> log-mel -> encoder (layout negotiated) -> greedy text."""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .decoding import DecoderConfig, GreedyDecoder
from .engine import (
    DEFAULT_CONFIG_ASSET,
    DEFAULT_DECODER_ASSET,
    DEFAULT_ENCODER_ASSET,
    DEFAULT_TIMEOUT_MS,
    DEFAULT_TOKENIZER_ASSET,
    ErrorCode,
    InferenceError,
    InferenceModule,
    ModelLoader,
    SafeForward,
)
from .features import LogMelExtractor, MelConfig
from .negotiate import EncoderShapeNegotiator
from .vocab import Vocabulary

LOGGER = logging.getLogger(__name__)


@dataclass
class ModelPaths:
    model: str
    encoder_asset: str = DEFAULT_ENCODER_ASSET
    decoder_asset: str = DEFAULT_DECODER_ASSET
    tokenizer_asset: str = DEFAULT_TOKENIZER_ASSET
    config_asset: str = DEFAULT_CONFIG_ASSET


@dataclass
class TranscriberState:
    loaded: bool = False
    busy: bool = False
    recording: bool = False
    status: str = "Ready"
    transcript: Optional[str] = None
    last_error: Optional[str] = None


def validate_samples(samples) -> np.ndarray:
    """Flatten to float32 mono; reject non-numeric or non-finite buffers."""
    try:
        x = np.asarray(samples, dtype=np.float32)
    except (TypeError, ValueError) as exc:
        raise InferenceError(ErrorCode.BAD_INPUT, f"samples are not numeric: {exc}") from exc
    if x.ndim > 1:
        if sum(d > 1 for d in x.shape) > 1:
            raise InferenceError(
                ErrorCode.BAD_INPUT, f"expected mono samples, got shape {x.shape}"
            )
        x = x.reshape(-1)
    if x.ndim == 0:
        raise InferenceError(ErrorCode.BAD_INPUT, "samples must be a 1-D buffer")
    if not np.all(np.isfinite(x)):
        raise InferenceError(ErrorCode.BAD_INPUT, "samples contain NaN or Inf")
    return x


class Transcriber:
    """Owns the model handles for one session; requests must be serialized."""

    def __init__(
        self,
        loader: ModelLoader,
        vocab: Vocabulary,
        paths: ModelPaths,
        mel_config: Optional[MelConfig] = None,
        decoder_config: Optional[DecoderConfig] = None,
        timeout_ms: Optional[int] = DEFAULT_TIMEOUT_MS,
    ):
        self.loader = loader
        self.vocab = vocab
        self.paths = paths
        self.extractor = LogMelExtractor(mel_config)
        self.decoder_config = decoder_config or DecoderConfig()
        self.forward = SafeForward(timeout_ms)
        self.encoder: Optional[InferenceModule] = None
        self.decoder: Optional[InferenceModule] = None
        self.negotiator = EncoderShapeNegotiator(
            None, self._reload_encoder, forward=self.forward
        )
        self.greedy = GreedyDecoder(
            None, vocab, forward=self.forward, config=self.decoder_config
        )
        self.state = TranscriberState()

    @classmethod
    def from_model(cls, paths: ModelPaths, **kwargs) -> "Transcriber":
        """Build the loader and vocabulary from one model location."""
        loader = ModelLoader(paths.model)
        config_path = loader.asset_path(paths.config_asset)
        vocab = Vocabulary.from_files(
            loader.asset_path(paths.tokenizer_asset),
            config_path if config_path.exists() else None,
        )
        return cls(loader, vocab, paths, **kwargs)

    @property
    def is_loaded(self) -> bool:
        return self.encoder is not None and self.decoder is not None

    def _reload_encoder(self) -> Optional[InferenceModule]:
        LOGGER.info("Reloading encoder from %s", self.paths.encoder_asset)
        module = self.loader.load_module(self.paths.encoder_asset)
        self.encoder = module
        return module

    def load_models(self) -> None:
        """Load both modules; a partial load leaves the session unloaded."""
        encoder = self.loader.load_module(self.paths.encoder_asset)
        decoder = self.loader.load_module(self.paths.decoder_asset)
        if encoder is None or decoder is None:
            for module in (encoder, decoder):
                if module is not None:
                    module.close()
            self.state.loaded = False
            self.state.status = "Failed to load models"
            raise InferenceError(ErrorCode.NOT_LOADED, "failed to load models")
        self.encoder, self.decoder = encoder, decoder
        self.greedy.decoder = decoder
        self.negotiator.encoder = encoder
        self.negotiator.preferred = None
        self.state.loaded = True
        self.state.status = "Models ready"

    def unload_models(self) -> None:
        for module in (self.encoder, self.decoder):
            if module is not None:
                module.close()
        self.encoder = self.decoder = None
        self.greedy.decoder = None
        self.negotiator.encoder = None
        self.negotiator.preferred = None
        self.forward.shutdown()
        self.state = TranscriberState(status="Models released")

    def transcribe(self, samples) -> str:
        """Transcribe one buffer; raises InferenceError when no text is produced."""
        if not self.is_loaded:
            raise InferenceError(ErrorCode.NOT_LOADED, "models are not loaded")
        x = validate_samples(samples)

        self.state.busy = True
        self.state.status = "Processing audio"
        try:
            features = self.extractor(x)
            self.negotiator.encoder = self.encoder
            encoded = self.negotiator.negotiate(features)
            self.encoder = self.negotiator.encoder
            self.greedy.decoder = self.decoder
            text = self.greedy.decode(encoded)
        except InferenceError as err:
            self.encoder = self.negotiator.encoder
            LOGGER.error("Transcription failed: %s", err)
            self.state.status = "Transcription failed"
            self.state.last_error = str(err)
            raise
        finally:
            self.state.busy = False

        self.state.status = "Transcript ready"
        self.state.transcript = text
        self.state.last_error = None
        return text
