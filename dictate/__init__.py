"""On-device speech-to-text: log-mel features, encoder layout negotiation, greedy decoding."""

from .decoding import DecoderConfig, GreedyDecoder
from .engine import (
    DecodeError,
    ErrorCode,
    InferenceError,
    InferenceModule,
    ModelLoader,
    SafeForward,
    ShapeNegotiationError,
)
from .features import LogMelExtractor, MelConfig, mel_filterbank
from .negotiate import DEFAULT_CANDIDATES, EncoderShapeNegotiator, ShapeCandidate
from .pipeline import ModelPaths, Transcriber, TranscriberState
from .vocab import Vocabulary

__version__ = "0.1.0"

__all__ = [
    "DEFAULT_CANDIDATES",
    "DecodeError",
    "DecoderConfig",
    "EncoderShapeNegotiator",
    "ErrorCode",
    "GreedyDecoder",
    "InferenceError",
    "InferenceModule",
    "LogMelExtractor",
    "MelConfig",
    "ModelLoader",
    "ModelPaths",
    "SafeForward",
    "ShapeCandidate",
    "ShapeNegotiationError",
    "Transcriber",
    "TranscriberState",
    "Vocabulary",
    "mel_filterbank",
]
