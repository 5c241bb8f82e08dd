"""Token id <-> subword table with special-token handling and detokenization."""

import json
import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

LOGGER = logging.getLogger(__name__)

DEFAULT_EOS_TOKEN_ID = 50257
DEFAULT_SOT_TOKEN_ID = 50258
DEFAULT_TRANSCRIBE_TOKEN_ID = 50359
DEFAULT_NO_TIMESTAMPS_TOKEN_ID = 50363

SPECIAL_PREFIX = "<|"
SPECIAL_SUFFIX = "|>"

# Byte-level BPE (GPT-2) and SentencePiece word-boundary markers.
BOUNDARY_MARKERS = ("Ġ", "▁")
# Byte-level artifacts rewritten before joining.
ARTIFACT_REWRITES = (("ÃĤ", "Ĥ"),)

_SPACES = re.compile(r" +")


class Vocabulary:
    """Immutable id table plus the handful of control ids the decoder needs."""

    def __init__(
        self,
        tokens: Sequence[str],
        eos_id: int = DEFAULT_EOS_TOKEN_ID,
        sot_id: int = DEFAULT_SOT_TOKEN_ID,
        transcribe_id: int = DEFAULT_TRANSCRIBE_TOKEN_ID,
        no_timestamps_id: int = DEFAULT_NO_TIMESTAMPS_TOKEN_ID,
    ):
        self._tokens: Tuple[str, ...] = tuple(tokens)
        self.eos_id = eos_id
        self.sot_id = sot_id
        self.transcribe_id = transcribe_id
        self.no_timestamps_id = no_timestamps_id

    def __len__(self) -> int:
        return len(self._tokens)

    @classmethod
    def from_mapping(cls, token_to_id: Mapping[str, int], **special_ids) -> "Vocabulary":
        """Build the id table from a string->id map; unused ids stay empty."""
        size = max(token_to_id.values(), default=-1) + 1
        table = [""] * size
        for token, idx in token_to_id.items():
            if 0 <= idx < size:
                table[idx] = token
        return cls(table, **special_ids)

    @classmethod
    def from_files(
        cls,
        tokenizer_path: Union[str, Path],
        config_path: Optional[Union[str, Path]] = None,
    ) -> "Vocabulary":
        """Load a Hugging Face ``tokenizer.json`` and optional model ``config.json``."""
        with open(tokenizer_path, encoding="utf-8") as f:
            tok = json.load(f)

        token_to_id: Dict[str, int] = dict(tok.get("model", {}).get("vocab", {}))
        # Whisper keeps its control tokens outside model.vocab.
        for added in tok.get("added_tokens", []):
            if "content" in added and "id" in added:
                token_to_id[added["content"]] = int(added["id"])

        special_ids = {}
        if config_path is not None:
            with open(config_path, encoding="utf-8") as f:
                cfg = json.load(f)
            special_ids = special_ids_from_config(cfg)

        vocab = cls.from_mapping(token_to_id, **special_ids)
        LOGGER.debug(
            "Loaded vocabulary: %d ids (eos=%d, sot=%d)",
            len(vocab),
            vocab.eos_id,
            vocab.sot_id,
        )
        return vocab

    def token(self, idx: int) -> str:
        """Subword for ``idx``; out-of-range ids map to the empty string."""
        if 0 <= idx < len(self._tokens):
            return self._tokens[idx]
        return ""

    def prompt_ids(self) -> List[int]:
        return [self.sot_id, self.transcribe_id, self.no_timestamps_id]

    def is_special(self, idx: int) -> bool:
        s = self.token(idx)
        return s.startswith(SPECIAL_PREFIX) and s.endswith(SPECIAL_SUFFIX)

    def decode(self, ids: Iterable[int]) -> str:
        """Join subwords up to end-of-sequence, dropping control tokens."""
        parts = []
        for idx in ids:
            idx = int(idx)
            if idx == self.eos_id:
                break
            if self.is_special(idx):
                continue
            piece = self.token(idx)
            for marker in BOUNDARY_MARKERS:
                piece = piece.replace(marker, " ")
            for src, dst in ARTIFACT_REWRITES:
                piece = piece.replace(src, dst)
            parts.append(piece)
        return _SPACES.sub(" ", "".join(parts)).strip()


def special_ids_from_config(cfg: Mapping) -> Dict[str, int]:
    """Pick the control ids out of a model config, falling back to Whisper's."""
    def pick(key: str, default: int) -> int:
        value = cfg.get(key)
        return default if value is None else int(value)

    return {
        "eos_id": pick("eos_token_id", DEFAULT_EOS_TOKEN_ID),
        "sot_id": pick("sot_token_id", DEFAULT_SOT_TOKEN_ID),
        "transcribe_id": pick("transcribe_token_id", DEFAULT_TRANSCRIBE_TOKEN_ID),
        "no_timestamps_id": pick(
            "no_timestamps_token_id", DEFAULT_NO_TIMESTAMPS_TOKEN_ID
        ),
    }
