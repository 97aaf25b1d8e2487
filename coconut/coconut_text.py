"""
Tokenizer boundary for the latent reasoner.

The engine itself only consumes integer token ids and produces logits; text
enters and leaves through anything implementing TokenEncoder.
"""

import logging
import re
import zlib
import numpy as np
from typing import List, Optional, Protocol, Sequence, Tuple

from tokenizers import Tokenizer
from tokenizers.models import BPE
from tokenizers.pre_tokenizers import Whitespace
from tokenizers.trainers import BpeTrainer

logger = logging.getLogger('coconut')

SPECIAL_TOKENS = ["<PAD>", "<UNK>", "<BOS>", "<EOS>"]
_PUNCTUATION = re.compile(r"[^\w\s]")


class TokenEncoder(Protocol):
    def encode(self, text: str) -> List[int]: ...

    def decode(self, ids: Sequence[int]) -> str: ...


# =============================================================================
# HASH TOKENIZER
# =============================================================================

class HashTokenizer:
    """
    Vocabulary-free word hashing.

    Lower-cases, strips punctuation, splits on whitespace and maps each word
    to crc32(word) mod vocab_size. Not invertible: decode renders token_<id>.
    """

    def __init__(self, vocab_size: int = 50000, max_tokens: int = 100):
        if vocab_size < 1:
            raise ValueError("vocab_size must be positive")
        self.vocab_size = vocab_size
        self.max_tokens = max_tokens

    def encode(self, text: str) -> List[int]:
        words = _PUNCTUATION.sub("", text.lower()).split()
        return [zlib.crc32(w.encode('utf-8')) % self.vocab_size for w in words[:self.max_tokens]]

    def decode(self, ids: Sequence[int]) -> str:
        return " ".join(f"token_{int(i)}" for i in ids)


# =============================================================================
# BPE TOKENIZER
# =============================================================================

class BPETokenizer:
    """BPE tokenizer wrapper around Hugging Face tokenizers."""

    def __init__(self, vocab_size: int = 1000):
        self.vocab_size = vocab_size
        self.tokenizer: Optional[Tokenizer] = None
        self.pad_id = 0
        self.unk_id = 1
        self.bos_id = 2
        self.eos_id = 3

    def _update_special_ids(self):
        self.pad_id = self.tokenizer.token_to_id("<PAD>")
        self.unk_id = self.tokenizer.token_to_id("<UNK>")
        self.bos_id = self.tokenizer.token_to_id("<BOS>")
        self.eos_id = self.tokenizer.token_to_id("<EOS>")
        self.actual_vocab_size = self.tokenizer.get_vocab_size()

    def train(self, texts: List[str], min_frequency: int = 2):
        """Train BPE on a corpus held in memory."""
        self.tokenizer = Tokenizer(BPE(unk_token="<UNK>"))
        self.tokenizer.pre_tokenizer = Whitespace()

        trainer = BpeTrainer(
            vocab_size=self.vocab_size,
            special_tokens=SPECIAL_TOKENS,
            min_frequency=min_frequency,
        )
        self.tokenizer.train_from_iterator(texts, trainer)
        self._update_special_ids()
        logger.info(f"BPE vocab size: {self.actual_vocab_size}")

    def encode(self, text: str) -> List[int]:
        """Encode text to token IDs, wrapped in BOS / EOS."""
        ids = self.tokenizer.encode(text).ids
        return [self.bos_id] + ids + [self.eos_id]

    def decode(self, ids: Sequence[int]) -> str:
        specials = {self.pad_id, self.bos_id, self.eos_id}
        return self.tokenizer.decode([int(i) for i in ids if i not in specials])

    def save(self, path: str):
        self.tokenizer.save(path)

    @classmethod
    def from_file(cls, path: str) -> "BPETokenizer":
        bpe = cls()
        bpe.load(path)
        bpe.vocab_size = bpe.actual_vocab_size
        return bpe

    def load(self, path: str):
        self.tokenizer = Tokenizer.from_file(path)
        self._update_special_ids()


# =============================================================================
# LOGIT DECODING
# =============================================================================

def top_k_tokens(logits: np.ndarray, k: int = 10) -> List[Tuple[int, float]]:
    """(token id, logit) pairs, highest logit first; ties keep the lower id first."""
    logits = np.asarray(logits)
    k = max(0, min(k, logits.shape[0]))
    order = np.argsort(-logits, kind='stable')[:k]
    return [(int(i), float(logits[i])) for i in order]


def decode_logits(tokenizer: TokenEncoder, logits: np.ndarray, k: int = 10) -> str:
    return tokenizer.decode([idx for idx, _ in top_k_tokens(logits, k)])


def describe_conclusion(tokenizer: TokenEncoder, logits: np.ndarray,
                        context_tokens: Sequence[int], k: int = 10) -> str:
    """One-line rendering of the top-k tokens next to the first five context ids."""
    context = " ".join(f"ctx_{int(t)}" for t in list(context_tokens)[:5])
    return (
        f"Based on {context}, the continuous thought reasoning concludes: "
        f"{decode_logits(tokenizer, logits, k)}"
    )
