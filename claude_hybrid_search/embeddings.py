"""
Embedding generation for session documents.

This module provides the EmbeddingGenerator class that converts session text
into a single 384-dimension unit vector. Token-level inference is delegated
to a backend (ONNX Runtime or sentence-transformers); pooling, windowing over
long inputs and normalization happen here so every backend yields the same
vectors for the same model.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Protocol, Sequence, Tuple, Union

import numpy as np
import onnxruntime as ort
import torch
from sentence_transformers import SentenceTransformer
from tokenizers import Tokenizer

if TYPE_CHECKING:
    from .storage import SessionDocument

logger = logging.getLogger(__name__)

ONNX_MODEL_FILE = "model.onnx"
TOKENIZER_FILE = "tokenizer.json"
SENTENCE_TRANSFORMERS_MARKER = "modules.json"

# BERT-style ids used when a tokenizer does not name its boundary tokens
DEFAULT_CLS_ID = 101
DEFAULT_SEP_ID = 102


class EmbeddingError(Exception):
    """Raised when tokenization or inference fails for one input."""


@dataclass
class EmbeddingConfig:
    """Configuration for embedding generation."""
    embedding_dim: int = 384
    max_tokens: int = 512  # model context limit, boundary tokens included
    window_overlap: int = 50
    embedding_text_chars: int = 2000

    @property
    def window_size(self) -> int:
        # Room for [CLS] and [SEP]
        return self.max_tokens - 2


class InferenceBackend(Protocol):
    """Tokenizer plus model capable of producing per-token vectors."""

    cls_token_id: int
    sep_token_id: int

    def tokenize(self, text: str, add_special_tokens: bool = True) -> Tuple[List[int], List[int]]:
        """Return token ids and the matching attention mask."""
        ...

    def infer(self, input_ids: Sequence[int], attention_mask: Sequence[int]) -> np.ndarray:
        """Return raw token vectors shaped (seq_len, dim)."""
        ...


class OnnxBackend:
    """Runs an exported transformer with ONNX Runtime and a tokenizers.json file."""

    def __init__(self, model_dir: Union[str, Path]):
        model_dir = Path(model_dir)
        model_path = model_dir / ONNX_MODEL_FILE
        tokenizer_path = model_dir / TOKENIZER_FILE

        options = ort.SessionOptions()
        options.intra_op_num_threads = 1
        self.session = ort.InferenceSession(
            str(model_path), sess_options=options, providers=["CPUExecutionProvider"]
        )
        self.input_names = {inp.name for inp in self.session.get_inputs()}

        self.tokenizer = Tokenizer.from_file(str(tokenizer_path))
        # Long inputs are windowed by the generator, not cut by the tokenizer
        self.tokenizer.no_truncation()
        self.tokenizer.no_padding()

        cls_id = self.tokenizer.token_to_id("[CLS]")
        sep_id = self.tokenizer.token_to_id("[SEP]")
        self.cls_token_id = cls_id if cls_id is not None else DEFAULT_CLS_ID
        self.sep_token_id = sep_id if sep_id is not None else DEFAULT_SEP_ID

    def tokenize(self, text: str, add_special_tokens: bool = True) -> Tuple[List[int], List[int]]:
        encoding = self.tokenizer.encode(text, add_special_tokens=add_special_tokens)
        return list(encoding.ids), list(encoding.attention_mask)

    def infer(self, input_ids: Sequence[int], attention_mask: Sequence[int]) -> np.ndarray:
        ids = np.asarray([input_ids], dtype=np.int64)
        mask = np.asarray([attention_mask], dtype=np.int64)
        feeds = {"input_ids": ids, "attention_mask": mask}
        if "token_type_ids" in self.input_names:
            feeds["token_type_ids"] = np.zeros_like(ids)

        outputs = self.session.run(None, feeds)
        # last_hidden_state: [1, seq_len, dim]
        return np.asarray(outputs[0][0], dtype=np.float32)


class SentenceTransformerBackend:
    """Uses a local sentence-transformers checkpoint for token vectors."""

    def __init__(self, model_dir: Union[str, Path], device: str = "cpu"):
        self.model = SentenceTransformer(str(model_dir), device=device)
        self.tokenizer = self.model.tokenizer

        cls_id = getattr(self.tokenizer, "cls_token_id", None)
        sep_id = getattr(self.tokenizer, "sep_token_id", None)
        self.cls_token_id = cls_id if cls_id is not None else DEFAULT_CLS_ID
        self.sep_token_id = sep_id if sep_id is not None else DEFAULT_SEP_ID

    def tokenize(self, text: str, add_special_tokens: bool = True) -> Tuple[List[int], List[int]]:
        encoded = self.tokenizer(
            text, add_special_tokens=add_special_tokens, truncation=False
        )
        return list(encoded["input_ids"]), list(encoded["attention_mask"])

    def infer(self, input_ids: Sequence[int], attention_mask: Sequence[int]) -> np.ndarray:
        device = self.model.device
        features = {
            "input_ids": torch.tensor([list(input_ids)], dtype=torch.long, device=device),
            "attention_mask": torch.tensor(
                [list(attention_mask)], dtype=torch.long, device=device
            ),
        }
        with torch.no_grad():
            # First module is the transformer; pooling is done by the generator
            output = self.model[0](features)
        return output["token_embeddings"][0].cpu().numpy().astype(np.float32)


def load_backend(model_dir: Union[str, Path]) -> Optional[InferenceBackend]:
    """Load whichever model artifacts are present in model_dir.

    Returns None when no usable model is found; callers then fall back to
    keyword-only search.
    """
    model_dir = Path(model_dir).expanduser()

    try:
        if (model_dir / ONNX_MODEL_FILE).exists() and (model_dir / TOKENIZER_FILE).exists():
            logger.info(f"Loading ONNX embedding model from {model_dir}")
            return OnnxBackend(model_dir)
        if (model_dir / SENTENCE_TRANSFORMERS_MARKER).exists():
            logger.info(f"Loading sentence-transformers model from {model_dir}")
            return SentenceTransformerBackend(model_dir)
    except Exception as e:
        logger.warning(f"Failed to load embedding model from {model_dir}: {e}")
        return None

    logger.warning(
        f"Embedding model not found in {model_dir}; vector search disabled"
    )
    return None


def mean_pool(token_vectors: np.ndarray, attention_mask: Sequence[int]) -> np.ndarray:
    """Average token vectors, weighting each by its attention mask value."""
    vectors = np.asarray(token_vectors, dtype=np.float32)
    weights = np.asarray(attention_mask, dtype=np.float32)[: vectors.shape[0]]

    pooled = (vectors[: len(weights)] * weights[:, None]).sum(axis=0)
    total = weights.sum()
    if total > 0:
        pooled = pooled / total
    return pooled.astype(np.float32)


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    """Scale a vector to unit length; a zero vector is returned unchanged."""
    vector = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(vector))
    if norm > 0.0:
        return (vector / norm).astype(np.float32)
    return vector.copy()


def build_embedding_text(document: "SessionDocument", max_chars: int = 2000) -> str:
    """Text used to embed a session: summary, first prompt, then opening text."""
    parts = []
    if document.summary:
        parts.append(document.summary)
    if document.first_prompt:
        parts.append(document.first_prompt)
    if document.full_text:
        parts.append(document.full_text[:max_chars])
    return " ".join(parts)


class EmbeddingGenerator:
    """Generates session embeddings from an optional inference backend."""

    def __init__(
        self,
        backend: Optional[InferenceBackend] = None,
        config: Optional[EmbeddingConfig] = None,
    ):
        self.backend = backend
        self.config = config or EmbeddingConfig()
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_model_dir(
        cls, model_dir: Union[str, Path], config: Optional[EmbeddingConfig] = None
    ) -> "EmbeddingGenerator":
        return cls(load_backend(model_dir), config)

    @property
    def is_available(self) -> bool:
        """Check if a backend is loaded."""
        return self.backend is not None

    @property
    def embedding_dimension(self) -> int:
        return self.config.embedding_dim

    def embed(self, text: str) -> Optional[np.ndarray]:
        """Embed text into a unit vector.

        Returns None when no backend is loaded and the all-zero vector for
        empty text. Raises EmbeddingError if tokenization or inference fails.
        """
        if self.backend is None:
            return None

        text = text.strip()
        if not text:
            return np.zeros(self.config.embedding_dim, dtype=np.float32)

        start_time = time.time()
        try:
            input_ids, attention_mask = self.backend.tokenize(text, add_special_tokens=True)
            if len(input_ids) <= self.config.max_tokens:
                vector = self._embed_tokens(input_ids, attention_mask)
            else:
                vector = self._embed_windows(text)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding failed: {e}") from e

        self.logger.debug(
            f"Embedded {len(text)} chars ({len(input_ids)} tokens) "
            f"in {time.time() - start_time:.3f}s"
        )
        return vector

    def embed_document(self, document: "SessionDocument") -> Optional[np.ndarray]:
        """Embed the summary/prompt/opening text of a session document."""
        return self.embed(build_embedding_text(document, self.config.embedding_text_chars))

    def _embed_tokens(self, input_ids: Sequence[int], attention_mask: Sequence[int]) -> np.ndarray:
        """Single inference pass, masked mean pooling, then L2 normalization."""
        token_vectors = self.backend.infer(input_ids, attention_mask)
        if token_vectors.ndim != 2 or token_vectors.shape[0] != len(input_ids):
            raise EmbeddingError(
                f"Unexpected inference output shape {token_vectors.shape} "
                f"for {len(input_ids)} tokens"
            )
        return l2_normalize(mean_pool(token_vectors, attention_mask))

    def _window_ranges(self, token_count: int) -> List[Tuple[int, int]]:
        """Start/end offsets of overlapping token windows covering token_count."""
        size = self.config.window_size
        overlap = self.config.window_overlap
        ranges = []
        start = 0
        while start < token_count:
            end = min(start + size, token_count)
            ranges.append((start, end))
            if end >= token_count:
                break
            start = end - overlap
        return ranges

    def _embed_windows(self, text: str) -> np.ndarray:
        """Embed a long text as the normalized average of window embeddings."""
        token_ids, _ = self.backend.tokenize(text, add_special_tokens=False)

        window_vectors = []
        for start, end in self._window_ranges(len(token_ids)):
            window = [self.backend.cls_token_id, *token_ids[start:end], self.backend.sep_token_id]
            window_vectors.append(self._embed_tokens(window, [1] * len(window)))

        if not window_vectors:
            return np.zeros(self.config.embedding_dim, dtype=np.float32)

        self.logger.debug(f"Embedded {len(token_ids)} tokens in {len(window_vectors)} windows")
        return l2_normalize(np.mean(np.stack(window_vectors), axis=0))
