"""
Download and verify the embedding model.

The model is fetched once with sentence-transformers and saved into the
data directory, where the embedding generator loads it without network
access on later runs.
"""

import logging
from pathlib import Path
from typing import Union

import numpy as np
from sentence_transformers import SentenceTransformer

from .config import MODEL_NAME
from .embeddings import EmbeddingGenerator, SENTENCE_TRANSFORMERS_MARKER

logger = logging.getLogger(__name__)

HUB_MODEL_ID = f"sentence-transformers/{MODEL_NAME}"

VERIFY_SENTENCES = [
    "Hello world",
    "Fixing the authentication bug in the login flow",
]


def is_model_downloaded(model_dir: Union[str, Path]) -> bool:
    return (Path(model_dir).expanduser() / SENTENCE_TRANSFORMERS_MARKER).exists()


def download_model(model_dir: Union[str, Path], force_download: bool = False) -> Path:
    """
    Download the sentence transformer model into model_dir.

    Args:
        model_dir: Directory the model is saved to
        force_download: Re-download even if the model exists

    Returns:
        Path to the model directory
    """
    model_path = Path(model_dir).expanduser()

    if is_model_downloaded(model_path) and not force_download:
        logger.info(f"Model already present at {model_path}")
        return model_path

    logger.info(f"Downloading {HUB_MODEL_ID} to {model_path}")
    model_path.parent.mkdir(parents=True, exist_ok=True)
    model = SentenceTransformer(HUB_MODEL_ID, cache_folder=str(model_path.parent))
    model.save(str(model_path))
    return model_path


def verify_model(model_path: Union[str, Path]) -> bool:
    """Check the saved model loads and yields unit vectors of the right size."""
    generator = EmbeddingGenerator.from_model_dir(model_path)
    if not generator.is_available:
        return False

    for sentence in VERIFY_SENTENCES:
        vector = generator.embed(sentence)
        if vector is None or vector.shape != (generator.embedding_dimension,):
            logger.warning(f"Unexpected embedding shape for {sentence!r}")
            return False
        if not np.isclose(np.linalg.norm(vector), 1.0, atol=1e-4):
            logger.warning(f"Embedding for {sentence!r} is not normalized")
            return False
    return True
