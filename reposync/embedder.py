"""Local embedding runtime.

Wraps a sentence-transformers model and truncates every vector to its first
``dims`` components (the model is trained Matryoshka-style, so a leading
slice is itself a usable embedding).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

import numpy as np

from reposync import config

logger = logging.getLogger(__name__)


class SupportsEmbed(Protocol):
    def embed(self, texts: list[str]) -> np.ndarray: ...


class Embedder:
    """Batch text -> fixed-width float32 vectors."""

    def __init__(
        self,
        model_name: str = config.EMBEDDING_MODEL,
        dims: int = config.EMBEDDING_DIMS,
        cache_dir: Path | None = None,
    ) -> None:
        self.model_name = model_name
        self.dims = dims
        self.cache_dir = cache_dir or config.get_models_dir()
        self._model: Any = None

    def _load_model(self) -> Any:
        """Get or initialize the model, preferring the local cache."""
        if self._model is not None:
            return self._model

        import warnings

        from sentence_transformers import SentenceTransformer

        # Suppress harmless transformer library warnings
        warnings.filterwarnings("ignore", message=".*position_ids.*")
        logging.getLogger("transformers.modeling_utils").setLevel(logging.ERROR)

        cache_folder = str(self.cache_dir)
        try:
            self._model = SentenceTransformer(
                self.model_name, cache_folder=cache_folder, local_files_only=True
            )
        except Exception:
            logger.info("Local model %s not found, downloading", self.model_name)
            try:
                self._model = SentenceTransformer(
                    self.model_name, cache_folder=cache_folder
                )
            except Exception as e:
                raise RuntimeError(
                    f"Failed to load embedding model '{self.model_name}'. "
                    f"Check internet connection and model availability. Error: {e}"
                ) from e
        return self._model

    def prefetch(self) -> Path:
        """Download the model into the cache ahead of the first embed call.

        Returns the cache directory. Raises RuntimeError like ``embed`` when
        the model cannot be fetched.
        """
        self._load_model()
        return self.cache_dir

    def embed(self, texts: list[str]) -> np.ndarray:
        """Embed a batch; returns an array of shape ``(len(texts), dims)``."""
        if not texts:
            return np.zeros((0, self.dims), dtype=np.float32)
        model = self._load_model()
        embeddings = model.encode(
            texts,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        embeddings = np.atleast_2d(np.asarray(embeddings, dtype=np.float32))
        return embeddings[:, : self.dims]
