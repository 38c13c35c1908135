"""Pyannote-based voice embedding extraction.

The identification core treats the embedding model as a black box behind
``EmbeddingExtractor.extract``. This module provides the pyannote-backed
implementation; torch and pyannote.audio are only imported when the model
is first used (install the ``extractor`` extra).
"""

import logging
import os
from typing import Optional, Protocol

import numpy as np

from .env import load_env
from .errors import ExtractionError, InvalidEmbedding
from .models import AudioSegmentInfo, Embedding

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "pyannote/embedding"


class EmbeddingExtractor(Protocol):
    """Anything that turns a stretch of audio into an Embedding."""

    def extract(self, audio_path: str, start: float, end: float) -> Embedding:
        ...


def _get_auth_token_kwargs(from_pretrained, token: str) -> dict:
    """Get the correct auth token kwarg for the installed huggingface_hub version.

    Older versions use 'use_auth_token', newer versions use 'token'.
    """
    import inspect

    try:
        sig = inspect.signature(from_pretrained)
    except (TypeError, ValueError):
        return {"use_auth_token": token}
    if "token" in sig.parameters:
        return {"token": token}
    return {"use_auth_token": token}


def detect_device() -> str:
    """Detect the best available compute device.

    Checks CUDA compute capability - PyTorch 2.x requires capability >= 7.0.
    Older GPUs (Pascal, Maxwell) must use CPU.
    """
    import torch

    if torch.cuda.is_available():
        capability = torch.cuda.get_device_capability()
        if capability[0] >= 7:
            return "cuda"
        logger.warning(
            "%s (capability %d.%d) is not supported by PyTorch 2.x (requires >= 7.0). Using CPU.",
            torch.cuda.get_device_name(0), capability[0], capability[1],
        )
        return "cpu"
    if torch.backends.mps.is_available():
        return "mps"
    return "cpu"


def _segment(start: float, end: float):
    from pyannote.core import Segment

    return Segment(start, end)


def segment_info(
    start: float,
    end: float,
    audio_quality: Optional[float] = None,
    speech_activity: float = 0.9,
    background_noise: float = 0.1,
) -> AudioSegmentInfo:
    """Build AudioSegmentInfo for a time range.

    Without a measured quality, quality is estimated from duration
    (longer is better, capped at 30s).
    """
    duration = max(end - start, 0.0)
    if audio_quality is None:
        audio_quality = min(duration / 30.0, 1.0)
    return AudioSegmentInfo(
        start_time=start,
        duration=duration,
        audio_quality=audio_quality,
        speech_activity=speech_activity,
        background_noise=background_noise,
    )


class PyannoteExtractor:
    """Speaker embedding extraction using a pyannote embedding model."""

    def __init__(
        self,
        hf_token: Optional[str] = None,
        device: Optional[str] = None,
        model_name: str = DEFAULT_EMBEDDING_MODEL,
    ):
        load_env()
        self.hf_token = hf_token or os.environ.get("HF_TOKEN")
        self.device = device
        self.model_name = model_name
        self._embedding_model = None

    @property
    def embedding_model(self):
        """Lazy-load the speaker embedding inference model.

        Raises:
            ExtractionError: If there is no token or the model cannot be loaded.
        """
        if self._embedding_model is None:
            if not self.hf_token:
                raise ExtractionError(
                    "Hugging Face token required. Set HF_TOKEN environment variable "
                    "or pass hf_token parameter."
                )
            try:
                self._embedding_model = self._load_model()
            except ExtractionError:
                raise
            except Exception as e:
                raise ExtractionError(
                    f"Could not load embedding model {self.model_name}: {e}"
                ) from e
        return self._embedding_model

    def _load_model(self):
        import torch
        from pyannote.audio import Inference, Model

        device = self.device or detect_device()
        model = Model.from_pretrained(
            self.model_name,
            **_get_auth_token_kwargs(Model.from_pretrained, self.hf_token),
        )
        if model is None:
            raise ExtractionError(f"Embedding model {self.model_name} could not be downloaded")
        logger.info("Loaded embedding model %s on %s", self.model_name, device)
        # Inference handles audio loading, batching and device placement
        return Inference(
            model,
            window="whole",
            device=torch.device(device),
        )

    def extract(self, audio_path: str, start: float, end: float) -> Embedding:
        """Extract a speaker embedding from an audio segment.

        Args:
            audio_path: Path to audio file.
            start: Start time in seconds.
            end: End time in seconds.

        Returns:
            A validated Embedding tagged with the model name.

        Raises:
            ExtractionError: If the audio is unusable or the model fails.
        """
        if end <= start:
            raise ExtractionError(f"Empty segment {start:.2f}-{end:.2f}")

        model = self.embedding_model
        try:
            raw = model.crop(audio_path, _segment(start, end))
        except Exception as e:
            raise ExtractionError(
                f"Could not extract embedding for segment {start:.2f}-{end:.2f}: {e}"
            ) from e

        vector = np.asarray(raw, dtype=np.float32).flatten()
        try:
            return Embedding.from_array(vector, model_version=self.model_name).validate()
        except InvalidEmbedding as e:
            raise ExtractionError(f"Model returned an unusable embedding: {e}") from e
