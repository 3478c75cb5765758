"""Zero-shot image classification through the Hugging Face Inference API.

The classifier sends raw image bytes plus a candidate label set to the model
selected by id and returns the ranked labels. It does not retry; callers
decide what a failed call means for their file.
"""

from __future__ import annotations

import io
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from huggingface_hub import InferenceClient, InferenceTimeoutError
from huggingface_hub.utils import HfHubHTTPError
from PIL import Image, UnidentifiedImageError
from requests.exceptions import RequestException

from deepimg.core.files import LabelScore
from deepimg.errors import ConfigurationError, NetworkError, RemoteError, ValidationError

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from deepimg.config import Settings
    from deepimg.core.files import ClassificationResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a selectable zero-shot model."""

    name: str
    family: str
    license: str


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "openai/clip-vit-base-patch32": ModelSpec(
        name="openai/clip-vit-base-patch32",
        family="clip",
        license="MIT",
    ),
    "google/siglip-base-patch16-224": ModelSpec(
        name="google/siglip-base-patch16-224",
        family="siglip",
        license="Apache-2.0",
    ),
}

MAX_LABELS: int = 10
MAX_LABEL_LENGTH: int = 25

DEFAULT_LABELS: tuple[str, ...] = (
    "animal",
    "plant",
    "human",
    "vehicle",
    "building",
    "food",
    "nature",
    "technology",
    "art",
    "miscellaneous",
)

_AUTH_STATUSES = frozenset({401, 403})
_IMAGE_FORMATS: dict[str, str] = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp"}


def get_model_spec(model_id: str) -> ModelSpec:
    try:
        return MODEL_REGISTRY[model_id]
    except KeyError:
        raise ConfigurationError(f"Unknown model: {model_id}") from None


def clean_labels(labels: Sequence[str]) -> list[str]:
    """Strip labels and drop blank entries, keeping order."""
    return [label.strip() for label in labels if label and label.strip()]


def verify_image(data: bytes) -> str:
    """Decode ``data`` with Pillow and return its MIME type.

    ``verify()`` checks structure without decoding pixels and is a no-op for
    JPEG, so the image is reopened and fully loaded as well.

    Raises:
        ValidationError: Empty, corrupt or truncated bytes, or a format
            other than JPEG, PNG or WebP.
    """
    if not data:
        raise ValidationError("Image payload is empty")
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
            img.verify()
        with Image.open(io.BytesIO(data)) as img:
            img.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        raise ValidationError(f"Unreadable image: {exc}") from exc
    if fmt not in _IMAGE_FORMATS:
        raise ValidationError(f"Unsupported image format: {fmt}")
    return _IMAGE_FORMATS[fmt]


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ZeroShotClassifier:
    """Wraps a lazily created ``InferenceClient``.

    The token is checked on the first call, so a missing token surfaces as a
    ConfigurationError there rather than at startup.
    """

    def __init__(self, settings: Settings, client_factory: Callable[..., InferenceClient] = InferenceClient) -> None:
        self._token = settings.hf_token
        self._timeout = settings.request_timeout
        self._client_factory = client_factory
        self._client: InferenceClient | None = None
        self._lock = threading.Lock()

    def classify(self, image: bytes, model_id: str, candidate_labels: Sequence[str]) -> ClassificationResult:
        """Classify ``image`` against ``candidate_labels`` with ``model_id``.

        Returns:
            Labels with scores, highest confidence first, as ranked by the API.

        Raises:
            ValidationError: Empty label set or unreadable image payload.
            ConfigurationError: Unknown model id, missing or rejected token.
            NetworkError: Transport failure or timeout.
            RemoteError: The API answered with a non-success status.
        """
        labels = clean_labels(candidate_labels)
        if not labels:
            raise ValidationError("At least one candidate label is required")
        verify_image(image)
        get_model_spec(model_id)

        client = self._get_client()
        try:
            output = client.zero_shot_image_classification(image, candidate_labels=labels, model=model_id)
        except InferenceTimeoutError as exc:
            raise NetworkError(f"Timed out waiting for {model_id}: {exc}") from exc
        except HfHubHTTPError as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            if status_code in _AUTH_STATUSES:
                raise ConfigurationError(f"Hugging Face rejected the token ({status_code})") from exc
            raise RemoteError(f"Classification with {model_id} failed: {exc}", status_code=status_code) from exc
        except RequestException as exc:
            raise NetworkError(f"Could not reach the inference API: {exc}") from exc

        result = tuple(LabelScore(label=item.label, score=float(item.score)) for item in output)
        logger.debug("Classified %d bytes with %s: %s", len(image), model_id, result[:1])
        return result

    def _get_client(self) -> InferenceClient:
        if self._token is None:
            raise ConfigurationError("DEEPIMG_HF_TOKEN is not set")
        with self._lock:
            if self._client is None:
                self._client = self._client_factory(token=self._token, timeout=self._timeout)
            return self._client
