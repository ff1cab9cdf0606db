"""Artwork generation: preprocessing, prompt choice and transport fallback.

Submission:
1. Check the MIME type against the allow-list
2. Preprocess (orient, downscale, pad, re-encode as PNG)
3. Pick the prompt for (mode, plan)
4. Send the image inline as a data URI
5. If the provider rejects the inline payload with a recognised
   "too large / unsupported inline image" error, upload the image to the
   temporary file host and resubmit once with the URL

Any other rejection is terminal. Polling is a pass-through and has no side
effects; recording a completed generation is the caller's job.
"""

import base64
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional, Tuple

from stickershop.errors import InvalidUpload, ProviderError, UnsupportedMediaType
from stickershop.imaging import PreparedImage, prepare_image
from stickershop.providers.replicate import ReplicateClient, first_output_url
from stickershop.providers.tmpfiles import TmpFilesClient

logger = logging.getLogger(__name__)

Mode = Literal["image", "sticker"]

ALLOWED_MIME_TYPES = {"image/jpeg", "image/png", "image/webp"}

# Provider errors that mean "send a URL instead of inline bytes"
INLINE_REJECTION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"payload too large",
        r"request entity too large",
        r"body (is )?too large",
        r"exceeds? (the )?(maximum|max) (size|length)",
        r"data ?ur[il]s? (are |is )?not (supported|allowed)",
        r"unsupported (inline )?image",
        r"invalid (image )?url",
        r"input_images.*(uri|url)",
    )
]


# -----------------------------
# Prompt table
# -----------------------------

_DIE_CUT = (
    "with a thick white contour outline around the entire subject so it looks like a die-cut sticker. "
)

PROMPTS: Dict[Tuple[str, str], Tuple[str, str]] = {
    # (mode, plan): (prompt, background)
    ("sticker", "free"): (
        "Create a clean black and white line drawing of the subject shown in the input image only, "
        + _DIE_CUT
        + "Transparent background, no extra elements or shadows.",
        "transparent",
    ),
    ("sticker", "pro"): (
        "Create a clean, colourful line-art illustration of the subject shown in the input image only, "
        "keeping its original colours as flat fills, "
        + _DIE_CUT
        + "Transparent background, no extra elements or shadows.",
        "transparent",
    ),
    ("image", "free"): (
        "Create a clean black and white line drawing of the subject shown in the input image only. "
        "Plain white background, no extra elements or shadows.",
        "opaque",
    ),
    ("image", "pro"): (
        "Create a clean, colourful line-art illustration of the subject shown in the input image only, "
        "keeping its original colours as flat fills. Plain white background, no extra elements or shadows.",
        "opaque",
    ),
}


def normalize_mode(value: Optional[str]) -> Mode:
    return "image" if (value or "").strip().lower() == "image" else "sticker"


def select_prompt(mode: str, plan: str) -> Tuple[str, str]:
    """Return (prompt, background) for a mode/plan pair."""
    key = (normalize_mode(mode), "pro" if plan == "pro" else "free")
    return PROMPTS[key]


def is_inline_rejection(error: ProviderError) -> bool:
    """Whether a provider rejection is the inline-payload kind we can work around."""
    if error.status == 413:
        return True
    text = f"{error.message} {error.details!r}"
    return any(p.search(text) for p in INLINE_REJECTION_PATTERNS)


@dataclass
class JobStatus:
    id: str
    status: str
    output_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "status": self.status, "output_url": self.output_url, "error": self.error}


class ArtworkGenerationOrchestrator:
    """Submit photos for line-art generation and poll the resulting jobs."""

    def __init__(
        self,
        generator: ReplicateClient,
        file_host: TmpFilesClient,
        max_dimension: int = 1024,
        pad_fraction: float = 0.12,
    ):
        self.generator = generator
        self.file_host = file_host
        self.max_dimension = max_dimension
        self.pad_fraction = pad_fraction

    def preprocess(self, image_bytes: bytes, mime_type: str, mode: str) -> PreparedImage:
        if (mime_type or "").lower() not in ALLOWED_MIME_TYPES:
            raise UnsupportedMediaType(f"Unsupported image type: {mime_type or 'unknown'}")
        if not image_bytes:
            raise InvalidUpload("No file uploaded")
        return prepare_image(
            image_bytes,
            transparent=normalize_mode(mode) == "sticker",
            max_dimension=self.max_dimension,
            pad_fraction=self.pad_fraction,
        )

    async def submit(self, image_bytes: bytes, mime_type: str, mode: str, plan: str) -> str:
        """
        Preprocess an upload and start a generation job.

        Returns:
            Provider job id

        Raises:
            UnsupportedMediaType, InvalidUpload: bad input
            MissingCredentials: generation API not configured
            ProviderError: terminal provider rejection
            UploadFailed: fallback file host failed
        """
        mode = normalize_mode(mode)
        prepared = self.preprocess(image_bytes, mime_type, mode)
        prompt, background = select_prompt(mode, plan)

        data_uri = f"data:{prepared.mime_type};base64,{base64.b64encode(prepared.data).decode('ascii')}"
        try:
            return await self.generator.create_prediction(prompt, data_uri, background)
        except ProviderError as e:
            if not is_inline_rejection(e):
                raise
            logger.warning("Inline image rejected (status=%s), retrying via file host", e.status)

        image_url = await self.file_host.upload(prepared.data, f"{mode}.png", prepared.mime_type)
        return await self.generator.create_prediction(prompt, image_url, background)

    async def poll_status(self, job_id: str) -> JobStatus:
        """Current status of a job. Read-only."""
        payload = await self.generator.get_prediction(job_id)
        status = str(payload.get("status") or "unknown")
        error = payload.get("error")
        return JobStatus(
            id=str(payload.get("id") or job_id),
            status=status,
            output_url=first_output_url(payload.get("output")) if status == "succeeded" else None,
            error=str(error) if error else None,
        )
