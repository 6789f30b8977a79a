import base64
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from google import genai  # pip install google-genai
from google.genai import types

from image_input import NormalizedImage
from settings import DEFAULT_IMAGE_MODEL

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_MIME_TYPE = "image/png"


# ----------------- Upstream errors -----------------

class UpstreamError(Exception):
    """Base class for failures talking to the generation API."""
    status_code = 500
    user_message = "Unknown error occurred"


class UpstreamConfigurationError(UpstreamError):
    user_message = "The AI service is not configured."


class UpstreamResponseError(UpstreamError):
    """The API answered, but not with something we can use."""


class NoCandidatesError(UpstreamResponseError):
    status_code = 503
    user_message = "The AI service did not generate any content. Please try again."


class InvalidResponseStructureError(UpstreamResponseError):
    status_code = 502
    user_message = "The AI service returned an unexpected response format. Please try again."


class NoInlineImageError(UpstreamResponseError):
    status_code = 422
    user_message = "The AI service could not generate content. Please try with a different image or prompt."


@dataclass(frozen=True)
class GeneratedImage:
    data: bytes
    mime_type: str = DEFAULT_OUTPUT_MIME_TYPE

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


# ----------------- Request building -----------------

def image_part(image: NormalizedImage) -> types.Part:
    return types.Part.from_bytes(data=image.data, mime_type=image.mime_type)


def text_part(text: str) -> types.Part:
    return types.Part.from_text(text=text)


def user_turn(parts: Sequence[types.Part]) -> List[types.Content]:
    """Wrap all parts in a single user turn."""
    return [types.Content(role="user", parts=list(parts))]


# ----------------- Response parsing -----------------

def ensure_candidates(response: Any) -> Any:
    if not getattr(response, "candidates", None):
        raise NoCandidatesError("No response generated from Gemini API - no candidates returned")
    return response


def describe_response(response: Any) -> dict:
    candidates = getattr(response, "candidates", None) or []
    first = candidates[0] if candidates else None
    content = getattr(first, "content", None)
    return {
        "hasCandidates": bool(candidates),
        "candidatesLength": len(candidates),
        "firstCandidate": {
            "hasContent": content is not None,
            "partsLength": len(getattr(content, "parts", None) or []),
            "finishReason": str(getattr(first, "finish_reason", None)),
        } if first is not None else None,
    }


def _inline_bytes(data: Any) -> bytes:
    # the SDK hands back raw bytes; tolerate base64 text as well
    if isinstance(data, str):
        return base64.b64decode(data)
    return bytes(data)


def extract_inline_image(response: Any) -> GeneratedImage:
    """Return the first inline image of the first candidate."""
    ensure_candidates(response)
    candidate = response.candidates[0]
    if candidate is None:
        raise InvalidResponseStructureError("Invalid response structure from Gemini API - candidate is null")
    if candidate.content is None:
        raise InvalidResponseStructureError("Invalid response structure from Gemini API - no content in candidate")
    parts = candidate.content.parts or []
    if not parts:
        raise InvalidResponseStructureError("Invalid response structure from Gemini API - no parts in content")

    for part in parts:
        inline_data = getattr(part, "inline_data", None)
        if inline_data is not None and inline_data.data:
            return GeneratedImage(
                data=_inline_bytes(inline_data.data),
                mime_type=inline_data.mime_type or DEFAULT_OUTPUT_MIME_TYPE,
            )

    logger.error(
        "No inline image found in any part: "
        f"{[{'hasText': bool(getattr(p, 'text', None)), 'hasInlineData': getattr(p, 'inline_data', None) is not None} for p in parts]}"
    )
    raise NoInlineImageError("No inline image content generated in response")


# ----------------- Client -----------------

class ImageGenerator:
    """Thin async wrapper around the Gemini image model."""

    def __init__(self, api_key: Optional[str], model: str = DEFAULT_IMAGE_MODEL, client: Any = None):
        self.api_key = api_key
        self.model = model
        self._client = client

    @property
    def client(self):
        if self._client is None:
            if not self.api_key:
                raise UpstreamConfigurationError("GOOGLE_API_KEY is not set")
            self._client = genai.Client(api_key=self.api_key)
            logger.info("Google Gemini client initialized")
        return self._client

    async def generate_content(self, contents: Any) -> Any:
        """One upstream call; fails with NoCandidatesError on an empty answer."""
        logger.info(f"Calling Gemini API ({self.model})")
        response = await self.client.aio.models.generate_content(model=self.model, contents=contents)
        return ensure_candidates(response)

    def ensure_configured(self) -> None:
        """Fail fast, before any retries, when the client cannot be built."""
        _ = self.client
