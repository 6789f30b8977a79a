"""
Image generation workflows built on the Gemini client, the retry helpers
and object storage.

- `generate`: one image + prompt -> one generated image (returned, not stored).
- `combine`: two images (+ optional prompt) -> one stored composite.
- `generate_batch`: a list of prompts -> stored images, one prompt at a time.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from gemini_client import GeneratedImage, ImageGenerator, extract_inline_image, image_part, text_part, user_turn
from image_input import NormalizedImage
from retry import (
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_BATCH_STEP_MS,
    DEFAULT_MAX_ATTEMPTS,
    LinearBackoff,
    Sleeper,
    clamp_attempts,
    retry_with_backoff,
)
from storage import COMBINED_PREFIX, GENERATED_PREFIX, ObjectStorage, StoredAsset

logger = logging.getLogger(__name__)

DEFAULT_COMBINE_PROMPT = "Combine these two inputs into a cohesive, professional composition."
SUPPORTED_LANGUAGES = ("en", "es")
DEFAULT_LANGUAGE = "en"


@dataclass
class GenerationRequest:
    image: NormalizedImage
    prompt: str = ""
    language: str = DEFAULT_LANGUAGE
    date: Optional[str] = None

    def describe(self) -> dict:
        return {
            "hasImage": True,
            "imageType": self.image.mime_type,
            "promptLength": len(self.prompt),
            "date": self.date,
            "language": self.language,
        }


@dataclass
class CombinedImage:
    image: GeneratedImage
    asset: StoredAsset
    prompt_used: str


@dataclass
class BatchResult:
    urls: List[Optional[str]]
    errors: List[Optional[str]]
    max_attempts: int
    attempts: List[int] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.urls)

    @property
    def successful_urls(self) -> List[str]:
        return [url for url in self.urls if url]

    @property
    def succeeded(self) -> bool:
        return len(self.successful_urls) == self.total

    @property
    def message(self) -> str:
        return (
            f"Generated {len(self.successful_urls)}/{self.total} images "
            f"after {self.max_attempts} attempts per prompt"
        )


def resolve_language(value: Optional[str]) -> str:
    if value and value in SUPPORTED_LANGUAGES:
        return value
    return DEFAULT_LANGUAGE


class GenerationService:
    def __init__(
        self,
        generator: ImageGenerator,
        storage: ObjectStorage,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        batch_step_ms: int = DEFAULT_BATCH_STEP_MS,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.generator = generator
        self.storage = storage
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.batch_backoff = LinearBackoff(batch_step_ms)
        self.sleep = sleep

    async def _call_with_retry(self, contents: Any) -> Any:
        self.generator.ensure_configured()
        return await retry_with_backoff(
            lambda: self.generator.generate_content(contents),
            max_attempts=self.max_attempts,
            base_delay_ms=self.base_delay_ms,
            sleep=self.sleep,
        )

    async def generate(self, request: GenerationRequest) -> GeneratedImage:
        logger.info(f"Generating newspaper in {request.language} for request: {request.describe()}")
        contents = user_turn([text_part(request.prompt), image_part(request.image)])
        response = await self._call_with_retry(contents)
        return extract_inline_image(response)

    async def combine(
        self,
        first: NormalizedImage,
        second: NormalizedImage,
        prompt: Optional[str] = None,
    ) -> CombinedImage:
        prompt_used = prompt.strip() if prompt and prompt.strip() else DEFAULT_COMBINE_PROMPT
        contents = user_turn([image_part(first), image_part(second), text_part(prompt_used)])
        response = await self._call_with_retry(contents)
        image = extract_inline_image(response)
        asset = await self.storage.store_image(COMBINED_PREFIX, image.data, image.mime_type)
        return CombinedImage(image=image, asset=asset, prompt_used=prompt_used)

    async def _generate_batch_item(self, prompt: str, index: int) -> StoredAsset:
        response = await self.generator.generate_content(user_turn([text_part(prompt)]))
        image = extract_inline_image(response)
        return await self.storage.store_image(GENERATED_PREFIX, image.data, image.mime_type, index=index)

    async def generate_batch(self, prompts: Sequence[Any], max_attempts: Any = None) -> BatchResult:
        """
        Generate one stored image per prompt.

        Prompts are processed strictly one after another to stay under
        upstream rate limits. Each prompt gets up to `max_attempts` tries
        (clamped to 1..5) with linear backoff between them; a prompt that
        runs out of attempts does not stop the ones after it.
        """
        attempts_allowed = clamp_attempts(max_attempts)
        result = BatchResult(
            urls=[None] * len(prompts),
            errors=[None] * len(prompts),
            max_attempts=attempts_allowed,
            attempts=[0] * len(prompts),
        )
        self.generator.ensure_configured()

        for index, prompt in enumerate(prompts):
            if not isinstance(prompt, str) or not prompt.strip():
                result.errors[index] = f"Invalid prompt at index {index}"
                continue

            attempt = 0
            while attempt < attempts_allowed and result.urls[index] is None:
                attempt += 1
                result.attempts[index] = attempt
                try:
                    asset = await self._generate_batch_item(prompt, index)
                    result.urls[index] = asset.url
                    result.errors[index] = None
                except Exception as e:
                    result.errors[index] = f"Attempt {attempt}/{attempts_allowed} failed: {e}"
                    logger.warning(f"Batch prompt {index}: {result.errors[index]}")
                    if attempt < attempts_allowed:
                        await self.sleep(self.batch_backoff.delay_ms(attempt) / 1000)

        logger.info(result.message)
        return result
