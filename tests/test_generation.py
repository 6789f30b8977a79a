"""Tests for single, combined and batch generation"""

import asyncio

import pytest

from conftest import PNG_BYTES, PUBLIC_BASE, empty_response, image_response, text_only_response
from gemini_client import NoCandidatesError, NoInlineImageError
from generation import (
    DEFAULT_COMBINE_PROMPT,
    BatchResult,
    GenerationRequest,
    resolve_language,
)
from image_input import NormalizedImage

PHOTO = NormalizedImage(data=PNG_BYTES, mime_type="image/png", filename="photo.png")
SECOND = NormalizedImage(data=b"second-image", mime_type="image/jpeg", filename="second.jpg")


class TestGenerate:
    """Tests for GenerationService.generate"""

    def test_returns_generated_image(self, make_service, fake_s3):
        service, models = make_service(image_response(data=b"newspaper", mime_type="image/jpeg"))
        result = asyncio.run(service.generate(GenerationRequest(image=PHOTO, prompt="1890 front page")))

        assert result.data == b"newspaper"
        assert result.mime_type == "image/jpeg"
        assert fake_s3.calls == []

        parts = models.calls[0]["contents"][0].parts
        assert parts[0].text == "1890 front page"
        assert parts[1].inline_data.data == PNG_BYTES

    def test_retries_with_exponential_backoff(self, make_service, sleeper):
        service, models = make_service(RuntimeError("timeout"), empty_response(), image_response())
        result = asyncio.run(service.generate(GenerationRequest(image=PHOTO)))

        assert result.data == PNG_BYTES
        assert len(models.calls) == 3
        assert sleeper.delays == [1.0, 2.0]

    def test_exhausted_retries_surface_last_error(self, make_service, sleeper):
        service, models = make_service(empty_response())
        with pytest.raises(NoCandidatesError):
            asyncio.run(service.generate(GenerationRequest(image=PHOTO)))
        assert len(models.calls) == 3

    def test_missing_inline_image_is_not_retried(self, make_service, sleeper):
        service, models = make_service(text_only_response())
        with pytest.raises(NoInlineImageError):
            asyncio.run(service.generate(GenerationRequest(image=PHOTO)))
        assert len(models.calls) == 1
        assert sleeper.delays == []


class TestCombine:
    """Tests for GenerationService.combine"""

    def test_combine_stores_result(self, make_service, fake_s3):
        service, models = make_service(image_response())
        combined = asyncio.run(service.combine(PHOTO, SECOND))

        assert combined.prompt_used == DEFAULT_COMBINE_PROMPT
        assert combined.asset.key.startswith("combined-")
        assert combined.asset.url.startswith(PUBLIC_BASE)
        assert fake_s3.calls[0]["Key"] == combined.asset.key

        parts = models.calls[0]["contents"][0].parts
        assert parts[0].inline_data.data == PNG_BYTES
        assert parts[1].inline_data.data == b"second-image"
        assert parts[2].text == DEFAULT_COMBINE_PROMPT

    def test_custom_prompt_is_trimmed(self, make_service):
        service, _ = make_service(image_response())
        combined = asyncio.run(service.combine(PHOTO, SECOND, "  side by side  "))
        assert combined.prompt_used == "side by side"


class TestBatch:
    """Tests for GenerationService.generate_batch"""

    def test_all_prompts_succeed(self, make_service, fake_s3):
        service, models = make_service(image_response())
        result = asyncio.run(service.generate_batch(["a cat", "a dog"]))

        assert result.succeeded
        assert len(result.successful_urls) == 2
        assert result.errors == [None, None]
        assert [call["Key"].split("-")[2] for call in fake_s3.calls] == ["0", "1"]

    def test_partial_failure(self, make_service, sleeper):
        service, models = make_service(image_response(), RuntimeError("rate limited"), RuntimeError("rate limited"))
        result = asyncio.run(service.generate_batch(["a cat", "", "a dog"], max_attempts=2))

        assert not result.succeeded
        assert result.urls[0] is not None
        assert result.urls[1] is None and result.urls[2] is None
        assert result.errors[0] is None
        assert result.errors[1] == "Invalid prompt at index 1"
        assert result.errors[2] == "Attempt 2/2 failed: rate limited"
        # the empty prompt consumes no upstream call; one linear delay for "a dog"
        assert len(models.calls) == 3
        assert sleeper.delays == [0.5]
        assert result.message == "Generated 1/3 images after 2 attempts per prompt"

    def test_prompts_run_sequentially_and_independently(self, make_service, sleeper):
        service, models = make_service(
            RuntimeError("boom"), RuntimeError("boom"), RuntimeError("boom"), image_response()
        )
        result = asyncio.run(service.generate_batch(["first", "second"], max_attempts=3))

        sent = [call["contents"][0].parts[0].text for call in models.calls]
        assert sent == ["first", "first", "first", "second"]
        assert result.urls[0] is None
        assert result.urls[1] is not None
        assert sleeper.delays == [0.5, 1.0]

    def test_max_attempts_is_clamped(self, make_service):
        service, models = make_service(RuntimeError("down"))
        result = asyncio.run(service.generate_batch(["x"], max_attempts=50))
        assert result.max_attempts == 5
        assert len(models.calls) == 5

    def test_fractional_max_attempts_rounds_up(self, make_service):
        service, models = make_service(RuntimeError("down"))
        result = asyncio.run(service.generate_batch(["x"], max_attempts=2.7))
        assert result.max_attempts == 3
        assert len(models.calls) == 3

    def test_non_string_prompt_is_invalid(self, make_service):
        service, models = make_service(image_response())
        result = asyncio.run(service.generate_batch([42, "ok"]))
        assert result.errors[0] == "Invalid prompt at index 0"
        assert len(models.calls) == 1


class TestHelpers:
    def test_resolve_language(self):
        assert resolve_language("es") == "es"
        assert resolve_language("fr") == "en"
        assert resolve_language(None) == "en"

    def test_batch_result_filters_missing_urls(self):
        result = BatchResult(urls=["u1", None], errors=[None, "x"], max_attempts=3)
        assert result.successful_urls == ["u1"]
        assert not result.succeeded
