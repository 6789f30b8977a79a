import asyncio
import logging
import time
import traceback
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, List, Optional, Tuple

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from gemini_client import ImageGenerator, UpstreamError
from generation import GenerationRequest, GenerationService, resolve_language
from image_input import (
    ImageInputError,
    NormalizedImage,
    RemoteImageError,
    RemoteInput,
    fetch_remote_image,
    resolve_image_input,
)
from logging_setup import setup_logging
from payload_store import (
    CorruptedPayloadError,
    PayloadNotFoundError,
    PayloadSerializationError,
    PayloadStore,
    PayloadStoreError,
)
from settings import Settings
from static_site import StaticSite
from storage import LONG_CACHE_CONTROL, SHARED_PREFIX, UPLOADED_PREFIX, ObjectStorage, StorageError


# ===================== CONFIGURATION & LOGGING =====================
@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


settings = get_settings()
logger = setup_logging(settings.log_dir, settings.log_to_file)
logger.info("=" * 80)
logger.info("APPLICATION STARTING UP")
logger.info("=" * 80)
logger.info(f"Gemini image model: {settings.gemini_model_image}, bucket: {settings.s3_bucket}")


# ----------------- Collaborators -----------------
@lru_cache
def get_storage() -> ObjectStorage:
    config = get_settings()
    return ObjectStorage(
        bucket=config.s3_bucket,
        public_base_url=config.public_image_base_url,
        endpoint_url=config.s3_endpoint_url,
        region_name=config.s3_region,
    )


@lru_cache
def get_generation_service() -> GenerationService:
    config = get_settings()
    generator = ImageGenerator(api_key=config.google_api_key, model=config.gemini_model_image)
    return GenerationService(
        generator,
        get_storage(),
        max_attempts=config.retry_max_attempts,
        base_delay_ms=config.retry_base_delay_ms,
        batch_step_ms=config.batch_retry_step_ms,
    )


@lru_cache
def get_payload_store() -> PayloadStore:
    config = get_settings()
    return PayloadStore(config.payload_db_path, namespace=config.payload_namespace)


@lru_cache
def get_static_site() -> StaticSite:
    return StaticSite(get_settings().static_dir)


# ----------------- FastAPI App Setup -----------------
APP_VERSION = "1.0.0"
app = FastAPI(
    title="AI Time-Travel Newspaper (FastAPI + Gemini + S3)",
    version=APP_VERSION,
)
logger.info("FastAPI app initialized")


def is_api_path(path: str) -> bool:
    return path.startswith("/api/") or path == "/generate"


def get_cors_headers(request: Request) -> dict:
    origin = request.headers.get("origin") or "*"
    return {
        "Access-Control-Allow-Origin": "*" if origin == "null" else origin,
        "Vary": "Origin",
        "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
        "Access-Control-Max-Age": "86400",
    }


@app.middleware("http")
async def cors_middleware(request: Request, call_next):
    """Reflect the caller's Origin on API responses and answer preflights."""
    if not is_api_path(request.url.path):
        return await call_next(request)
    if request.method == "OPTIONS":
        return Response(status_code=204, headers=get_cors_headers(request))
    response = await call_next(request)
    response.headers.update(get_cors_headers(request))
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=getattr(exc, "headers", None))


# ----------------- Helpers -----------------
def _new_request_id(operation: str) -> str:
    return f"{operation}_{int(time.time() * 1000)}"


def _require_content_type(request: Request, *accepted: str) -> str:
    content_type = request.headers.get("content-type", "")
    if not any(kind in content_type for kind in accepted):
        raise HTTPException(400, f"Content-Type must be {' or '.join(accepted)}")
    return content_type


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise HTTPException(400, "Invalid JSON body")


def _form_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _has_image_value(value: Any) -> bool:
    if isinstance(value, UploadFile):
        return value.size != 0
    return _form_text(value) is not None


def _ensure_image(image: NormalizedImage) -> NormalizedImage:
    if not image.is_image:
        raise HTTPException(400, "File must be an image")
    return image


async def _upload_form_image(request: Request) -> NormalizedImage:
    form = await request.form()
    value = form.get("image")
    if not _has_image_value(value):
        raise HTTPException(400, "No image file provided")
    try:
        image = await resolve_image_input(value, timeout=get_settings().remote_fetch_timeout)
    except ImageInputError as e:
        raise HTTPException(400, str(e))
    return _ensure_image(image)


# ----------------- Payloads -----------------
@app.post("/api/payloads", status_code=201)
async def create_payload(request: Request, store: PayloadStore = Depends(get_payload_store)):
    _require_content_type(request, "application/json")
    payload = await _read_json(request)

    try:
        record = await asyncio.to_thread(store.create, payload)
    except PayloadSerializationError as e:
        raise HTTPException(400, str(e))
    except PayloadStoreError as e:
        logger.error(f"Failed to save payload: {e}")
        return JSONResponse({"error": "Failed to save payload", "details": str(e)}, status_code=500)

    logger.info(f"Stored payload {record.id}")
    return JSONResponse({"id": record.id, "payload": payload}, status_code=201)


@app.get("/api/payloads/")
async def get_payload_without_id():
    raise HTTPException(400, "Payload id is required")


@app.get("/api/payloads/{record_id}")
async def get_payload(record_id: str, store: PayloadStore = Depends(get_payload_store)):
    try:
        payload = await asyncio.to_thread(store.get, record_id)
    except PayloadNotFoundError:
        raise HTTPException(404, "Payload not found")
    except CorruptedPayloadError as e:
        return JSONResponse({"error": "Failed to retrieve payload", "details": str(e)}, status_code=500)
    except PayloadStoreError as e:
        logger.error(f"Failed to retrieve payload {record_id}: {e}")
        return JSONResponse({"error": "Failed to retrieve payload", "details": str(e)}, status_code=500)
    return {"id": record_id, "payload": payload}


# ----------------- Batch generation -----------------
@app.post("/api/generate-batch")
async def generate_batch(request: Request, service: GenerationService = Depends(get_generation_service)):
    """
    Text-to-image generation for a list of prompts, one prompt at a time.
    Returns 502 with the partial result when any prompt fails.
    """
    start_time = time.time()
    request_id = _new_request_id("generate_batch")
    _require_content_type(request, "application/json")
    body = await _read_json(request)

    prompts = body.get("prompts") if isinstance(body, dict) else None
    if not isinstance(prompts, list) or not prompts:
        raise HTTPException(400, 'Body must include non-empty "prompts" array')

    logger.info(f"[{request_id}] Batch generation for {len(prompts)} prompts")
    try:
        result = await service.generate_batch(prompts, body.get("maxAttempts"))
    except Exception as e:
        logger.error(f"[{request_id}] Batch generation failed: {e}")
        logger.error(traceback.format_exc())
        return JSONResponse({"error": str(e) or "Batch generation failed"}, status_code=500)

    elapsed = time.time() - start_time
    logger.info(f"[{request_id}] {result.message} in {elapsed:.2f}s")
    if not result.succeeded:
        return JSONResponse(
            {
                "success": False,
                "message": result.message,
                "urls": result.successful_urls,
                "errors": result.errors,
            },
            status_code=502,
        )
    return {"success": True, "urls": result.successful_urls}


# ----------------- Image combination -----------------
async def _collect_combine_inputs(request: Request) -> Tuple[List[Any], Optional[str]]:
    content_type = _require_content_type(request, "application/json", "multipart/form-data")

    if "application/json" in content_type:
        body = await _read_json(request)
        if not isinstance(body, dict):
            body = {}
        raw_urls = body.get("imageUrls") or []
        urls = [url.strip() for url in raw_urls if isinstance(url, str) and url.strip()] if isinstance(raw_urls, list) else []
        if len(urls) < 2:
            raise HTTPException(400, "Request must include at least two imageUrls")
        prompt = body.get("prompt") if isinstance(body.get("prompt"), str) else None
        return [RemoteInput(url) for url in urls[:2]], prompt

    form = await request.form()
    inputs: List[Any] = []
    for field in ("image1", "image2", "image", "images"):
        inputs.extend(value for value in form.getlist(field) if _has_image_value(value))
    inputs = inputs[:2]

    if len(inputs) < 2:
        url_candidates = [_form_text(form.get(field)) for field in ("imageUrl", "imageUrl1", "imageUrl2")]
        url_candidates += [_form_text(value) for value in form.getlist("imageUrls")]
        urls = [url for url in url_candidates if url]
        inputs.extend(RemoteInput(url) for url in urls[:2 - len(inputs)])

    if len(inputs) < 2:
        raise HTTPException(400, "Provide at least two images via files or URLs")
    return inputs, _form_text(form.get("prompt"))


async def _resolve_combine_image(value: Any, timeout: float) -> NormalizedImage:
    if isinstance(value, RemoteInput):
        return await fetch_remote_image(value.url, timeout=timeout)
    return await resolve_image_input(value, timeout=timeout)


@app.post("/api/combine-images")
async def combine_images(request: Request, service: GenerationService = Depends(get_generation_service)):
    start_time = time.time()
    request_id = _new_request_id("combine_images")
    inputs, prompt = await _collect_combine_inputs(request)
    logger.info(f"[{request_id}] Combining {len(inputs)} images")

    try:
        timeout = get_settings().remote_fetch_timeout
        first, second = await asyncio.gather(*(_resolve_combine_image(value, timeout) for value in inputs))
        _ensure_image(first)
        _ensure_image(second)
        logger.info(f"[{request_id}] Inputs: {first.describe()} + {second.describe()}")

        combined = await service.combine(first, second, prompt)
    except HTTPException:
        raise
    except ImageInputError as e:
        logger.error(f"[{request_id}] Invalid image input: {e}")
        return JSONResponse({"error": str(e)}, status_code=400)
    except StorageError as e:
        logger.error(f"[{request_id}] Failed to store combined image: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)
    except Exception as e:
        logger.error(f"[{request_id}] Error combining images: {e}")
        logger.error(traceback.format_exc())
        return JSONResponse({"error": str(e) or "Image combination failed"}, status_code=502)

    elapsed = time.time() - start_time
    logger.info(f"[{request_id}] Combined image stored as {combined.asset.key} in {elapsed:.2f}s")
    return {
        "success": True,
        "imageData": combined.image.to_base64(),
        "mimeType": combined.image.mime_type,
        "imageUrl": combined.asset.url,
        "promptUsed": combined.prompt_used,
    }


# ----------------- Uploads -----------------
@app.post("/api/upload-generated")
async def upload_generated(request: Request, storage: ObjectStorage = Depends(get_storage)):
    """Upload a generated newspaper so it can be shared."""
    image = await _upload_form_image(request)
    try:
        asset = await storage.store_image(
            SHARED_PREFIX,
            image.data,
            image.mime_type,
            filename=image.filename,
            default_extension="png",
            suffix_length=13,
            cache_control=LONG_CACHE_CONTROL,
        )
    except Exception as e:
        logger.error(f"Error uploading generated image: {e}")
        return JSONResponse({"error": str(e) or "Upload failed"}, status_code=500)

    return {
        "success": True,
        "imageUrl": asset.url,
        "filename": asset.key,
        "message": "Image uploaded and ready for sharing",
    }


@app.post("/api/upload")
async def upload_image(request: Request, storage: ObjectStorage = Depends(get_storage)):
    image = await _upload_form_image(request)
    try:
        asset = await storage.store_image(
            UPLOADED_PREFIX,
            image.data,
            image.mime_type,
            filename=image.filename,
            default_extension="jpg",
            cache_control=None,
        )
    except Exception as e:
        logger.error(f"Error uploading image: {e}")
        return JSONResponse({"error": str(e) or "Upload failed"}, status_code=500)

    return {"success": True, "imageUrl": asset.url, "filename": asset.key}


# ----------------- Single image generation -----------------
def _generation_error_status(error: Exception) -> Tuple[int, str]:
    if isinstance(error, UpstreamError):
        return error.status_code, error.user_message
    if isinstance(error, RemoteImageError):
        return 400, "Failed to fetch the uploaded image. Please check the image URL."
    if isinstance(error, ImageInputError):
        return 400, str(error)
    return 500, str(error) or "Unknown error occurred"


@app.post("/api/generate")
@app.post("/generate")
async def generate_image(request: Request, service: GenerationService = Depends(get_generation_service)):
    """
    Turn an uploaded photo (plus prompt/date) into a generated newspaper image.

    Accepts JSON with `imageUrl` (or an inline `image`), or multipart form data.
    """
    start_time = time.time()
    request_id = _new_request_id("generate_image")
    language = "en"
    date: Optional[str] = None
    prompt: Optional[str] = None

    try:
        content_type = _require_content_type(request, "application/json", "multipart/form-data")

        if "application/json" in content_type:
            body = await _read_json(request)
            if not isinstance(body, dict):
                raise HTTPException(400, "JSON body must be an object")
            image_value = body.get("image")
            if image_value is None:
                if not body.get("imageUrl"):
                    raise HTTPException(400, "Missing imageUrl in JSON body")
                image_value = RemoteInput(str(body["imageUrl"]))
            prompt = body.get("prompt") if isinstance(body.get("prompt"), str) else ""
            language = resolve_language(body.get("language") if isinstance(body.get("language"), str) else None)
            date = body.get("date") or None
        else:
            form = await request.form()
            image_value = form.get("image")
            prompt = form.get("prompt") if isinstance(form.get("prompt"), str) else ""
            language = resolve_language(form.get("language"))
            date = _form_text(form.get("date"))

        if image_value is None or (isinstance(image_value, str) and not image_value.strip()):
            raise HTTPException(400, "Missing image file")

        image = _ensure_image(await resolve_image_input(image_value, timeout=get_settings().remote_fetch_timeout))
        logger.info(f"[{request_id}] Input image: {image.describe()}")

        generated = await service.generate(
            GenerationRequest(image=image, prompt=prompt, language=language, date=date)
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[{request_id}] Error generating image: {e}")
        logger.error(traceback.format_exc())
        status_code, message = _generation_error_status(e)
        return JSONResponse(
            {
                "error": message,
                "details": str(e),
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "requestInfo": {
                    "language": language or "unknown",
                    "hasDate": bool(date),
                    "hasPrompt": bool(prompt),
                },
            },
            status_code=status_code,
        )

    elapsed = time.time() - start_time
    logger.info(f"[{request_id}] Image generated successfully in {elapsed:.2f}s")
    return {"success": True, "imageData": generated.to_base64(), "mimeType": generated.mime_type}


# ----------------- Fallbacks -----------------
@app.api_route("/generate", methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
@app.api_route("/api/{rest:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def api_not_found():
    return PlainTextResponse("API endpoint not found", status_code=404)


@app.get("/{full_path:path}", include_in_schema=False)
async def serve_static(full_path: str, site: StaticSite = Depends(get_static_site)):
    return site.serve("/" + full_path)


# Log application shutdown
@app.on_event("shutdown")
def shutdown_event():
    logger.info("=" * 80)
    logger.info("APPLICATION SHUTTING DOWN")
    logger.info("=" * 80)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app:app", host="0.0.0.0", port=8000)
