from fastapi import FastAPI, UploadFile, File, Form, HTTPException, Request, Depends
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from dataclasses import replace
import asyncio
import logging
from typing import Optional
from pydantic import BaseModel, Field
import traceback

# Import our modules
from config import config
from cutout_types import ProcessingOptions
from errors import DecodeError, ModelLoadError
from pipeline import BackgroundRemover, get_default_remover

# Logging setup
logging.basicConfig(level=config.log_level.upper(), format=config.log_format)
logger = logging.getLogger(__name__)

# Pydantic models
class Base64CutoutRequest(BaseModel):
    image_base64: str
    quality: Optional[float] = Field(None, ge=0.0, le=1.0)
    edge_blur_radius: Optional[int] = Field(None, ge=0)
    target_max_width: Optional[int] = Field(None, ge=1)
    target_max_height: Optional[int] = Field(None, ge=1)


def get_remover() -> BackgroundRemover:
    return get_default_remover()


@asynccontextmanager
async def lifespan(app: FastAPI):
    remover = get_default_remover()
    if config.model_warmup_on_startup:
        # Warm up model on startup to reduce first request latency
        logger.info("🚀 Pre-loading segmentation model for faster response...")
        try:
            await remover.model_cache.preload()
            logger.info("✅ Segmentation model loaded successfully")
        except ModelLoadError as e:
            logger.warning(f"⚠️ Could not pre-load model: {e}")
    yield
    await remover.model_cache.cleanup()


app = FastAPI(
    title=config.title,
    description=config.description,
    version=config.version,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)

# Custom exception handler for better error handling
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception handler: {exc}")
    logger.error(f"Traceback: {traceback.format_exc()}")

    # Return safe error response
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if str(exc) else "Unknown error occurred",
            "type": type(exc).__name__
        }
    )


def _build_options(remover: BackgroundRemover, **overrides) -> ProcessingOptions:
    provided = {k: v for k, v in overrides.items() if v is not None}
    if not provided:
        return remover.default_options
    try:
        return replace(remover.default_options, **provided)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


async def _run_cutout(remover: BackgroundRemover, image_source, options: ProcessingOptions) -> JSONResponse:
    try:
        result = await asyncio.wait_for(
            remover.remove_background(image_source, options),
            timeout=config.processing_timeout_seconds,
        )
    except DecodeError as e:
        raise HTTPException(status_code=422, detail=f"Couldn't read this photo: {e}")
    except ModelLoadError as e:
        raise HTTPException(status_code=503, detail=f"Segmentation model unavailable: {e}")
    except asyncio.TimeoutError:
        # The model keeps loading in the background for later requests
        logger.warning(f"⚠️ Background removal exceeded {config.processing_timeout_seconds}s")
        raise HTTPException(status_code=504, detail="Background removal timed out")

    return JSONResponse(result.to_dict())


@app.get("/")
def api_info():
    """API information endpoint - returns JSON data."""
    return {
        "name": config.title,
        "version": config.version,
        "status": "running",
        "endpoints": [
            "/remove-background",         # Multipart upload
            "/remove-background/base64",  # JSON body with base64 image
            "/model/status",
            "/model/preload",
            "/model/cleanup",
            "/health",
        ],
        "docs": "/docs",
    }

@app.get("/health")
def health_check():
    return {"status": "ok"}

@app.get("/model/status")
def model_status(remover: BackgroundRemover = Depends(get_remover)):
    return remover.model_cache.get_status()

@app.post("/model/preload")
async def preload(remover: BackgroundRemover = Depends(get_remover)):
    try:
        await remover.model_cache.preload()
    except ModelLoadError as e:
        raise HTTPException(status_code=503, detail=f"Segmentation model unavailable: {e}")
    return remover.model_cache.get_status()

@app.post("/model/cleanup")
async def cleanup(remover: BackgroundRemover = Depends(get_remover)):
    await remover.model_cache.cleanup()
    return remover.model_cache.get_status()

@app.post("/remove-background")
async def remove_background_upload(
    file: UploadFile = File(...),
    quality: Optional[float] = Form(None),
    edge_blur_radius: Optional[int] = Form(None),
    target_max_width: Optional[int] = Form(None),
    target_max_height: Optional[int] = Form(None),
    remover: BackgroundRemover = Depends(get_remover),
):
    """
    Remove the background from an uploaded photo.

    Returns:
    - image: Base64 data URL with transparent background
    - dominant_colors: 3 to 5 hex colours
    - category: Suggested clothing category (null when no subject was found)
    - processing_time_ms: Time taken by the pipeline
    """
    logger.info(f"Processing background removal for file: {file.filename}")
    if file.content_type not in config.allowed_content_types:
        raise HTTPException(status_code=415, detail=f"Unsupported content-type: {file.content_type}")

    image_bytes = await file.read()
    if len(image_bytes) > config.max_upload_bytes:
        raise HTTPException(status_code=413, detail=f"File too large. Max {config.max_upload_mb}MB")

    options = _build_options(
        remover,
        quality=quality,
        edge_blur_radius=edge_blur_radius,
        target_max_width=target_max_width,
        target_max_height=target_max_height,
    )
    return await _run_cutout(remover, image_bytes, options)

@app.post("/remove-background/base64")
async def remove_background_base64(
    payload: Base64CutoutRequest,
    remover: BackgroundRemover = Depends(get_remover),
):
    """Remove the background from a base64-encoded image (handy for mobile clients)."""
    # base64 inflates payloads by 4/3
    if len(payload.image_base64) * 3 // 4 > config.max_upload_bytes:
        raise HTTPException(status_code=413, detail=f"File too large. Max {config.max_upload_mb}MB")

    options = _build_options(
        remover,
        quality=payload.quality,
        edge_blur_radius=payload.edge_blur_radius,
        target_max_width=payload.target_max_width,
        target_max_height=payload.target_max_height,
    )
    return await _run_cutout(remover, payload.image_base64, options)
