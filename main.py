"""
main.py – FastAPI application for the A4 measurement service.

Accepts a photo of an object lying on an A4 sheet and returns its
width, height and area in mm plus an annotated image.
Routes are registered in create_app so the primitives service and config
can be injected per app instance.
"""

import os
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, UploadFile, File, Form
from fastapi.responses import JSONResponse

import config as pipeline_config
import primitives
import measure

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="[%(asctime)s] %(name)s %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("a4measure")

# ---------------------------------------------------------------------------
# Config from env
# ---------------------------------------------------------------------------

PIPELINE_CONFIG = pipeline_config.from_env()
DEBUG_IMAGES_DEFAULT = os.environ.get("MEASURE_DEBUG_IMAGES", "true").lower() in ("true", "1", "yes")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("Starting measurement service (paper=%s) …", app.state.config.paper)

    # Vision primitives are loaded once; on failure every request gets 503
    if getattr(app.state, "primitives", None) is None:
        try:
            app.state.primitives = primitives.load()
        except primitives.PrimitivesUnavailable as e:
            log.error("Vision primitives unavailable: %s", e)
            app.state.primitives = None

    yield

    log.info("Measurement service shutdown.")


def create_app(prims=None, config: pipeline_config.PipelineConfig = None) -> FastAPI:
    """Build the app. `prims` and `config` can be injected, e.g. by tests."""
    app = FastAPI(title="A4 Measure", lifespan=lifespan)
    app.state.primitives = prims
    app.state.config = config or PIPELINE_CONFIG
    _register_routes(app)
    return app


def _error(message: str, reason: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message, "reason": reason}, status_code=status_code)


def _unavailable() -> JSONResponse:
    return _error("Vision library is not available.", "vision_unavailable", 503)


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

def _register_routes(app: FastAPI) -> None:

    @app.post("/api/measure")
    async def api_measure(
        request: Request,
        image: UploadFile = File(...),
        debug: bool = Form(DEBUG_IMAGES_DEFAULT),
    ):
        """Upload photo → sheet calibration → object measurement."""
        prims = request.app.state.primitives
        if prims is None:
            return _unavailable()

        image_bytes = await image.read()
        try:
            result = await asyncio.to_thread(
                measure.measure_object, image_bytes, prims, request.app.state.config, debug
            )
        except measure.ImageDecodeError as e:
            log.warning("Invalid image: %s", e)
            return _error(str(e), "invalid_image", 400)
        except measure.MeasurementError as e:
            log.error("Measurement failed: %s", e)
            return _error(str(e), "pipeline_error", 500)

        if result is None:
            return _error(
                f"No {request.app.state.config.paper} sheet detected. "
                "Ensure the whole sheet is visible against a contrasting background.",
                "sheet_not_found",
                422,
            )
        return result.to_dict()

    @app.post("/api/sheet")
    async def api_sheet(request: Request, image: UploadFile = File(...)):
        """Locate the reference sheet only."""
        prims = request.app.state.primitives
        if prims is None:
            return _unavailable()

        image_bytes = await image.read()
        try:
            detection = await asyncio.to_thread(
                measure.detect_sheet, image_bytes, prims, request.app.state.config
            )
        except measure.ImageDecodeError as e:
            log.warning("Invalid image: %s", e)
            return _error(str(e), "invalid_image", 400)
        except measure.MeasurementError as e:
            log.error("Sheet detection failed: %s", e)
            return _error(str(e), "pipeline_error", 500)
        return detection.to_dict()

    @app.post("/api/edges")
    async def api_edges(request: Request, image: UploadFile = File(...)):
        """Edge map used for sheet detection (tuning aid)."""
        prims = request.app.state.primitives
        if prims is None:
            return _unavailable()

        image_bytes = await image.read()
        try:
            png = await asyncio.to_thread(
                measure.detect_edges, image_bytes, prims, request.app.state.config
            )
        except measure.ImageDecodeError as e:
            log.warning("Invalid image: %s", e)
            return _error(str(e), "invalid_image", 400)
        except measure.MeasurementError as e:
            log.error("Edge detection failed: %s", e)
            return _error(str(e), "pipeline_error", 500)
        return {"image": measure.to_data_url(png)}

    @app.get("/api/health")
    async def api_health(request: Request):
        prims = request.app.state.primitives
        return {
            "status": "ok",
            "vision": prims is not None,
            "vision_version": getattr(prims, "version", None),
            "paper": request.app.state.config.paper,
        }


app = create_app()
