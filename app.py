import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse, Response
from pydantic import BaseModel
import uvicorn

from config import Settings, get_settings
from errors import DetectionError, MissingInputError, ModelLoadError
from model import ModelService

logger = logging.getLogger(__name__)

DETECT_PATH = "/detectDisease"


class DetectRequest(BaseModel):
    image: Optional[str] = None
    isUrl: bool = False


@lru_cache()
def get_service() -> ModelService:
    """Build the process-wide service on first use; the model is loaded once."""
    try:
        return ModelService.from_settings(get_settings())
    except Exception as e:
        logger.error(f"Error loading model service: {e}")
        raise ModelLoadError(f"Could not load model: {e}") from e


def require_image(payload: DetectRequest) -> DetectRequest:
    if not payload.image:
        raise MissingInputError("No image provided")
    return payload


def error_response(status_code: int, message: str, code: str) -> PlainTextResponse:
    return PlainTextResponse(message, status_code=status_code, headers={"X-Error-Code": code})


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper(),
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    yield


app = FastAPI(title="Leaf Disease Detector", lifespan=lifespan)


@app.exception_handler(DetectionError)
async def detection_error_handler(request: Request, exc: DetectionError):
    logger.error(f"Error: {exc}")
    if exc.status_code == 500:
        return error_response(500, f"Internal Server Error: {exc}", exc.code)
    return error_response(exc.status_code, str(exc), exc.code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    )
    logger.error(f"Invalid request: {details}")
    return error_response(500, f"Internal Server Error: Invalid request body: {details}", "invalid_request")


@app.middleware("http")
async def allow_any_origin(request: Request, call_next):
    response = await call_next(request)
    response.headers["Access-Control-Allow-Origin"] = "*"
    return response


@app.options(DETECT_PATH)
def detect_preflight():
    return Response(status_code=204, headers={
        "Access-Control-Allow-Methods": "POST",
        "Access-Control-Allow-Headers": "Content-Type",
    })


@app.api_route(DETECT_PATH, methods=["GET", "PUT", "PATCH", "DELETE"])
def detect_method_not_allowed():
    return PlainTextResponse("Method Not Allowed", status_code=405,
                             headers={"Allow": "POST, OPTIONS"})


@app.post(DETECT_PATH)
def detect_disease(payload: DetectRequest = Depends(require_image),
                   service: ModelService = Depends(get_service)):
    try:
        if payload.isUrl:
            detection = service.detect_url(payload.image)
        else:
            detection = service.detect_base64(payload.image)
    except DetectionError:
        raise
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return error_response(500, f"Internal Server Error: {e}", "internal_error")

    return detection.to_dict()


@app.get("/health")
def health(service: ModelService = Depends(get_service)):
    info = service.get_service_info()
    return {"status": "healthy", "model_info": info["model_info"]}


if __name__ == "__main__":
    settings: Settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
