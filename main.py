import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, UploadFile, File, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from database import PredictionStore, StorageError, get_store
from pipeline import (
    MAX_FILE_SIZE,
    MODEL_PATH,
    ModelHandle,
    ModelLoadError,
    ModelUnavailable,
    PredictionFailed,
    ScoringPipeline,
    UploadRejected,
    validate_upload,
)
from schemas import FailResponse, HistoriesResponse, PredictResponse

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Abort startup when the model cannot be loaded
REQUIRE_MODEL = os.getenv("REQUIRE_MODEL", "1").strip().lower() not in ("0", "false", "no")


def fail(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=FailResponse(message=message).model_dump())


def create_app(
    pipeline: Optional[ScoringPipeline] = None,
    store: Optional[PredictionStore] = None,
    require_model: bool = REQUIRE_MODEL,
) -> FastAPI:
    """Build the API around an owned scoring pipeline and prediction store."""
    pipeline = pipeline or ScoringPipeline(ModelHandle(MODEL_PATH))
    store = store or get_store()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            pipeline.model.load()
        except (ModelLoadError, ModelUnavailable):
            if require_model:
                raise
            logger.error("Serving without a model, every prediction will fail")
        yield

    app = FastAPI(title="Image Classification API", lifespan=lifespan)
    app.state.pipeline = pipeline
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(UploadRejected)
    async def upload_rejected_handler(request: Request, exc: UploadRejected):
        return fail(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        # A non-file "image" field means no file was uploaded
        if request.url.path == "/predict":
            return fail(400, "No file uploaded")
        return await request_validation_exception_handler(request, exc)

    @app.exception_handler(PredictionFailed)
    async def prediction_failed_handler(request: Request, exc: PredictionFailed):
        return fail(400, "An error occurred while making the prediction")

    @app.exception_handler(ModelUnavailable)
    async def model_unavailable_handler(request: Request, exc: ModelUnavailable):
        logger.error("Rejected prediction: %s", exc)
        return fail(503, "Model is not available")

    @app.get("/")
    async def root():
        return {"message": "Image Classification API"}

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "model": pipeline.model.state.value,
            "storage": store.backend,
        }

    @app.post("/predict", status_code=201, response_model=PredictResponse)
    async def predict(image: Optional[UploadFile] = File(None)):
        content, content_type = None, None
        if image is not None:
            # One byte past the limit is enough to reject oversized uploads
            content = await image.read(MAX_FILE_SIZE + 1)
            content_type = image.content_type

        validate_upload(content, content_type)

        result = await run_in_threadpool(pipeline.run, content)
        record = pipeline.build_record(result)

        try:
            await run_in_threadpool(store.append, record)
        except StorageError:
            return fail(500, "Failed to save prediction")

        return PredictResponse(data=record)

    @app.get("/predict/histories", response_model=HistoriesResponse)
    async def histories():
        try:
            entries = await run_in_threadpool(store.list_all)
        except StorageError:
            return fail(500, "An error occurred while fetching prediction histories")
        return HistoriesResponse(data=entries)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
