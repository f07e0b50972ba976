import enum
import logging
import math
import os
import threading
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from io import BytesIO
from typing import Callable, NamedTuple, Optional

import numpy as np
from PIL import Image
from dotenv import load_dotenv

from schemas import Label, PredictionRecord

load_dotenv()

logger = logging.getLogger(__name__)

MODEL_PATH = os.getenv("MODEL_PATH", "models/model.onnx")
MODEL_INPUT_SIZE = (224, 224)  # width, height
MAX_FILE_SIZE = 1_000_000
THRESHOLD = 0.58

ADVISORIES = {
    Label.POSITIVE: "Please see a doctor immediately!",
    Label.NEGATIVE: "No cancer detected.",
}


class UploadRejected(Exception):
    """Upload failed validation; carries the HTTP status to answer with."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class PredictionFailed(Exception):
    pass


class ModelLoadError(RuntimeError):
    pass


class ModelUnavailable(RuntimeError):
    pass


class ModelState(str, enum.Enum):
    NOT_LOADED = "not_loaded"
    READY = "ready"
    FAILED = "failed"


class ScoringResult(NamedTuple):
    label: Label
    score: float


def load_onnx_session(model_path: str) -> Callable[[np.ndarray], np.ndarray]:
    """Open an ONNX session and return a predict function bound to it."""
    import onnxruntime as ort

    if not os.path.exists(model_path):
        raise FileNotFoundError(f"Model not found at {model_path}")

    providers = ["CUDAExecutionProvider", "CPUExecutionProvider"]
    try:
        session = ort.InferenceSession(model_path, providers=providers)
    except Exception:
        logger.warning("CUDA session failed, retrying on CPU", exc_info=True)
        session = ort.InferenceSession(model_path, providers=["CPUExecutionProvider"])

    input_name = session.get_inputs()[0].name
    output_name = session.get_outputs()[0].name

    def predict(tensor: np.ndarray) -> np.ndarray:
        return session.run([output_name], {input_name: tensor})[0]

    return predict


class ModelHandle:
    """Owns the classifier and tracks whether it is usable.

    The predictor is built once by ``loader`` and is read-only afterwards,
    so concurrent requests share it without locking. A handle that failed
    to load stays failed: callers get ``ModelUnavailable`` straight away.
    """

    def __init__(self, model_path: str = MODEL_PATH, loader=load_onnx_session):
        self.model_path = model_path
        self._loader = loader
        self._predict = None
        self._lock = threading.Lock()
        self.state = ModelState.NOT_LOADED
        self.error: Optional[BaseException] = None

    def load(self) -> None:
        with self._lock:
            if self.state is ModelState.READY:
                return
            if self.state is ModelState.FAILED:
                raise ModelUnavailable(f"Model failed to load: {self.error}")
            try:
                self._predict = self._loader(self.model_path)
            except Exception as e:
                self.state = ModelState.FAILED
                self.error = e
                logger.exception("Error loading model from %s", self.model_path)
                raise ModelLoadError(f"Failed to load model from {self.model_path}") from e
            self.state = ModelState.READY
            logger.info("Model loaded successfully from %s", self.model_path)

    def predict(self, tensor: np.ndarray) -> float:
        if self.state is ModelState.FAILED:
            raise ModelUnavailable(f"Model failed to load: {self.error}")
        if self.state is ModelState.NOT_LOADED:
            try:
                self.load()
            except ModelLoadError as e:
                raise ModelUnavailable(str(e)) from e

        output = np.asarray(self._predict(tensor))
        return float(output.reshape(-1)[0])


def validate_upload(content: Optional[bytes], content_type: Optional[str]) -> None:
    # Order matters: missing file, then size, then type.
    if not content:
        raise UploadRejected(400, "No file uploaded")
    if len(content) > MAX_FILE_SIZE:
        raise UploadRejected(
            413, f"Payload content length greater than maximum allowed: {MAX_FILE_SIZE}"
        )
    if not (content_type or "").startswith("image/"):
        raise UploadRejected(400, "Uploaded file is not an image")


def decode_image(file_bytes: bytes) -> np.ndarray:
    img = Image.open(BytesIO(file_bytes))
    img.load()
    if img.mode not in ("RGB", "RGBA"):
        has_alpha = img.mode in ("LA", "PA") or "transparency" in img.info
        img = img.convert("RGBA" if has_alpha else "RGB")
    return np.asarray(img)


def resize_bilinear(pixels: np.ndarray, size=MODEL_INPUT_SIZE) -> np.ndarray:
    # Four-neighbour sampling, no antialiasing: source coordinate is
    # dst * in / out, edges clamp to the last row/column.
    in_h, in_w = pixels.shape[:2]
    out_w, out_h = size
    src = pixels.astype(np.float32)

    ys = np.arange(out_h) * (in_h / out_h)
    xs = np.arange(out_w) * (in_w / out_w)
    y0 = np.floor(ys).astype(np.intp)
    x0 = np.floor(xs).astype(np.intp)
    y1 = np.minimum(y0 + 1, in_h - 1)
    x1 = np.minimum(x0 + 1, in_w - 1)
    dy = (ys - y0).astype(np.float32)[:, None, None]
    dx = (xs - x0).astype(np.float32)[None, :, None]

    top = src[y0][:, x0] * (1 - dx) + src[y0][:, x1] * dx
    bottom = src[y1][:, x0] * (1 - dx) + src[y1][:, x1] * dx
    return np.clip(top * (1 - dy) + bottom * dy, 0, 255)


def preprocess_image(file_bytes: bytes) -> np.ndarray:
    """Turn encoded image bytes into a ``[1, 224, 224, 3]`` float32 batch."""
    arr = decode_image(file_bytes)
    arr = resize_bilinear(arr)

    if arr.shape[-1] == 4:
        arr = arr[:, :, :3]

    arr = arr.astype(np.float32) / 255.0

    if arr.ndim == 3:
        arr = np.expand_dims(arr, 0)

    expected = (1, MODEL_INPUT_SIZE[1], MODEL_INPUT_SIZE[0], 3)
    if arr.shape != expected:
        raise ValueError(f"Unexpected input shape {arr.shape}, expected {expected}")
    return arr


def round_score(raw: float) -> float:
    """Round to 3 decimals, ties away from zero."""
    return float(Decimal(raw).quantize(Decimal("0.001"), rounding=ROUND_HALF_UP))


def classify(score: float) -> Label:
    return Label.POSITIVE if score > THRESHOLD else Label.NEGATIVE


def advisory_for(label: Label) -> str:
    return ADVISORIES[label]


class ScoringPipeline:

    def __init__(self, model: ModelHandle):
        self.model = model

    def run(self, file_bytes: bytes) -> ScoringResult:
        if self.model.state is ModelState.FAILED:
            raise ModelUnavailable(f"Model failed to load: {self.model.error}")

        try:
            tensor = preprocess_image(file_bytes)
            raw = self.model.predict(tensor)
            if not (math.isfinite(raw) and 0.0 <= raw <= 1.0):
                raise ValueError(f"Model output {raw} is not a probability")
            score = round_score(raw)
        except ModelUnavailable:
            raise
        except Exception as e:
            logger.exception("Error during prediction")
            raise PredictionFailed("Prediction failed") from e

        return ScoringResult(label=classify(score), score=score)

    @staticmethod
    def build_record(result: ScoringResult) -> PredictionRecord:
        return PredictionRecord(
            id=str(uuid.uuid4()),
            label=result.label,
            score=result.score,
            advisory=advisory_for(result.label),
            created_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )
