from io import BytesIO

import numpy as np
import pytest
from PIL import Image

from database import JsonFilePredictionStore
from pipeline import ModelHandle, ScoringPipeline


class FakeModel:
    """Stands in for the onnx session; records every tensor it sees."""

    def __init__(self, output=0.5):
        self.output = output
        self.calls = []

    def __call__(self, tensor):
        self.calls.append(tensor)
        return np.array([[self.output]])


def make_image(mode="RGB", size=(64, 48), fmt="PNG", color=None):
    if color is None:
        rng = np.random.default_rng(0)
        channels = len(Image.new(mode, (1, 1)).getbands())
        pixels = rng.integers(0, 256, size=(size[1], size[0], channels), dtype=np.uint8)
        if channels == 1:
            img = Image.fromarray(pixels[:, :, 0]).convert(mode)
        else:
            img = Image.fromarray(pixels).convert(mode)
    else:
        img = Image.new(mode, size, color)
    buf = BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def make_handle(fake):
    return ModelHandle("fake.onnx", loader=lambda path: fake)


@pytest.fixture
def fake_model():
    return FakeModel()


@pytest.fixture
def pipeline(fake_model):
    return ScoringPipeline(make_handle(fake_model))


@pytest.fixture
def store(tmp_path):
    return JsonFilePredictionStore(str(tmp_path / "predictions.json"))
