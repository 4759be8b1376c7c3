import threading
from io import BytesIO

import pytest
from PIL import Image, ImageDraw

from detection_types import ObjectKind
from image_ops import image_size
from schemas import validate_response


class FakeInference:
    """Inference callable driven by a handler(prompt, image_bytes, schema) -> dict.

    The handler may raise to simulate a failed call. Every call is recorded.
    """

    def __init__(self, handler):
        self.handler = handler
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, prompt_text, image_bytes, response_schema, temperature=0.2):
        with self._lock:
            self.calls.append((response_schema.__name__, prompt_text, image_size(image_bytes), temperature))
        data = self.handler(prompt_text, image_bytes, response_schema)
        return validate_response(response_schema, data), {"input_tokens": 3, "output_tokens": 2}

    def count(self, schema_name):
        with self._lock:
            return sum(1 for c in self.calls if c[0] == schema_name)


def make_image_bytes(width=1024, height=1024, fmt="JPEG"):
    img = Image.new("RGB", (width, height), (200, 190, 170))
    draw = ImageDraw.Draw(img)
    draw.rectangle((width // 4, height // 4, width // 2, height // 2), fill=(120, 60, 30))
    right = max(width // 2, width - 20)
    bottom = max(height // 2, height - 20)
    draw.ellipse((width // 2, height // 2, right, bottom), fill=(30, 90, 40))
    buf = BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def fake_inference():
    return FakeInference


@pytest.fixture
def make_image():
    return make_image_bytes


@pytest.fixture
def image_bytes():
    return make_image_bytes(1024, 1024)


@pytest.fixture
def small_image_bytes():
    return make_image_bytes(400, 300)


@pytest.fixture
def image_file(tmp_path):
    path = tmp_path / "artwork.jpg"
    path.write_bytes(make_image_bytes(800, 600))
    return path


@pytest.fixture
def hound():
    return ObjectKind(label="hound", category="animal", estimated_count="few", estimated_size="medium")
