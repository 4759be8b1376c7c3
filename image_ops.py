"""
Pillow helpers for everything the detection run does to pixels: region crops,
downscaling before inference, the numbered verification overlay and the final
annotated image. All functions take and return encoded image bytes.
"""

import base64
import threading
from io import BytesIO
from typing import Sequence, Tuple

from PIL import Image as PILImage
from PIL import ImageDraw, ImageFont

from geom.box_math import NORM_MAX, normalize_box

MAX_INFERENCE_DIM = 2048

TYPE_COLORS = {
    "person": "#e63946",
    "animal": "#2ec4b6",
    "building": "#457b9d",
    "landscape": "#f4a261",
    "object": "#9b5de5",
}
DEFAULT_COLOR = "#ffc300"


def type_color(category: str) -> str:
    return TYPE_COLORS.get((category or "other").strip().lower(), DEFAULT_COLOR)


def _open(data: bytes) -> PILImage.Image:
    img = PILImage.open(BytesIO(data))
    img.load()
    return img


def _to_bytes(img: PILImage.Image, fmt: str = "JPEG", quality: int = 92) -> bytes:
    buf = BytesIO()
    save_kwargs = {"format": fmt}
    if fmt.upper() in {"JPEG", "JPG"}:
        img = img.convert("RGB")
        save_kwargs["quality"] = quality
    img.save(buf, **save_kwargs)
    return buf.getvalue()


def image_size(data: bytes) -> Tuple[int, int]:
    with PILImage.open(BytesIO(data)) as img:
        return img.size


def crop(data: bytes, region) -> bytes:
    """Cut a pixel rectangle (anything with left/top/width/height) out of an encoded image."""
    img = _open(data)
    box = (region.left, region.top, region.left + region.width, region.top + region.height)
    return _to_bytes(img.crop(box), "JPEG", 92)


def resize_for_inference(data: bytes, max_dim: int = MAX_INFERENCE_DIM) -> bytes:
    """Downscale to fit max_dim on both sides; small images are returned untouched."""
    img = _open(data)
    w, h = img.size
    if w <= max_dim and h <= max_dim:
        return data
    img = img.convert("RGB")
    img.thumbnail((max_dim, max_dim), PILImage.LANCZOS)
    return _to_bytes(img, "JPEG", 80)


def encode_data_url(data: bytes) -> str:
    with PILImage.open(BytesIO(data)) as img:
        fmt = (img.format or "JPEG").upper()
    mime = "image/jpeg" if fmt in {"JPEG", "JPG", "MPO"} else f"image/{fmt.lower()}"
    b64 = base64.b64encode(data).decode("ascii")
    return f"data:{mime};base64,{b64}"


def _font(size: int):
    return ImageFont.load_default(size=size)


def _to_px(box, w: int, h: int) -> Tuple[float, float, float, float]:
    xmin, ymin, xmax, ymax = normalize_box(box)
    return xmin * w / NORM_MAX, ymin * h / NORM_MAX, xmax * w / NORM_MAX, ymax * h / NORM_MAX


def build_numbered_overlay(data: bytes, instances: Sequence, category: str, label: str) -> bytes:
    """Render each instance box with its index badge, plus a header naming the kind.

    Badge i corresponds to instances[i]; the verification prompt refers to
    boxes by these numbers.
    """
    base = _open(data).convert("RGB")
    w, h = base.size
    color = type_color(category)
    thickness = max(2, round(min(w, h) / 400))
    font_size = max(16, round(min(w, h) / 40))
    font = _font(font_size)
    badge = int(font_size * 1.4)

    overlay = PILImage.new("RGBA", base.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    for i, inst in enumerate(instances):
        x0, y0, x1, y1 = _to_px(inst.box, w, h)
        draw.rectangle((x0, y0, x1, y1), outline=color, width=thickness)
        draw.rectangle((x0, y0, x0 + badge, y0 + badge), fill=color)
        draw.text((x0 + badge / 2, y0 + badge / 2), str(i), fill="white", font=font, anchor="mm")

    header = f'Verify: {len(instances)} "{label}" box(es), check for errors & missing'
    header_font = _font(18)
    draw.rectangle((0, 0, min(w, 700), 36), fill=(0, 0, 0, 190))
    draw.text((10, 8), header, fill="white", font=header_font)

    combined = PILImage.alpha_composite(base.convert("RGBA"), overlay)
    return _to_bytes(combined, "JPEG", 90)


def annotate_image(data: bytes, instances: Sequence) -> bytes:
    """Final annotated rendering: one coloured box and caption per instance, as PNG."""
    img = _open(data).convert("RGB")
    w, h = img.size
    draw = ImageDraw.Draw(img)
    thickness = max(2, round(min(w, h) / 500))
    font = _font(max(12, round(min(w, h) / 60)))
    for inst in instances:
        color = type_color(inst.type)
        x0, y0, x1, y1 = _to_px(inst.box, w, h)
        draw.rectangle((x0, y0, x1, y1), outline=color, width=thickness)
        caption = inst.label
        if inst.importance_rank is not None:
            caption = f"{inst.importance_rank}. {caption}"
        left, top, right, bottom = draw.textbbox((x0, y0), caption, font=font)
        ty = y0 - (bottom - top) - 4 if y0 - (bottom - top) - 4 >= 0 else y0
        draw.rectangle((x0, ty, x0 + (right - left) + 6, ty + (bottom - top) + 4), fill=color)
        draw.text((x0 + 3, ty + 2 - (top - y0)), caption, fill="white", font=font)
    return _to_bytes(img, "PNG")


class SourceImage:
    """The read-only source image plus a cache of inference-ready region crops.

    Sibling regions and kinds share one instance from many threads.
    """

    def __init__(self, data: bytes, max_dim: int = MAX_INFERENCE_DIM) -> None:
        self.data = data
        self.width, self.height = image_size(data)
        self.max_dim = max_dim
        self._cache = {}
        self._lock = threading.Lock()

    @classmethod
    def from_path(cls, path: str, max_dim: int = MAX_INFERENCE_DIM) -> "SourceImage":
        with open(path, "rb") as f:
            return cls(f.read(), max_dim)

    def region_bytes(self, region) -> bytes:
        key = (region.left, region.top, region.width, region.height)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached
        if region.left == 0 and region.top == 0 and region.width == self.width and region.height == self.height:
            raw = self.data
        else:
            raw = crop(self.data, region)
        out = resize_for_inference(raw, self.max_dim)
        with self._lock:
            return self._cache.setdefault(key, out)
