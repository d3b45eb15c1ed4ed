# runner/perception/imaging.py
import math
from typing import Dict, Tuple

import cv2
import numpy as np
from PIL import Image, ImageDraw, ImageFont

from .geometry import BoundingBox


def scaling_ratio(width: int, height: int, longest_allowed: int, max_megapixels: float) -> float:
    """Factor (<= 1) that brings an image within both the longest-side and the megapixel limits."""
    ratio = 1.0
    longest = max(width, height)
    if longest > longest_allowed:
        ratio = longest_allowed / longest
    pixels = width * height
    max_pixels = max_megapixels * 1_000_000
    if pixels * ratio * ratio > max_pixels:
        ratio = math.sqrt(max_pixels / pixels)
    return ratio


def scale_image(img: Image.Image, ratio: float) -> Image.Image:
    if ratio == 1.0:
        return img
    width = max(1, round(img.width * ratio))
    height = max(1, round(img.height * ratio))
    return img.resize((width, height), Image.Resampling.LANCZOS)


def crop(img: Image.Image, region: BoundingBox) -> Image.Image:
    return img.crop(region.as_tuple())


def draw_boxes(img: Image.Image, boxes: Dict[str, BoundingBox], color: Tuple[int, int, int] = (0, 255, 0),
               width: int = 2) -> Image.Image:
    """Returns a copy of `img` with every box outlined and labeled by its key."""
    annotated = img.convert("RGB").copy()
    draw = ImageDraw.Draw(annotated)
    font = ImageFont.load_default()
    for label, box in boxes.items():
        draw.rectangle(box.as_tuple(), outline=color, width=width)
        text_y = box.y1 - 12 if box.y1 >= 12 else box.y2 + 2
        draw.text((box.x1 + 2, text_y), label, fill=color, font=font)
    return annotated


def to_cv_gray(img: Image.Image) -> np.ndarray:
    return cv2.cvtColor(np.array(img.convert("RGB")), cv2.COLOR_RGB2GRAY)



def is_uniform(gray: np.ndarray, tolerance: float = 1e-6) -> bool:
    return float(np.std(gray)) <= tolerance
