from __future__ import annotations

import math
from io import BytesIO
from typing import Tuple

from PIL import Image as PILImage

from crack_api.services.image_utils import Image, decode_image


def bounded_size(width: int, height: int, max_dimension: int = 1200) -> Tuple[int, int]:
	"""
	Target (width, height) with the larger side clamped to max_dimension, aspect
	preserved, the smaller side rounded half-up. Sizes already within bounds pass through.
	"""
	if width <= max_dimension and height <= max_dimension:
		return (width, height)
	if width > height:
		return (max_dimension, max(1, int(math.floor(height * max_dimension / float(width) + 0.5))))
	return (max(1, int(math.floor(width * max_dimension / float(height) + 0.5))), max_dimension)


def normalize(image: Image, max_dimension: int = 1200, quality: int = 90) -> Image:
	target = bounded_size(image.width, image.height, max_dimension)
	if target == (image.width, image.height):
		return image
	img = image.to_pil().resize(target, PILImage.Resampling.LANCZOS)
	# one lossy round-trip, same as the browser canvas export it replaces
	buf = BytesIO()
	try:
		img.convert("RGB").save(buf, format="JPEG", quality=quality)
		return decode_image(buf.getvalue())
	finally:
		buf.close()
		img.close()


def normalize_pair(reference: Image, current: Image, max_dimension: int = 1200, quality: int = 90) -> Tuple[Image, Image]:
	return (
		normalize(reference, max_dimension=max_dimension, quality=quality),
		normalize(current, max_dimension=max_dimension, quality=quality),
	)
