from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Union
from urllib.parse import unquote_to_bytes

import httpx
import numpy as np
from PIL import ExifTags, Image as PILImage, UnidentifiedImageError

from crack_api.services.errors import LoadError

Locator = Union[str, Path, bytes, bytearray, memoryview]


@dataclass(frozen=True, eq=False)
class Image:
	"""RGBA uint8 image, [H,W,4]. The pixel buffer is read-only once wrapped."""

	width: int
	height: int
	pixels: np.ndarray

	@classmethod
	def from_array(cls, arr: np.ndarray) -> "Image":
		if arr.ndim != 3 or arr.shape[2] != 4:
			raise ValueError("Expected HxWx4 RGBA array, got shape {}".format(arr.shape))
		pixels = np.ascontiguousarray(arr, dtype=np.uint8)
		if pixels is arr:
			pixels = pixels.copy()
		pixels.setflags(write=False)
		return cls(width=int(pixels.shape[1]), height=int(pixels.shape[0]), pixels=pixels)

	@classmethod
	def from_pil(cls, img: PILImage.Image) -> "Image":
		if img.mode != "RGBA":
			img = img.convert("RGBA")
		return cls.from_array(np.asarray(img))

	def to_pil(self) -> PILImage.Image:
		return PILImage.fromarray(np.asarray(self.pixels))


def apply_exif_orientation(img: PILImage.Image, exif) -> PILImage.Image:
	orientation = None
	if exif:
		tmp = {}
		for tag_id, value in exif.items():
			tag = ExifTags.TAGS.get(tag_id, tag_id)
			tmp[str(tag)] = value
		orientation = tmp.get("Orientation")
	if orientation is None:
		return img
	try:
		o = int(orientation)
	except (TypeError, ValueError):
		return img
	flip_lr = PILImage.Transpose.FLIP_LEFT_RIGHT
	if o == 2:
		return img.transpose(flip_lr)
	if o == 3:
		return img.rotate(180, expand=True)
	if o == 4:
		return img.transpose(PILImage.Transpose.FLIP_TOP_BOTTOM)
	if o == 5:
		return img.transpose(flip_lr).rotate(90, expand=True)
	if o == 6:
		return img.rotate(270, expand=True)
	if o == 7:
		return img.transpose(flip_lr).rotate(270, expand=True)
	if o == 8:
		return img.rotate(90, expand=True)
	return img


def _read_locator(locator: Locator, timeout: float) -> bytes:
	if isinstance(locator, (bytes, bytearray, memoryview)):
		return bytes(locator)
	if isinstance(locator, Path):
		return locator.read_bytes()
	text = str(locator)
	if text.startswith(("http://", "https://")):
		response = httpx.get(text, timeout=timeout, follow_redirects=True)
		response.raise_for_status()
		return response.content
	if text.startswith("data:"):
		header, _, payload = text.partition(",")
		if header.endswith(";base64"):
			return base64.b64decode(payload, validate=True)
		return unquote_to_bytes(payload)
	return Path(text).read_bytes()


def decode_image(data: bytes) -> Image:
	with BytesIO(data) as buf:
		img = PILImage.open(buf)
		img.load()
		img = apply_exif_orientation(img, img.getexif())
		return Image.from_pil(img)


def load_image(locator: Locator, timeout: float = 30.0) -> Image:
	"""
	Fetch and decode the image behind a locator: http(s) URL, data: URL,
	filesystem path, or a raw encoded buffer. Raises LoadError on any failure.
	"""
	if locator is None or (isinstance(locator, str) and not locator):
		raise LoadError("empty image locator")
	label = "<buffer>" if isinstance(locator, (bytes, bytearray, memoryview)) else str(locator)[:120]
	try:
		data = _read_locator(locator, timeout)
	except (OSError, httpx.HTTPError, binascii.Error, ValueError) as e:
		raise LoadError("failed to fetch image {}: {}".format(label, e)) from e
	try:
		return decode_image(data)
	except (UnidentifiedImageError, PILImage.DecompressionBombError, OSError, ValueError) as e:
		raise LoadError("failed to decode image {}: {}".format(label, e)) from e


def encode_png(image: Image) -> bytes:
	with BytesIO() as buf:
		image.to_pil().save(buf, format="PNG", optimize=True)
		return buf.getvalue()


def to_data_url(image: Image) -> str:
	return "data:image/png;base64," + base64.b64encode(encode_png(image)).decode("ascii")
