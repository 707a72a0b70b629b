from __future__ import annotations

from typing import Tuple

import numpy as np

from crack_api.services.image_utils import Image


def diff_mask(ref_gray: np.ndarray, warped_gray: np.ndarray, threshold: int = 30) -> np.ndarray:
	"""
	Binary change mask [H,W] uint8 in {0,1}: 1 where |ref - warped| > threshold.
	Both inputs are uint8 grayscale of identical shape.
	"""
	if ref_gray.shape != warped_gray.shape:
		raise ValueError("Gray images differ in shape: {} vs {}".format(ref_gray.shape, warped_gray.shape))
	import cv2  # local import: the engine is brought up by the capability loader

	diff = cv2.absdiff(ref_gray, warped_gray)
	_, mask = cv2.threshold(diff, threshold, 1, cv2.THRESH_BINARY)
	return mask


def highlight_layer(mask: np.ndarray, color: Tuple[int, int, int, int] = (0, 0, 255, 255)) -> np.ndarray:
	layer = np.zeros(mask.shape[:2] + (4,), dtype=np.uint8)
	layer[mask > 0] = color
	return layer


def composite(
	reference: Image,
	mask: np.ndarray,
	color: Tuple[int, int, int, int] = (0, 0, 255, 255),
	weight: float = 0.5,
) -> Image:
	"""Blend the highlight layer over the reference: ref*1.0 + layer*weight, saturated."""
	import cv2

	layer = highlight_layer(mask, color)
	blended = cv2.addWeighted(np.asarray(reference.pixels), 1.0, layer, weight, 0)
	return Image.from_array(blended)


def changed_fraction(mask: np.ndarray) -> float:
	if mask.size == 0:
		return 0.0
	import cv2

	return float(cv2.countNonZero(mask)) / float(mask.size)
