from __future__ import annotations

import logging
from typing import Callable, Optional

from crack_api.config import Settings, settings
from crack_api.services.alignment import AlignParams, align, to_gray
from crack_api.services.difference import changed_fraction, composite, diff_mask
from crack_api.services.image_utils import Image, Locator, load_image
from crack_api.services.normalization import normalize_pair

logger = logging.getLogger(__name__)

StageReporter = Callable[[str], None]

STAGE_DIFFING = "diffing"


def params_from_settings(cfg: Optional[Settings] = None) -> AlignParams:
	cfg = cfg or settings
	return AlignParams(
		max_features=cfg.MAX_FEATURES,
		ratio=cfg.RATIO_TEST,
		ransac_threshold=cfg.RANSAC_THRESHOLD,
		diff_threshold=cfg.DIFF_THRESHOLD,
		highlight_color=tuple(cfg.HIGHLIGHT_COLOR),
		overlay_weight=cfg.OVERLAY_WEIGHT,
	)


def run_overlay(
	reference: Image,
	current: Image,
	params: Optional[AlignParams] = None,
	report: Optional[StageReporter] = None,
) -> Image:
	"""
	Align `current` onto `reference` and return the reference with changed regions
	highlighted. Both images should already be normalized. Raises AlignmentError.
	"""
	params = params or AlignParams()

	# 1) Register current onto the reference frame
	warped, homography = align(reference, current, params)
	logger.debug(
		"Homography estimated from %d matches (%d inliers)", homography.matches, homography.inliers
	)

	# 2) Difference + composite
	if report is not None:
		report(STAGE_DIFFING)
	mask = diff_mask(to_gray(reference), to_gray(warped), params.diff_threshold)
	logger.debug("Changed fraction %.4f", changed_fraction(mask))
	return composite(reference, mask, params.highlight_color, params.overlay_weight)


def run_from_locators(reference: Locator, current: Locator, cfg: Optional[Settings] = None) -> Image:
	"""Synchronous end-to-end run: load, normalize, align, diff."""
	cfg = cfg or settings
	ref_img = load_image(reference, timeout=cfg.FETCH_TIMEOUT)
	cur_img = load_image(current, timeout=cfg.FETCH_TIMEOUT)
	ref_img, cur_img = normalize_pair(ref_img, cur_img, max_dimension=cfg.MAX_DIMENSION, quality=cfg.JPEG_QUALITY)
	return run_overlay(ref_img, cur_img, params_from_settings(cfg))
