"""
Settings for the crack change-detection aligner, loaded from ALIGNER_* environment
variables (or a .env file) through pydantic-settings.
"""

from __future__ import annotations

from typing import List, Literal, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
	"""
	Tunables for ingestion, alignment, differencing and session scheduling.

	Attributes:
		MAX_DIMENSION (int): Largest side of the working resolution.
		JPEG_QUALITY (int): Quality of the single lossy re-encode after a downscale.
		MAX_FEATURES (int): ORB keypoint budget per image.
		RATIO_TEST (float): Nearest / second-nearest distance ratio for accepting a match.
		RANSAC_THRESHOLD (float): Inlier reprojection error in pixels.
		DIFF_THRESHOLD (int): Grayscale difference above which a pixel counts as changed.
		OVERLAY_WEIGHT (float): Blend weight of the highlight layer.
		HIGHLIGHT_COLOR (tuple): RGBA colour painted where the mask is set.
		DEFER_DELAY_SECONDS (float): Delay before a background-priority session starts.
		EXECUTION_BACKEND (str): "process" or "thread".
		MP_START_METHOD (str): multiprocessing start method for the process backend.
		FETCH_TIMEOUT (float): Timeout for http(s) image locators.
		ENGINE_MODULE (str): Module providing the computer-vision primitives.
	"""

	model_config = SettingsConfigDict(env_prefix="ALIGNER_", env_file=".env", env_file_encoding="utf-8")

	MAX_DIMENSION: int = 1200
	JPEG_QUALITY: int = 90
	MAX_FEATURES: int = 2000
	RATIO_TEST: float = 0.75
	RANSAC_THRESHOLD: float = 3.0
	DIFF_THRESHOLD: int = 30
	OVERLAY_WEIGHT: float = 0.5
	HIGHLIGHT_COLOR: Tuple[int, int, int, int] = (0, 0, 255, 255)
	DEFER_DELAY_SECONDS: float = 0.3
	EXECUTION_BACKEND: Literal["process", "thread"] = "process"
	MP_START_METHOD: str = "spawn"
	FETCH_TIMEOUT: float = 30.0
	ENGINE_MODULE: str = "cv2"
	LOG_LEVEL: str = "INFO"
	CORS_ORIGINS: List[str] = ["*"]


settings = Settings()
