from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from crack_api.services.errors import AlignmentError
from crack_api.services.image_utils import Image

MIN_CORRESPONDENCES = 4


@dataclass(frozen=True)
class AlignParams:
	"""Tunables shipped with each job into the execution context (must stay picklable)."""

	max_features: int = 2000
	ratio: float = 0.75
	ransac_threshold: float = 3.0
	diff_threshold: int = 30
	highlight_color: Tuple[int, int, int, int] = (0, 0, 255, 255)
	overlay_weight: float = 0.5


@dataclass(frozen=True)
class Keypoint:
	x: float
	y: float
	angle: float
	size: float


@dataclass
class FeatureSet:
	keypoints: List[Keypoint] = field(default_factory=list)
	descriptors: Optional[np.ndarray] = None

	def __len__(self) -> int:
		return len(self.keypoints)

	def points(self, indices: Sequence[int]) -> np.ndarray:
		return np.float32([[self.keypoints[i].x, self.keypoints[i].y] for i in indices]).reshape(-1, 1, 2)


@dataclass(frozen=True)
class MatchCandidate:
	query_index: int
	train_index: int
	distance: float


@dataclass(frozen=True)
class Homography:
	matrix: np.ndarray
	inliers: int
	matches: int


def to_gray(image: Image) -> np.ndarray:
	import cv2  # local import: the engine is brought up by the capability loader

	return cv2.cvtColor(np.asarray(image.pixels), cv2.COLOR_RGBA2GRAY)


def detect_features(gray: np.ndarray, max_features: int = 2000) -> FeatureSet:
	"""ORB keypoints (oriented FAST, rotated BRIEF) with binary descriptors."""
	import cv2

	orb = cv2.ORB_create(nfeatures=max_features)
	kps, des = orb.detectAndCompute(gray, None)
	keypoints = [Keypoint(x=float(k.pt[0]), y=float(k.pt[1]), angle=float(k.angle), size=float(k.size)) for k in kps]
	return FeatureSet(keypoints=keypoints, descriptors=des)


def knn_match(query: FeatureSet, train: FeatureSet, k: int = 2) -> List[List[MatchCandidate]]:
	"""
	For each query keypoint, its k nearest train keypoints by Hamming distance.
	Empty when either side has no descriptors.
	"""
	if query.descriptors is None or train.descriptors is None or len(query) == 0 or len(train) == 0:
		return []
	import cv2

	matcher = cv2.BFMatcher(cv2.NORM_HAMMING)
	knn = matcher.knnMatch(query.descriptors, train.descriptors, k=k)
	return [
		[MatchCandidate(query_index=m.queryIdx, train_index=m.trainIdx, distance=float(m.distance)) for m in pair]
		for pair in knn
	]


def ratio_test(candidates: Sequence[Sequence[MatchCandidate]], ratio: float = 0.75) -> List[MatchCandidate]:
	"""Keep the nearest match only when it is clearly closer than the second-nearest."""
	good: List[MatchCandidate] = []
	for pair in candidates:
		if len(pair) < 2:
			continue
		m, n = pair[0], pair[1]
		if m.distance < ratio * n.distance:
			good.append(m)
	return good


def validate_homography(H: Optional[np.ndarray]) -> np.ndarray:
	if H is None or np.shape(H) != (3, 3):
		raise AlignmentError(AlignmentError.DEGENERATE_HOMOGRAPHY, "homography could not be estimated")
	if not np.all(np.isfinite(H)) or abs(float(np.linalg.det(H))) < 1e-8:
		raise AlignmentError(AlignmentError.DEGENERATE_HOMOGRAPHY, "homography is singular")
	return H


def estimate_homography(
	reference: FeatureSet,
	current: FeatureSet,
	matches: Sequence[MatchCandidate],
	ransac_threshold: float = 3.0,
) -> Homography:
	"""
	RANSAC homography taking current-image coordinates onto the reference frame.
	`matches` use reference keypoints as queries and current keypoints as train.
	"""
	if len(matches) < MIN_CORRESPONDENCES:
		raise AlignmentError(
			AlignmentError.INSUFFICIENT_MATCHES,
			"insufficient correspondences: {} < {}".format(len(matches), MIN_CORRESPONDENCES),
		)
	ref_pts = reference.points([m.query_index for m in matches])
	cur_pts = current.points([m.train_index for m in matches])
	import cv2

	try:
		H, mask = cv2.findHomography(cur_pts, ref_pts, cv2.RANSAC, ransac_threshold)
	except cv2.error as e:
		raise AlignmentError(AlignmentError.DEGENERATE_HOMOGRAPHY, "homography solver failed: {}".format(e)) from e
	H = validate_homography(H)
	inliers = int(mask.sum()) if mask is not None else 0
	return Homography(matrix=H, inliers=inliers, matches=len(matches))


def warp_to_reference(current: Image, homography: Homography, width: int, height: int) -> Image:
	import cv2

	warped = cv2.warpPerspective(
		np.asarray(current.pixels),
		homography.matrix,
		(width, height),
		flags=cv2.INTER_LINEAR,
		borderMode=cv2.BORDER_CONSTANT,
		borderValue=(0, 0, 0, 0),
	)
	return Image.from_array(warped)


def align(reference: Image, current: Image, params: Optional[AlignParams] = None) -> Tuple[Image, Homography]:
	"""
	Register `current` onto `reference`. Returns the warped current image (reference
	dimensions) and the homography. Raises AlignmentError on any failure.
	"""
	params = params or AlignParams()
	ref_features = detect_features(to_gray(reference), params.max_features)
	cur_features = detect_features(to_gray(current), params.max_features)
	good = ratio_test(knn_match(ref_features, cur_features), params.ratio)
	homography = estimate_homography(ref_features, cur_features, good, params.ransac_threshold)
	warped = warp_to_reference(current, homography, reference.width, reference.height)
	return warped, homography
