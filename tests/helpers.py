import cv2
import numpy as np

from crack_api.services.image_utils import Image


def make_scene(width=520, height=400, seed=7):
    """Blurred random shapes on a mid-gray background: plenty of ORB corners, smooth edges."""
    rng = np.random.default_rng(seed)
    scene = np.full((height, width), 150, np.uint8)
    for _ in range(80):
        x, y = int(rng.integers(0, width)), int(rng.integers(0, height))
        w, h = int(rng.integers(10, 60)), int(rng.integers(10, 60))
        val = int(rng.integers(60, 231))
        if rng.random() < 0.5:
            cv2.rectangle(scene, (x, y), (x + w, y + h), val, -1)
        else:
            cv2.circle(scene, (x, y), w // 2, val, -1)
    return cv2.GaussianBlur(scene, (0, 0), 1.5)


def rgba(gray):
    return Image.from_array(cv2.cvtColor(gray, cv2.COLOR_GRAY2RGBA))


def solid(width, height, value=128):
    arr = np.full((height, width, 4), value, np.uint8)
    arr[..., 3] = 255
    return Image.from_array(arr)
