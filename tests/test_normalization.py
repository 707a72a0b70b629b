from io import BytesIO

import pytest

from crack_api.services import normalization
from crack_api.services.errors import LoadError
from crack_api.services.normalization import bounded_size, normalize, normalize_pair
from tests.helpers import solid


@pytest.mark.parametrize(
    "size,expected",
    [
        ((2000, 1000), (1200, 600)),
        ((1000, 2000), (600, 1200)),
        ((800, 600), (800, 600)),
        ((1200, 1200), (1200, 1200)),
        ((1500, 1500), (1200, 1200)),
        ((3000, 1001), (1200, 400)),
        ((5000, 3), (1200, 1)),
    ],
)
def test_bounded_size(size, expected):
    assert bounded_size(*size, max_dimension=1200) == expected


def test_large_image_is_downscaled():
    out = normalize(solid(2000, 1000, 80))
    assert (out.width, out.height) == (1200, 600)
    assert out.pixels.shape == (600, 1200, 4)
    assert out.pixels[..., 3].min() == 255
    # lossy re-encode of a flat image stays close to the source
    assert abs(int(out.pixels[300, 600, 0]) - 80) <= 3


def test_small_image_passes_through_unchanged():
    image = solid(800, 600)
    assert normalize(image) is image


def test_normalize_pair_custom_bound():
    a, b = normalize_pair(solid(400, 200), solid(100, 300), max_dimension=150)
    assert (a.width, a.height) == (150, 75)
    assert (b.width, b.height) == (50, 150)


def test_normalized_pixels_are_read_only():
    out = normalize(solid(2000, 1000))
    with pytest.raises(ValueError):
        out.pixels[0, 0, 0] = 1


class TrackedBuffer(BytesIO):
    instances = []

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        TrackedBuffer.instances.append(self)


def test_rescale_buffer_released_when_decode_fails(monkeypatch):
    TrackedBuffer.instances = []

    def broken_decode(data):
        raise LoadError("failed to decode image <buffer>: truncated")

    monkeypatch.setattr(normalization, "BytesIO", TrackedBuffer)
    monkeypatch.setattr(normalization, "decode_image", broken_decode)

    with pytest.raises(LoadError, match="truncated"):
        normalize(solid(2000, 1000))

    (buf,) = TrackedBuffer.instances
    assert buf.closed


def test_rescale_buffer_released_on_success(monkeypatch):
    TrackedBuffer.instances = []
    monkeypatch.setattr(normalization, "BytesIO", TrackedBuffer)

    normalize(solid(1300, 100))
    assert [buf.closed for buf in TrackedBuffer.instances] == [True]
