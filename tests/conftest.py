import itertools
from typing import Callable, Dict, List, Optional

import pytest

from crack_api.services.errors import LoadError
from tests.helpers import make_scene, solid


@pytest.fixture
def scene_pair():
    """
    Reference and current crops of one scene. The current crop starts 12px right
    and 8px lower, so reference (x, y) shows the same content as current (x-12, y-8).
    """
    scene = make_scene()
    ref = scene[20:320, 20:420].copy()
    cur = scene[28:328, 32:432].copy()
    return ref, cur


class FakeTimer:
    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if self.started and not self.cancelled:
            self.function(*self.args, **self.kwargs)


class TimerFactory:
    def __init__(self):
        self.timers: List[FakeTimer] = []

    def __call__(self, interval, function, args=None, kwargs=None):
        timer = FakeTimer(interval, function, args, kwargs)
        self.timers.append(timer)
        return timer


class FakeLoader:
    def __init__(self, ready=True):
        self.ready = ready
        self.error = None
        self.calls = 0
        self.discarded = []
        self._pending: Dict[int, tuple] = {}
        self._tokens = itertools.count(1)

    def ensure_ready(self, on_ready, on_error=None):
        self.calls += 1
        if self.ready:
            on_ready()
            return True, None
        if self.error is not None:
            on_error(self.error)
            return False, None
        token = next(self._tokens)
        self._pending[token] = (on_ready, on_error)
        return False, token

    def discard(self, token):
        if token is not None:
            self.discarded.append(token)
            self._pending.pop(token, None)

    def release(self):
        self.ready = True
        pending, self._pending = list(self._pending.values()), {}
        for on_ready, _ in pending:
            on_ready()

    def fail(self, error):
        self.error = error
        pending, self._pending = list(self._pending.values()), {}
        for _, on_error in pending:
            on_error(error)


class FakeContext:
    def __init__(self, log):
        self.log = log
        self.cancelled = False
        self.submitted = None
        self.on_success: Optional[Callable] = None
        self.on_failure: Optional[Callable] = None
        self.on_stage: Optional[Callable] = None

    def submit(self, reference, current, on_success, on_failure, on_stage=None):
        self.submitted = (reference, current)
        self.on_success, self.on_failure, self.on_stage = on_success, on_failure, on_stage
        self.log.append(("submit", self))

    def cancel(self):
        if not self.cancelled:
            self.cancelled = True
            self.log.append(("cancel", self))

    def stage(self, name):
        if not self.cancelled:
            self.on_stage(name)

    def succeed(self, image):
        if not self.cancelled:
            self.on_success(image)

    def fail(self, error):
        if not self.cancelled:
            self.on_failure(error)


class ContextFactory:
    def __init__(self):
        self.log = []
        self.contexts: List[FakeContext] = []

    def __call__(self):
        ctx = FakeContext(self.log)
        self.contexts.append(ctx)
        return ctx


class ImageStore:
    """Stands in for load_image: locators are keys into a dict."""

    def __init__(self, images):
        self.images = dict(images)
        self.loaded = []

    def __call__(self, locator, timeout=None):
        self.loaded.append(locator)
        if locator not in self.images:
            raise LoadError("failed to fetch image {}: not found".format(locator))
        return self.images[locator]


@pytest.fixture
def timers():
    return TimerFactory()


@pytest.fixture
def fake_loader():
    return FakeLoader()


@pytest.fixture
def contexts():
    return ContextFactory()


@pytest.fixture
def store():
    return ImageStore({
        "ref.jpg": solid(64, 48, 100),
        "cur.jpg": solid(64, 48, 120),
        "other.jpg": solid(64, 48, 140),
        "big.jpg": solid(2000, 1000, 90),
    })


@pytest.fixture
def results():
    return []


@pytest.fixture
def make_controller(fake_loader, contexts, timers, store, results):
    from crack_api.services.session import SessionController

    def factory(**overrides):
        kwargs = dict(
            on_result=results.append,
            loader=fake_loader,
            image_loader=store,
            context_factory=contexts,
            timer_factory=timers,
            runner=lambda fn: fn(),
        )
        kwargs.update(overrides)
        return SessionController(**kwargs)

    return factory
