from __future__ import annotations

import importlib
import itertools
import logging
import threading
from collections import OrderedDict
from types import ModuleType
from typing import Callable, Dict, Optional, Sequence, Tuple

from crack_api.config import settings
from crack_api.services.errors import CapabilityLoadError

logger = logging.getLogger(__name__)

REQUIRED_PRIMITIVES: Tuple[str, ...] = (
	"cvtColor",
	"ORB_create",
	"BFMatcher",
	"findHomography",
	"warpPerspective",
	"absdiff",
	"threshold",
	"addWeighted",
)

OnReady = Callable[[], None]
OnError = Callable[[CapabilityLoadError], None]


class CapabilityLoader:
	"""
	Makes the computer-vision engine available before any pipeline run.

	One instance lives for the whole process (see `loader` below). The engine is
	loaded at most once, on a daemon thread started by the first `ensure_ready`
	call. Continuations registered before readiness are invoked exactly once, in
	registration order, when loading completes. A failed load is final: every
	pending and later caller gets a CapabilityLoadError, nothing is retried.
	`reset()` puts the loader back in its initial state and exists for tests.
	"""

	def __init__(
		self,
		module_name: Optional[str] = None,
		importer: Callable[[str], ModuleType] = importlib.import_module,
		required: Sequence[str] = REQUIRED_PRIMITIVES,
		background: bool = True,
	) -> None:
		self._module_name = module_name or settings.ENGINE_MODULE
		self._importer = importer
		self._required = tuple(required)
		self._background = background
		self._lock = threading.Lock()
		self._tokens = itertools.count(1)
		self.reset()

	def reset(self) -> None:
		with self._lock:
			self._ready = False
			self._loading = False
			self._error: Optional[CapabilityLoadError] = None
			self._engine: Optional[ModuleType] = None
			self._pending: "OrderedDict[int, Tuple[OnReady, Optional[OnError]]]" = OrderedDict()

	@property
	def ready(self) -> bool:
		return self._ready

	@property
	def engine(self) -> ModuleType:
		if not self._ready or self._engine is None:
			raise CapabilityLoadError("computer-vision engine is not loaded")
		return self._engine

	def ensure_ready(self, on_ready: OnReady, on_error: Optional[OnError] = None) -> Tuple[bool, Optional[int]]:
		"""
		Run `on_ready` once the engine is usable.

		Returns (True, None) when the engine was already loaded and `on_ready` has
		run synchronously, (False, token) when the continuation was parked; the
		token can be passed to `discard`. A loader that already failed calls
		`on_error` synchronously and returns (False, None).
		"""
		start = False
		parked: Optional[int] = None
		error: Optional[CapabilityLoadError] = None
		with self._lock:
			if self._ready:
				pass
			elif self._error is not None:
				error = self._error
			else:
				parked = next(self._tokens)
				self._pending[parked] = (on_ready, on_error)
				if not self._loading:
					self._loading = True
					start = True
		if parked is None:
			if error is None:
				on_ready()
				return True, None
			if on_error is not None:
				on_error(error)
			return False, None
		if start:
			if self._background:
				threading.Thread(target=self._load, name="capability-loader", daemon=True).start()
			else:
				self._load()
		return False, parked

	def discard(self, token: Optional[int]) -> None:
		if token is None:
			return
		with self._lock:
			self._pending.pop(token, None)

	def _load(self) -> None:
		logger.info("Loading computer-vision engine %r", self._module_name)
		engine: Optional[ModuleType] = None
		error: Optional[CapabilityLoadError] = None
		try:
			engine = self._importer(self._module_name)
			missing = [name for name in self._required if not hasattr(engine, name)]
			if missing:
				error = CapabilityLoadError(
					"engine {} lacks required primitives: {}".format(self._module_name, ", ".join(missing))
				)
		except Exception as e:
			error = CapabilityLoadError("failed to load engine {}: {}".format(self._module_name, e))
			error.__cause__ = e
		with self._lock:
			self._loading = False
			if error is None:
				self._engine = engine
				self._ready = True
			else:
				self._error = error
			pending = list(self._pending.values())
			self._pending.clear()
		if error is None:
			logger.info("Computer-vision engine ready, resuming %d waiting session(s)", len(pending))
		else:
			logger.error("Computer-vision engine unavailable: %s", error.message)
		for on_ready, on_error in pending:
			try:
				if error is None:
					on_ready()
				elif on_error is not None:
					on_error(error)
			except Exception:
				logger.exception("Capability continuation raised")


loader = CapabilityLoader()


def get_loader() -> CapabilityLoader:
	return loader
