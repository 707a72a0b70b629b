"""
Session lifecycle control for the aligner: priority-based deferral, single-flight,
abort, and status reporting. This is the only piece the dashboard talks to.

A session walks IDLE -> LOADING_IMAGES -> ALIGNING -> DIFFING -> COMPLETE, and can
end in ERROR or ABORTED from any non-terminal state. Every session delivers exactly
one value to `on_result`: the overlay, the unchanged reference image (identical
inputs), or None (failure, abort, or replacement by a newer input pair).
"""

from __future__ import annotations

import abc
import itertools
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, List, Optional, Tuple

from crack_api.config import Settings, settings
from crack_api.services.capability import CapabilityLoader, get_loader
from crack_api.services.errors import AlignerError, ExecutionContextError, LoadError
from crack_api.services.execution import ExecutionContext
from crack_api.services.image_utils import Image, Locator, load_image
from crack_api.services.normalization import normalize_pair
from crack_api.services.pipeline import STAGE_DIFFING, params_from_settings

logger = logging.getLogger(__name__)

OnResult = Callable[[Optional[Image]], None]


class SessionStatus(str, Enum):
	IDLE = "idle"
	LOADING_IMAGES = "loading images..."
	ALIGNING = "aligning..."
	DIFFING = "diffing..."
	COMPLETE = "complete"
	ERROR = "error"
	ABORTED = "stopped"


TERMINAL = frozenset({SessionStatus.COMPLETE, SessionStatus.ERROR, SessionStatus.ABORTED})


class Priority(str, Enum):
	FOREGROUND = "foreground"
	BACKGROUND = "background"


class AlignerHandle(abc.ABC):
	"""Control handle held by the dashboard."""

	@abc.abstractmethod
	def set_priority_mode(self, mode: str) -> None: ...

	@abc.abstractmethod
	def get_status(self) -> str: ...

	@abc.abstractmethod
	def is_busy(self) -> bool: ...

	@abc.abstractmethod
	def abort(self) -> None: ...


_session_ids = itertools.count(1)


@dataclass(eq=False)
class Session:
	reference: Optional[Locator]
	current: Optional[Locator]
	priority: Priority
	id: int = field(default_factory=lambda: next(_session_ids))
	status: SessionStatus = SessionStatus.IDLE
	started: bool = False
	context: Optional[ExecutionContext] = None
	timer: Optional[Any] = None
	loader_token: Optional[int] = None
	error: Optional[str] = None
	delivered: bool = False

	@property
	def active(self) -> bool:
		return self.status not in TERMINAL


def _thread_runner(fn: Callable[[], None]) -> None:
	threading.Thread(target=fn, name="aligner-ingest", daemon=True).start()


class SessionController(AlignerHandle):
	def __init__(
		self,
		on_result: Optional[OnResult] = None,
		loader: Optional[CapabilityLoader] = None,
		image_loader: Callable[..., Image] = load_image,
		context_factory: Optional[Callable[[], ExecutionContext]] = None,
		timer_factory: Callable[..., Any] = threading.Timer,
		runner: Callable[[Callable[[], None]], None] = _thread_runner,
		cfg: Optional[Settings] = None,
		priority: str = Priority.BACKGROUND,
	) -> None:
		self.cfg = cfg or settings
		self._on_result = on_result
		self._loader = loader or get_loader()
		self._image_loader = image_loader
		self._context_factory = context_factory or self._default_context
		self._timer_factory = timer_factory
		self._runner = runner
		self._priority = Priority(priority)
		self._lock = threading.RLock()
		self._depth = 0
		self._outbox: List[Tuple[Session, Optional[Image]]] = []
		self._session: Optional[Session] = None
		self._last_inputs: Optional[Tuple[Optional[Locator], Optional[Locator]]] = None

	def _default_context(self) -> ExecutionContext:
		return ExecutionContext(
			params=params_from_settings(self.cfg),
			backend=self.cfg.EXECUTION_BACKEND,
			start_method=self.cfg.MP_START_METHOD,
		)

	# ------------------------------------------------------------------
	# AlignerHandle
	# ------------------------------------------------------------------

	@property
	def priority(self) -> Priority:
		return self._priority

	@property
	def inputs(self) -> Optional[Tuple[Optional[Locator], Optional[Locator]]]:
		return self._last_inputs

	@property
	def status(self) -> SessionStatus:
		s = self._session
		return s.status if s is not None else SessionStatus.IDLE

	def get_status(self) -> str:
		s = self._session
		if s is None:
			return SessionStatus.IDLE.value
		if s.status is SessionStatus.ERROR:
			return "error: {}".format(s.error)
		return s.status.value

	def is_busy(self) -> bool:
		s = self._session
		return s is not None and s.active and s.started

	def set_priority_mode(self, mode: str) -> None:
		mode = Priority(mode)
		with self._transaction():
			self._priority = mode
			s = self._session
			if mode is not Priority.FOREGROUND or s is None or not s.active or s.started:
				return
			if s.timer is not None:
				s.timer.cancel()
				s.timer = None
			logger.info("Session %d: foreground requested, skipping deferral", s.id)
			self._start(s)

	def abort(self) -> None:
		with self._transaction():
			s = self._session
			if s is None or not s.active:
				return
			self._abort(s)

	# ------------------------------------------------------------------
	# Inputs
	# ------------------------------------------------------------------

	def set_inputs(self, reference: Optional[Locator], current: Optional[Locator]) -> None:
		with self._transaction():
			s = self._session
			if (
				s is not None
				and (s.active or s.status is SessionStatus.COMPLETE)
				and s.reference == reference
				and s.current == current
			):
				return
			self._last_inputs = (reference, current)
			self._open(reference, current)

	def retrigger(self) -> None:
		"""Start a fresh session on the last input pair, replacing any active one."""
		with self._transaction():
			if self._last_inputs is None:
				return
			self._open(*self._last_inputs)

	def close(self) -> None:
		self.abort()

	def _open(self, reference: Optional[Locator], current: Optional[Locator]) -> None:
		previous = self._session
		if previous is not None and previous.active:
			logger.info("Session %d superseded by new input pair", previous.id)
			self._abort(previous)
		s = Session(reference=reference, current=current, priority=self._priority)
		self._session = s
		if not reference or not current or reference == current:
			self._short_circuit(s)
		elif s.priority is Priority.FOREGROUND:
			self._start(s)
		else:
			s.timer = self._timer_factory(self.cfg.DEFER_DELAY_SECONDS, self._on_timer, args=(s,))
			s.timer.daemon = True
			s.timer.start()
			logger.debug("Session %d deferred by %.3fs", s.id, self.cfg.DEFER_DELAY_SECONDS)

	def _short_circuit(self, s: Session) -> None:
		s.started = True
		if not s.reference:
			self._set_status(s, SessionStatus.COMPLETE)
			self._enqueue(s, None)
			return
		self._runner(lambda: self._deliver_reference(s))

	def _deliver_reference(self, s: Session) -> None:
		try:
			image = self._image_loader(s.reference, timeout=self.cfg.FETCH_TIMEOUT)
		except AlignerError as e:
			self._fail(s, e)
			return
		except Exception as e:
			self._fail(s, LoadError("failed to load reference image: {}".format(e)))
			return
		with self._transaction():
			if self._stale(s):
				return
			self._set_status(s, SessionStatus.COMPLETE)
			self._enqueue(s, image)

	# ------------------------------------------------------------------
	# Stages
	# ------------------------------------------------------------------

	def _on_timer(self, s: Session) -> None:
		with self._transaction():
			if self._stale(s) or s.started:
				return
			s.timer = None
			self._start(s)

	def _start(self, s: Session) -> None:
		s.started = True
		_, token = self._loader.ensure_ready(lambda: self._on_engine_ready(s), lambda e: self._fail(s, e))
		if token is not None and s.active:
			logger.info("Session %d waiting for the computer-vision engine", s.id)
			s.loader_token = token

	def _on_engine_ready(self, s: Session) -> None:
		with self._transaction():
			if self._stale(s):
				return
			s.loader_token = None
			self._set_status(s, SessionStatus.LOADING_IMAGES)
			self._runner(lambda: self._ingest(s))

	def _ingest(self, s: Session) -> None:
		try:
			reference = self._image_loader(s.reference, timeout=self.cfg.FETCH_TIMEOUT)
			current = self._image_loader(s.current, timeout=self.cfg.FETCH_TIMEOUT)
			reference, current = normalize_pair(
				reference, current, max_dimension=self.cfg.MAX_DIMENSION, quality=self.cfg.JPEG_QUALITY
			)
		except AlignerError as e:
			self._fail(s, e)
			return
		except Exception as e:
			logger.warning("Session %d: unexpected ingestion failure", s.id, exc_info=True)
			self._fail(s, LoadError("failed to prepare images: {}".format(e)))
			return
		with self._transaction():
			if self._stale(s):
				return
			self._set_status(s, SessionStatus.ALIGNING)
			try:
				s.context = self._context_factory()
				s.context.submit(
					reference,
					current,
					on_success=lambda image: self._complete(s, image),
					on_failure=lambda e: self._fail(s, e),
					on_stage=lambda stage: self._on_stage(s, stage),
				)
			except Exception as e:
				logger.error("Session %d: could not start execution context", s.id, exc_info=True)
				self._fail(s, ExecutionContextError("could not start execution context: {}".format(e)))

	def _on_stage(self, s: Session, stage: str) -> None:
		with self._transaction():
			if self._stale(s):
				return
			if stage == STAGE_DIFFING and s.status is SessionStatus.ALIGNING:
				self._set_status(s, SessionStatus.DIFFING)

	def _complete(self, s: Session, image: Image) -> None:
		with self._transaction():
			if self._stale(s):
				return
			s.context = None
			self._set_status(s, SessionStatus.COMPLETE)
			self._enqueue(s, image)

	def _fail(self, s: Session, error: AlignerError) -> None:
		with self._transaction():
			if self._stale(s):
				return
			if s.context is not None:
				s.context.cancel()
				s.context = None
			s.error = error.message
			logger.warning("Session %d failed (%s): %s", s.id, error.kind, error.message)
			self._set_status(s, SessionStatus.ERROR)
			self._enqueue(s, None)

	def _abort(self, s: Session) -> None:
		if s.timer is not None:
			s.timer.cancel()
			s.timer = None
		self._loader.discard(s.loader_token)
		s.loader_token = None
		if s.context is not None:
			s.context.cancel()
			s.context = None
		self._set_status(s, SessionStatus.ABORTED)
		self._enqueue(s, None)

	# ------------------------------------------------------------------
	# Bookkeeping
	# ------------------------------------------------------------------

	def _stale(self, s: Session) -> bool:
		if self._session is not s or not s.active:
			logger.debug("Session %d: ignoring stale callback", s.id)
			return True
		return False

	def _set_status(self, s: Session, status: SessionStatus) -> None:
		logger.info("Session %d: %s -> %s", s.id, s.status.name, status.name)
		s.status = status

	def _enqueue(self, s: Session, result: Optional[Image]) -> None:
		if s.delivered:
			return
		s.delivered = True
		self._outbox.append((s, result))

	@contextmanager
	def _transaction(self) -> Iterator[None]:
		# on_result runs only after the outermost holder has released the lock,
		# and queued deliveries go out even when the body raised
		deliveries: List[Tuple[Session, Optional[Image]]] = []
		try:
			with self._lock:
				self._depth += 1
				try:
					yield
				finally:
					self._depth -= 1
					if self._depth == 0:
						deliveries, self._outbox = self._outbox, []
		finally:
			for s, result in deliveries:
				self._emit(s, result)

	def _emit(self, s: Session, result: Optional[Image]) -> None:
		if self._on_result is None:
			return
		try:
			self._on_result(result)
		except Exception:
			logger.exception("Session %d: on_result callback raised", s.id)
