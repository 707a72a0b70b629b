from __future__ import annotations

import logging
import multiprocessing as mp
import threading
from typing import Any, Callable, Optional, Tuple

import numpy as np

from crack_api.config import settings
from crack_api.services.alignment import AlignParams
from crack_api.services.errors import AlignerError, ExecutionContextError, error_from_message
from crack_api.services.image_utils import Image
from crack_api.services.pipeline import run_overlay

logger = logging.getLogger(__name__)

Task = Callable[..., Image]
OnSuccess = Callable[[Image], None]
OnFailure = Callable[[AlignerError], None]
OnStage = Callable[[str], None]


def _error_message(e: BaseException) -> Tuple[str, Optional[str], str]:
	if isinstance(e, AlignerError):
		return (e.kind, getattr(e, "reason", None), e.message)
	return (ExecutionContextError.kind, None, "{}: {}".format(type(e).__name__, e))


def _process_main(conn, task: Task, ref_pixels: np.ndarray, cur_pixels: np.ndarray, params: AlignParams) -> None:
	"""Entry point of the isolated process; talks to the parent only through `conn`."""

	def report(stage: str) -> None:
		conn.send(("stage", stage))

	try:
		result = task(Image.from_array(ref_pixels), Image.from_array(cur_pixels), params, report)
		conn.send(("ok", np.asarray(result.pixels)))
	except Exception as e:
		conn.send(("error",) + _error_message(e))
	finally:
		conn.close()


class ExecutionContext:
	"""
	Single-use background unit running alignment and differencing off the caller's thread.

	`submit` hands both images over (the process backend pickles them into a fresh
	process, so nothing is shared with the caller). Exactly one of `on_success` /
	`on_failure` fires, or neither if `cancel` wins the race. The unit tears itself
	down after its result or on cancel and cannot be reused.
	"""

	def __init__(
		self,
		task: Task = run_overlay,
		params: Optional[AlignParams] = None,
		backend: Optional[str] = None,
		start_method: Optional[str] = None,
		poll_interval: float = 0.05,
	) -> None:
		self.task = task
		self.params = params or AlignParams()
		self.backend = backend or settings.EXECUTION_BACKEND
		if self.backend not in ("process", "thread"):
			raise ValueError("Unknown execution backend: {}".format(self.backend))
		self.start_method = start_method or settings.MP_START_METHOD
		self.poll_interval = poll_interval
		self._lock = threading.Lock()
		self._submitted = False
		self._cancelled = threading.Event()
		self._finished = False
		self._process: Optional[Any] = None
		self._conn: Optional[Any] = None
		self._on_success: Optional[OnSuccess] = None
		self._on_failure: Optional[OnFailure] = None
		self._on_stage: Optional[OnStage] = None

	@property
	def done(self) -> bool:
		return self._finished or self._cancelled.is_set()

	def submit(
		self,
		reference: Image,
		current: Image,
		on_success: OnSuccess,
		on_failure: OnFailure,
		on_stage: Optional[OnStage] = None,
	) -> None:
		with self._lock:
			if self._submitted:
				raise RuntimeError("ExecutionContext is single-use")
			self._submitted = True
			if self._cancelled.is_set():
				return
			self._on_success = on_success
			self._on_failure = on_failure
			self._on_stage = on_stage
		if self.backend == "thread":
			threading.Thread(
				target=self._thread_main, args=(reference, current), name="aligner-context", daemon=True
			).start()
			return
		ctx = mp.get_context(self.start_method)
		recv_conn, send_conn = ctx.Pipe(duplex=False)
		process = ctx.Process(
			target=_process_main,
			args=(send_conn, self.task, np.asarray(reference.pixels), np.asarray(current.pixels), self.params),
			name="aligner-context",
			daemon=True,
		)
		with self._lock:
			if self._cancelled.is_set():
				recv_conn.close()
				send_conn.close()
				return
			try:
				process.start()
			except Exception:
				recv_conn.close()
				send_conn.close()
				raise
			self._conn = recv_conn
			self._process = process
		send_conn.close()
		threading.Thread(target=self._watch, name="aligner-context-watch", daemon=True).start()

	def cancel(self) -> None:
		with self._lock:
			if self._finished or self._cancelled.is_set():
				return
			self._cancelled.set()
			process = self._process
		# the watcher thread joins the process and closes the pipe
		if process is not None and process.is_alive():
			logger.debug("Terminating execution context pid=%s", process.pid)
			process.terminate()

	def _thread_main(self, reference: Image, current: Image) -> None:
		try:
			result = self.task(reference, current, self.params, self._stage)
		except Exception as e:
			logger.debug("Execution context task failed", exc_info=True)
			self._finish(failure=error_from_message(*_error_message(e)))
		else:
			self._finish(result=result)

	def _watch(self) -> None:
		conn = self._conn
		try:
			while not self._cancelled.is_set():
				if not conn.poll(self.poll_interval):
					continue
				try:
					msg = conn.recv()
				except (EOFError, OSError):
					if not self._cancelled.is_set():
						self._finish(failure=ExecutionContextError("execution context exited without a result"))
					return
				if msg[0] == "stage":
					self._stage(msg[1])
					continue
				if msg[0] == "ok":
					self._finish(result=Image.from_array(msg[1]))
				else:
					self._finish(failure=error_from_message(msg[1], msg[2], msg[3]))
				return
		finally:
			self._teardown()

	def _teardown(self) -> None:
		process, conn = self._process, self._conn
		if process is not None:
			process.join(timeout=1.0)
			if process.is_alive():
				process.terminate()
				process.join(timeout=1.0)
		if conn is not None:
			conn.close()

	def _stage(self, stage: str) -> None:
		if self.done or self._on_stage is None:
			return
		self._on_stage(stage)

	def _finish(self, result: Optional[Image] = None, failure: Optional[AlignerError] = None) -> None:
		with self._lock:
			if self._finished or self._cancelled.is_set():
				return
			self._finished = True
		if failure is not None:
			self._on_failure(failure)
		else:
			self._on_success(result)
