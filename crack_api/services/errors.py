from __future__ import annotations

from typing import Optional


class AlignerError(Exception):
	"""Base class for every failure that ends a session in the error state."""

	kind = "aligner"

	def __init__(self, message: str) -> None:
		super().__init__(message)
		self.message = message


class CapabilityLoadError(AlignerError):
	kind = "capability"


class LoadError(AlignerError):
	kind = "load"


class AlignmentError(AlignerError):
	kind = "alignment"

	INSUFFICIENT_MATCHES = "insufficient-matches"
	DEGENERATE_HOMOGRAPHY = "degenerate-homography"

	def __init__(self, reason: str, message: Optional[str] = None) -> None:
		super().__init__(message or reason.replace("-", " "))
		self.reason = reason


class ExecutionContextError(AlignerError):
	kind = "execution"


def error_from_message(kind: str, reason: Optional[str], message: str) -> AlignerError:
	"""Rebuild an error sent back from the execution context as plain fields."""
	if kind == AlignmentError.kind:
		return AlignmentError(reason or AlignmentError.DEGENERATE_HOMOGRAPHY, message)
	if kind == LoadError.kind:
		return LoadError(message)
	if kind == CapabilityLoadError.kind:
		return CapabilityLoadError(message)
	return ExecutionContextError(message)
