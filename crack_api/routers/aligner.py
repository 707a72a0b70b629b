from __future__ import annotations

import threading
from typing import Literal, Optional

from fastapi import APIRouter, HTTPException, Request, Response, status
from pydantic import BaseModel, Field

from crack_api.services.image_utils import Image, encode_png, to_data_url
from crack_api.services.session import SessionController


router = APIRouter(prefix="/aligner", tags=["aligner"])


class InputPair(BaseModel):
	reference: Optional[str] = Field(None, description="Locator of the first (reference) photo")
	current: Optional[str] = Field(None, description="Locator of the later photo")


class PriorityMode(BaseModel):
	mode: Literal["foreground", "background"]


class ResultSlot:
	"""Keeps the most recent value delivered by the controller for the result endpoint."""

	def __init__(self) -> None:
		self._lock = threading.Lock()
		self._image: Optional[Image] = None
		self.deliveries = 0

	def __call__(self, image: Optional[Image]) -> None:
		with self._lock:
			self._image = image
			self.deliveries += 1

	@property
	def image(self) -> Optional[Image]:
		with self._lock:
			return self._image

	def clear(self) -> None:
		with self._lock:
			self._image = None


def _controller(request: Request) -> SessionController:
	return request.app.state.controller


def _snapshot(request: Request) -> dict:
	controller = _controller(request)
	return {
		"status": controller.get_status(),
		"busy": controller.is_busy(),
		"priority": controller.priority.value,
		"has_result": request.app.state.results.image is not None,
	}


@router.post("/inputs", status_code=status.HTTP_202_ACCEPTED, summary="Set the photo pair to compare")
def set_inputs(pair: InputPair, request: Request):
	controller = _controller(request)
	if controller.inputs != (pair.reference, pair.current):
		request.app.state.results.clear()
	controller.set_inputs(pair.reference, pair.current)
	return _snapshot(request)


@router.put("/priority", summary="Switch between foreground and background scheduling")
def set_priority(body: PriorityMode, request: Request):
	_controller(request).set_priority_mode(body.mode)
	return _snapshot(request)


@router.get("/status", summary="Current session status")
def get_status(request: Request):
	return _snapshot(request)


@router.post("/abort", summary="Stop the active session")
def abort(request: Request):
	_controller(request).abort()
	return _snapshot(request)


@router.post("/retrigger", status_code=status.HTTP_202_ACCEPTED, summary="Re-run the last photo pair")
def retrigger(request: Request):
	request.app.state.results.clear()
	_controller(request).retrigger()
	return _snapshot(request)


@router.get("/result", summary="Latest overlay as PNG", response_class=Response)
def result(request: Request):
	image = request.app.state.results.image
	if image is None:
		raise HTTPException(status_code=404, detail="no result available ({})".format(_controller(request).get_status()))
	return Response(content=encode_png(image), media_type="image/png")


@router.get("/result/data-url", summary="Latest overlay as a PNG data URL")
def result_data_url(request: Request):
	image = request.app.state.results.image
	if image is None:
		raise HTTPException(status_code=404, detail="no result available ({})".format(_controller(request).get_status()))
	return {"width": image.width, "height": image.height, "data_url": to_data_url(image)}
