import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from crack_api.config import settings
from crack_api.routers.aligner import ResultSlot, router as aligner_router
from crack_api.services.session import SessionController

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def create_app(controller: Optional[SessionController] = None, results: Optional[ResultSlot] = None) -> FastAPI:
	app = FastAPI(title="Crack Watch - Aligner API", version="0.1.0")

	app.add_middleware(
		CORSMiddleware,
		allow_origins=settings.CORS_ORIGINS,
		allow_credentials=False,
		allow_methods=["*"],
		allow_headers=["*"],
	)

	results = results or ResultSlot()
	app.state.results = results
	app.state.controller = controller or SessionController(on_result=results)

	app.include_router(aligner_router)

	@app.get("/health", summary="Health check endpoint")
	def health_check() -> dict:
		return {"status": "healthy"}

	@app.on_event("shutdown")
	def shutdown_event() -> None:
		logger.info("Aborting active aligner session on shutdown")
		app.state.controller.close()

	return app


app = create_app()


if __name__ == "__main__":
	# Local dev server: uvicorn crack_api.main:app --reload
	import uvicorn

	uvicorn.run("crack_api.main:app", host="0.0.0.0", port=8000, reload=True)
