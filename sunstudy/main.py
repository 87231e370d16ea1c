import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sunstudy.config import CORS_ORIGINS
from sunstudy.routers.sessions import router as sessions_router

logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s", datefmt="%H:%M:%S")
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
	app = FastAPI(title="Sun Study - Exposure Heat Map API", version="0.1.0")
	app.add_middleware(
		CORSMiddleware,
		allow_origins=CORS_ORIGINS,
		allow_credentials=False,
		allow_methods=["GET", "POST", "DELETE"],
		allow_headers=["*"],
	)
	app.include_router(sessions_router)
	logger.info("Sun study API ready (CORS origins: %s)", ", ".join(CORS_ORIGINS))
	return app


app = create_app()


if __name__ == "__main__":
	# uvicorn sunstudy.main:app --reload
	import uvicorn

	uvicorn.run("sunstudy.main:app", host="0.0.0.0", port=8000, reload=True)
