from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
import logging, time

from config import settings
from api.v1.router import router as v1_router
from services.observation_fetcher import start_fetcher, stop_fetcher
from services.weather import weather_service

logger = logging.getLogger("wby.server")
if not logger.handlers:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

def create_app() -> FastAPI:
    app = FastAPI(title=settings.app_name, version=settings.app_version)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        dur_ms = (time.perf_counter() - start) * 1000.0
        logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, dur_ms)
        return response

    @app.get("/", tags=["meta"])
    async def root():
        return {"name": settings.app_name, "version": settings.app_version}

    @app.get("/health", tags=["meta"])
    async def health():
        return JSONResponse({"status": "ok", "version": settings.app_version})

    app.include_router(v1_router)

    @app.on_event("startup")
    async def _startup():
        if settings.observation_fetch_enabled:
            logger.info("Observation fetcher enabled; starting...")
            await start_fetcher()
        else:
            logger.info("Observation fetcher disabled (set OBSERVATION_FETCH_ENABLED=true to enable).")

    @app.on_event("shutdown")
    async def _shutdown():
        await stop_fetcher()
        await weather_service.close()

    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=settings.port)
