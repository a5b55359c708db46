import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from coachpay import config, models  # noqa: F401
from coachpay.checkout import router as checkout_router
from coachpay.database import Base, engine
from coachpay.logging_config import configure_logging
from coachpay.routes import router
from coachpay.webhook import router as webhook_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info(f"Starting coaching payments service ({config.app_env()})")
    yield
    logger.info("Shutting down...")


app = FastAPI(title="Coaching Payments Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_allow_origins(),
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal Server Error"})


app.include_router(router)
app.include_router(checkout_router)
app.include_router(webhook_router)

Base.metadata.create_all(bind=engine)
