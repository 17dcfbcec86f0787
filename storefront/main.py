import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import config
from .database import engine
from .errors import StorefrontError
from .models import Base
from .notification_consumer import start_notification_consumer
from .routers import catalog_router, checkout_router, measurement_router, order_router, settings_router
from .sweeper import start_sweeper_in_thread

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Storefront Order Service",
    description="Catalog, checkout, payment reconciliation and fulfilment for the storefront",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(catalog_router.router)
app.include_router(checkout_router.router)
app.include_router(order_router.router)
app.include_router(measurement_router.router)
app.include_router(settings_router.router)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": {"error": "internal_error", "message": "Something went wrong. Please try again."}},
    )


@app.on_event("startup")
def _startup() -> None:
    # Create database tables
    Base.metadata.create_all(bind=engine)

    if not config.ENABLE_BACKGROUND_WORKERS:
        logger.info("Background workers disabled")
        return
    start_sweeper_in_thread()
    if config.NOTIFICATION_TRANSPORT == "rabbitmq":
        start_notification_consumer()


@app.get("/")
def root():
    return {
        "service": "Storefront Order Service",
        "status": "running",
        "version": "1.0.0"
    }


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "service": "storefront"
    }
