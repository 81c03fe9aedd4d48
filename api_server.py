"""
FastAPI server for the Rift escrow core
Wires the operations facade, background scheduler and HTTP routes together
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import Config
from database import create_tables, test_connection
from jobs.scheduler import RiftScheduler
from routes import dispute_routes, rift_routes
from services.external_services import HttpBlobStore, HttpPaymentProcessor
from services.rift_operations import RiftOperations
from utils.exception_handler import RiftError

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(operations: Optional[RiftOperations] = None, enable_scheduler: Optional[bool] = None) -> FastAPI:
    """Build the application; tests pass their own operations with fake collaborators"""
    run_scheduler = Config.ENABLE_SCHEDULER if enable_scheduler is None else enable_scheduler

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 Starting Rift escrow API")
        Config.log_environment_config()
        Config.validate_production_config()
        create_tables()
        if not test_connection():
            logger.error("❌ Database connection check failed at startup")

        if getattr(app.state, "operations", None) is None:
            app.state.operations = RiftOperations(HttpPaymentProcessor(), HttpBlobStore())

        scheduler = None
        if run_scheduler:
            scheduler = RiftScheduler(app.state.operations)
            scheduler.start()
        else:
            logger.info("⏸️ Background scheduler disabled")
        app.state.scheduler = scheduler

        yield

        if scheduler is not None:
            scheduler.stop()
        logger.info("🛑 Rift escrow API stopped")

    app = FastAPI(
        title="Rift Escrow API",
        description="Escrow transactions, proof vault, ledger and disputes",
        lifespan=lifespan,
    )
    app.state.operations = operations

    @app.exception_handler(RiftError)
    async def rift_error_handler(request: Request, exc: RiftError):
        if exc.http_status >= 500:
            logger.error(f"❌ {request.method} {request.url.path} failed: {exc}")
        else:
            logger.info(f"⚠️ {request.method} {request.url.path} rejected: {exc}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.get("/health")
    async def health_check():
        scheduler = getattr(app.state, "scheduler", None)
        return {
            "status": "ok",
            "service": "rift-escrow",
            "version": "1.0",
            "scheduler_jobs": scheduler.get_jobs() if scheduler else [],
        }

    app.include_router(rift_routes.router)
    app.include_router(rift_routes.vault_router)
    app.include_router(rift_routes.wallet_router)
    app.include_router(dispute_routes.router)
    app.include_router(dispute_routes.admin_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api_server:app", host="0.0.0.0", port=Config.PORT, log_level=Config.LOG_LEVEL.lower())
