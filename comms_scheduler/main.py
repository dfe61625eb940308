from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from comms_scheduler.config import get_settings
from comms_scheduler.database import init_db
from comms_scheduler.middleware.correlation import CorrelationMiddleware
from comms_scheduler.routes import jobs, recurring_messages
from comms_scheduler.services.gateway import get_gateway
from comms_scheduler.utils import metrics
from comms_scheduler.utils.logger import logger

settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version)
app.state.limiter = jobs.limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(CorrelationMiddleware)


# Startup: Initialize database
@app.on_event("startup")
async def startup_event():
    logger.info(f"Starting {settings.app_name}...")
    await init_db()
    logger.info("Scheduler API ready")


# Health check endpoint (minimal response to prevent information disclosure)
@app.get("/health")
async def health_check():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics_snapshot():
    snapshot = metrics.get_snapshot()
    snapshot["circuits"] = get_gateway().get_circuit_states()
    return snapshot


# Register routes
app.include_router(jobs.router, prefix="/api/background-jobs", tags=["Background Jobs"])
app.include_router(recurring_messages.router, prefix="/api/recurring-messages", tags=["Recurring Messages"])

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "comms_scheduler.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )
