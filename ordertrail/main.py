"""Main FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import sessionmaker

from ordertrail.api.routes import router
from ordertrail.config import Settings, settings as default_settings
from ordertrail.database import Base, SessionLocal
# Import models to register them with SQLAlchemy Base
from ordertrail.models.audit import AuditLogBlob
from ordertrail.models.domain import ServiceOrder
from ordertrail.services.tracker import ChangeTracker


def create_app(session_factory: Optional[sessionmaker] = None, settings: Settings = default_settings) -> FastAPI:
    """Build the application around one ChangeTracker bound to ``session_factory``."""
    session_factory = session_factory or SessionLocal

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    # Create database tables
    Base.metadata.create_all(bind=session_factory.kw["bind"])

    tracker = ChangeTracker(session_factory, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await tracker.close()

    app = FastAPI(
        title="OrderTrail - Service Order Change Tracking",
        description="Audit log, stage timelines and optimistic stage moves for service orders.",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.tracker = tracker

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in settings.cors_origins.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API routes
    app.include_router(router, prefix="/api", tags=["OrderTrail"])

    @app.get("/health")
    def health_check():
        return {
            "status": "healthy",
            "service": "OrderTrail",
            "audit_entries": len(app.state.tracker.store)
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
