import logging
import os
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from create_tables import create_tables
from database import SessionLocal

from modules.signing.job import start_expiry_sweep_job
from modules.documents.models import User, UserRole
from modules.auth.services.auth_service import AuthService
from modules.notifications.controllers.notification_controller import router as notification_router
from modules.documents.controllers.document_controller import router as document_router
from modules.signing.controllers.document_signing_controller import router as document_signing_router
from modules.signing.controllers.signing_controller import router as signing_router
from modules.auth.controllers.auth_controller import router as auth_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)

SEED_DEMO_DATA = os.getenv("SEED_DEMO_DATA", "false").lower() in ("1", "true", "yes")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # --- Startup logic ---
    logger.info("Starting signing service")
    create_tables()
    scheduler = start_expiry_sweep_job()
    if SEED_DEMO_DATA:
        _seed_demo_users()
    yield
    # --- Shutdown logic ---
    scheduler.shutdown(wait=False)
    logger.info("Signing service stopped")


def _seed_demo_users():
    """One user per role, for local testing."""
    with SessionLocal() as session:
        if session.query(User).count() > 0:
            logger.info("Demo users already present")
            return

        demo = [
            ("Group Admin", "admin@example.com", "admin123", UserRole.GROUP_ADMIN),
            ("Co-owner One", "owner1@example.com", "owner123", UserRole.CO_OWNER),
            ("Co-owner Two", "owner2@example.com", "owner123", UserRole.CO_OWNER),
            ("Staff Member", "staff@example.com", "staff123", UserRole.STAFF),
        ]
        session.add_all([
            User(
                name=name,
                email=email,
                password_hash=AuthService.get_password_hash(password),
                role=role,
                is_active=True
            )
            for name, email, password, role in demo
        ])
        session.commit()
        logger.info("Seeded demo users: %s", ", ".join(email for _, email, _, _ in demo))


app = FastAPI(
    title="Document Signing Service",
    description="Signature workflows over versioned PDF documents",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["Accept", "Content-Type", "Authorization", "Origin"],
    expose_headers=["X-Document-Hash"],
    max_age=86400,
)
# Routers
app.include_router(auth_router)
app.include_router(notification_router, prefix="/notifications", tags=["notifications"])
app.include_router(document_router, prefix="/documents", tags=["documents"])
app.include_router(document_signing_router)
app.include_router(signing_router)

if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
