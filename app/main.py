"""Main FastAPI application entry point."""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.errors import register_error_handlers
from app.api.routes import router
from app.config import get_settings
from app.database import engine, Base
from app.logging_config import configure_logging
# Import models to register them with SQLAlchemy Base
from app.models.domain import Entity, DocumentRecord, EmailVerificationToken, WebsiteVerificationChallenge
from app.models.audit import VerificationLogEntry

settings = get_settings()

configure_logging(settings.log_level)

# Create database tables
Base.metadata.create_all(bind=engine)

# Create FastAPI app
app = FastAPI(
    title="Entity Verification Service",
    description="Guards how institutions and organizations move from creation to verified.",
    version="0.1.0"
)

# Enable CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # For MVP - restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

# Include API routes
app.include_router(router, prefix="/api", tags=["Verification"])


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": settings.app_name}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
