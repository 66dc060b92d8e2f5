import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Imports de l'application
from app.core.config import settings
from app.db import base as db_models
from app.db import session as db_session
from app.api.v2.api import api_router
from app.services.badge_session_service import badge_sessions

# --- Configuration du logging ---
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# --- Initialisation de l'application FastAPI ---
app = FastAPI(
    title="BadgeLife API V2",
    openapi_url="/api/v2/openapi.json"
)


def _sanitize_origin(origin: str | None) -> str | None:
    if not origin:
        return None
    value = origin.strip()
    if not value:
        return None
    if not value.startswith("http"):
        value = f"https://{value}"
    return value.rstrip("/")


def _build_cors_origins() -> list[str]:
    base_origins = {_sanitize_origin(o) for o in settings.BACKEND_CORS_ORIGINS}

    additional = os.getenv("ADDITIONAL_CORS_ORIGINS")
    if additional:
        for origin in additional.split(","):
            base_origins.add(_sanitize_origin(origin))

    allow_origins = sorted({origin for origin in base_origins if origin})
    logger.info("CORS origins configurés: %s", allow_origins)
    return allow_origins


# --- Configuration des Middlewares ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=_build_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["Content-Type", "X-User-Id"],
)

app.include_router(api_router, prefix="/api/v2")


# --- Événements de cycle de vie ---
@app.on_event("startup")
async def startup():
    logger.info("Vérification et création des tables de la base de données...")
    db_models.Base.metadata.create_all(bind=db_session.sync_engine)
    logger.info("✅ Les tables de la base de données sont prêtes.")


@app.on_event("shutdown")
async def shutdown():
    badge_sessions.close_all()


# --- Route Racine ---
@app.get("/")
def read_root():
    return {"message": "Welcome to BadgeLife API V2!"}
