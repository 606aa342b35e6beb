from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from .api.v1.endpoints import qc
from .config import get_settings
from .database import init_db

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up labqc...")
    init_db()
    yield
    logger.info("Shutting down labqc...")

app = FastAPI(
    title="labqc",
    description="Laboratory QC control registration with Westgard rule evaluation",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(qc.router, prefix="/api/v1")

@app.get("/")
async def root():
    return {
        "project": "labqc",
        "status": "operational",
        "description": "Laboratory QC control registration with Westgard rule evaluation"
    }

@app.get("/health")
async def health_check():
    return {"status": "healthy"}

@app.get("/api/v1/status")
async def api_status():
    return {
        "api_version": "v1",
        "status": "operational",
        "westgard_extended_rules": settings.westgard_extended_rules,
        "history_limit": settings.history_limit
    }
