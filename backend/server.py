"""
Hairstyle Credits API

Run: uvicorn server:app --host 0.0.0.0 --port 8001
"""
from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from datetime import datetime, timezone
from pathlib import Path
import os
import logging

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from credits_ledger import __version__
from credits_ledger.routes import credits_router
from utils.environment import ENVIRONMENT

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Hairstyle Credits API", version=__version__)
api_router = APIRouter(prefix="/api")


@api_router.get("/")
async def root():
    return {"message": "Hairstyle Credits API", "version": __version__}


@api_router.get("/health")
async def health():
    return {
        "status": "healthy",
        "environment": ENVIRONMENT,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


api_router.include_router(credits_router)
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    # Fail fast if the database is unavailable
    from database import check_db_connection, db
    from credits_ledger.db_init import initialize

    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(f"Cannot start application - database connection failed: {db_error}")

    for line in await initialize(db):
        logger.info(line)
    logger.info(f"Hairstyle Credits API started ({ENVIRONMENT})")


@app.on_event("shutdown")
async def shutdown_db_client():
    from database import client
    client.close()
