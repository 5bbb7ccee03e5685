"""
ParkWise – FastAPI Application
Run: uvicorn main:app --host 0.0.0.0 --port 8000 --reload
"""
import os, sys
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
from loguru import logger

load_dotenv()

logger.remove()
logger.add(sys.stderr, level=os.getenv("LOG_LEVEL", "INFO"))

from database.models import init_db
from api.routes import router, get_store, get_assistant, get_errors

app = FastAPI(
    title="ParkWise API",
    description="Real-time parking management for owners, guards and customers",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api/v1")


@app.on_event("startup")
async def startup():
    logger.info("Initialising ParkWise …")
    init_db()
    logger.info("Database initialised ✓")
    get_errors()
    store = get_store()
    logger.info(f"Live sync ready ✓  ({len(store.subscription_keys)} subscriptions)")
    assistant = get_assistant()
    if assistant.online:
        logger.info("Guard assistant ready ✓")
    else:
        logger.warning("Guard assistant offline – fallback rules only")
    logger.info("ParkWise ready ✓  →  http://localhost:8000/docs")


@app.on_event("shutdown")
async def shutdown():
    get_store().close()
    logger.info("ParkWise stopped")


@app.get("/")
def root():
    return {
        "project": "ParkWise",
        "version": "1.0.0",
        "docs": "/docs",
        "api":  "/api/v1",
    }
