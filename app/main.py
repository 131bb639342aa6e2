import logging

from fastapi import FastAPI
from dotenv import load_dotenv
from .config import settings
from .db import init_db_pool, close_db_pool
from .engine.routes import router as engine_router

load_dotenv()
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(title="Funnel Engine", version="0.1.0")
app.include_router(engine_router)

@app.on_event("startup")
async def _startup():
    await init_db_pool()

@app.on_event("shutdown")
async def _shutdown():
    await close_db_pool()

@app.get("/health")
async def health():
    return {"ok": True, "service": settings.service_name, "env": settings.env}
