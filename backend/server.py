"""
JustTry CRM - API Backend

Démarre avec:
    uvicorn server:app --host 0.0.0.0 --port 8001 --reload
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from config import CORS_ORIGINS, DOCUMENTS_DIR, STRICT_PIPELINE_TRANSITIONS, client, db

# Configuration logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("justtry")

app = FastAPI(
    title="JustTry CRM",
    description="Lead pipelines, approvals and loan disbursements",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ==================== IMPORT DES ROUTES ====================

from routes import auth, users, leads, stats

app.include_router(auth.router, prefix="/api")
app.include_router(users.router, prefix="/api")
app.include_router(leads.router, prefix="/api")
app.include_router(stats.router, prefix="/api")


@app.get("/")
async def root():
    return {
        "name": "JustTry CRM API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs"
    }


@app.get("/api/health")
async def health():
    return {"status": "healthy"}


# ==================== STARTUP / SHUTDOWN ====================

@app.on_event("startup")
async def startup():
    logger.info(f"JustTry CRM started | strict_transitions={STRICT_PIPELINE_TRANSITIONS}")

    from services.lead_store import LeadStore

    await LeadStore(db).ensure_indexes()
    await db.users.create_index("id", unique=True)
    await db.users.create_index("email", unique=True)
    await db.sessions.create_index("token")
    await db.sessions.create_index("expires_at")
    await db.event_log.create_index("created_at")
    await db.event_log.create_index("entity_id")

    DOCUMENTS_DIR.mkdir(parents=True, exist_ok=True)
    logger.info("MongoDB indexes ready")


@app.on_event("shutdown")
async def shutdown():
    client.close()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
