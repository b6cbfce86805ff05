"""Sync Service - FastAPI application."""

import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

# Add shared module to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))
from shared.config import get_env, get_remote_store_url
from shared.db_operations import LocalStore
from shared.encryption import KeyVault
from services.sync_service.engine import SyncEngine
from services.sync_service.events import EventEmitter
from services.sync_service.notifications import NotificationService
from services.sync_service.remote_store import HttpRemoteStore, InMemoryRemoteStore, RemoteStore
from services.sync_service.scheduler import SmartSync, create_smart_sync_manager

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

# Global instances
local_store: Optional[LocalStore] = None
remote_store: Optional[RemoteStore] = None
vault: Optional[KeyVault] = None
engine: Optional[SyncEngine] = None
scheduler: Optional[SmartSync] = None
current_user_id: Optional[str] = None


def get_current_user() -> Optional[str]:
    return current_user_id


def build_remote_store() -> RemoteStore:
    """Use the HTTP remote store when configured, else an in-memory one."""
    url = get_remote_store_url()
    if url:
        logger.info(f"Using HTTP remote store at {url}")
        return HttpRemoteStore(url, api_token=get_env("REMOTE_STORE_TOKEN"))
    logger.warning("REMOTE_STORE_URL not set, using in-memory remote store")
    return InMemoryRemoteStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global local_store, remote_store, vault, engine, scheduler, current_user_id

    logger.info("Sync Service starting up...")

    local_store = LocalStore()
    local_store.create_tables()
    logger.info("Local store initialized")

    remote_store = build_remote_store()
    vault = KeyVault(get_env("NOTEPAD_VAULT_KEY"))
    current_user_id = get_env("NOTEPAD_USER_ID")

    emitter = EventEmitter()
    engine = SyncEngine(
        local_store=local_store,
        remote_store=remote_store,
        vault=vault,
        current_user=get_current_user,
        emitter=emitter,
        notification_service=NotificationService(),
    )
    scheduler = create_smart_sync_manager(local_store, engine, emitter)
    scheduler.start()
    logger.info("Sync engine and scheduler initialized")

    yield

    await scheduler.prepare_close()
    await engine.close()
    await remote_store.close()
    logger.info("Sync Service shutting down...")


# Create FastAPI application
app = FastAPI(
    title="Sync Service",
    description="Local-first page synchronization with encrypted remote storage",
    version="0.1.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling middleware
@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """Global error handling middleware."""
    try:
        response = await call_next(request)
        return response
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc)
            }
        )


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    db_healthy = False
    try:
        local_store.get_item("lastSyncTime")
        db_healthy = True
    except Exception as e:
        logger.error(f"Local store health check failed: {e}")

    return {
        "status": "healthy" if db_healthy else "degraded",
        "service": "sync_service",
        "version": "0.1.0",
        "vault": "unlocked" if vault.is_unlocked() else "locked",
        "authenticated": current_user_id is not None,
        "dependencies": {
            "local_store": "up" if db_healthy else "down",
        }
    }


# Request/Response models
class SyncRequest(BaseModel):
    """Request model for sync execution."""
    page_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    is_delete: bool = False


class SessionRequest(BaseModel):
    user_id: str


class UnlockRequest(BaseModel):
    key: str


class ContentChangeRequest(BaseModel):
    content: str


class SyncAllRequest(BaseModel):
    force_all: bool = False
    local_only: bool = False


@app.post("/api/v1/sync", status_code=status.HTTP_200_OK)
async def execute_sync(request: SyncRequest):
    """
    Run a sync job and return its outcome.

    Rejections (job already running, no user, locked vault) and failures are
    reported in the body with ``success: false``.
    """
    logger.info(f"Received sync request (page={request.page_id}, delete={request.is_delete})")
    return await engine.sync(request.page_id, request.metadata, request.is_delete)


@app.get("/api/v1/sync/status", status_code=status.HTTP_200_OK)
async def get_sync_status():
    return engine.get_sync_status()


@app.post("/api/v1/sync/abort", status_code=status.HTTP_200_OK)
async def abort_sync():
    return {"aborted": engine.abort_sync()}


@app.get("/api/v1/sync/errors", status_code=status.HTTP_200_OK)
async def get_sync_errors(limit: Optional[int] = None):
    return {"errors": engine.get_sync_error_log(limit)}


@app.post("/api/v1/session", status_code=status.HTTP_200_OK)
async def start_session(request: SessionRequest):
    global current_user_id
    current_user_id = request.user_id
    logger.info(f"User {request.user_id} signed in")
    return {"user_id": current_user_id}


@app.delete("/api/v1/session", status_code=status.HTTP_200_OK)
async def end_session():
    """Sign out; the vault is locked so a running job stops at its next safe point."""
    global current_user_id
    current_user_id = None
    vault.lock()
    return {"user_id": None}


@app.post("/api/v1/vault/unlock", status_code=status.HTTP_200_OK)
async def unlock_vault(request: UnlockRequest):
    try:
        vault.unlock(request.key)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid vault key: {e}"
        )
    return {"unlocked": True}


@app.post("/api/v1/vault/lock", status_code=status.HTTP_200_OK)
async def lock_vault():
    vault.lock()
    return {"unlocked": False}


@app.post("/api/v1/pages/{page_id}/content", status_code=status.HTTP_200_OK)
async def change_page_content(page_id: str, request: ContentChangeRequest):
    return await scheduler.handle_content_change(page_id, request.content)


@app.post("/api/v1/pages/{page_id}/sync", status_code=status.HTTP_200_OK)
async def force_page_sync(page_id: str, request: ContentChangeRequest):
    return await scheduler.force_sync(page_id, request.content)


@app.delete("/api/v1/pages/{page_id}", status_code=status.HTTP_200_OK)
async def delete_page(page_id: str):
    return await scheduler.handle_page_deletion(page_id)


@app.post("/api/v1/pages/sync-all", status_code=status.HTTP_200_OK)
async def sync_all_pages(request: SyncAllRequest):
    return await scheduler.sync_all(force_all=request.force_all, local_only=request.local_only)


@app.get("/api/v1/scheduler/metrics", status_code=status.HTTP_200_OK)
async def scheduler_metrics():
    return scheduler.get_metrics()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("SYNC_SERVICE_PORT", "8005"))
    uvicorn.run(app, host="0.0.0.0", port=port)
