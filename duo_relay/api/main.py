"""
Duo Relay - FastAPI Application

Main entry point for the Duo Relay server.
Provides REST endpoints for users, contacts and message history, and the
signaling websocket for live chat delivery, presence and call setup.
"""

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from fastapi.responses import FileResponse
from loguru import logger
from pathlib import Path

from duo_relay.core.config import load_config
from duo_relay.core.logs import setup_logging
from duo_relay.core.router import SignalingRouter
from duo_relay.api.routes.dependencies import get_router

_config = load_config()
setup_logging(_config.log_level)

app = FastAPI(
    title="Duo Relay",
    description="Real-time messaging and call-signaling relay for paired users",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[_config.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Get the project root directory
PROJECT_ROOT = Path(__file__).parent.parent.parent

# Built frontend, served when present
FRONTEND_DIR = PROJECT_ROOT / "frontend"

if FRONTEND_DIR.exists():
    app.mount("/static", StaticFiles(directory=str(FRONTEND_DIR)), name="static")
    if (FRONTEND_DIR / "assets").exists():
        app.mount(
            "/assets", StaticFiles(directory=str(FRONTEND_DIR / "assets")), name="assets"
        )


@app.get("/")
async def root():
    """Serve the frontend index.html"""
    index_path = FRONTEND_DIR / "index.html"
    if index_path.exists():
        return FileResponse(str(index_path))
    return {"message": "Duo Relay API", "docs": "/docs"}


@app.get("/api/health")
async def health():
    """Health check endpoint"""
    return {"status": "ok"}


@app.get("/api/presence")
async def presence(relay: SignalingRouter = Depends(get_router)):
    """User ids that currently have a live connection"""
    online = relay.presence.online_user_ids()
    return {"online": online, "count": len(online)}


# Include routers
from duo_relay.api.routes import users, contacts, messages, invite, signaling

app.include_router(users.router, prefix="/api/users", tags=["users"])
app.include_router(contacts.router, prefix="/api/contacts", tags=["contacts"])
app.include_router(messages.router, prefix="/api/messages", tags=["messages"])
app.include_router(invite.router, prefix="/api/invite", tags=["invite"])
app.include_router(signaling.router, tags=["signaling"])


def run() -> None:
    """Console entry point: serve the app with uvicorn"""
    import uvicorn

    cfg = load_config()
    logger.info(f"Starting Duo Relay on {cfg.host}:{cfg.port}")
    uvicorn.run(app, host=cfg.host, port=cfg.port, log_level=cfg.log_level.lower())


if __name__ == "__main__":
    run()
