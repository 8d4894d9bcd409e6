"""
Shared dependencies for API routes.

Provides FastAPI dependency injection for:
- AppConfig
- SignalingRouter (process-wide: it owns the presence registry)
- ChatStorage (the router's store)
"""

import threading
from typing import Optional

from fastapi import Depends, HTTPException
from loguru import logger

from duo_relay.core.config import AppConfig, load_config
from duo_relay.core.errors import RelayError, StorageError
from duo_relay.core.router import SignalingRouter
from duo_relay.core.storage import ChatStorage


_router: Optional[SignalingRouter] = None
_router_lock = threading.Lock()


def get_config() -> AppConfig:
    return load_config()


def get_router() -> SignalingRouter:
    """Get the process-wide SignalingRouter, building it on first use.

    Presence is process-local, so every connection and request must share
    one router instance.
    """
    global _router
    with _router_lock:
        if _router is None:
            cfg = load_config()
            storage = ChatStorage(cfg.db_path, cfg.max_message_length)
            _router = SignalingRouter(storage, config=cfg)
            logger.info(f"Signaling router ready (store: {cfg.db_path})")
        return _router


def get_storage(router: SignalingRouter = Depends(get_router)) -> ChatStorage:
    return router.storage


def http_error(error: RelayError, action: str) -> HTTPException:
    """Translate a relay error into an HTTPException.

    Store failures are logged and reported with a generic message.
    """
    if isinstance(error, StorageError):
        logger.error(f"{action} failed: {error.message}")
        return HTTPException(status_code=500, detail=f"Failed to {action}")
    return HTTPException(status_code=error.status_code, detail=error.message)
