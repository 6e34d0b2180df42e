"""FastAPI application exposing mailtriage account operations."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from mailtriage import __version__
from mailtriage.config import Config, load_config
from mailtriage.errors import AccountConnectionError, AccountNotFoundError, AccountValidationError
from mailtriage.service import AccountService, build_service
from mailtriage.structured_logger import StructuredLogger

logger = logging.getLogger(__name__)


class AddAccountRequest(BaseModel):
    """Body of POST /api/accounts. Fields are checked by the service."""

    email: str | None = None
    password: str | None = None
    host: str | None = None
    port: int | None = None
    secure: bool | None = None


class ReconnectRequest(BaseModel):
    """Body of POST /api/accounts/reconnect."""

    email: str | None = None
    password: str | None = None


def resolve_config(config_path: str | Path | None = None) -> Config:
    """Load config from the given path, $MAILTRIAGE_CONFIG, or defaults."""
    if config_path:
        return load_config(config_path)
    if os.environ.get("MAILTRIAGE_CONFIG"):
        return load_config(os.environ["MAILTRIAGE_CONFIG"])
    return Config()


def create_app(
    config_path: str | Path | None = None,
    service: AccountService | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = resolve_config(config_path)
    audit = StructuredLogger(config.logging.audit_file)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the service on startup and stop all sessions on shutdown."""
        if getattr(app.state, "service", None) is None:
            app.state.service = build_service(config, audit)
        audit.log_startup({
            "version": __version__,
            "ollama_url": config.ollama.base_url,
            "ollama_model": config.ollama.model,
            "saved_accounts": len(app.state.service.list_saved_configs()),
        })
        logger.info("Account configurations loaded. Use POST /api/accounts/reconnect to restore connections.")

        yield

        await app.state.service.shutdown()
        audit.log_shutdown("normal")

    app = FastAPI(
        title="mailtriage",
        description="Multi-account email sync and categorization",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app)

    return app


def _service(request: Request) -> AccountService:
    return request.app.state.service


def register_routes(app: FastAPI) -> None:
    """Register all API routes."""

    @app.get("/api/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok", "version": __version__}

    @app.post("/api/accounts", status_code=202)
    async def add_account(body: AddAccountRequest, request: Request):
        """Connect an account and start syncing it."""
        try:
            await _service(request).add_account(
                email=body.email,
                password=body.password,
                host=body.host,
                port=body.port,
                secure=body.secure,
            )
        except AccountValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except AccountConnectionError as e:
            raise HTTPException(status_code=502, detail=f"Failed to add account: {e}")
        return {"message": f"Account started syncing {body.email}"}

    @app.get("/api/accounts")
    async def list_accounts(request: Request):
        """List tracked accounts with live email counts."""
        return await _service(request).list_connected_accounts()

    @app.get("/api/accounts/saved")
    async def saved_accounts(request: Request):
        """List saved account configurations."""
        configs = _service(request).list_saved_configs()
        return {
            "message": "Saved account configurations",
            "accounts": [config.model_dump() for config in configs],
            "note": "Passwords are not stored. Use POST /api/accounts/reconnect to restore connections.",
        }

    @app.post("/api/accounts/reconnect")
    async def reconnect_account(body: ReconnectRequest, request: Request):
        """Reconnect a saved account with its password."""
        try:
            await _service(request).reconnect(email=body.email, password=body.password)
        except AccountValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except AccountNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except AccountConnectionError as e:
            raise HTTPException(status_code=502, detail=f"Failed to reconnect account: {e}")
        return {"message": f"Successfully reconnected {body.email}", "email": body.email}

    @app.delete("/api/accounts/{email}")
    async def disconnect_account(email: str, request: Request):
        """Tear down an account's session."""
        try:
            await _service(request).disconnect(email)
        except AccountNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"message": f"Disconnected {email}"}

    @app.get("/api/accounts/search/category")
    async def search_by_category(
        request: Request,
        category: str = "",
        account: str = "",
        folder: str = "",
    ):
        """Search stored emails by category, account and folder."""
        try:
            results = await _service(request).search_emails(category, account, folder)
        except AccountValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"emails": results}
