"""
FastAPI application for contractor invoicing.
"""
import logging
import os
import secrets
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware

from src.shared.logging_config import configure_logging

_DATA_ROOT = Path(os.environ.get("INVOICING_DATA_ROOT", "./data"))

log = logging.getLogger(__name__)


def _get_session_secret() -> str:
    """Get or generate a persistent session secret key."""
    env_key = os.environ.get("SESSION_SECRET")
    if env_key:
        return env_key
    _DATA_ROOT.mkdir(parents=True, exist_ok=True)
    key_file = _DATA_ROOT / ".session_key"
    if key_file.exists():
        return key_file.read_text().strip()
    key = secrets.token_hex(32)
    key_file.write_text(key)
    return key


def _run_attachment_purge():
    """Purge attachments left marked for removal by a previous run."""
    try:
        from src.web.dependencies import get_attachment_store
        purged = get_attachment_store().purge_pending()
        if purged:
            log.info("Startup purge: removed %d superseded attachment(s)", purged)
    except Exception as e:
        log.warning("Startup attachment purge failed: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown events."""
    _run_attachment_purge()
    yield


app = FastAPI(title="Contractor Invoicing", version="0.1.0", lifespan=lifespan)
app.add_middleware(SessionMiddleware, secret_key=_get_session_secret())

# Import and include routers
from src.web.routers import invoices, session  # noqa: E402

app.include_router(session.router)
app.include_router(invoices.router)


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


def main():
    configure_logging()
    uvicorn.run(
        "src.web.app:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
    )


if __name__ == "__main__":
    main()
