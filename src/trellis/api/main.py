"""
FastAPI application for the Trellis web interface and JSON API.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.templating import Jinja2Templates

from trellis.api.routes import admin, automations, billing, crm, data, engagement, exchange, orgs, referrals
from trellis.config import get_settings
from trellis.exceptions import TrellisError
from trellis.models import init_db

logger = logging.getLogger(__name__)

# Setup templates
TEMPLATES_DIR = Path(__file__).parent.parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))


# ============================================================================
# Application Setup
# ============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    init_db()
    yield


async def handle_trellis_error(request: Request, exc: TrellisError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse({"detail": exc.message}, status_code=exc.status_code)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="Trellis API",
        description="Multi-tenant referral CRM with cross-organization referral exchange",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.debug,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(TrellisError, handle_trellis_error)

    # fixed paths such as /referrals/exchange must register before /referrals/{id}
    for module in (automations, orgs, crm, exchange, referrals, engagement, billing, data, admin):
        app.include_router(module.router)

    return app


app = create_app()


# ============================================================================
# Web UI
# ============================================================================
@app.get("/", response_class=HTMLResponse)
def serve_dashboard(request: Request):
    """Serve the dashboard page; it reads the JSON API with the stored user id."""
    settings = get_settings()
    return templates.TemplateResponse(
        request,
        "dashboard.html",
        {"app_name": settings.app_name},
    )


@app.get("/health")
def health():
    return {"status": "ok"}
