"""
MAIN API - FastAPI application for the conversational lead funnel

ROUTES:
- POST   /chat                      submit-message
- GET    /session/{session_id}      fetch-session
- POST   /survey                    submit-survey
- GET    /health
- GET    /security/stats            admin (x-api-key)
- DELETE /security/bans/{ban_key}   admin (x-api-key)

All FunnelError subclasses are rendered by ONE handler as
{success: false, error, category, ...extras} with their own status code.
A maintenance sweep runs in the background for the whole app lifetime.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .abuse_monitor import AbuseMonitor
from .auth import get_admin_api_key
from .ban_manager import BanManager
from .config import LOG_LEVEL, RATE_LIMIT_POLICIES, SWEEP_INTERVAL_S
from .errors import FunnelError, RateLimited
from .funnel_service import FunnelService
from .identity import derive_identity, mask_id
from .interpreter import build_interpreter
from .models import ChatRequest, ChatResponse, SessionView, SurveyRequest, SurveyResponse
from .notifier import LeadNotifier
from .rate_limiter import RateLimiter
from .session_store import SessionStore
from .state_machine import ConversationStateMachine

logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def build_service() -> FunnelService:
    """One instance of every store per process."""
    return FunnelService(
        rate_limiter=RateLimiter(RATE_LIMIT_POLICIES),
        abuse_monitor=AbuseMonitor(),
        ban_manager=BanManager(),
        session_store=SessionStore(),
        state_machine=ConversationStateMachine(build_interpreter()),
        notifier=LeadNotifier(),
    )


async def _maintenance_loop(service: FunnelService, interval_s: float):
    while True:
        await asyncio.sleep(interval_s)
        try:
            service.run_maintenance()
        except Exception as e:
            logger.error(f"❌ Maintenance sweep failed: {type(e).__name__}: {e}", exc_info=True)


def create_app(service: Optional[FunnelService] = None,
               sweep_interval_s: float = SWEEP_INTERVAL_S) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(_maintenance_loop(app.state.service, sweep_interval_s))
        logger.info(f"🚀 Lead funnel started (sweep every {sweep_interval_s}s)")
        yield
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            logger.info("Maintenance sweep stopped")
        await app.state.service.drain()

    app = FastAPI(title="Lead Funnel API", version=VERSION, lifespan=lifespan)
    app.state.service = service or build_service()

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FunnelError)
    async def funnel_error_handler(request: Request, exc: FunnelError):
        headers = exc.headers if isinstance(exc, RateLimited) else None
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {"field": ".".join(str(loc) for loc in err["loc"][1:]), "message": err["msg"]}
            for err in exc.errors()
        ]
        logger.warning(f"Invalid request on {request.url.path}: {len(details)} field errors")
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Requête invalide", "category": "invalid_request", "details": details},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        identity = derive_identity(request.client.host if request.client else None, request.headers)
        session_id = request.path_params.get("session_id")
        logger.error(
            f"❌ Unexpected error on {request.url.path} [internal_error] client={identity.masked} "
            f"session={mask_id(session_id)}: {exc}",
            exc_info=exc,
        )
        return JSONResponse(status_code=500, content={"success": False, "error": "Erreur serveur", "category": "internal_error"})

    def get_service(request: Request) -> FunnelService:
        return request.app.state.service

    def client_identity(request: Request, browser_id: Optional[str] = None):
        peer = request.client.host if request.client else None
        return derive_identity(peer, request.headers, browser_id)

    @app.post("/chat", response_model=ChatResponse)
    async def chat_handler(body: ChatRequest, request: Request, response: Response,
                           service: FunnelService = Depends(get_service)):
        """submit-message: one visitor message through the whole pipeline."""
        identity = client_identity(request, body.browserId)
        result, rate_headers = await service.submit_message(identity, body.sessionId, body.message)
        response.headers.update(rate_headers)
        return result

    @app.get("/session/{session_id}", response_model=SessionView)
    async def session_handler(session_id: str, request: Request,
                              service: FunnelService = Depends(get_service)):
        return await service.fetch_session(client_identity(request), session_id)

    @app.post("/survey", response_model=SurveyResponse)
    async def survey_handler(body: SurveyRequest, request: Request,
                             service: FunnelService = Depends(get_service)):
        return await service.submit_survey(client_identity(request), body.sessionId, body.surveyData)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "version": VERSION}

    @app.get("/security/stats")
    async def security_stats(request: Request, api_key: str = Depends(get_admin_api_key),
                             service: FunnelService = Depends(get_service)):
        return {"success": True, "stats": service.security_stats(client_identity(request))}

    @app.delete("/security/bans/{ban_key}")
    async def lift_ban(ban_key: str, request: Request, api_key: str = Depends(get_admin_api_key),
                       service: FunnelService = Depends(get_service)):
        lifted = service.lift_ban(client_identity(request), ban_key)
        return {"success": True, "lifted": lifted}

    return app


app = create_app()
