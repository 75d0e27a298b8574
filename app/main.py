"""
MAIN API - Thin FastAPI surface over the engagement orchestrator

The counterparty must never see an error: malformed bodies and unexpected
failures are answered with a neutral acknowledgement.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import get_api_key
from .config import Settings
from .log_utils import configure_logging
from .models import IncomingRequest, TurnResponse
from .orchestrator import NEUTRAL_REPLY, Orchestrator

logger = logging.getLogger(__name__)

VERSION = "3.0.0"


def create_app(settings: Optional[Settings] = None, orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    settings = settings or (orchestrator.settings if orchestrator else Settings.from_env())
    configure_logging(settings.log_level)
    orchestrator = orchestrator or Orchestrator.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await orchestrator.notifier.drain()

    app = FastAPI(title="Scam Honeypot API", version=VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def malformed_body(request: Request, exc: RequestValidationError):
        logger.warning(f"Malformed request body: {exc.errors()[:1]}")
        return JSONResponse(TurnResponse(sessionId="", reply=NEUTRAL_REPLY).model_dump())

    @app.post("/", response_model=TurnResponse)
    async def root_handler(request: IncomingRequest, api_key: str = Depends(get_api_key)):
        """Root endpoint that forwards to the chat handler"""
        return await chat_handler(request, api_key)

    @app.post("/chat", response_model=TurnResponse)
    async def chat_handler(request: IncomingRequest, api_key: str = Depends(get_api_key)):
        try:
            return await orchestrator.handle_turn(request)
        except Exception as e:
            logger.exception(f"Error in chat_handler: {e}")
            return TurnResponse(sessionId=request.sessionId, reply=NEUTRAL_REPLY)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "version": VERSION, "strategy": orchestrator.strategy.name}

    @app.get("/session/{session_id}")
    async def get_session_info(session_id: str, api_key: str = Depends(get_api_key)):
        """Debug endpoint to view session state"""
        session = orchestrator.store.get(session_id)
        if not session:
            raise HTTPException(status_code=404, detail="Session not found")
        return session.to_persisted()

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000)
