import asyncio
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from canarypilot.web.backend.api import router as api_router
from canarypilot.web.backend.hub import SessionFactory, SessionHub
from canarypilot.web.backend.socket import router as socket_router

if os.name == "nt":
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

PORT = 8680


def create_app(session_factory: Optional[SessionFactory] = None) -> FastAPI:
    """Build the backend app. session_factory overrides how sessions are made (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        hub = SessionHub(session_factory)
        # Created on the server loop so its timers run there
        hub.reset()
        app.state.hub = hub
        yield
        app.state.hub.shutdown()

    app = FastAPI(title="canarypilot Release API", lifespan=lifespan)

    # Allow CORS for local development (frontend usually on :5173)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api")
    app.include_router(socket_router)

    @app.get("/")
    def health_check():
        return {"status": "ok", "service": "canarypilot-backend"}

    return app


load_dotenv()
app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
