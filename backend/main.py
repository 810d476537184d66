"""Party Hub — real-time room server for the party game."""

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import time
import uvicorn
import logging

import config
config.setup_logging()

from socket_manager import socket_manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s v%s on port %d", config.SERVER_NAME, config.SERVER_VERSION, config.PORT)
    socket_manager.start_sweep_loop()
    yield
    logger.info("Shutting down %s, closing %d connections",
                config.SERVER_NAME, len(socket_manager.sessions))
    await socket_manager.shutdown()


app = FastAPI(title="Party Hub", lifespan=lifespan)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await socket_manager.connect(websocket)


# --- CORS ---

if config.ALLOWED_ORIGINS.strip():
    origins = [o.strip() for o in config.ALLOWED_ORIGINS.split(",")]
else:
    origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET"],
    allow_headers=["Content-Type"],
)


@app.get("/")
async def root():
    return {"message": f"{config.SERVER_NAME} WebSocket Server v{config.SERVER_VERSION} is running"}


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        **socket_manager.stats(),
        "uptime": round(time.time() - socket_manager.started_at, 1),
    }


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT, reload=True)
