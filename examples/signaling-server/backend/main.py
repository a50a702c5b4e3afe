"""
Call Signaling Server - Backend

A minimal CallHub deployment: one admin and any number of users per room,
chatting and negotiating audio, camera and screen links over /ws.
Run with: python main.py

All rooms live in memory and are lost on restart.
"""

import logging
import sys
import os

# Add the parent package to path for development
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "..", "python"))

from callhub import CallhubServer

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

server = CallhubServer()


# Create FastAPI app
app = server.app


if __name__ == "__main__":
    import uvicorn
    bind_host = os.environ.get("BIND_HOST", "127.0.0.1")
    bind_port = int(os.environ.get("BIND_PORT", "8000"))
    uvicorn.run(app, host=bind_host, port=bind_port)
