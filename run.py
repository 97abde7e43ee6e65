"""
Start the chat server.

Usage:
    python run.py

Or with uvicorn directly:
    uvicorn main:app --host 0.0.0.0 --port 3001
"""

import uvicorn

from config import Config

if __name__ == "__main__":
    print(f"Chat server running on http://{Config.HOST}:{Config.PORT}")
    print(f"WebSocket endpoint at ws://{Config.HOST}:{Config.PORT}/ws")

    uvicorn.run(
        "main:app",
        host=Config.HOST,
        port=Config.PORT,
        reload=Config.DEBUG,
        log_level=Config.LOG_LEVEL.lower(),
    )
