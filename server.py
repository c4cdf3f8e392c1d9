"""
ARDFTiming — Server entry point.

Starts the FastAPI server with the REST API under /api.
Usage:
    python server.py [--dev] [--port N]
    # or: uvicorn server:app --host 0.0.0.0 --port 8080 --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ardfcore.database import get_connection, get_db_path, init_db, migrate_db
from ardfapi.routes import router as api_router

logger = logging.getLogger("ardftiming")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: init database."""
    conn = get_connection()
    init_db(conn)
    migrate_db(conn)
    conn.close()
    logger.info("Database ready at %s", get_db_path())

    yield


app = FastAPI(title="ARDFTiming", lifespan=lifespan)

app.include_router(api_router, prefix="/api")


# ─── Main ────────────────────────────────────────────────────────────

PORT = 8080


def _is_port_in_use(port: int) -> bool:
    """Check if a TCP port is already in use."""
    import socket
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(("127.0.0.1", port))
            return False
        except OSError:
            return True


def _run_server(host: str = "0.0.0.0", port: int = PORT):
    import uvicorn
    config = uvicorn.Config("server:app", host=host, port=port, log_level="warning")
    uvicorn.Server(config).run()


if __name__ == "__main__":
    import sys

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    dev_mode = "--dev" in sys.argv
    port = PORT
    if "--port" in sys.argv:
        port = int(sys.argv[sys.argv.index("--port") + 1])

    if _is_port_in_use(port):
        print(f"Port {port} is in use — stop the other process or pass --port")
        sys.exit(1)

    print(f"ARDFTiming server — http://localhost:{port}/api/status")
    if dev_mode:
        import uvicorn
        uvicorn.run("server:app", host="0.0.0.0", port=port, reload=True)
    else:
        _run_server(port=port)
