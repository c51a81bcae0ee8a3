"""
Standalone FastAPI app wiring for Context Palace.
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

import core.config as config
from core.db import DB, init_db
from core.mcp import mcp_stream_app, MCPRouteNormalizerASGI
from core.services import memory_embeddings
from core.services.memory_hierarchy import run_cycle_audit_tick
from app.routes.health import router as health_router
from app.routes.root import router as root_router


cycle_audit_task = None


async def _cycle_audit_loop() -> None:
    if config.CYCLE_AUDIT_INTERVAL_SECONDS <= 0:
        return
    while True:
        await asyncio.sleep(config.CYCLE_AUDIT_INTERVAL_SECONDS)
        try:
            result = await asyncio.to_thread(run_cycle_audit_tick)
            if result.get("problems"):
                config.logger.warning(
                    "cycle_audit_problems",
                    extra={"problem_count": len(result["problems"])},
                )
        except Exception as exc:
            config.logger.warning(f"Cycle audit task error: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    global cycle_audit_task
    init_db()
    memory_embeddings.init_http_client()
    if config.CYCLE_AUDIT_INTERVAL_SECONDS > 0:
        cycle_audit_task = asyncio.create_task(_cycle_audit_loop())
    try:
        async with mcp_stream_app.lifespan(mcp_stream_app):
            yield
    finally:
        if cycle_audit_task:
            cycle_audit_task.cancel()
            try:
                await cycle_audit_task
            except asyncio.CancelledError:
                pass
        memory_embeddings.cleanup_http_client()
        if DB.engine:
            DB.engine.dispose()


app = FastAPI(title="Context Palace", redirect_slashes=False, lifespan=lifespan)

# Health and root endpoints
app.include_router(health_router)
app.include_router(root_router)

# Mount MCP streamable-http app
app.mount("/mcp/", mcp_stream_app)


# =============================================================================
# ASGI Application (module-level for production deployment)
# =============================================================================

asgi_app = MCPRouteNormalizerASGI(app)


def main() -> None:
    uvicorn.run(
        asgi_app,
        host=os.environ.get("CP_HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8080")),
    )


if __name__ == "__main__":
    main()
