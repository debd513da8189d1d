"""memquery-server: HTTP API for memquery semantic message search."""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from memquery.server.auth import require_auth
from memquery.server.config import settings

logger = logging.getLogger("memquery_server")


def _init_memquery():
    """Initialize memquery with the configured embedding provider."""
    import memquery
    from memquery.config import MemqueryConfig
    from memquery.server.providers import create_embed

    config = MemqueryConfig(
        db_path=settings.db_path_resolved,
        embed_dims=settings.embed_dims,
        embed_model=settings.embed_model,
        default_search_limit=settings.default_search_limit,
        max_search_limit=settings.max_search_limit,
        mmr_lambda=settings.mmr_lambda,
        mmr_pool_multiplier=settings.mmr_pool_multiplier,
    )

    embed = create_embed(
        settings.embed_provider,
        api_key=settings.embed_api_key,
        model=settings.embed_model,
        base_url=settings.embed_base_url,
        dims=settings.embed_dims,
    )

    memquery.init(config=config, embed=embed)
    logger.info(
        "memquery initialized: db=%s, embed_dims=%d, embed=%s/%s",
        config.db_path, config.embed_dims, settings.embed_provider, settings.embed_model,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    _init_memquery()
    logger.info("memquery-server ready on %s:%d", settings.host, settings.port)
    yield
    logger.info("memquery-server shutting down")


app = FastAPI(
    title="memquery-server",
    description="HTTP API for memquery semantic message search",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if not settings.api_key else None,
    openapi_url="/openapi.json" if not settings.api_key else None,
)


# --- Register routers ---

from memquery.server.routers import messages, health  # noqa: E402

# Protected router, auth enforced via dependency injection
app.include_router(
    messages.router, prefix="/v1/sessions", tags=["messages"],
    dependencies=[Depends(require_auth)],
)

# Health router: /health is public, /stats is protected at the route level
app.include_router(health.router, prefix="/v1", tags=["health"])


def run():
    """Entry point for `memquery-server` CLI command."""
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    uvicorn.run(
        "memquery.server.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    run()
