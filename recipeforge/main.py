# RecipeForge API Main Entry Point
import asyncio
import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from .infra.redis_client import close_redis
from .routers.dev import router as dev_router
from .routers.ready import router as ready_router
from .routers.recipes import router as recipes_router
from .routers.users import router as users_router
from .services.generation import orchestrator
from .services.maintenance import run_purge_loop
from .services.storage import media_root
from .settings import settings

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger("recipeforge")


@asynccontextmanager
async def lifespan(app: FastAPI):
    purge_task = None
    if settings.purge_enabled:
        purge_task = asyncio.create_task(run_purge_loop(), name="recipe-purge")
    yield
    if purge_task is not None:
        purge_task.cancel()
        await asyncio.gather(purge_task, return_exceptions=True)
    await orchestrator.shutdown()
    await close_redis()
    logger.info("Shutdown complete")


# Rate limiter (per-IP)
limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit_default])

app = FastAPI(title="RecipeForge API", version="0.1.0", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ready_router, prefix="/api", tags=["ready"])
app.include_router(users_router, prefix="/api", tags=["users"])
app.include_router(recipes_router, prefix="/api", tags=["recipes"])
app.include_router(dev_router, prefix="/api", tags=["dev"])

if settings.image_store == "local":
    app.mount("/media", StaticFiles(directory=str(media_root()), check_dir=False), name="media")
