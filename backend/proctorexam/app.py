from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi import Depends
from sqlalchemy.orm.exc import StaleDataError

from .routers import session_routers, batch_routers, monitor_routers, result_routers
from contextlib import asynccontextmanager, suppress
from .config import CORS_ORIGINS, LOG_LEVEL, SWEEP_INTERVAL_SECONDS
from .db import create_db_and_tables, async_session_maker
from .exceptions import ProctorError, ConcurrentModification
from .security import auth_backend, app_users
from .dependencies import users_router_permission
from .schemas.user_schema import UserCreate, UserRead, UserUpdate
from .services.batch_service import advance_batches
from .services.session_service import sweep_expired_sessions

import asyncio
import logging

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


async def _reconcile_forever(interval: int):
    # closes attempts nobody revisits after their deadline and moves batches along
    while True:
        await asyncio.sleep(interval)
        try:
            async with async_session_maker() as session:
                await sweep_expired_sessions(session)
                await advance_batches(session)
        except Exception:
            logger.exception("Periodic reconciliation failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # run once when app starts
    await create_db_and_tables()
    task = None
    if SWEEP_INTERVAL_SECONDS > 0:
        task = asyncio.create_task(_reconcile_forever(SWEEP_INTERVAL_SECONDS))
        logger.info("Expiry sweep every %ss", SWEEP_INTERVAL_SECONDS)
    yield
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

app = FastAPI(title="proctorexam", lifespan=lifespan)


app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,  # which sites can call this API
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ProctorError)
async def proctor_error_handler(request: Request, exc: ProctorError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# version check lost during an autoflush, outside commit_attempt
@app.exception_handler(StaleDataError)
async def stale_data_handler(request: Request, exc: StaleDataError):
    logger.warning("Concurrent modification on %s", request.url.path)
    return await proctor_error_handler(request, ConcurrentModification())


# Attach users router with small permission check. This router provides /users and /users/me
app.include_router(
    app_users.get_users_router(UserRead, UserUpdate),
    prefix="/users",
    tags=["users"],
    dependencies=[Depends(users_router_permission)],
)


app.include_router(session_routers.router, prefix="/api", tags=["Sessions"])
app.include_router(batch_routers.router, prefix="/api")
app.include_router(monitor_routers.router, prefix="/api")
app.include_router(result_routers.router, prefix="/api")

# Auth routers
app.include_router(app_users.get_auth_router(auth_backend), prefix="/auth/jwt", tags=["auth"])
app.include_router(app_users.get_register_router(UserRead, UserCreate), prefix="/auth", tags=["auth"])
app.include_router(app_users.get_verify_router(UserRead), prefix="/auth", tags=["auth"])
