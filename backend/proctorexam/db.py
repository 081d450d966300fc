from collections.abc import AsyncGenerator
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from fastapi import Depends

from .config import DATABASE_URL, SCHEMA_SEARCH_PATH, SQL_ECHO


class Base(DeclarativeBase):
    pass


# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in dev and tests).
# One instance per column: the Mutable* wrappers key their tracking on the type object.
def json_type():
    return JSON().with_variant(JSONB(), "postgresql")


def _connect_args(url: str) -> dict:
    if url.startswith("postgresql") and SCHEMA_SEARCH_PATH:
        return {"server_settings": {"search_path": SCHEMA_SEARCH_PATH}}
    return {}


engine = create_async_engine(
    DATABASE_URL,
    connect_args=_connect_args(DATABASE_URL),
    echo=SQL_ECHO,
)
async_session_maker = async_sessionmaker(engine, expire_on_commit=False)


async def create_db_and_tables(bind=None):

    from proctorexam.models import (  # noqa: F401
        user_model, exam_model, question_model, exam_session_model,
        batch_model, submission_model, audit_model,
    )

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        yield session


async def get_user_db(session: AsyncSession = Depends(get_async_session)):
    from proctorexam.models.user_model import User
    from fastapi_users.db import SQLAlchemyUserDatabase
    yield SQLAlchemyUserDatabase(session, User)
