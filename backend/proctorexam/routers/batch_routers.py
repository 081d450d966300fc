from fastapi import APIRouter, Depends, status
from typing import List
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from ..db import get_async_session
from ..dependencies import current_admin
from ..schemas.batch_schema import GenerateBatchesRequest, BatchRead, AdvanceResult
from ..services import batch_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Batches"])


@router.post("/exams/{exam_id}/batches/generate", response_model=List[BatchRead], status_code=status.HTTP_201_CREATED)
async def generate_batches(
    exam_id: UUID,
    payload: GenerateBatchesRequest,
    admin=Depends(current_admin),
    session: AsyncSession = Depends(get_async_session),
):
    batches = await batch_service.generate_batches(
        session, exam_id, payload.students, payload.batch_size, payload.start_time, actor_id=admin.id,
    )
    return [batch_service.batch_to_dict(b) for b in batches]


@router.get("/exams/{exam_id}/batches", response_model=List[BatchRead], dependencies=[Depends(current_admin)])
async def list_batches(exam_id: UUID, session: AsyncSession = Depends(get_async_session)):
    return [batch_service.batch_to_dict(b) for b in await batch_service.list_batches(session, exam_id)]


@router.post("/batches/{batch_id}/start", response_model=BatchRead)
async def start_batch(batch_id: UUID, admin=Depends(current_admin), session: AsyncSession = Depends(get_async_session)):
    batch = await batch_service.start_batch(session, batch_id, actor_id=admin.id)
    return batch_service.batch_to_dict(batch)


@router.post("/batches/{batch_id}/complete", response_model=BatchRead)
async def complete_batch(batch_id: UUID, admin=Depends(current_admin), session: AsyncSession = Depends(get_async_session)):
    batch = await batch_service.complete_batch(session, batch_id, actor_id=admin.id)
    return batch_service.batch_to_dict(batch)


@router.post("/batches/advance", response_model=AdvanceResult)
async def advance_batches(admin=Depends(current_admin), session: AsyncSession = Depends(get_async_session)):
    return await batch_service.advance_batches(session, actor_id=admin.id)
