"""Request dependencies shared by the route modules.

Functions:
    get_store(session): Wrap the request session in a SurveyStore.
    get_embedding_provider(request): Return the provider constructed at startup.
"""

from __future__ import annotations

from fastapi import Depends, Request
from sqlmodel.ext.asyncio.session import AsyncSession

from survey_prep.db.session import get_session
from survey_prep.services.embeddings import EmbeddingProvider
from survey_prep.services.store import SurveyStore


async def get_store(session: AsyncSession = Depends(get_session)) -> SurveyStore:
    return SurveyStore(session)


def get_embedding_provider(request: Request) -> EmbeddingProvider:
    return request.app.state.embedding_provider
