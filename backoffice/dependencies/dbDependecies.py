from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Annotated
from backoffice.database.database import get_async_db

async_db_dependency = Annotated[AsyncSession, Depends(get_async_db)]
