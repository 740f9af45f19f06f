"""Metadata store for derived assets."""

import uuid
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from abrworker.modules.transcoding.models import DerivedAsset


class DerivedAssetRepository:
    """Repository for DerivedAsset database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        name: str,
        owner_id: Optional[str],
        job_id: str,
        url: str,
        thumbnail: str,
        manifest: Optional[str] = None,
    ) -> DerivedAsset:
        asset = DerivedAsset(
            name=name,
            owner_id=owner_id,
            job_id=job_id,
            url=url,
            thumbnail=thumbnail,
            manifest=manifest,
        )
        self.session.add(asset)
        await self.session.flush()
        return asset

    async def get_by_id(self, asset_id: uuid.UUID) -> Optional[DerivedAsset]:
        query = select(DerivedAsset).where(DerivedAsset.id == asset_id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_by_job(self, job_id: str) -> list[DerivedAsset]:
        """Get all records of a job, oldest first."""
        query = (
            select(DerivedAsset)
            .where(DerivedAsset.job_id == job_id)
            .order_by(DerivedAsset.created_at)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_by_owner(self, owner_id: str, limit: int = 50) -> list[DerivedAsset]:
        query = (
            select(DerivedAsset)
            .where(DerivedAsset.owner_id == owner_id)
            .order_by(DerivedAsset.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())


class MetadataStore(ABC):
    """Where the job driver records what it published."""

    @abstractmethod
    async def record_derived_asset(
        self,
        name: str,
        owner_id: Optional[str],
        asset_key: str,
        thumbnail_key: str,
        job_id: str,
        manifest_key: Optional[str] = None,
    ) -> uuid.UUID:
        """Record the derived asset of a job.

        A job has at most one record. Calling again for the same job_id,
        as a redelivered job does, returns the existing record untouched.

        Returns:
            ID of the job's record
        """


class SqlMetadataStore(MetadataStore):
    """MetadataStore backed by SQLAlchemy, one transaction per call."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def record_derived_asset(
        self,
        name: str,
        owner_id: Optional[str],
        asset_key: str,
        thumbnail_key: str,
        job_id: str,
        manifest_key: Optional[str] = None,
    ) -> uuid.UUID:
        async with self.session_maker() as session:
            async with session.begin():
                repo = DerivedAssetRepository(session)
                existing = await repo.list_by_job(job_id)
                if existing:
                    return existing[0].id
                asset = await repo.create(
                    name=name,
                    owner_id=owner_id,
                    job_id=job_id,
                    url=asset_key,
                    thumbnail=thumbnail_key,
                    manifest=manifest_key,
                )
                return asset.id
