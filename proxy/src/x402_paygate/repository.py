# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db import ApiLog, Project, ProjectEndpoint, ProjectPaymentChain
from .errors import NotFoundError


@dataclass(frozen=True)
class ProxyTarget:
    project: Project
    endpoint: ProjectEndpoint
    networks: List[str]

    @property
    def price(self) -> Decimal:
        # Endpoint price falls back to the project default
        if self.endpoint.price is not None:
            return Decimal(self.endpoint.price)
        return Decimal(self.project.default_price)


def _path_pattern(path: str) -> "re.Pattern[str]":
    segments = [
        "[^/]+" if seg.startswith(":") else re.escape(seg) for seg in path.split("/")
    ]
    return re.compile("/".join(segments))


def _method_matches(endpoint: ProjectEndpoint, method: str) -> bool:
    return endpoint.method == "*" or endpoint.method.upper() == method.upper()


def match_endpoint(
    endpoints: Sequence[ProjectEndpoint], path: str, method: str
) -> Optional[ProjectEndpoint]:
    """Pick the active endpoint for a request path: exact path first, then `:param` patterns."""
    active = [e for e in endpoints if e.is_active and _method_matches(e, method)]
    for endpoint in active:
        if endpoint.path == path:
            return endpoint
    for endpoint in active:
        if ":" in endpoint.path and _path_pattern(endpoint.path).fullmatch(path):
            return endpoint
    return None


class ProxyRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def find_target(self, slug: str, path: str, method: str) -> ProxyTarget:
        async with self._session_factory() as session:
            project = (
                await session.execute(select(Project).where(Project.slug == slug))
            ).scalar_one_or_none()
            if project is None or not project.is_active:
                raise NotFoundError("Project not found")
            endpoints = (
                await session.execute(
                    select(ProjectEndpoint).where(ProjectEndpoint.project_id == project.id)
                )
            ).scalars().all()
            chains = (
                await session.execute(
                    select(ProjectPaymentChain).where(
                        ProjectPaymentChain.project_id == project.id,
                        ProjectPaymentChain.is_active.is_(True),
                    )
                )
            ).scalars().all()

        endpoint = match_endpoint(endpoints, path, method)
        if endpoint is None:
            raise NotFoundError("Endpoint not found for this path")
        return ProxyTarget(project=project, endpoint=endpoint, networks=[c.network for c in chains])

    async def create_audit_record(self, **fields: Any) -> str:
        async with self._session_factory.begin() as session:
            record = ApiLog(**fields)
            session.add(record)
            await session.flush()
            return record.id

    async def update_audit_record(self, record_id: str, **fields: Any) -> None:
        async with self._session_factory.begin() as session:
            await session.execute(update(ApiLog).where(ApiLog.id == record_id).values(**fields))

    async def get_audit_record(self, record_id: str) -> Optional[ApiLog]:
        async with self._session_factory() as session:
            return await session.get(ApiLog, record_id)
