"""Tag service - resolve tags and mutate client tag membership."""

from __future__ import annotations

import hashlib
import logging

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from database.db import db
from database.models import Client, Tag

logger = logging.getLogger(__name__)


def default_color(name: str) -> str:
    """Color for implicitly created tags, derived from the name."""
    return "#" + hashlib.md5(name.encode("utf-8")).hexdigest()[:6]


class TagService:
    async def get_tags(self, tag_ids: list[int]) -> list[Tag]:
        ids = _normalize_ids(tag_ids)
        if not ids:
            return []
        async with db.session() as session:
            result = await session.execute(select(Tag).where(Tag.id.in_(ids)).order_by(Tag.id))
            return list(result.scalars().all())

    async def resolve(
        self,
        *,
        tag_id: int | str | None = None,
        tag_name: str | None = None,
        create: bool = False,
    ) -> Tag | None:
        """
        Find a tag by id, else by unique name.

        With `create=True` a tag referenced by an unknown name is created.
        """
        async with db.session() as session:
            tag = None
            ids = _normalize_ids([tag_id]) if tag_id not in (None, "") else []
            if ids:
                tag = await session.get(Tag, ids[0])

            name = (tag_name or "").strip()
            if tag is None and name:
                result = await session.execute(select(Tag).where(Tag.name == name))
                tag = result.scalar_one_or_none()
                if tag is None and create:
                    tag = Tag(name=name, color=default_color(name))
                    session.add(tag)
                    await session.flush()
                    logger.info(f"Created tag id={tag.id} name={name!r}")
            return tag

    async def client_tag_ids(self, client_id: int) -> set[int]:
        async with db.session() as session:
            client = await session.get(Client, int(client_id), options=[selectinload(Client.tags)])
            if not client:
                return set()
            return {int(t.id) for t in client.tags}

    async def add_to_client(self, client_id: int, tag_ids: list[int]) -> list[Tag]:
        """Attach tags to a client without detaching others. Returns the tags attached."""
        ids = _normalize_ids(tag_ids)
        async with db.session() as session:
            client = await session.get(Client, int(client_id), options=[selectinload(Client.tags)])
            if not client or not ids:
                return []
            result = await session.execute(select(Tag).where(Tag.id.in_(ids)).order_by(Tag.id))
            tags = list(result.scalars().all())
            present = {int(t.id) for t in client.tags}
            for tag in tags:
                if int(tag.id) not in present:
                    client.tags.append(tag)
            logger.info(f"Tags added to client {client_id}: {[int(t.id) for t in tags]}")
            return tags

    async def remove_from_client(self, client_id: int, tag_ids: list[int]) -> list[Tag]:
        """Detach tags from a client. Returns the tags named in the request that exist."""
        ids = set(_normalize_ids(tag_ids))
        async with db.session() as session:
            client = await session.get(Client, int(client_id), options=[selectinload(Client.tags)])
            if not client or not ids:
                return []
            result = await session.execute(select(Tag).where(Tag.id.in_(ids)).order_by(Tag.id))
            tags = list(result.scalars().all())
            client.tags = [t for t in client.tags if int(t.id) not in ids]
            logger.info(f"Tags removed from client {client_id}: {sorted(ids)}")
            return tags


def _normalize_ids(values) -> list[int]:
    ids: list[int] = []
    for value in values or []:
        try:
            tag_id = int(value)
        except (TypeError, ValueError):
            continue
        if tag_id > 0 and tag_id not in ids:
            ids.append(tag_id)
    return ids
