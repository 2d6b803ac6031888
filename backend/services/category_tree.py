"""
Category hierarchy walks over an id index.

Walks are iterative and track visited ids, so a corrupted parent chain that
loops back on itself ends the walk instead of recursing forever.
"""
from collections import deque
from typing import Dict, Iterable, List, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Category
from utils.cache import CacheService, category_key


class CategoryIndex:
    def __init__(self, parents: Dict[uuid.UUID, Optional[uuid.UUID]]):
        self.parents = parents
        self.children: Dict[uuid.UUID, List[uuid.UUID]] = {}
        for category_id, parent_id in parents.items():
            if parent_id is not None:
                self.children.setdefault(parent_id, []).append(category_id)

    @classmethod
    def from_rows(cls, rows: Iterable) -> "CategoryIndex":
        return cls({row.id: row.parent_id for row in rows})

    def descendants(self, root_id: uuid.UUID) -> List[uuid.UUID]:
        """Breadth-first ids below ``root_id``, excluding the root."""
        found: List[uuid.UUID] = []
        seen = {root_id}
        queue = deque(self.children.get(root_id, []))
        while queue:
            category_id = queue.popleft()
            if category_id in seen:
                continue
            seen.add(category_id)
            found.append(category_id)
            queue.extend(self.children.get(category_id, []))
        return found

    def ancestors(self, category_id: uuid.UUID) -> List[uuid.UUID]:
        """Parent chain from the immediate parent up to the root."""
        chain: List[uuid.UUID] = []
        seen = {category_id}
        parent_id = self.parents.get(category_id)
        while parent_id is not None and parent_id not in seen:
            chain.append(parent_id)
            seen.add(parent_id)
            parent_id = self.parents.get(parent_id)
        return chain


async def load_category_index(session: AsyncSession) -> CategoryIndex:
    result = await session.execute(select(Category.id, Category.parent_id))
    return CategoryIndex.from_rows(result.all())


async def invalidate_category_subtree(session: AsyncSession, cache: CacheService, category_id: uuid.UUID) -> List[uuid.UUID]:
    """Drop cached entries for a category and everything beneath it."""
    index = await load_category_index(session)
    affected = [category_id, *index.descendants(category_id)]
    await cache.invalidate_many(*(category_key(affected_id) for affected_id in affected))
    return affected
