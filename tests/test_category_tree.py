import uuid

from models import Category
from services.category_tree import CategoryIndex, invalidate_category_subtree
from utils.cache import CacheService, category_key
from test_cache import FakeRedis


def _ids(count):
    return [uuid.uuid4() for _ in range(count)]


class TestCategoryIndex:
    def test_descendants_breadth_first(self):
        root, a, b, a1, a2 = _ids(5)
        index = CategoryIndex({root: None, a: root, b: root, a1: a, a2: a})

        found = index.descendants(root)

        assert set(found) == {a, b, a1, a2}
        assert set(found[:2]) == {a, b}
        assert index.descendants(a1) == []

    def test_ancestors(self):
        root, a, a1 = _ids(3)
        index = CategoryIndex({root: None, a: root, a1: a})
        assert index.ancestors(a1) == [a, root]
        assert index.ancestors(root) == []

    def test_cycles_terminate(self):
        a, b, c = _ids(3)
        index = CategoryIndex({a: c, b: a, c: b})
        assert set(index.descendants(a)) == {b, c}
        assert set(index.ancestors(a)) == {b, c}


class TestSubtreeInvalidation:
    async def test_drops_cached_entries_for_subtree_only(self, seed, session_factory):
        root = Category(id=uuid.uuid4(), name="Food")
        await seed.add(root)
        child = Category(id=uuid.uuid4(), name="Grains", parent_id=root.id)
        sibling = Category(id=uuid.uuid4(), name="Clothing")
        await seed.add(child, sibling)

        client = FakeRedis()
        cache = CacheService(key_prefix="t", client=client)
        for category in (root, child, sibling):
            await cache.set(category_key(category.id), {"name": category.name}, 60)

        async with session_factory() as session:
            affected = await invalidate_category_subtree(session, cache, root.id)

        assert set(affected) == {root.id, child.id}
        assert await cache.get(category_key(root.id)) is None
        assert await cache.get(category_key(child.id)) is None
        assert await cache.get(category_key(sibling.id)) == {"name": "Clothing"}
