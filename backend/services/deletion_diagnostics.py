"""
Read-only scan for rows that still point at a user.

Foreign keys are reflected from the live database rather than taken from the
models, so a referencing table added outside this codebase still shows up.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import uuid

from sqlalchemy import Uuid, column, func, inspect, select, table
from sqlalchemy.ext.asyncio import AsyncSession

from models import Product, User, Vendor

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


@dataclass(frozen=True)
class BlockingReference:
    table: str
    column: str
    count: int
    constraint: Optional[str] = None


@dataclass
class DeletionDiagnostics:
    user_id: uuid.UUID
    user_exists: bool
    is_vendor: bool = False
    vendor_product_count: int = 0
    blocking: List[BlockingReference] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def total_blocking_rows(self) -> int:
        return sum(reference.count for reference in self.blocking)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": str(self.user_id),
            "user_exists": self.user_exists,
            "is_vendor": self.is_vendor,
            "vendor_product_count": self.vendor_product_count,
            "blocking": [asdict(reference) for reference in self.blocking],
            "errors": list(self.errors),
        }


def user_foreign_keys(sync_connection) -> List[Tuple[str, str, Optional[str]]]:
    """(table, column, constraint) for every foreign key pointing at users."""
    inspector = inspect(sync_connection)
    references = []
    for table_name in inspector.get_table_names():
        for foreign_key in inspector.get_foreign_keys(table_name):
            if foreign_key.get("referred_table") != User.__tablename__:
                continue
            for column_name in foreign_key.get("constrained_columns", []):
                references.append((table_name, column_name, foreign_key.get("name")))
    return references


def reference_table(table_name: str, column_name: str):
    return table(table_name, column(column_name, Uuid()))


async def diagnose_user_references(session_factory: SessionFactory, user_id: uuid.UUID) -> DeletionDiagnostics:
    async with session_factory() as session:
        user_exists = (
            await session.execute(select(func.count()).select_from(User).where(User.id == user_id))
        ).scalar_one() > 0
        vendor_id = (
            await session.execute(select(Vendor.id).where(Vendor.user_id == user_id))
        ).scalar_one_or_none()
        product_count = 0
        if vendor_id is not None:
            product_count = (
                await session.execute(select(func.count()).select_from(Product).where(Product.vendor_id == vendor_id))
            ).scalar_one()

        connection = await session.connection()
        references = await connection.run_sync(user_foreign_keys)

    diagnostics = DeletionDiagnostics(
        user_id=user_id,
        user_exists=user_exists,
        is_vendor=vendor_id is not None,
        vendor_product_count=product_count,
    )

    # One session per count so a failing query cannot poison the others
    for table_name, column_name, constraint in references:
        referencing = reference_table(table_name, column_name)
        try:
            async with session_factory() as session:
                count = (
                    await session.execute(
                        select(func.count()).select_from(referencing).where(referencing.c[column_name] == user_id)
                    )
                ).scalar_one()
        except Exception as e:
            logger.warning(f"Could not count {table_name}.{column_name} for user {user_id}: {str(e)}")
            diagnostics.errors.append(f"{table_name}.{column_name}: {e}")
            continue
        if count:
            diagnostics.blocking.append(
                BlockingReference(table=table_name, column=column_name, count=count, constraint=constraint)
            )

    if diagnostics.blocking:
        summary = ", ".join(f"{ref.table}.{ref.column}={ref.count}" for ref in diagnostics.blocking)
        logger.info(f"User {user_id} still referenced by: {summary}")
    return diagnostics
