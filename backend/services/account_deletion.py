"""
Account deletion.

Cleanup is declared as a graph of steps, each naming the steps that must run
before it. The graph is walked in topological order, every step in its own
transaction; a failing step is recorded and the walk continues. Adding a new
table that references users means adding a step and its edges.
"""
from dataclasses import dataclass, field
from graphlib import TopologicalSorter
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple
import logging
import uuid

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Executable

import config
from models import (
    BlacklistEntry,
    CartItem,
    ChatParticipant,
    ChatRoom,
    Driver,
    EmailVerification,
    FraudAnalysis,
    Message,
    Notification,
    Order,
    OrderEventRecord,
    OrderItem,
    Payment,
    PhoneVerification,
    Product,
    RateLimitViolation,
    Review,
    ReviewResponse,
    ReviewVote,
    SearchLog,
    SecurityEvent,
    SuspiciousActivity,
    User,
    UserBehavior,
    UserPreference,
    UserVerification,
    Vendor,
    VendorNotificationSettings,
    VendorTrustScore,
)
from services.deletion_diagnostics import DeletionDiagnostics, diagnose_user_references, reference_table
from utils.cache import CacheService, cart_key, orders_pattern
from utils.exceptions import AccountDeletionError, DependencyCleanupError, ProtectedAccountError
from utils.timeouts import translate_timeouts

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


@dataclass(frozen=True)
class DeletionContext:
    user_id: uuid.UUID
    email: Optional[str] = None
    phone: Optional[str] = None
    vendor_id: Optional[uuid.UUID] = None
    driver_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class CleanupStep:
    name: str
    build: Callable[[DeletionContext], Executable]
    after: Tuple[str, ...] = ()
    requires: Optional[str] = None

    def applies(self, context: DeletionContext) -> bool:
        return self.requires is None or getattr(context, self.requires) is not None


# Row selections shared by several steps

def customer_orders(ctx: DeletionContext):
    return select(Order.id).where(Order.customer_id == ctx.user_id)


def user_reviews(ctx: DeletionContext):
    return or_(Review.user_id == ctx.user_id, Review.order_id.in_(customer_orders(ctx)))


def user_review_ids(ctx: DeletionContext):
    return select(Review.id).where(user_reviews(ctx))


def rooms_created(ctx: DeletionContext):
    return select(ChatRoom.id).where(ChatRoom.created_by == ctx.user_id)


def vendor_products(ctx: DeletionContext):
    return select(Product.id).where(Product.vendor_id == ctx.vendor_id)


def vendor_orders(ctx: DeletionContext):
    return select(Order.id).where(Order.vendor_id == ctx.vendor_id)


def vendor_reviews(ctx: DeletionContext):
    return or_(
        Review.vendor_id == ctx.vendor_id,
        Review.product_id.in_(vendor_products(ctx)),
        Review.order_id.in_(vendor_orders(ctx)),
    )


def vendor_review_ids(ctx: DeletionContext):
    return select(Review.id).where(vendor_reviews(ctx))


def _delete(model, *criteria):
    return delete(model).where(*criteria).execution_options(synchronize_session=False)


def _detach(model, column_name: str, user_id: uuid.UUID):
    column = getattr(model, column_name)
    return update(model).where(column == user_id).values({column_name: None}).execution_options(synchronize_session=False)


CLEANUP_STEPS: List[CleanupStep] = [
    # Records with no dependents of their own
    CleanupStep("user_preferences", lambda c: _delete(UserPreference, UserPreference.user_id == c.user_id)),
    CleanupStep("user_behavior", lambda c: _delete(UserBehavior, UserBehavior.user_id == c.user_id)),
    CleanupStep("search_logs", lambda c: _delete(SearchLog, SearchLog.user_id == c.user_id)),
    CleanupStep("security_events", lambda c: _delete(SecurityEvent, SecurityEvent.user_id == c.user_id)),
    CleanupStep("security_events_resolver", lambda c: _detach(SecurityEvent, "resolved_by", c.user_id)),
    CleanupStep("fraud_analysis", lambda c: _delete(FraudAnalysis, FraudAnalysis.user_id == c.user_id)),
    CleanupStep("fraud_analysis_reviewer", lambda c: _detach(FraudAnalysis, "reviewed_by", c.user_id)),
    CleanupStep("user_verifications", lambda c: _delete(UserVerification, UserVerification.user_id == c.user_id)),
    CleanupStep("user_verifications_verifier", lambda c: _detach(UserVerification, "verified_by", c.user_id)),
    CleanupStep("suspicious_activities", lambda c: _delete(SuspiciousActivity, SuspiciousActivity.user_id == c.user_id)),
    CleanupStep("suspicious_activities_investigator", lambda c: _detach(SuspiciousActivity, "investigated_by", c.user_id)),
    CleanupStep("blacklist_author", lambda c: _detach(BlacklistEntry, "added_by", c.user_id)),
    CleanupStep("rate_limit_violations", lambda c: _delete(RateLimitViolation, RateLimitViolation.user_id == c.user_id)),
    CleanupStep(
        "phone_verifications",
        lambda c: _delete(PhoneVerification, PhoneVerification.phone == c.phone),
        requires="phone",
    ),
    CleanupStep(
        "email_verifications",
        lambda c: _delete(EmailVerification, EmailVerification.email == c.email),
        requires="email",
    ),

    # Review graph: votes and responses before reviews
    CleanupStep(
        "review_votes",
        lambda c: _delete(ReviewVote, or_(ReviewVote.user_id == c.user_id, ReviewVote.review_id.in_(user_review_ids(c)))),
    ),
    CleanupStep(
        "review_responses",
        lambda c: _delete(
            ReviewResponse,
            or_(ReviewResponse.user_id == c.user_id, ReviewResponse.review_id.in_(user_review_ids(c))),
        ),
    ),
    CleanupStep(
        "reviews",
        lambda c: _delete(Review, user_reviews(c)),
        after=("review_votes", "review_responses"),
    ),

    # Orders placed by the user
    CleanupStep("customer_payments", lambda c: _delete(Payment, Payment.order_id.in_(customer_orders(c)))),
    CleanupStep(
        "customer_order_events",
        lambda c: _delete(OrderEventRecord, OrderEventRecord.order_id.in_(customer_orders(c))),
    ),
    CleanupStep("customer_order_items", lambda c: _delete(OrderItem, OrderItem.order_id.in_(customer_orders(c)))),
    CleanupStep(
        "customer_orders",
        lambda c: _delete(Order, Order.customer_id == c.user_id),
        after=("customer_payments", "customer_order_events", "customer_order_items", "reviews"),
    ),

    # Cart, chat, notifications
    CleanupStep("cart", lambda c: _delete(CartItem, CartItem.user_id == c.user_id)),
    CleanupStep(
        "messages",
        lambda c: _delete(Message, or_(Message.sender_id == c.user_id, Message.chat_room_id.in_(rooms_created(c)))),
    ),
    CleanupStep(
        "chat_participants",
        lambda c: _delete(
            ChatParticipant,
            or_(ChatParticipant.user_id == c.user_id, ChatParticipant.chat_room_id.in_(rooms_created(c))),
        ),
    ),
    CleanupStep(
        "chat_rooms",
        lambda c: _delete(ChatRoom, ChatRoom.created_by == c.user_id),
        after=("messages", "chat_participants"),
    ),
    CleanupStep("notifications", lambda c: _delete(Notification, Notification.user_id == c.user_id)),
    CleanupStep(
        "vendor_notification_settings",
        lambda c: _delete(VendorNotificationSettings, VendorNotificationSettings.user_id == c.user_id),
    ),

    # Vendor profile: everything hanging off the vendor's products and orders
    CleanupStep(
        "vendor_trust_scores",
        lambda c: _delete(VendorTrustScore, VendorTrustScore.vendor_id == c.vendor_id),
        requires="vendor_id",
    ),
    CleanupStep(
        "vendor_review_votes",
        lambda c: _delete(ReviewVote, ReviewVote.review_id.in_(vendor_review_ids(c))),
        requires="vendor_id",
    ),
    CleanupStep(
        "vendor_review_responses",
        lambda c: _delete(
            ReviewResponse,
            or_(ReviewResponse.review_id.in_(vendor_review_ids(c)), ReviewResponse.vendor_id == c.vendor_id),
        ),
        requires="vendor_id",
    ),
    CleanupStep(
        "vendor_reviews",
        lambda c: _delete(Review, vendor_reviews(c)),
        after=("vendor_review_votes", "vendor_review_responses"),
        requires="vendor_id",
    ),
    CleanupStep(
        "vendor_product_cart_rows",
        lambda c: _delete(CartItem, CartItem.product_id.in_(vendor_products(c))),
        requires="vendor_id",
    ),
    CleanupStep(
        "vendor_order_payments",
        lambda c: _delete(Payment, Payment.order_id.in_(vendor_orders(c))),
        requires="vendor_id",
    ),
    CleanupStep(
        "vendor_order_events",
        lambda c: _delete(
            OrderEventRecord,
            or_(OrderEventRecord.order_id.in_(vendor_orders(c)), OrderEventRecord.vendor_id == c.vendor_id),
        ),
        requires="vendor_id",
    ),
    CleanupStep(
        "vendor_order_items",
        lambda c: _delete(
            OrderItem,
            or_(OrderItem.order_id.in_(vendor_orders(c)), OrderItem.product_id.in_(vendor_products(c))),
        ),
        requires="vendor_id",
    ),
    CleanupStep(
        "vendor_orders",
        lambda c: _delete(Order, Order.vendor_id == c.vendor_id),
        after=("vendor_order_payments", "vendor_order_events", "vendor_order_items", "vendor_reviews"),
        requires="vendor_id",
    ),
    CleanupStep(
        "vendor_products",
        lambda c: _delete(Product, Product.vendor_id == c.vendor_id),
        after=("vendor_reviews", "vendor_product_cart_rows", "vendor_order_items"),
        requires="vendor_id",
    ),

    # Driver profile: keep delivery history, drop the assignment
    CleanupStep(
        "driver_assignments",
        lambda c: update(Order)
        .where(Order.driver_id == c.driver_id)
        .values(driver_id=None)
        .execution_options(synchronize_session=False),
        requires="driver_id",
    ),

    # Profiles
    CleanupStep(
        "vendor_profile",
        lambda c: _delete(Vendor, Vendor.id == c.vendor_id),
        after=(
            "vendor_trust_scores",
            "vendor_reviews",
            "vendor_review_responses",
            "vendor_order_events",
            "vendor_orders",
            "vendor_products",
        ),
        requires="vendor_id",
    ),
    CleanupStep(
        "driver_profile",
        lambda c: _delete(Driver, Driver.id == c.driver_id),
        after=("driver_assignments",),
        requires="driver_id",
    ),
]


def cleanup_order(steps: Iterable[CleanupStep]) -> List[CleanupStep]:
    """Topologically sort steps; raises ValueError on unknown edges or cycles."""
    by_name: Dict[str, CleanupStep] = {}
    for step in steps:
        if step.name in by_name:
            raise ValueError(f"Duplicate cleanup step: {step.name}")
        by_name[step.name] = step

    for step in by_name.values():
        unknown = [name for name in step.after if name not in by_name]
        if unknown:
            raise ValueError(f"Cleanup step {step.name} depends on unknown steps: {unknown}")

    sorter = TopologicalSorter({name: step.after for name, step in by_name.items()})
    return [by_name[name] for name in sorter.static_order()]


@dataclass
class StepOutcome:
    name: str
    rows: int = 0
    skipped: bool = False
    error: Optional[DependencyCleanupError] = None


@dataclass
class DeletionReport:
    user_id: uuid.UUID
    steps: List[StepOutcome] = field(default_factory=list)
    user_deleted: bool = False
    already_absent: bool = False
    deleted_concurrently: bool = False
    fallback_used: bool = False

    @property
    def failures(self) -> List[DependencyCleanupError]:
        return [step.error for step in self.steps if step.error is not None]

    @property
    def rows_affected(self) -> int:
        return sum(step.rows for step in self.steps)

    def to_dict(self) -> dict:
        return {
            "user_id": str(self.user_id),
            "user_deleted": self.user_deleted,
            "already_absent": self.already_absent,
            "deleted_concurrently": self.deleted_concurrently,
            "fallback_used": self.fallback_used,
            "rows_affected": self.rows_affected,
            "steps": [
                {
                    "name": step.name,
                    "rows": step.rows,
                    "skipped": step.skipped,
                    "error": step.error.message if step.error else None,
                }
                for step in self.steps
            ],
        }


class AccountDeletionOrchestrator:
    def __init__(
        self,
        session_factory: SessionFactory,
        steps: Optional[List[CleanupStep]] = None,
        protected_ids: Optional[Set[str]] = None,
        cache: Optional[CacheService] = None,
    ):
        self.session_factory = session_factory
        self.steps = cleanup_order(CLEANUP_STEPS if steps is None else steps)
        self.protected_ids = {str(value) for value in (config.PROTECTED_ACCOUNT_IDS if protected_ids is None else protected_ids)}
        self.cache = cache

    def is_protected(self, user: User) -> bool:
        return bool(user.is_protected) or str(user.id) in self.protected_ids

    async def _load_context(self, user_id: uuid.UUID) -> Optional[DeletionContext]:
        async with self.session_factory() as session:
            user = (await session.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
            if user is None:
                return None
            if self.is_protected(user):
                logger.warning(f"Refusing to delete protected account {user_id}")
                raise ProtectedAccountError(user_id=user_id)
            vendor_id = (
                await session.execute(select(Vendor.id).where(Vendor.user_id == user_id))
            ).scalar_one_or_none()
            driver_id = (
                await session.execute(select(Driver.id).where(Driver.user_id == user_id))
            ).scalar_one_or_none()
            return DeletionContext(
                user_id=user_id,
                email=user.email,
                phone=user.phone,
                vendor_id=vendor_id,
                driver_id=driver_id,
            )

    async def _execute(self, statement: Executable, operation: str) -> int:
        async with self.session_factory() as session:
            async with translate_timeouts(operation):
                async with session.begin():
                    result = await session.execute(statement)
                    return max(result.rowcount or 0, 0)

    async def run_step(self, step: CleanupStep, context: DeletionContext) -> StepOutcome:
        if not step.applies(context):
            return StepOutcome(name=step.name, skipped=True)
        try:
            rows = await self._execute(step.build(context), f"cleanup {step.name}")
            if rows:
                logger.info(f"Deleted {rows} row(s) in step {step.name} for user {context.user_id}")
            return StepOutcome(name=step.name, rows=rows)
        except Exception as e:
            error = DependencyCleanupError(step.name, e)
            logger.warning(f"{error.message} (user {context.user_id}), continuing")
            return StepOutcome(name=step.name, error=error)

    async def _delete_user_row(self, user_id: uuid.UUID) -> bool:
        try:
            return await self._execute(
                delete(User).where(User.id == user_id).execution_options(synchronize_session=False),
                "delete user",
            ) > 0
        except Exception as e:
            logger.warning(f"Final delete of user {user_id} failed: {str(e)}")
            return False

    async def _user_exists(self, user_id: uuid.UUID) -> bool:
        async with self.session_factory() as session:
            return (await session.execute(select(User.id).where(User.id == user_id))).scalar_one_or_none() is not None

    async def _fallback_cleanup(self, diagnostics: DeletionDiagnostics, report: DeletionReport) -> None:
        """Delete whatever the diagnostic scan still finds, table by table."""
        report.fallback_used = True
        for reference in diagnostics.blocking:
            referencing = reference_table(reference.table, reference.column)
            name = f"fallback:{reference.table}.{reference.column}"
            try:
                rows = await self._execute(
                    referencing.delete().where(referencing.c[reference.column] == report.user_id), name
                )
                report.steps.append(StepOutcome(name=name, rows=rows))
            except Exception as e:
                error = DependencyCleanupError(name, e)
                logger.warning(f"{error.message} (user {report.user_id})")
                report.steps.append(StepOutcome(name=name, error=error))

    async def delete_user_comprehensive(self, user_id: uuid.UUID) -> DeletionReport:
        """
        Remove a user and every row that depends on it.

        Raises ProtectedAccountError before touching anything when the account
        is protected, and AccountDeletionError only when the user row still
        exists after cleanup, the fallback pass and a re-check.
        """
        if str(user_id) in self.protected_ids:
            logger.warning(f"Refusing to delete protected account {user_id}")
            raise ProtectedAccountError(user_id=user_id)

        report = DeletionReport(user_id=user_id)
        context = await self._load_context(user_id)
        if context is None:
            logger.info(f"User {user_id} does not exist, nothing to delete")
            report.already_absent = True
            return report

        logger.info(
            f"Deleting user {user_id} (vendor={context.vendor_id is not None}, driver={context.driver_id is not None})"
        )
        for step in self.steps:
            report.steps.append(await self.run_step(step, context))

        deleted = await self._delete_user_row(user_id)
        if not deleted and await self._user_exists(user_id):
            diagnostics = await diagnose_user_references(self.session_factory, user_id)
            await self._fallback_cleanup(diagnostics, report)
            deleted = await self._delete_user_row(user_id)
            if not deleted and await self._user_exists(user_id):
                remaining = await diagnose_user_references(self.session_factory, user_id)
                logger.error(
                    f"User {user_id} could not be deleted, {remaining.total_blocking_rows} blocking row(s) remain"
                )
                raise AccountDeletionError(
                    f"User {user_id} is still referenced after cleanup",
                    blocking=remaining.to_dict()["blocking"],
                    user_id=user_id,
                )
        if not deleted:
            report.deleted_concurrently = True
            logger.info(f"User {user_id} was removed by another process during cleanup")

        report.user_deleted = True
        if self.cache is not None:
            await self.cache.invalidate_many(cart_key(user_id), orders_pattern(user_id))

        logger.info(
            f"User {user_id} deleted: {report.rows_affected} dependent row(s) removed, "
            f"{len(report.failures)} step failure(s)"
        )
        return report
