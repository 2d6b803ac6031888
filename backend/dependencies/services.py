"""
Service providers for routes; tests swap them through app.dependency_overrides
"""
from fastapi import Depends

from config import get_session_factory
from services.account_deletion import AccountDeletionOrchestrator
from services.notification_dispatcher import NotificationDispatcher, OutboxRelay
from services.order_state_machine import OrderStateMachine
from services.order_store import OrderStore
from utils.cache import CacheService, cache


def get_cache() -> CacheService:
    return cache


def get_order_store(session_factory=Depends(get_session_factory)) -> OrderStore:
    return OrderStore(session_factory)


def get_state_machine(store: OrderStore = Depends(get_order_store)) -> OrderStateMachine:
    return OrderStateMachine(store)


def get_dispatcher(session_factory=Depends(get_session_factory)) -> NotificationDispatcher:
    return NotificationDispatcher(session_factory)


def get_outbox_relay(
    session_factory=Depends(get_session_factory),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
) -> OutboxRelay:
    return OutboxRelay(session_factory, dispatcher)


def get_deletion_orchestrator(
    session_factory=Depends(get_session_factory),
    cache_service: CacheService = Depends(get_cache)
) -> AccountDeletionOrchestrator:
    return AccountDeletionOrchestrator(session_factory, cache=cache_service)
