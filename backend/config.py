import os
from decimal import Decimal
from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from models import Base

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

ENVIRONMENT = os.getenv("ENVIRONMENT", "dev")
DEBUG = ENVIRONMENT == "dev"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Deadlines. Statement timeout must stay below the request deadline so slow
# queries surface as a typed timeout instead of hitting the outer one.
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", 15))
DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", 8000))
NOTIFICATION_TIMEOUT_SECONDS = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", 10))

# Cache
CACHE_URL = os.getenv("CACHE_URL") or os.getenv("REDIS_URL")
CACHE_TIMEOUT_SECONDS = float(os.getenv("CACHE_TIMEOUT_SECONDS", 2))
CACHE_KEY_PREFIX = os.getenv("CACHE_KEY_PREFIX", "marketplace")
CART_CACHE_TTL = 300
ORDERS_CACHE_TTL = 120
ORDER_CACHE_TTL = 120

# Orders and money
CURRENCY = os.getenv("CURRENCY", "CFA")
DEFAULT_COMMISSION_RATE = Decimal(os.getenv("DEFAULT_COMMISSION_RATE", "5.00"))
STANDARD_DELIVERY_FEE = Decimal(os.getenv("STANDARD_DELIVERY_FEE", "2000"))
EXPRESS_DELIVERY_FEE = Decimal(os.getenv("EXPRESS_DELIVERY_FEE", "3500"))
TAX_RATE_PERCENT = Decimal(os.getenv("TAX_RATE_PERCENT", "0"))
LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", 5))
DEFERRED_PAYMENT_METHODS = {
    method.strip()
    for method in os.getenv("DEFERRED_PAYMENT_METHODS", "cash_on_delivery").split(",")
    if method.strip()
}
OUTBOX_MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", 5))

# Accounts listed here can never be removed, on top of users.is_protected
PROTECTED_ACCOUNT_IDS = {
    value.strip()
    for value in os.getenv("PROTECTED_ACCOUNT_IDS", "").split(",")
    if value.strip()
}


if DATABASE_URL:
    sync_engine = create_engine(DATABASE_URL.replace("postgresql+asyncpg://", "postgresql://"))

    asyncpg_url = DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")

    if "?" in asyncpg_url:
        base_url = asyncpg_url.split("?")[0]
    else:
        base_url = asyncpg_url

    asyncpg_url = f"{base_url}?prepared_statement_cache_size=0"

    async_engine = create_async_engine(
        asyncpg_url,
        echo=False,
        pool_pre_ping=False,
        pool_size=5,
        max_overflow=0,
        connect_args={
            "command_timeout": REQUEST_TIMEOUT_SECONDS,
            "server_settings": {"statement_timeout": str(DB_STATEMENT_TIMEOUT_MS)},
        },
    )

    AsyncSessionLocal = sessionmaker(
        bind=async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )
else:
    sync_engine = None
    async_engine = None
    AsyncSessionLocal = None

async def get_db():
    if AsyncSessionLocal is None:
        raise Exception("Database not configured")
    async with AsyncSessionLocal() as session:
        yield session

def get_session_factory():
    if AsyncSessionLocal is None:
        raise Exception("Database not configured")
    return AsyncSessionLocal

async def init_db():
    if async_engine is None:
        raise Exception("Database not configured")
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

def get_sync_engine():
    if sync_engine is None:
        raise Exception("Database not configured")
    return sync_engine
