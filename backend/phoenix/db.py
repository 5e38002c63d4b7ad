import functools
import json
import logging
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any

from sqlalchemy import (
    create_engine, Column, String, DateTime, Date, Text, Integer, Boolean, Index,
    UniqueConstraint, select, update, delete, func,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import QueuePool

from phoenix.config import DATABASE_URL, DATA_DIR
from phoenix.errors import InfrastructureError

log = logging.getLogger(__name__)


def _make_engine(url: str):
    if url in ("sqlite://", "sqlite:///:memory:"):
        # A single pooled connection: every session sees the same in-memory database, one thread at a time
        return create_engine(
            url, future=True, connect_args={"check_same_thread": False},
            poolclass=QueuePool, pool_size=1, max_overflow=0,
        )
    if url.startswith("sqlite"):
        return create_engine(url, future=True, connect_args={"check_same_thread": False})
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return create_engine(url, future=True, pool_pre_ping=True)


# Support external database via DATABASE_URL (e.g., Supabase Postgres). Fallback to SQLite.
if DATABASE_URL:
    engine = _make_engine(DATABASE_URL)
else:
    Path(DATA_DIR).mkdir(parents=True, exist_ok=True)
    engine = _make_engine(f"sqlite:///{Path(DATA_DIR).resolve() / 'phoenix.db'}")
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
Base = declarative_base()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _iso(dt: datetime | None) -> str | None:
    dt = _as_utc(dt)
    return dt.isoformat().replace("+00:00", "Z") if dt else None


def _store_call(fn):
    """Surface driver/connection failures as InfrastructureError so callers never read them as allow/deny."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except SQLAlchemyError as e:
            log.error("[store] %s failed: %s", fn.__name__, e)
            raise InfrastructureError(f"store unavailable during {fn.__name__}") from e
    return wrapper


# ---------------- Sessions & configuration ----------------
class ShopSession(Base):
    __tablename__ = "shop_sessions"

    shop = Column(String, primary_key=True)
    access_token = Column(String, nullable=False)
    scopes = Column(String, nullable=True)
    installed_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class Configuration(Base):
    __tablename__ = "configurations"

    shop = Column(String, primary_key=True)
    brand_name = Column(String, nullable=True)
    identity_summary = Column(Text, nullable=True)
    target_audience = Column(String, nullable=True)
    usp = Column(Text, nullable=True)
    tier = Column(String, nullable=False, default="free")
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)


# ---------------- Usage ledger ----------------
class UsageRecord(Base):
    __tablename__ = "usage_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop = Column(String, nullable=False)
    category = Column(String, nullable=False)
    period_start = Column(Date, nullable=False)
    count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint("shop", "period_start", "category", name="uq_usage_shop_period_category"),
    )


class UsageEvent(Base):
    __tablename__ = "usage_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop = Column(String, nullable=False)
    category = Column(String, nullable=False)
    period_start = Column(Date, nullable=False)
    amount = Column(Integer, nullable=False, default=1)
    metadata_json = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)


Index('ix_usage_events_shop_created_at', UsageEvent.shop, UsageEvent.created_at)


# ---------------- Anti-churn ----------------
class AntiChurn(Base):
    __tablename__ = "anti_churn"

    shop = Column(String, primary_key=True)
    last_uninstalled = Column(DateTime(timezone=True), nullable=True)
    trial_used = Column(Boolean, nullable=False, default=False)


# ---------------- Optimization history ----------------
class OptimizationHistory(Base):
    __tablename__ = "optimization_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop = Column(String, nullable=False)
    product_id = Column(String, nullable=False)
    product_name = Column(String, nullable=True)
    optimization_type = Column(String, nullable=False)
    optimized_content = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="success")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)


Index('ix_optimization_history_shop_product', OptimizationHistory.shop, OptimizationHistory.product_id)

Base.metadata.create_all(engine)


@_store_call
def save_shop_session(shop: str, access_token: str, scopes: str | None = None):
    with SessionLocal() as session:
        s = session.get(ShopSession, shop)
        if s:
            s.access_token = access_token
            s.scopes = scopes
            s.installed_at = _now()
        else:
            session.add(ShopSession(shop=shop, access_token=access_token, scopes=scopes, installed_at=_now()))
        session.commit()


@_store_call
def get_shop_session(shop: str) -> Optional[Dict[str, Any]]:
    with SessionLocal() as session:
        s = session.get(ShopSession, shop)
        if not s:
            return None
        return {
            "shop": s.shop,
            "access_token": s.access_token,
            "scopes": s.scopes,
            "installed_at": _iso(s.installed_at),
        }


@_store_call
def delete_shop_sessions(shop: str) -> int:
    with SessionLocal() as session:
        res = session.execute(delete(ShopSession).where(ShopSession.shop == shop))
        session.commit()
        return res.rowcount or 0


def _config_dict(c: Configuration) -> Dict[str, Any]:
    return {
        "shop": c.shop,
        "brand_name": c.brand_name,
        "identity_summary": c.identity_summary,
        "target_audience": c.target_audience,
        "usp": c.usp,
        "tier": c.tier,
        "updated_at": _iso(c.updated_at),
    }


@_store_call
def get_configuration(shop: str) -> Optional[Dict[str, Any]]:
    with SessionLocal() as session:
        c = session.get(Configuration, shop)
        return _config_dict(c) if c else None


@_store_call
def upsert_configuration(shop: str, **fields) -> Dict[str, Any]:
    """Upsert the provided brand fields (None values are ignored); returns the stored row."""
    allowed = {"brand_name", "identity_summary", "target_audience", "usp", "tier"}
    with SessionLocal() as session:
        c = session.get(Configuration, shop)
        if not c:
            c = Configuration(shop=shop, tier="free")
            session.add(c)
        for k, v in fields.items():
            if k in allowed and v is not None:
                setattr(c, k, v)
        c.updated_at = _now()
        session.commit()
        return _config_dict(c)


@_store_call
def get_shop_tier(shop: str) -> str:
    with SessionLocal() as session:
        tier = session.scalar(select(Configuration.tier).where(Configuration.shop == shop))
        return tier or "free"


# ---------------- Usage ----------------
def _usage_filter(shop: str, category: str, period_start: date):
    return (
        UsageRecord.shop == shop,
        UsageRecord.category == category,
        UsageRecord.period_start == period_start,
    )


@_store_call
def get_usage_count(shop: str, category: str, period_start: date) -> int:
    with SessionLocal() as session:
        n = session.scalar(select(UsageRecord.count).where(*_usage_filter(shop, category, period_start)))
        return int(n or 0)


@_store_call
def get_usage_counts(shop: str, period_start: date) -> Dict[str, int]:
    with SessionLocal() as session:
        rows = session.execute(
            select(UsageRecord.category, UsageRecord.count)
            .where(UsageRecord.shop == shop, UsageRecord.period_start == period_start)
        ).all()
        return {r.category: int(r.count or 0) for r in rows}


@_store_call
def increment_usage(shop: str, category: str, period_start: date, amount: int = 1) -> int:
    """Atomically add `amount` to the (shop, period, category) counter; returns the new count.

    The add happens in SQL (count = count + n) so concurrent callers never lose updates.
    """
    if amount < 0:
        raise ValueError("usage can only grow within a period")
    bump = (
        update(UsageRecord)
        .where(*_usage_filter(shop, category, period_start))
        .values(count=UsageRecord.count + amount, updated_at=_now())
    )
    with SessionLocal() as session:
        res = session.execute(bump)
        if not res.rowcount:
            try:
                session.add(UsageRecord(
                    shop=shop,
                    category=category,
                    period_start=period_start,
                    count=amount,
                    created_at=_now(),
                    updated_at=_now(),
                ))
                session.commit()
            except IntegrityError:
                # Another writer created the row first
                session.rollback()
                session.execute(bump)
                session.commit()
        else:
            session.commit()
        n = session.scalar(select(UsageRecord.count).where(*_usage_filter(shop, category, period_start)))
        return int(n or 0)


@_store_call
def add_usage_event(shop: str, category: str, period_start: date, amount: int = 1, metadata: Dict[str, Any] | None = None):
    with SessionLocal() as session:
        session.add(UsageEvent(
            shop=shop,
            category=category,
            period_start=period_start,
            amount=amount,
            metadata_json=json.dumps(metadata, ensure_ascii=False, default=str) if metadata else None,
            created_at=_now(),
        ))
        session.commit()


@_store_call
def list_usage_events(shop: str, limit: int | None = None) -> list[Dict[str, Any]]:
    with SessionLocal() as session:
        q = select(UsageEvent).where(UsageEvent.shop == shop).order_by(UsageEvent.created_at.desc(), UsageEvent.id.desc())
        if limit:
            q = q.limit(limit)
        out: list[Dict[str, Any]] = []
        for e in session.scalars(q).all():
            out.append({
                "category": e.category,
                "period_start": e.period_start.isoformat(),
                "amount": e.amount,
                "metadata": json.loads(e.metadata_json) if e.metadata_json else None,
                "created_at": _iso(e.created_at),
            })
        return out


# ---------------- Anti-churn ----------------
@_store_call
def get_anti_churn(shop: str) -> Optional[Dict[str, Any]]:
    with SessionLocal() as session:
        r = session.get(AntiChurn, shop)
        if not r:
            return None
        return {
            "shop": r.shop,
            "last_uninstalled": _as_utc(r.last_uninstalled),
            "trial_used": bool(r.trial_used),
        }


@_store_call
def upsert_anti_churn(shop: str, last_uninstalled: datetime, trial_used: bool = True):
    with SessionLocal() as session:
        r = session.get(AntiChurn, shop)
        if r:
            r.last_uninstalled = last_uninstalled
            # trial_used never reverts to False
            r.trial_used = bool(r.trial_used) or bool(trial_used)
        else:
            session.add(AntiChurn(shop=shop, last_uninstalled=last_uninstalled, trial_used=bool(trial_used)))
        session.commit()


# ---------------- Optimization history ----------------
@_store_call
def add_optimization_history(shop: str, product_id: str, product_name: str | None, optimization_type: str, content: Dict[str, Any] | None = None, status: str = "success"):
    with SessionLocal() as session:
        session.add(OptimizationHistory(
            shop=shop,
            product_id=product_id,
            product_name=product_name,
            optimization_type=optimization_type,
            optimized_content=json.dumps(content, ensure_ascii=False) if content is not None else None,
            status=status,
            created_at=_now(),
        ))
        session.commit()


@_store_call
def mark_history_applied(shop: str, product_id: str) -> int:
    with SessionLocal() as session:
        res = session.execute(
            update(OptimizationHistory)
            .where(
                OptimizationHistory.shop == shop,
                OptimizationHistory.product_id == product_id,
                OptimizationHistory.status == "success",
            )
            .values(optimization_type="APPLIED_TO_SHOPIFY")
        )
        session.commit()
        return res.rowcount or 0


@_store_call
def count_optimization_history(shop: str) -> int:
    with SessionLocal() as session:
        n = session.scalar(select(func.count()).select_from(OptimizationHistory).where(OptimizationHistory.shop == shop))
        return int(n or 0)
