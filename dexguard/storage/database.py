"""Audit storage for emergency history and risk-check snapshots."""
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, Numeric, String, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from dexguard.core.config import DatabaseConfig
from dexguard.core.models import (
    EmergencyHistoryEntry,
    EmergencyType,
    HistoryAction,
    PortfolioSnapshot,
    RiskCheckResult,
)

Base = declarative_base()


class EmergencyEventModel(Base):
    """SQLAlchemy model for emergency history entries."""
    __tablename__ = 'emergency_events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    action = Column(String, nullable=False)
    emergency_type = Column(String, nullable=True)
    reason = Column(String, nullable=False, default="")
    success = Column(Boolean, nullable=False, default=True)


class RiskSnapshotModel(Base):
    """SQLAlchemy model for risk-check snapshots."""
    __tablename__ = 'risk_snapshots'

    id = Column(String, primary_key=True)
    address = Column(String, nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    total_value = Column(Numeric(36, 18), nullable=False)
    daily_pnl = Column(Numeric(36, 18), default=0)
    total_pnl = Column(Numeric(36, 18), default=0)
    daily_volume = Column(Numeric(36, 18), default=0)
    risk_score = Column(Float, nullable=False)
    risk_level = Column(String, nullable=True)
    should_continue_trading = Column(Boolean, nullable=True)
    alerts_json = Column(JSON, default=list)
    positions_json = Column(JSON, default=list)


class AuditStore:
    """Async audit store interface."""

    def __init__(self, database_url: Optional[str] = None):
        db_url = database_url or DatabaseConfig().url
        # Convert SQLite URL to async version if needed
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.engine: AsyncEngine = create_async_engine(db_url, echo=False)
        self.session_maker = async_sessionmaker(self.engine, class_=AsyncSession)

    async def initialize(self):
        """Create tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    # Emergency history
    async def save_emergency_event(self, entry: EmergencyHistoryEntry):
        async with self.session_maker() as session:
            session.add(
                EmergencyEventModel(
                    timestamp=entry.timestamp,
                    action=entry.action.value,
                    emergency_type=entry.type.value if entry.type else None,
                    reason=entry.reason,
                    success=entry.success,
                )
            )
            await session.commit()

    async def get_emergency_events(self, limit: int = 100) -> List[EmergencyHistoryEntry]:
        """Most recent emergency events, newest first."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(EmergencyEventModel)
                .order_by(EmergencyEventModel.timestamp.desc(), EmergencyEventModel.id.desc())
                .limit(limit)
            )
            return [self._event_from_model(e) for e in result.scalars().all()]

    # Risk snapshots
    async def save_risk_snapshot(
        self, snapshot: PortfolioSnapshot, result: Optional[RiskCheckResult] = None
    ):
        async with self.session_maker() as session:
            session.add(
                RiskSnapshotModel(
                    id=snapshot.id,
                    address=snapshot.address,
                    timestamp=snapshot.timestamp,
                    total_value=snapshot.total_value,
                    daily_pnl=snapshot.daily_pnl,
                    total_pnl=snapshot.total_pnl,
                    daily_volume=snapshot.daily_volume,
                    risk_score=snapshot.risk_metrics.risk_score,
                    risk_level=result.risk_level.value if result else None,
                    should_continue_trading=result.should_continue_trading if result else None,
                    alerts_json=list(result.alerts) if result else [],
                    positions_json=[p.model_dump(mode="json") for p in snapshot.positions],
                )
            )
            await session.commit()

    async def get_risk_snapshots(
        self, address: Optional[str] = None, limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Most recent stored snapshots, newest first."""
        async with self.session_maker() as session:
            query = select(RiskSnapshotModel).order_by(RiskSnapshotModel.timestamp.desc()).limit(limit)
            if address:
                query = query.where(RiskSnapshotModel.address == address)

            result = await session.execute(query)
            return [self._snapshot_row(s) for s in result.scalars().all()]

    # Helpers
    def _event_from_model(self, model: EmergencyEventModel) -> EmergencyHistoryEntry:
        return EmergencyHistoryEntry(
            timestamp=model.timestamp,
            action=HistoryAction(model.action),
            type=EmergencyType(model.emergency_type) if model.emergency_type else None,
            reason=model.reason,
            success=model.success,
        )

    def _snapshot_row(self, model: RiskSnapshotModel) -> Dict[str, Any]:
        return {
            'id': model.id,
            'address': model.address,
            'timestamp': model.timestamp,
            'total_value': model.total_value,
            'daily_pnl': model.daily_pnl,
            'total_pnl': model.total_pnl,
            'daily_volume': model.daily_volume,
            'risk_score': model.risk_score,
            'risk_level': model.risk_level,
            'should_continue_trading': model.should_continue_trading,
            'alerts': model.alerts_json or [],
            'positions': model.positions_json or [],
        }
