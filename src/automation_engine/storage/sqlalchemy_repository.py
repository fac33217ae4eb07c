"""
SQLAlchemy 仓库实现
"""
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from ..core.parser import WorkflowParser
from ..models.execution import ActionRecord, ExecutionResult
from ..models.workflow import Workflow, utcnow
from .repository import ExecutionHistoryStore, ProcessedItemStore, WorkflowRepository
from .sqlalchemy_models import Base, ExecutionRecord, ProcessedItemRecord, WorkflowRecord


logger = logging.getLogger(__name__)


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    async def initialize(self):
        """初始化数据库连接并建表"""
        engine_options = {"echo": self.echo}
        if not self.database_url.startswith("sqlite"):
            engine_options.update(pool_size=10, max_overflow=5, pool_pre_ping=True)

        self.engine = create_async_engine(self.database_url, **engine_options)
        self.async_session_maker = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized")

    async def close(self):
        """关闭数据库连接"""
        if self.engine:
            await self.engine.dispose()
            self.engine = None

    @asynccontextmanager
    async def get_session(self):
        """获取数据库会话"""
        if self.async_session_maker is None:
            raise RuntimeError("DatabaseManager.initialize() must be called first")
        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


class SQLAlchemyWorkflowRepository(WorkflowRepository):
    """SQLAlchemy 工作流仓库实现"""

    def __init__(self, db_manager: DatabaseManager, parser: Optional[WorkflowParser] = None):
        self.db = db_manager
        self.parser = parser or WorkflowParser()

    async def get_all(self) -> List[Workflow]:
        async with self.db.get_session() as session:
            result = await session.execute(select(WorkflowRecord).order_by(WorkflowRecord.created_at))
            return [self._to_workflow(record) for record in result.scalars().all()]

    async def get_by_id(self, workflow_id: str) -> Optional[Workflow]:
        async with self.db.get_session() as session:
            record = await session.get(WorkflowRecord, workflow_id)
            return self._to_workflow(record) if record else None

    async def save(self, workflow: Workflow) -> str:
        async with self.db.get_session() as session:
            record = await session.get(WorkflowRecord, workflow.id)
            if record is None:
                session.add(WorkflowRecord(
                    id=workflow.id,
                    name=workflow.name,
                    owner_id=workflow.owner_id,
                    enabled=workflow.enabled,
                    definition=self.parser.to_dict(workflow),
                    created_at=workflow.created_at,
                    updated_at=workflow.updated_at
                ))
            else:
                workflow.updated_at = utcnow()
                record.name = workflow.name
                record.owner_id = workflow.owner_id
                record.enabled = workflow.enabled
                record.definition = self.parser.to_dict(workflow)
                record.updated_at = workflow.updated_at
        return workflow.id

    async def delete(self, workflow_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(delete(WorkflowRecord).where(WorkflowRecord.id == workflow_id))
            return result.rowcount > 0

    async def get_enabled(self) -> List[Workflow]:
        async with self.db.get_session() as session:
            result = await session.execute(select(WorkflowRecord).where(WorkflowRecord.enabled.is_(True)))
            return [self._to_workflow(record) for record in result.scalars().all()]

    def _to_workflow(self, record: WorkflowRecord) -> Workflow:
        workflow = self.parser.parse_dict(dict(record.definition))
        workflow.enabled = record.enabled
        return workflow


class SQLAlchemyExecutionHistoryStore(ExecutionHistoryStore):
    """SQLAlchemy 执行历史实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def append_execution(self, result: ExecutionResult) -> str:
        async with self.db.get_session() as session:
            session.add(ExecutionRecord(
                execution_id=result.execution_id,
                workflow_id=result.workflow_id,
                success=result.success,
                message=result.message,
                actions=[record.to_dict() for record in result.actions],
                variables=dict(result.variables),
                duration=result.duration,
                timestamp=result.timestamp,
                trigger_user_id=result.trigger_user_id
            ))
        return result.execution_id

    async def get_last_execution(self, workflow_id: str) -> Optional[ExecutionResult]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ExecutionRecord)
                .where(ExecutionRecord.workflow_id == workflow_id)
                .order_by(ExecutionRecord.timestamp.desc())
                .limit(1)
            )
            record = result.scalar_one_or_none()
            return self._to_result(record) if record else None

    async def list_executions(self, workflow_id: str, limit: int = 100) -> List[ExecutionResult]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ExecutionRecord)
                .where(ExecutionRecord.workflow_id == workflow_id)
                .order_by(ExecutionRecord.timestamp.desc())
                .limit(limit)
            )
            return [self._to_result(record) for record in result.scalars().all()]

    async def cleanup_old_executions(self, days: int = 30) -> int:
        """清理过期记录，保留每个工作流最近一次执行"""
        cutoff = utcnow() - timedelta(days=days)
        async with self.db.get_session() as session:
            latest = await session.execute(
                select(ExecutionRecord.workflow_id, func.max(ExecutionRecord.timestamp))
                .group_by(ExecutionRecord.workflow_id)
            )
            latest_by_workflow: Dict[str, object] = {row[0]: row[1] for row in latest.all()}

            old = await session.execute(select(ExecutionRecord).where(ExecutionRecord.timestamp < cutoff))
            removed = 0
            for record in old.scalars().all():
                if latest_by_workflow.get(record.workflow_id) == record.timestamp:
                    continue
                await session.delete(record)
                removed += 1
        return removed

    def _to_result(self, record: ExecutionRecord) -> ExecutionResult:
        return ExecutionResult(
            execution_id=record.execution_id,
            workflow_id=record.workflow_id,
            success=record.success,
            message=record.message or "",
            actions=[ActionRecord.from_dict(item) for item in record.actions or []],
            variables=dict(record.variables or {}),
            duration=record.duration or 0.0,
            timestamp=record.timestamp,
            trigger_user_id=record.trigger_user_id or ""
        )


class SQLAlchemyProcessedItemStore(ProcessedItemStore):
    """SQLAlchemy 已处理登记实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def is_processed(self, workflow_id: str, item_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ProcessedItemRecord.id).where(
                    ProcessedItemRecord.workflow_id == workflow_id,
                    ProcessedItemRecord.item_id == item_id
                )
            )
            return result.first() is not None

    async def mark_processed(self, workflow_id: str, item_id: str) -> None:
        try:
            async with self.db.get_session() as session:
                session.add(ProcessedItemRecord(workflow_id=workflow_id, item_id=item_id))
        except IntegrityError:
            logger.debug(f"Item {item_id} already marked processed for workflow {workflow_id}")

    async def cleanup(self, days: int = 30) -> int:
        cutoff = utcnow() - timedelta(days=days)
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(ProcessedItemRecord).where(ProcessedItemRecord.processed_at < cutoff)
            )
            return result.rowcount
