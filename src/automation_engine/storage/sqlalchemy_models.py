"""
SQLAlchemy 数据库模型定义
"""
from sqlalchemy import (
    Boolean, Column, DateTime, Float, Index, Integer, JSON, String, Text, UniqueConstraint
)
from sqlalchemy.orm import declarative_base

from ..models.workflow import utcnow


Base = declarative_base()


class WorkflowRecord(Base):
    """工作流定义"""
    __tablename__ = 'workflows'

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    owner_id = Column(String(255), nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    definition = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_workflows_owner', 'owner_id'),
        Index('idx_workflows_enabled', 'enabled'),
    )


class ExecutionRecord(Base):
    """执行历史（只追加）"""
    __tablename__ = 'execution_history'

    execution_id = Column(String(64), primary_key=True)
    workflow_id = Column(String(64), nullable=False)
    success = Column(Boolean, nullable=False)
    message = Column(Text, default="")
    actions = Column(JSON, default=list)
    variables = Column(JSON, default=dict)
    duration = Column(Float, default=0.0)
    timestamp = Column(DateTime, nullable=False)
    trigger_user_id = Column(String(255), default="")

    __table_args__ = (
        Index('idx_execution_history_workflow_ts', 'workflow_id', 'timestamp'),
    )


class ProcessedItemRecord(Base):
    """已处理的邮件/消息"""
    __tablename__ = 'processed_items'

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id = Column(String(64), nullable=False)
    item_id = Column(String(255), nullable=False)
    processed_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('workflow_id', 'item_id', name='unique_processed_item'),
        Index('idx_processed_items_processed_at', 'processed_at'),
    )
