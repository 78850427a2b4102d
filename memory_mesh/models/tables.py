"""
Relational schema for owners, memories, snapshots and mesh relations.
"""

import uuid

from sqlalchemy import JSON, BigInteger, CheckConstraint, Column, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _uuid_default() -> str:
    return str(uuid.uuid4())


class UserRow(Base):
    __tablename__ = 'users'

    id = Column(String(64), primary_key=True, default=_uuid_default)
    display_name = Column(String(200))
    created_at = Column(BigInteger, nullable=False)


class MemoryRow(Base):
    __tablename__ = 'memories'

    id = Column(String(36), primary_key=True, default=_uuid_default)
    user_id = Column(String(64), ForeignKey('users.id'), nullable=False)
    url = Column(Text)
    title = Column(Text)
    content = Column(Text, nullable=False)
    summary = Column(Text)
    canonical_text = Column(Text, nullable=False)
    canonical_hash = Column(String(64), nullable=False)
    memory_type = Column(String(20), nullable=False, default='REFERENCE')
    timestamp = Column(BigInteger, nullable=False)
    importance_score = Column(Float, nullable=False, default=0.0)
    access_count = Column(Integer, nullable=False, default=0)
    last_accessed = Column(BigInteger)
    metadata_json = Column('metadata', JSON, default=dict)
    created_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'canonical_hash', name='uq_memories_user_canonical_hash'),
        CheckConstraint('importance_score >= 0 AND importance_score <= 1', name='ck_memories_importance_range'),
        Index('ix_memories_user_timestamp', 'user_id', 'timestamp'),
        Index('ix_memories_user_url', 'user_id', 'url'),
    )


class MemorySnapshotRow(Base):
    __tablename__ = 'memory_snapshots'

    id = Column(String(36), primary_key=True, default=_uuid_default)
    user_id = Column(String(64), ForeignKey('users.id'), nullable=False)
    raw_text = Column(Text, nullable=False)
    summary = Column(Text, nullable=False)
    summary_hash = Column(String(64), nullable=False, unique=True)
    created_at = Column(BigInteger, nullable=False)


class MemoryRelationRow(Base):
    __tablename__ = 'memory_relations'

    id = Column(String(36), primary_key=True, default=_uuid_default)
    memory_id = Column(String(36), ForeignKey('memories.id', ondelete='CASCADE'), nullable=False)
    related_memory_id = Column(String(36), ForeignKey('memories.id', ondelete='CASCADE'), nullable=False)
    similarity_score = Column(Float, nullable=False)
    relation_type = Column(String(20), nullable=False)
    created_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint('memory_id', 'related_memory_id', name='uq_memory_relations_pair'),
        CheckConstraint('memory_id <> related_memory_id', name='ck_memory_relations_no_self_loop'),
        CheckConstraint('similarity_score >= 0 AND similarity_score <= 1', name='ck_memory_relations_score_range'),
        CheckConstraint("relation_type IN ('semantic', 'topical', 'temporal')", name='ck_memory_relations_type'),
        Index('ix_memory_relations_related', 'related_memory_id'),
    )
