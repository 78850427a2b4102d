"""
Relational store for owners, memories, snapshots and mesh relations (SQLAlchemy).
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import and_, create_engine, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..models.core import Memory, MemoryRelation, MemorySnapshot
from ..models.tables import Base, MemoryRelationRow, MemoryRow, MemorySnapshotRow, UserRow
from .config import DatabaseConfig
from .errors import DuplicateContentError
from .logging_config import get_logger
from .timestamp_utils import now_seconds

logger = get_logger(__name__)


class MemoryStoreError(Exception):
    """Custom exception for relational store errors."""
    pass


def _to_memory(row: MemoryRow) -> Memory:
    return Memory(id=row.id,
                  owner_id=row.user_id,
                  url=row.url,
                  title=row.title,
                  content=row.content,
                  summary=row.summary,
                  canonical_text=row.canonical_text,
                  canonical_hash=row.canonical_hash,
                  memory_type=row.memory_type,
                  timestamp=row.timestamp,
                  importance_score=row.importance_score or 0.0,
                  access_count=row.access_count or 0,
                  last_accessed=row.last_accessed,
                  metadata=dict(row.metadata_json or {}),
                  created_at=row.created_at)


def _to_relation(row: MemoryRelationRow) -> MemoryRelation:
    return MemoryRelation(id=row.id,
                          memory_id=row.memory_id,
                          related_memory_id=row.related_memory_id,
                          similarity_score=row.similarity_score,
                          relation_type=row.relation_type,
                          created_at=row.created_at)


class MemoryStore:
    """SQLAlchemy-backed store. Every public method runs in its own transaction."""

    def __init__(self, config: DatabaseConfig):
        """
        Initialize the store and create tables that do not exist yet.

        Args:
            config: DatabaseConfig with the SQLAlchemy URL
        """
        self.config = config
        engine_kwargs: Dict[str, Any] = {'echo': config.echo}
        if config.url.startswith('sqlite'):
            engine_kwargs['connect_args'] = {'check_same_thread': False}
            if ':memory:' in config.url or config.url == 'sqlite://':
                engine_kwargs['poolclass'] = StaticPool

        try:
            self.engine = create_engine(config.url, **engine_kwargs)
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            logger.error(f'Failed to initialize relational store: {e}')
            raise MemoryStoreError(f'Failed to initialize relational store: {e}')

        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info(f"Initialized memory store ({self.engine.url.get_backend_name()})")

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Transactional scope: commit on success, roll back and re-raise as MemoryStoreError on failure."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f'Relational store error: {e}')
            raise MemoryStoreError(f'Relational store error: {e}')
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Owners

    def create_user(self, user_id: str, display_name: Optional[str] = None) -> str:
        with self.session_scope() as session:
            if session.get(UserRow, user_id) is None:
                session.add(UserRow(id=user_id, display_name=display_name, created_at=now_seconds()))
                logger.info(f'Created user {user_id}')
        return user_id

    def user_exists(self, user_id: str) -> bool:
        with self.session_scope() as session:
            return session.get(UserRow, user_id) is not None

    # Memories

    def get_memory(self, memory_id: str) -> Optional[Memory]:
        with self.session_scope() as session:
            row = session.get(MemoryRow, memory_id)
            return _to_memory(row) if row is not None else None

    def get_memories(self, memory_ids: Iterable[str]) -> Dict[str, Memory]:
        ids = list(set(memory_ids))
        if not ids:
            return {}
        with self.session_scope() as session:
            rows = session.query(MemoryRow).filter(MemoryRow.id.in_(ids)).all()
            return {row.id: _to_memory(row) for row in rows}

    def find_by_canonical_hash(self, owner_id: str, canonical_hash: str) -> Optional[Memory]:
        with self.session_scope() as session:
            row = session.query(MemoryRow).filter(MemoryRow.user_id == owner_id,
                                                  MemoryRow.canonical_hash == canonical_hash).first()
            return _to_memory(row) if row is not None else None

    def find_recent_with_url(self, owner_id: str, since: int) -> List[Memory]:
        """Memories of an owner captured at or after ``since`` that carry a URL."""
        with self.session_scope() as session:
            rows = (session.query(MemoryRow).filter(MemoryRow.user_id == owner_id, MemoryRow.url.isnot(None),
                                                    MemoryRow.timestamp >= since).order_by(MemoryRow.timestamp.desc()).all())
            return [_to_memory(row) for row in rows]

    def insert_memory(self, memory: Memory) -> Memory:
        """
        Insert a new memory row.

        Raises:
            DuplicateContentError: If (owner, canonical hash) already exists
            MemoryStoreError: On any other store failure
        """
        row = MemoryRow(id=memory.id,
                        user_id=memory.owner_id,
                        url=memory.url,
                        title=memory.title,
                        content=memory.content,
                        summary=memory.summary,
                        canonical_text=memory.canonical_text,
                        canonical_hash=memory.canonical_hash,
                        memory_type=memory.memory_type,
                        timestamp=memory.timestamp,
                        importance_score=memory.importance_score,
                        access_count=memory.access_count,
                        last_accessed=memory.last_accessed,
                        metadata_json=memory.metadata or {},
                        created_at=memory.created_at or now_seconds())
        try:
            with self.session_scope() as session:
                session.add(row)
        except IntegrityError as e:
            existing = self.find_by_canonical_hash(memory.owner_id, memory.canonical_hash)
            if existing is not None:
                raise DuplicateContentError(f'Memory with fingerprint {memory.canonical_hash[:12]} already exists',
                                            existing_memory_id=existing.id)
            logger.error(f'Integrity error inserting memory {memory.id}: {e}')
            raise MemoryStoreError(f'Failed to insert memory: {e}')

        logger.debug(f'Inserted memory {memory.id} for owner {memory.owner_id}')
        return self.get_memory(memory.id)

    def record_duplicate_access(self, memory_id: str, importance_boost: float, metadata: Dict[str, Any],
                                accessed_at: int) -> Optional[Memory]:
        """Apply the duplicate-merge update: access count, last access, importance boost and merged metadata."""
        with self.session_scope() as session:
            row = session.get(MemoryRow, memory_id)
            if row is None:
                return None
            row.access_count = (row.access_count or 0) + 1
            row.last_accessed = accessed_at
            row.importance_score = min(1.0, (row.importance_score or 0.0) + importance_boost)
            row.metadata_json = metadata
            return _to_memory(row)

    def list_memories(self, owner_id: str, limit: Optional[int] = None, since: Optional[int] = None) -> List[Memory]:
        """Owner's memories, newest first."""
        with self.session_scope() as session:
            query = session.query(MemoryRow).filter(MemoryRow.user_id == owner_id)
            if since is not None:
                query = query.filter(MemoryRow.timestamp >= since)
            query = query.order_by(MemoryRow.timestamp.desc())
            if limit:
                query = query.limit(limit)
            return [_to_memory(row) for row in query.all()]

    def keyword_candidates(self, owner_id: str, tokens: Sequence[str], limit: int) -> List[Memory]:
        """
        Case-insensitive substring match of any token against title, summary, content or URL.

        Args:
            owner_id: Owner whose memories are searched
            tokens: Lower-cased query tokens
            limit: Maximum rows returned, newest first

        Returns:
            Matching memories
        """
        if not tokens:
            return []
        fields = (MemoryRow.title, MemoryRow.summary, MemoryRow.content, MemoryRow.url)
        clauses = [func.lower(column).contains(token, autoescape=True) for token in tokens for column in fields]
        with self.session_scope() as session:
            rows = (session.query(MemoryRow).filter(MemoryRow.user_id == owner_id,
                                                    or_(*clauses)).order_by(MemoryRow.timestamp.desc()).limit(limit).all())
            return [_to_memory(row) for row in rows]

    def count_memories(self, owner_id: Optional[str] = None) -> int:
        with self.session_scope() as session:
            query = session.query(func.count(MemoryRow.id))
            if owner_id is not None:
                query = query.filter(MemoryRow.user_id == owner_id)
            return query.scalar() or 0

    # Snapshots

    def insert_snapshot(self, snapshot: MemorySnapshot) -> bool:
        """
        Insert an immutable snapshot.

        Returns:
            False when a snapshot with the same summary hash already exists
        """
        try:
            with self.session_scope() as session:
                session.add(
                    MemorySnapshotRow(id=snapshot.id,
                                      user_id=snapshot.owner_id,
                                      raw_text=snapshot.raw_text,
                                      summary=snapshot.summary,
                                      summary_hash=snapshot.summary_hash,
                                      created_at=snapshot.created_at))
        except IntegrityError:
            logger.debug(f'Snapshot with summary hash {snapshot.summary_hash[:12]} already stored')
            return False
        return True

    def count_snapshots(self, owner_id: str) -> int:
        with self.session_scope() as session:
            return session.query(func.count(MemorySnapshotRow.id)).filter(MemorySnapshotRow.user_id == owner_id).scalar() or 0

    # Relations

    def get_outgoing_relations(self, memory_id: str) -> List[MemoryRelation]:
        with self.session_scope() as session:
            rows = (session.query(MemoryRelationRow).filter(MemoryRelationRow.memory_id == memory_id).order_by(
                MemoryRelationRow.similarity_score.desc()).all())
            return [_to_relation(row) for row in rows]

    def get_incoming_relations(self, memory_id: str) -> List[MemoryRelation]:
        with self.session_scope() as session:
            rows = (session.query(MemoryRelationRow).filter(MemoryRelationRow.related_memory_id == memory_id).order_by(
                MemoryRelationRow.similarity_score.desc()).all())
            return [_to_relation(row) for row in rows]

    def list_relations(self, memory_ids: Sequence[str]) -> List[MemoryRelation]:
        """Relations whose both endpoints are in ``memory_ids``."""
        ids = list(memory_ids)
        if not ids:
            return []
        with self.session_scope() as session:
            rows = (session.query(MemoryRelationRow).filter(MemoryRelationRow.memory_id.in_(ids),
                                                            MemoryRelationRow.related_memory_id.in_(ids)).all())
            return [_to_relation(row) for row in rows]

    def apply_relation_changes(self, upserts: Sequence[MemoryRelation], deletes: Sequence[Tuple[str, str]]) -> int:
        """
        Write relation upserts and deletions in one transaction.

        Args:
            upserts: Relations to insert, or to update in place when the pair exists
            deletes: (memory_id, related_memory_id) pairs to remove

        Returns:
            Number of rows deleted
        """
        deleted = 0
        try:
            with self.session_scope() as session:
                for memory_id, related_memory_id in deletes:
                    deleted += (session.query(MemoryRelationRow).filter(
                        MemoryRelationRow.memory_id == memory_id,
                        MemoryRelationRow.related_memory_id == related_memory_id).delete(synchronize_session=False))

                for relation in upserts:
                    row = (session.query(MemoryRelationRow).filter(
                        MemoryRelationRow.memory_id == relation.memory_id,
                        MemoryRelationRow.related_memory_id == relation.related_memory_id).first())
                    if row is None:
                        session.add(
                            MemoryRelationRow(memory_id=relation.memory_id,
                                              related_memory_id=relation.related_memory_id,
                                              similarity_score=relation.similarity_score,
                                              relation_type=relation.relation_type,
                                              created_at=relation.created_at))
                    else:
                        # created_at stays the time the pair was first linked
                        row.similarity_score = relation.similarity_score
                        row.relation_type = relation.relation_type
        except IntegrityError as e:
            logger.error(f'Relation write rejected by the store: {e}')
            raise MemoryStoreError(f'Relation write rejected: {e}')
        return deleted

    def delete_weak_relations(self, threshold: float, age_threshold: float, age_cutoff: int,
                              owner_id: Optional[str] = None) -> int:
        """
        Delete relations scoring below ``threshold``, and those older than
        ``age_cutoff`` scoring below ``age_threshold``.

        Returns:
            Number of relations removed
        """
        with self.session_scope() as session:
            query = session.query(MemoryRelationRow).filter(
                or_(MemoryRelationRow.similarity_score < threshold,
                    and_(MemoryRelationRow.created_at < age_cutoff, MemoryRelationRow.similarity_score < age_threshold)))
            if owner_id is not None:
                owned = select(MemoryRow.id).where(MemoryRow.user_id == owner_id)
                query = query.filter(MemoryRelationRow.memory_id.in_(owned))
            return query.delete(synchronize_session=False)

    def count_relations(self, owner_id: Optional[str] = None) -> int:
        with self.session_scope() as session:
            query = session.query(func.count(MemoryRelationRow.id))
            if owner_id is not None:
                owned = select(MemoryRow.id).where(MemoryRow.user_id == owner_id)
                query = query.filter(MemoryRelationRow.memory_id.in_(owned))
            return query.scalar() or 0

    def health_check(self) -> bool:
        """
        Perform a health check on the relational store.

        Returns:
            True if the store answers a trivial query, False otherwise
        """
        try:
            with self.session_scope() as session:
                session.query(func.count(UserRow.id)).scalar()
            return True
        except Exception as e:
            logger.error(f'Memory store health check failed: {e}')
            return False
