import os
import uuid

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import core.config as config
from core.audit import AuditRecorder
from core.audit_constants import (
    ENTITY_BUCKET,
    ENTITY_COMMENT,
    ENTITY_DEADLINE,
    ENTITY_IDEA,
    ENTITY_LAB,
    ENTITY_STUDY,
    ENTITY_TASK,
    ENTITY_TEAM_MEMBER,
)
from core.db import DB
from core.models import Base, IdeaVote, StudyMember, TaskAssignee, TaskStatus, User
from core.services.archive_manager import ArchiveManager
from core.services.deletion_service import DeletionOrchestrator
from core.services.entity_repository import EntityRepository
from rate_limiter import InMemoryRateLimiter, OperationRateLimiter, RateLimitConfig, RateLimitRule


class Seeder:
    """Creates committed lab data through the entity repository."""

    def __init__(self, db):
        self.db = db
        self.repo = EntityRepository(db)

    def _create(self, entity_type, **values):
        row = self.repo.create(entity_type, **values)
        self.db.commit()
        return row

    def _add(self, row):
        self.db.add(row)
        self.db.commit()
        return row

    def user(self, name="Researcher", email=None):
        return self._add(User(name=name, email=email or f"{uuid.uuid4().hex[:10]}@lab.test"))

    def lab(self, name="Cognition Lab"):
        return self._create(ENTITY_LAB, name=name, short_name=name[:8])

    def member(self, lab, user, role="RESEARCHER", is_admin=False):
        return self._create(ENTITY_TEAM_MEMBER, lab_id=lab.id, user_id=user.id, role=role, is_admin=is_admin)

    def bucket(self, lab, name="Active projects"):
        return self._create(ENTITY_BUCKET, lab_id=lab.id, name=name)

    def study(self, lab, name="Sleep and Memory", bucket=None):
        return self._create(
            ENTITY_STUDY,
            lab_id=lab.id,
            name=name,
            bucket_id=bucket.id if bucket is not None else None,
        )

    def study_member(self, study, user):
        return self._add(StudyMember(study_id=study.id, user_id=user.id, role="RA"))

    def task(self, study, title="Recruit participants", status=TaskStatus.TODO.value):
        return self._create(ENTITY_TASK, study_id=study.id, title=title, status=status)

    def assign(self, task, user):
        return self._add(TaskAssignee(task_id=task.id, user_id=user.id))

    def comment(self, study=None, task=None, reply_to=None, content="Protocol looks good"):
        return self._create(
            ENTITY_COMMENT,
            study_id=study.id if study is not None else None,
            task_id=task.id if task is not None else None,
            reply_to_id=reply_to.id if reply_to is not None else None,
            content=content,
        )

    def idea(self, lab, title="Pilot EEG headbands"):
        return self._create(ENTITY_IDEA, lab_id=lab.id, title=title)

    def vote(self, idea, user):
        return self._add(IdeaVote(idea_id=idea.id, user_id=user.id))

    def deadline(self, lab, title="IRB renewal", study=None):
        return self._create(
            ENTITY_DEADLINE,
            lab_id=lab.id if lab is not None else None,
            study_id=study.id if study is not None else None,
            title=title,
        )


def reload(db, model, entity_id):
    db.expire_all()
    return db.query(model).filter(model.id == entity_id).first()


@pytest.fixture
def server_db(tmp_path, monkeypatch):
    db_path = tmp_path / "labops.sqlite"
    monkeypatch.setattr(config, "DATABASE_URL", f"sqlite:///{db_path}")
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    DB.engine = engine
    DB.SessionLocal = SessionLocal
    try:
        yield SessionLocal
    finally:
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture
def db_session(server_db):
    db = server_db()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


@pytest.fixture
def seed(db_session):
    return Seeder(db_session)


@pytest.fixture
def rate_config():
    return RateLimitConfig(
        enabled=True,
        destructive=RateLimitRule(limit=5, window_seconds=60),
        general=RateLimitRule(limit=60, window_seconds=60),
        max_cache_entries=1000,
        trusted_proxy_count=0,
        trusted_proxy_ips=(),
        redis_fail_open=True,
    )


@pytest.fixture
def operation_limiter(rate_config):
    return OperationRateLimiter(InMemoryRateLimiter(max_entries=rate_config.max_cache_entries), rate_config)


@pytest.fixture
def recorder(server_db):
    return AuditRecorder(server_db)


@pytest.fixture
def orchestrator(server_db, operation_limiter, recorder):
    return DeletionOrchestrator(server_db, operation_limiter, recorder)


@pytest.fixture
def archive(server_db, recorder):
    return ArchiveManager(server_db, recorder)


@pytest.fixture
def fresh(db_session):
    """Re-read a row from the store, bypassing the session identity map."""

    def _fresh(model, entity_id):
        return reload(db_session, model, entity_id)

    return _fresh
