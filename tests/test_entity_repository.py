import os

import pytest

os.environ.setdefault("DB_BACKEND", "sqlite")

from core.audit_constants import ENTITY_COMMENT, ENTITY_IDEA, ENTITY_STUDY, ENTITY_TASK
from core.errors import UnsupportedEntityType
from core.services.entity_repository import EntityRepository


def test_get_with_counts_returns_row_and_counts(seed, db_session):
    lab = seed.lab()
    study = seed.study(lab, name="Working Memory")
    seed.task(study)
    seed.comment(study=study)

    row, counts = EntityRepository(db_session).get_with_counts(ENTITY_STUDY, study.id, lock=True)

    assert row.name == "Working Memory"
    assert counts == {"tasks": 1, "comments": 1, "members": 0, "deadlines": 0}


def test_get_hides_soft_deleted_rows(seed, db_session):
    lab = seed.lab()
    idea = seed.idea(lab)
    repo = EntityRepository(db_session)
    repo.soft_delete(ENTITY_IDEA, idea, actor_id=None)
    db_session.commit()

    assert repo.get(ENTITY_IDEA, idea.id) is None
    assert repo.get(ENTITY_IDEA, idea.id, include_deleted=True) is not None
    assert repo.get_with_counts(ENTITY_IDEA, idea.id) == (None, {})


def test_update_returns_changed_fields_only(seed, db_session):
    lab = seed.lab()
    task = seed.task(seed.study(lab), title="Draft consent form")
    repo = EntityRepository(db_session)

    row, changes = repo.update(ENTITY_TASK, task.id, title="Final consent form", priority="MEDIUM")
    db_session.commit()

    assert row.title == "Final consent form"
    assert changes == {"title": {"before": "Draft consent form", "after": "Final consent form"}}

    with pytest.raises(ValueError):
        repo.update(ENTITY_TASK, task.id, nickname="x")


def test_update_missing_row(server_db, db_session):
    assert EntityRepository(db_session).update(ENTITY_TASK, "missing", title="x") == (None, {})


def test_soft_delete_rejects_types_without_marker(seed, db_session):
    lab = seed.lab()
    study = seed.study(lab)

    with pytest.raises(ValueError):
        EntityRepository(db_session).soft_delete(ENTITY_STUDY, study, actor_id=None)


def test_iter_soft_deleted_streams_oldest_first(seed, db_session):
    lab = seed.lab()
    study = seed.study(lab)
    first = seed.comment(study=study, content="first")
    second = seed.comment(study=study, content="second")
    repo = EntityRepository(db_session)
    repo.soft_delete(ENTITY_COMMENT, first, actor_id=None)
    repo.soft_delete(ENTITY_COMMENT, second, actor_id=None)
    db_session.commit()

    rows = list(repo.iter_soft_deleted(ENTITY_COMMENT, lab_id=lab.id, batch_size=1))

    assert [row.deleted_content for row in rows] == ["first", "second"]
    assert list(repo.iter_soft_deleted(ENTITY_STUDY)) == []


def test_unknown_type_is_rejected(server_db, db_session):
    with pytest.raises(UnsupportedEntityType):
        EntityRepository(db_session).get("protocol", "p1")
