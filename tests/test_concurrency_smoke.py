import os
from concurrent.futures import ThreadPoolExecutor

os.environ.setdefault("DB_BACKEND", "sqlite")

from core.audit_constants import ENTITY_TASK
from core.context import Actor
from core.models import AuditEvent, Task
from core.results import Deleted, RateLimited
from rate_limiter import InMemoryRateLimiter, RateLimitRule


def test_in_memory_limiter_is_atomic_under_threads():
    limiter = InMemoryRateLimiter()
    rule = RateLimitRule(limit=5, window_seconds=60)

    with ThreadPoolExecutor(max_workers=8) as executor:
        decisions = list(executor.map(lambda _: limiter.hit("destructive:user:u1", rule), range(40)))

    assert sum(decision.allowed for decision in decisions) == 5
    remaining = sorted(decision.remaining for decision in decisions if decision.allowed)
    assert remaining == [0, 1, 2, 3, 4]


def test_concurrent_deletes_respect_actor_ceiling(seed, db_session, orchestrator):
    user = seed.user()
    lab = seed.lab()
    study = seed.study(lab)
    task_ids = [seed.task(study, title=f"parallel {index}").id for index in range(8)]
    actor = Actor(id=user.id)

    def _delete(task_id):
        return orchestrator.delete_entity(ENTITY_TASK, task_id, actor)

    with ThreadPoolExecutor(max_workers=4) as executor:
        results = list(executor.map(_delete, task_ids))

    deleted = [result for result in results if isinstance(result, Deleted)]
    throttled = [result for result in results if isinstance(result, RateLimited)]
    assert len(deleted) == 5
    assert len(throttled) == 3

    db_session.expire_all()
    archived = db_session.query(Task).filter(Task.is_active.is_(False)).count()
    audited = db_session.query(AuditEvent).filter(AuditEvent.entity_type == ENTITY_TASK).count()
    assert archived == 5
    assert audited == 5
