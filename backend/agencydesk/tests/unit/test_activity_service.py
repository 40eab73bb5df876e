"""
Tests for the activity feed read path.

Tests cover:
- Agency scoping of the feed
- Staff visibility (own actions and own/assigned tasks only)
- Task history filter and paging
"""

from datetime import datetime, timedelta, timezone

import pytest

from agencydesk.models.activity_log import ActivityLog
from agencydesk.models.agency_member import AgencyMember
from agencydesk.models.todo import Todo
from agencydesk.platform.errors import ForbiddenError, NotFoundError, ValidationError
from agencydesk.services.activity_service import MAX_FEED_LIMIT, ActivityService


@pytest.fixture
def feed_for(db_session, make_ctx):
    def _service(user, agency) -> ActivityService:
        return ActivityService(db_session, make_ctx(user, agency))
    return _service


@pytest.fixture
def add_entry(db_session):
    def _add(agency, user_name, action="task_updated", todo_id=None, minutes_ago=0):
        entry = ActivityLog(
            agency_id=agency.id,
            action=action,
            user_name=user_name,
            todo_id=todo_id,
            created_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
        )
        db_session.add(entry)
        db_session.commit()
        return entry.id
    return _add


@pytest.fixture
def add_todo(db_session):
    def _add(agency, created_by, assigned_to=None):
        todo = Todo(agency_id=agency.id, text="Renew policy", created_by=created_by, assigned_to=assigned_to)
        db_session.add(todo)
        db_session.commit()
        return todo.id
    return _add


class TestFeed:

    def test_newest_first(self, feed_for, add_entry, owner, agency):
        older = add_entry(agency, "Olivia", minutes_ago=10)
        newer = add_entry(agency, "Marcus", minutes_ago=1)
        feed = feed_for(owner, agency).list_activity()
        assert [e["id"] for e in feed] == [newer, older]

    @pytest.mark.security
    def test_other_agency_entries_excluded(self, feed_for, add_entry, owner, agency, other_agency):
        mine = add_entry(agency, "Olivia")
        add_entry(other_agency, "Jordan")
        assert [e["id"] for e in feed_for(owner, agency).list_activity()] == [mine]

    def test_task_history(self, feed_for, add_entry, add_todo, owner, agency):
        todo_id = add_todo(agency, "Olivia")
        history = add_entry(agency, "Olivia", action="task_created", todo_id=todo_id)
        add_entry(agency, "Olivia", action="member_added")
        feed = feed_for(owner, agency).list_activity(todo_id=todo_id)
        assert [e["id"] for e in feed] == [history]

    def test_paging(self, feed_for, add_entry, owner, agency):
        ids = [add_entry(agency, "Olivia", minutes_ago=m) for m in range(5)]
        service = feed_for(owner, agency)
        first = service.list_activity(limit=2)
        rest = service.list_activity(limit=10, offset=2)
        assert [e["id"] for e in first + rest] == ids

    @pytest.mark.parametrize("kwargs", [{"limit": 0}, {"offset": -1}])
    def test_invalid_paging(self, feed_for, owner, agency, kwargs):
        with pytest.raises(ValidationError):
            feed_for(owner, agency).list_activity(**kwargs)

    def test_limit_capped(self, feed_for, db_session, owner, agency):
        now = datetime.now(timezone.utc)
        db_session.add_all([
            ActivityLog(agency_id=agency.id, action="task_updated", user_name="Olivia", created_at=now)
            for _ in range(MAX_FEED_LIMIT + 5)
        ])
        db_session.commit()
        assert len(feed_for(owner, agency).list_activity(limit=10_000)) == MAX_FEED_LIMIT


@pytest.mark.security
class TestStaffVisibility:

    def test_staff_sees_own_and_assigned_tasks(self, feed_for, add_entry, add_todo, staff, agency):
        own_task = add_todo(agency, "Sam")
        assigned = add_todo(agency, "Olivia", assigned_to="Sam")
        hidden = add_todo(agency, "Olivia")

        expected = {
            add_entry(agency, "Olivia", todo_id=own_task),
            add_entry(agency, "Olivia", todo_id=assigned),
            add_entry(agency, "Sam", action="member_added"),
        }
        add_entry(agency, "Olivia", todo_id=hidden)
        add_entry(agency, "Marcus", action="member_added")

        feed = feed_for(staff, agency).list_activity()
        assert {e["id"] for e in feed} == expected

    def test_staff_cannot_read_hidden_task_history(self, feed_for, add_entry, add_todo, staff, agency):
        hidden = add_todo(agency, "Olivia")
        add_entry(agency, "Olivia", todo_id=hidden)
        with pytest.raises(NotFoundError):
            feed_for(staff, agency).list_activity(todo_id=hidden)

    def test_manager_sees_everything(self, feed_for, add_entry, add_todo, manager, agency):
        hidden = add_todo(agency, "Olivia")
        entry = add_entry(agency, "Olivia", todo_id=hidden)
        assert [e["id"] for e in feed_for(manager, agency).list_activity()] == [entry]

    def test_feed_needs_activity_permission(self, db_session, feed_for, staff, agency):
        member = (
            db_session.query(AgencyMember)
            .filter(AgencyMember.user_id == staff.id, AgencyMember.agency_id == agency.id)
            .one()
        )
        member.permissions = {**member.permissions, "can_view_activity_log": False}
        db_session.commit()

        with pytest.raises(ForbiddenError):
            feed_for(staff, agency).list_activity()
