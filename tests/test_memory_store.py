"""Tests for the in-memory store: constraints, cascades and counters."""

from datetime import timedelta

import pytest

from findclass.storage.common import CourseSearchFilters, CourseSearchOptions
from findclass.storage.errors import ConstraintViolation
from findclass.storage.memory import MemoryStore
from findclass.storage.models import TokenRecord


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.create_user("owner@example.com", "Owner", role="TEACHER", status="ACTIVE")


@pytest.fixture
def teacher(store, user):
    return store.create_teacher(user.id, "Owner", teaching_subjects=["MATH"])


@pytest.fixture
def course(store, teacher):
    return store.create_course(
        teacher.id,
        title="Algebra",
        description="NCEA algebra",
        category="MATH",
        price=40.0,
        price_type="PER_HOUR",
        max_class_size=2,
    )


class TestUsers:
    """Tests for user rows."""

    def test_email_is_unique(self, store, user):
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user("owner@example.com", "Again", role="STUDENT", status="ACTIVE")
        assert exc_info.value.field == "email"

    def test_update_ignores_unknown_fields(self, store, user):
        updated = store.update_user(user.id, name="Renamed", id="hijack")
        assert updated.name == "Renamed"
        assert updated.id == user.id

    def test_password_requires_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash", "argon2id")

    def test_delete_user_cascades(self, store, user, teacher, course):
        other = store.create_user("fan@example.com", "Fan", role="STUDENT", status="ACTIVE")
        store.toggle_favorite(other.id, course.id)
        store.create_notification(user.id, "SYSTEM", "Hi", "Welcome")
        inquiry = store.create_inquiry("general", "hello", user_id=user.id)

        assert store.delete_user(user.id)
        assert store.get_teacher(teacher.id) is None
        assert store.get_course(course.id) is None
        assert store.list_favorites(other.id) == []
        assert store.count_unread_notifications(user.id) == 0
        assert store.get_inquiry(inquiry.id).user_id is None
        assert not store.delete_user(user.id)


class TestTokens:
    """Tests for issued-token bookkeeping."""

    def test_revoke_marks_record(self, store, user):
        record = store.record_token(TokenRecord.new(user.id, "jti-1", "hash", timedelta(minutes=5)))
        assert not store.is_token_revoked(record.token_jti)
        store.revoke_token("jti-1", user_id=user.id, token_hash="hash", expires_at=record.expires_at)
        assert store.is_token_revoked("jti-1")

    def test_duplicate_jti_rejected(self, store, user):
        store.record_token(TokenRecord.new(user.id, "jti-1", "hash", timedelta(minutes=5)))
        with pytest.raises(ConstraintViolation):
            store.record_token(TokenRecord.new(user.id, "jti-1", "hash", timedelta(minutes=5)))

    def test_revoke_all_except(self, store, user):
        for jti in ("a", "b", "c"):
            store.record_token(TokenRecord.new(user.id, jti, "h", timedelta(minutes=5)))
        revoked = store.revoke_all_user_tokens(user.id, except_jtis=["b"])
        assert sorted(r.token_jti for r in revoked) == ["a", "c"]
        assert [r.token_jti for r in store.list_active_tokens(user.id)] == ["b"]

    def test_cleanup_expired(self, store, user):
        store.record_token(TokenRecord.new(user.id, "old", "h", timedelta(seconds=-1)))
        store.record_token(TokenRecord.new(user.id, "new", "h", timedelta(minutes=5)))
        assert store.cleanup_expired_tokens() == 1
        assert store.get_token("old") is None


class TestCourses:
    """Tests for course rows and counters."""

    def test_requires_teacher(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_course(
                "missing", title="x", description="y", category="MATH", price=1, price_type="PER_HOUR"
            )

    def test_active_course_gets_published_at(self, course):
        assert course.published_at is not None

    def test_enrollment_respects_capacity(self, store, course):
        assert store.increment_enrollment(course.id).current_enrollment == 1
        assert store.increment_enrollment(course.id).current_enrollment == 2
        assert store.increment_enrollment(course.id) is None
        assert store.decrement_enrollment(course.id).current_enrollment == 1

    def test_decrement_floors_at_zero(self, store, course):
        assert store.decrement_enrollment(course.id).current_enrollment == 0

    def test_search_pages(self, store, teacher):
        for n in range(5):
            store.create_course(
                teacher.id,
                title=f"Course {n}",
                description="d",
                category="ART",
                price=float(n),
                price_type="PER_SESSION",
            )
        items, total = store.search_courses(
            CourseSearchFilters(category="ART"),
            CourseSearchOptions(page=2, limit=2, sort_by="price_asc"),
        )
        assert total == 5
        assert [c.price for c in items] == [2.0, 3.0]

    def test_toggle_favorite(self, store, user, course):
        assert store.toggle_favorite(user.id, course.id) is True
        assert [c.id for c in store.list_favorites(user.id)] == [course.id]
        assert store.toggle_favorite(user.id, course.id) is False
        assert store.list_favorites(user.id) == []

    def test_statistics(self, store, teacher, course):
        stats = store.course_statistics(teacher.id)
        assert stats["total_courses"] == 1
        assert stats["active_courses"] == 1
        assert stats["category_distribution"] == [{"category": "MATH", "count": 1}]

    def test_suggestions_skip_inactive(self, store, course):
        assert store.search_suggestions("algebra")[0]["id"] == course.id
        store.update_course(course.id, status="INACTIVE")
        assert store.search_suggestions("algebra") == []


class TestReviews:
    """Tests for review rows and aggregates."""

    def test_one_review_per_user_and_teacher(self, store, teacher):
        store.create_review("u1", teacher.id, overall_rating=5.0, content="great")
        with pytest.raises(ConstraintViolation):
            store.create_review("u1", teacher.id, overall_rating=4.0, content="again")

    def test_stats_only_count_approved(self, store, teacher):
        store.create_review("u1", teacher.id, overall_rating=5.0, content="a", status="APPROVED", teaching_rating=4.0)
        store.create_review("u2", teacher.id, overall_rating=3.0, content="b", status="APPROVED")
        store.create_review("u3", teacher.id, overall_rating=1.0, content="c", status="PENDING")
        stats = store.review_stats(teacher.id)
        assert stats["total_reviews"] == 2
        assert stats["average_rating"] == 4.0
        assert stats["rating_distribution"]["5"] == 1
        assert stats["rating_distribution"]["1"] == 0
        assert stats["dimension_averages"]["teaching"] == 4.0
        assert stats["dimension_averages"]["course"] is None
