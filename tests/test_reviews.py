"""Tests for reviews, moderation and the ratings they feed."""

import pytest
from conftest import STRONG_PASSWORD


@pytest.fixture
def course_id(client, teacher_setup):
    headers, _ = teacher_setup
    resp = client.post(
        "/api/v1/courses",
        json={
            "title": "Piano lessons",
            "description": "Weekly piano for beginners",
            "category": "MUSIC",
            "price": 40,
            "price_type": "PER_HOUR",
        },
        headers=headers,
    )
    return resp.json()["data"]["id"]


def _review(client, headers, teacher_id, **overrides):
    payload = {
        "teacher_id": teacher_id,
        "overall_rating": 5,
        "teaching_rating": 4,
        "content": "Patient and clear, my daughter loves the lessons.",
    }
    payload.update(overrides)
    return client.post("/api/v1/reviews", json=payload, headers=headers)


class TestCreateReview:
    """Tests for submitting reviews."""

    def test_new_review_is_pending(self, client, teacher_setup, register):
        _, teacher_id = teacher_setup
        user, headers, _ = register()
        resp = _review(client, headers, teacher_id)
        assert resp.status_code == 201
        review = resp.json()["data"]
        assert review["status"] == "PENDING"
        assert review["user_id"] == user["id"]
        assert review["teaching_rating"] == 4

    def test_one_review_per_teacher(self, client, teacher_setup, register):
        _, teacher_id = teacher_setup
        _, headers, _ = register()
        _review(client, headers, teacher_id)
        resp = _review(client, headers, teacher_id)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize("field,value", [("overall_rating", 6), ("overall_rating", 0), ("teaching_rating", 9)])
    def test_rating_out_of_range(self, client, teacher_setup, register, field, value):
        _, teacher_id = teacher_setup
        _, headers, _ = register()
        resp = _review(client, headers, teacher_id, **{field: value})
        assert resp.status_code == 400
        assert resp.json()["error"]["details"]["field"] == field

    def test_empty_content(self, client, teacher_setup, register):
        _, teacher_id = teacher_setup
        _, headers, _ = register()
        assert _review(client, headers, teacher_id, content="   ").status_code == 400

    def test_unknown_teacher(self, client, register):
        _, headers, _ = register()
        assert _review(client, headers, "nobody").status_code == 404

    def test_course_must_belong_to_teacher(self, client, teacher_setup, register, course_id):
        _, headers, _ = register(email="other-teacher@example.com", role="TEACHER")
        other = client.post(
            "/api/v1/teachers/onboarding", json={"display_name": "Other"}, headers=headers
        ).json()["data"]["teacher_id"]
        _, parent, _ = register()
        resp = _review(client, parent, other, course_id=course_id)
        assert resp.status_code == 400

    def test_requires_login(self, client, teacher_setup):
        _, teacher_id = teacher_setup
        assert _review(client, {}, teacher_id).status_code == 401


class TestVisibility:
    """Tests for who can read reviews that are not yet APPROVED."""

    @pytest.fixture
    def reviews(self, client, teacher_setup, register, admin_headers):
        _, teacher_id = teacher_setup
        _, first, _ = register(email="a@example.com")
        author, second, _ = register(email="b@example.com")
        approved = _review(client, first, teacher_id).json()["data"]
        pending = _review(client, second, teacher_id, overall_rating=2).json()["data"]
        client.patch(
            f"/api/v1/reviews/{approved['id']}/status", json={"status": "APPROVED"}, headers=admin_headers
        )
        return {
            "teacher_id": teacher_id,
            "approved": approved,
            "pending": pending,
            "author": author,
            "author_headers": second,
            "other_headers": first,
        }

    def test_list_hides_pending_from_other_users(self, client, reviews):
        params = {"teacher_id": reviews["teacher_id"]}
        anonymous = client.get("/api/v1/reviews", params=params).json()["data"]
        assert [r["id"] for r in anonymous["items"]] == [reviews["approved"]["id"]]

        signed_in = client.get(
            "/api/v1/reviews", params={**params, "status": "PENDING"}, headers=reviews["other_headers"]
        ).json()["data"]
        assert [r["id"] for r in signed_in["items"]] == [reviews["approved"]["id"]]

    def test_admin_lists_every_status(self, client, reviews, admin_headers):
        data = client.get(
            "/api/v1/reviews", params={"teacher_id": reviews["teacher_id"]}, headers=admin_headers
        ).json()["data"]
        assert data["pagination"]["total"] == 2

    def test_author_lists_own_pending(self, client, reviews):
        data = client.get(
            "/api/v1/reviews",
            params={"user_id": reviews["author"]["id"]},
            headers=reviews["author_headers"],
        ).json()["data"]
        assert [r["id"] for r in data["items"]] == [reviews["pending"]["id"]]

    def test_get_pending(self, client, reviews, admin_headers):
        url = f"/api/v1/reviews/{reviews['pending']['id']}"
        assert client.get(url).status_code == 404
        assert client.get(url, headers=reviews["other_headers"]).status_code == 404
        assert client.get(url, headers=reviews["author_headers"]).status_code == 200
        assert client.get(url, headers=admin_headers).status_code == 200

    def test_get_approved_is_public(self, client, reviews):
        assert client.get(f"/api/v1/reviews/{reviews['approved']['id']}").status_code == 200


class TestModeration:
    """Tests for admin approval and rating recalculation."""

    def test_approval_updates_teacher_and_course(self, client, teacher_setup, register, admin_headers, course_id):
        _, teacher_id = teacher_setup
        _, first, _ = register(email="a@example.com")
        _, second, _ = register(email="b@example.com")
        r1 = _review(client, first, teacher_id, course_id=course_id, overall_rating=5).json()["data"]
        r2 = _review(client, second, teacher_id, course_id=course_id, overall_rating=4).json()["data"]
        for review in (r1, r2):
            resp = client.patch(
                f"/api/v1/reviews/{review['id']}/status",
                json={"status": "APPROVED"},
                headers=admin_headers,
            )
            assert resp.status_code == 200

        teacher = client.get(f"/api/v1/teachers/{teacher_id}").json()["data"]
        assert teacher["average_rating"] == 4.5
        assert teacher["total_reviews"] == 2

        course = client.get(f"/api/v1/courses/{course_id}").json()["data"]
        assert course["average_rating"] == 4.5
        assert course["total_reviews"] == 2

        stats = client.get(f"/api/v1/reviews/stats/{teacher_id}").json()["data"]
        assert stats["total_reviews"] == 2
        assert stats["rating_distribution"]["5"] == 1
        assert stats["rating_distribution"]["4"] == 1

    def test_rejecting_removes_from_average(self, client, teacher_setup, register, admin_headers):
        _, teacher_id = teacher_setup
        _, headers, _ = register()
        review = _review(client, headers, teacher_id).json()["data"]
        url = f"/api/v1/reviews/{review['id']}/status"
        client.patch(url, json={"status": "APPROVED"}, headers=admin_headers)
        client.patch(url, json={"status": "REJECTED"}, headers=admin_headers)
        teacher = client.get(f"/api/v1/teachers/{teacher_id}").json()["data"]
        assert teacher["total_reviews"] == 0
        assert teacher["average_rating"] == 0.0

    def test_only_admin_moderates(self, client, teacher_setup, register):
        _, teacher_id = teacher_setup
        _, headers, _ = register()
        review = _review(client, headers, teacher_id).json()["data"]
        resp = client.patch(
            f"/api/v1/reviews/{review['id']}/status", json={"status": "APPROVED"}, headers=headers
        )
        assert resp.status_code == 403

    def test_invalid_status(self, client, teacher_setup, register, admin_headers):
        _, teacher_id = teacher_setup
        _, headers, _ = register()
        review = _review(client, headers, teacher_id).json()["data"]
        resp = client.patch(
            f"/api/v1/reviews/{review['id']}/status", json={"status": "PENDING"}, headers=admin_headers
        )
        assert resp.status_code == 400


class TestReplies:
    """Tests for teacher replies and helpful votes."""

    def test_teacher_replies_and_author_is_notified(self, client, teacher_setup, register):
        teacher_headers, teacher_id = teacher_setup
        _, headers, _ = register()
        review = _review(client, headers, teacher_id).json()["data"]

        resp = client.post(
            f"/api/v1/reviews/{review['id']}/reply",
            json={"content": "Thank you, it is a pleasure teaching her."},
            headers=teacher_headers,
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["reply_content"].startswith("Thank you")
        assert resp.json()["data"]["reply_created_at"]

        notes = client.get("/api/v1/users/notifications", headers=headers).json()["data"]["items"]
        assert notes[0]["type"] == "REVIEW_RESPONSE"

    def test_other_users_cannot_reply(self, client, teacher_setup, register):
        _, teacher_id = teacher_setup
        _, headers, _ = register()
        review = _review(client, headers, teacher_id).json()["data"]
        resp = client.post(
            f"/api/v1/reviews/{review['id']}/reply", json={"content": "Me too"}, headers=headers
        )
        assert resp.status_code == 403

    def test_helpful_counter(self, client, teacher_setup, register):
        _, teacher_id = teacher_setup
        _, headers, _ = register()
        review = _review(client, headers, teacher_id).json()["data"]
        url = f"/api/v1/reviews/{review['id']}/helpful"
        client.post(url, headers=headers)
        resp = client.post(url, headers=headers)
        assert resp.json()["data"] == {"helpful_count": 2}

    def test_helpful_missing_review(self, client, register):
        _, headers, _ = register()
        assert client.post("/api/v1/reviews/nope/helpful", headers=headers).status_code == 404


class TestUserReviews:
    """Tests for the signed-in user's own reviews."""

    def test_list_and_delete(self, client, teacher_setup, register, admin_headers):
        _, teacher_id = teacher_setup
        _, headers, _ = register()
        review = _review(client, headers, teacher_id).json()["data"]
        client.patch(
            f"/api/v1/reviews/{review['id']}/status", json={"status": "APPROVED"}, headers=admin_headers
        )

        mine = client.get("/api/v1/users/reviews", headers=headers).json()["data"]
        assert [r["id"] for r in mine["items"]] == [review["id"]]

        assert client.delete(f"/api/v1/users/reviews/{review['id']}", headers=headers).status_code == 200
        teacher = client.get(f"/api/v1/teachers/{teacher_id}").json()["data"]
        assert teacher["total_reviews"] == 0

    def test_cannot_delete_others(self, client, teacher_setup, register):
        _, teacher_id = teacher_setup
        _, headers, _ = register()
        review = _review(client, headers, teacher_id).json()["data"]
        _, other, _ = register(email="other@example.com")
        resp = client.delete(f"/api/v1/users/reviews/{review['id']}", headers=other)
        assert resp.status_code == 403

    def test_deleted_account_leaves_the_averages(
        self, client, teacher_setup, register, admin_headers, course_id
    ):
        _, teacher_id = teacher_setup
        _, fan, _ = register(email="fan@example.com")
        _, critic, _ = register(email="critic@example.com")
        for headers, rating in ((fan, 5), (critic, 1)):
            review = _review(
                client, headers, teacher_id, course_id=course_id, overall_rating=rating
            ).json()["data"]
            client.patch(
                f"/api/v1/reviews/{review['id']}/status",
                json={"status": "APPROVED"},
                headers=admin_headers,
            )
        assert client.get(f"/api/v1/teachers/{teacher_id}").json()["data"]["average_rating"] == 3.0

        resp = client.request(
            "DELETE", "/api/v1/users/account", json={"password": STRONG_PASSWORD}, headers=critic
        )
        assert resp.status_code == 200

        teacher = client.get(f"/api/v1/teachers/{teacher_id}").json()["data"]
        assert teacher["average_rating"] == 5.0
        assert teacher["total_reviews"] == 1
        course = client.get(f"/api/v1/courses/{course_id}").json()["data"]
        assert course["average_rating"] == 5.0
        assert course["total_reviews"] == 1
        stats = client.get(f"/api/v1/reviews/stats/{teacher_id}").json()["data"]
        assert stats["total_reviews"] == 1
