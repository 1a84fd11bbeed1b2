"""Tests for the course catalogue and teacher profiles over HTTP."""

from findclass.service.runtime import get_runtime

COURSE = {
    "title": "NCEA Maths tutoring",
    "description": "Algebra and calculus for Year 11-13",
    "category": "MATH",
    "price": 45,
    "price_type": "PER_HOUR",
    "teaching_modes": ["ONLINE", "OFFLINE"],
    "locations": ["Auckland"],
    "max_class_size": 3,
}


def _create_course(client, headers, **overrides):
    resp = client.post("/api/v1/courses", json={**COURSE, **overrides}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


class TestCourseCrud:
    """Tests for creating, updating and deleting courses."""

    def test_teacher_creates_course(self, client, teacher_setup):
        headers, teacher_id = teacher_setup
        course = _create_course(client, headers)
        assert course["teacher_id"] == teacher_id
        assert course["trust_level"] == "B"
        assert course["status"] == "ACTIVE"
        assert course["source_type"] == "REGISTERED"
        assert course["current_enrollment"] == 0

    def test_student_cannot_create(self, client, register):
        _, headers, _ = register(email="student@example.com", role="STUDENT")
        resp = client.post("/api/v1/courses", json=COURSE, headers=headers)
        assert resp.status_code == 403
        assert "TEACHER" in resp.json()["error"]["details"]["required_roles"]

    def test_teacher_without_profile_forbidden(self, client, register):
        _, headers, _ = register(email="noprofile@example.com", role="TEACHER")
        resp = client.post("/api/v1/courses", json=COURSE, headers=headers)
        assert resp.status_code == 403

    def test_negative_price_rejected(self, client, teacher_setup):
        headers, _ = teacher_setup
        resp = client.post("/api/v1/courses", json={**COURSE, "price": -1}, headers=headers)
        assert resp.status_code == 400

    def test_unknown_category_rejected(self, client, teacher_setup):
        headers, _ = teacher_setup
        resp = client.post("/api/v1/courses", json={**COURSE, "category": "COOKING"}, headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["details"][0]["field"] == "category"

    def test_owner_updates_and_deletes(self, client, teacher_setup):
        headers, _ = teacher_setup
        course = _create_course(client, headers)
        resp = client.put(
            f"/api/v1/courses/{course['id']}", json={"price": 60, "status": "INACTIVE"}, headers=headers
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["price"] == 60
        assert resp.json()["data"]["status"] == "INACTIVE"

        assert client.delete(f"/api/v1/courses/{course['id']}", headers=headers).status_code == 200
        assert client.get(f"/api/v1/courses/{course['id']}").status_code == 404

    def test_other_teacher_cannot_update(self, client, teacher_setup, register):
        headers, _ = teacher_setup
        course = _create_course(client, headers)
        _, other_headers, _ = register(email="rival@example.com", role="TEACHER")
        client.post(
            "/api/v1/teachers/onboarding", json={"display_name": "Rival"}, headers=other_headers
        )
        resp = client.put(f"/api/v1/courses/{course['id']}", json={"price": 1}, headers=other_headers)
        assert resp.status_code == 403

    def test_admin_creates_for_teacher(self, client, teacher_setup, admin_headers):
        _, teacher_id = teacher_setup
        course = _create_course(client, admin_headers, teacher_id=teacher_id)
        assert course["teacher_id"] == teacher_id


class TestCourseQueries:
    """Tests for search, listings and detail views."""

    def test_search_filters_and_paginates(self, client, teacher_setup):
        headers, _ = teacher_setup
        _create_course(client, headers, title="Piano lessons", category="MUSIC", price=30)
        _create_course(client, headers, title="Guitar lessons", category="MUSIC", price=80)
        _create_course(client, headers, title="Python coding", category="PROGRAMMING", price=50)

        resp = client.get("/api/v1/courses/search", params={"category": "MUSIC", "sort_by": "price_asc"})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert [c["title"] for c in data["items"]] == ["Piano lessons", "Guitar lessons"]
        assert data["pagination"]["total"] == 2

        resp = client.get("/api/v1/courses/search", params={"keyword": "PYTHON"})
        assert [c["title"] for c in resp.json()["data"]["items"]] == ["Python coding"]

        resp = client.get("/api/v1/courses/search", params={"limit": 1, "page": 2})
        pagination = resp.json()["data"]["pagination"]
        assert pagination["total_pages"] == 3
        assert pagination["has_next_page"] and pagination["has_prev_page"]

    def test_search_rejects_inverted_price_range(self, client):
        resp = client.get("/api/v1/courses/search", params={"price_min": 50, "price_max": 10})
        assert resp.status_code == 400

    def test_search_sets_rate_limit_headers(self, client):
        resp = client.get("/api/v1/courses/search")
        assert resp.headers["X-RateLimit-Limit"] == "120"

    def test_detail_includes_teacher(self, client, teacher_setup):
        headers, teacher_id = teacher_setup
        course = _create_course(client, headers)
        resp = client.get(f"/api/v1/courses/{course['id']}")
        assert resp.status_code == 200
        teacher = resp.json()["data"]["teacher"]
        assert teacher["id"] == teacher_id
        assert teacher["display_name"] == "Ms Teacher"

    def test_missing_course(self, client):
        resp = client.get("/api/v1/courses/does-not-exist")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_featured_and_similar(self, client, teacher_setup):
        headers, _ = teacher_setup
        first = _create_course(client, headers, title="Maths A")
        _create_course(client, headers, title="Maths B")
        _create_course(client, headers, title="Art", category="ART")

        featured = client.get("/api/v1/courses/featured").json()["data"]
        assert len(featured) == 3

        similar = client.get(f"/api/v1/courses/{first['id']}/similar").json()["data"]
        assert [c["title"] for c in similar] == ["Maths B"]

    def test_translate(self, client, teacher_setup):
        headers, _ = teacher_setup
        course = _create_course(client, headers, title="数学辅导", title_en="Maths tutoring")
        resp = client.get(f"/api/v1/courses/{course['id']}/translate", params={"lang": "en"})
        assert resp.json()["data"]["title"] == "Maths tutoring"
        resp = client.get(f"/api/v1/courses/{course['id']}/translate", params={"lang": "zh"})
        assert resp.json()["data"]["title"] == "数学辅导"
        resp = client.get(f"/api/v1/courses/{course['id']}/translate", params={"lang": "fr"})
        assert resp.status_code == 400

    def test_filter_options(self, client):
        data = client.get("/api/v1/courses/filter/options").json()["data"]
        assert "MATH" in data["categories"]
        assert "PER_HOUR" in data["price_types"]
        assert data["trust_levels"] == ["S", "A", "B", "C", "D"]
        assert "Auckland" in data["cities"]

    def test_regions_by_city(self, client):
        resp = client.get("/api/v1/courses/regions/Auckland")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["city"] == "auckland"
        assert "Epsom" in data["regions"]
        assert "Riccarton" in client.get("/api/v1/courses/regions/christchurch").json()["data"]["regions"]

    def test_regions_unknown_city(self, client):
        resp = client.get("/api/v1/courses/regions/Gotham")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_statistics(self, client, teacher_setup):
        headers, teacher_id = teacher_setup
        _create_course(client, headers)
        data = client.get("/api/v1/courses/statistics", params={"teacher_id": teacher_id}).json()["data"]
        assert data["total_courses"] == 1
        assert data["average_price"] == 45.0


class TestFavorites:
    """Tests for favouriting courses."""

    def test_toggle_and_list(self, client, teacher_setup, register):
        headers, _ = teacher_setup
        course = _create_course(client, headers)
        _, student, _ = register(email="fan@example.com", role="STUDENT")

        resp = client.post(f"/api/v1/courses/{course['id']}/favorite", headers=student)
        assert resp.json()["data"] == {"favorited": True}
        favorites = client.get("/api/v1/users/favorites", headers=student).json()["data"]
        assert [c["id"] for c in favorites] == [course["id"]]

        resp = client.post(f"/api/v1/courses/{course['id']}/favorite", headers=student)
        assert resp.json()["data"] == {"favorited": False}

    def test_favorite_missing_course(self, client, register):
        _, headers, _ = register()
        assert client.post("/api/v1/courses/nope/favorite", headers=headers).status_code == 404


class TestEnrollment:
    """Tests for the enrollment counters on the service."""

    def test_capacity(self, client, teacher_setup):
        headers, _ = teacher_setup
        course = _create_course(client, headers, max_class_size=1)
        courses = get_runtime().courses
        assert courses.increment_enrollment(course["id"]).current_enrollment == 1
        assert courses.increment_enrollment(course["id"]) is None
        assert courses.decrement_enrollment(course["id"]).current_enrollment == 0


class TestTeachers:
    """Tests for teacher onboarding and profiles."""

    def test_onboarding_response(self, client, register):
        _, headers, _ = register(email="new-teacher@example.com", role="TEACHER")
        resp = client.post(
            "/api/v1/teachers/onboarding",
            json={
                "display_name": "Mr Music",
                "qualifications": [{"type": "DEGREE", "name": "BMus", "institution": "UoA", "year": 2015}],
            },
            headers=headers,
        )
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["status"] == "PENDING"
        assert data["estimated_review_time"] == "3-5 business days"

        profile = client.get(f"/api/v1/teachers/{data['teacher_id']}").json()["data"]
        assert profile["display_name"] == "Mr Music"
        assert profile["qualifications"][0]["name"] == "BMus"
        assert profile["courses"] == []

    def test_second_onboarding_conflicts(self, client, teacher_setup):
        headers, _ = teacher_setup
        resp = client.post("/api/v1/teachers/onboarding", json={"display_name": "Again"}, headers=headers)
        assert resp.status_code == 409

    def test_profile_lists_courses(self, client, teacher_setup):
        headers, teacher_id = teacher_setup
        _create_course(client, headers)
        profile = client.get(f"/api/v1/teachers/{teacher_id}").json()["data"]
        assert len(profile["courses"]) == 1

    def test_list_filters(self, client, teacher_setup):
        _, teacher_id = teacher_setup
        resp = client.get("/api/v1/teachers", params={"subject": "MATH"})
        assert [t["id"] for t in resp.json()["data"]["items"]] == [teacher_id]
        resp = client.get("/api/v1/teachers", params={"subject": "ART"})
        assert resp.json()["data"]["items"] == []

    def test_add_qualification_owner_only(self, client, teacher_setup, register):
        headers, teacher_id = teacher_setup
        qualification = {"type": "CERTIFICATE", "name": "TESOL"}
        resp = client.post(f"/api/v1/teachers/{teacher_id}/qualifications", json=qualification, headers=headers)
        assert resp.status_code == 201
        assert resp.json()["data"]["status"] == "PENDING"

        _, stranger, _ = register(email="stranger@example.com")
        resp = client.post(f"/api/v1/teachers/{teacher_id}/qualifications", json=qualification, headers=stranger)
        assert resp.status_code == 403

    def test_admin_verifies_teacher(self, client, teacher_setup, admin_headers):
        _, teacher_id = teacher_setup
        resp = client.patch(
            f"/api/v1/admin/teachers/{teacher_id}/verification",
            json={"status": "APPROVED"},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["verified"] is True
        assert resp.json()["data"]["verification_status"] == "APPROVED"

    def test_verification_requires_admin(self, client, teacher_setup):
        headers, teacher_id = teacher_setup
        resp = client.patch(
            f"/api/v1/admin/teachers/{teacher_id}/verification",
            json={"status": "APPROVED"},
            headers=headers,
        )
        assert resp.status_code == 403
