"""
HTTP surface: pages, JSON API, session cookies and error mapping.
"""

import pytest

from scoretracker import ScoreTrackerSystem
from tests.conftest import TEST_PASSWORD

COOKIE = "zoomoot_admin"


async def create(client, path, **body):
    resp = await client.post(path, json=body)
    assert resp.status == 201, await resp.text()
    return (await resp.json())["data"]


async def seed_pair(client):
    activity = await create(client, "/api/activities", activity_name="Trivia")
    team = await create(client, "/api/teams", team_name="Alpha")
    return activity["id"], team["id"]


def score_body(activity_id, team_id, creative=7, participation=8, bribe=9):
    return {
        "activity_id": activity_id,
        "team_id": team_id,
        "creative_score": creative,
        "participation_score": participation,
        "bribe_score": bribe,
    }


class TestAuthentication:
    async def test_api_login_sets_session_cookie(self, client):
        resp = await client.post("/api/auth/login", json={"password": TEST_PASSWORD})
        assert resp.status == 200

        body = await resp.json()
        assert body["success"] is True
        assert body["data"]["remaining_seconds"] == 3600

        cookie = resp.cookies[COOKIE]
        assert cookie["httponly"]
        assert cookie["samesite"] == "Strict"

        status = await (await client.get("/api/auth/status")).json()
        assert status["data"]["authenticated"] is True

    async def test_api_login_wrong_password(self, client):
        resp = await client.post("/api/auth/login", json={"password": "nope"})
        assert resp.status == 401
        assert await resp.json() == {"success": False, "error": "Invalid password"}

    async def test_form_login_redirects_to_scores(self, client):
        resp = await client.post(
            "/login", data={"password": TEST_PASSWORD}, allow_redirects=False
        )
        assert resp.status == 303
        assert resp.headers["Location"] == "/scores"
        assert COOKIE in resp.cookies

        resp = await client.get("/scores")
        assert resp.status == 200
        assert "Record Scores" in await resp.text()

    async def test_form_login_wrong_password(self, client):
        resp = await client.post("/login", data={"password": "nope"})
        assert resp.status == 401
        assert "Invalid password" in await resp.text()

    async def test_logout(self, auth_client):
        resp = await auth_client.post("/api/auth/logout")
        assert resp.status == 200

        status = await (await auth_client.get("/api/auth/status")).json()
        assert status["data"] == {"authenticated": False, "remaining_seconds": 0}

    async def test_session_expires_after_lifetime(self, auth_client, clock):
        clock.advance(3601)

        resp = await auth_client.post("/api/teams", json={"team_name": "Late"})
        assert resp.status == 401

        status = await (await auth_client.get("/api/auth/status")).json()
        assert status["data"]["authenticated"] is False

    async def test_forged_cookie_is_ignored(self, client):
        client.session.cookie_jar.update_cookies({COOKIE: "forged"})
        resp = await client.post("/api/teams", json={"team_name": "Sneaky"})
        assert resp.status == 401


class TestAccessControl:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("post", "/api/activities"),
            ("put", "/api/activities/1"),
            ("delete", "/api/activities/1"),
            ("post", "/api/teams"),
            ("delete", "/api/teams/1"),
            ("post", "/api/scores"),
            ("put", "/api/scores/1"),
            ("delete", "/api/scores/1"),
            ("get", "/api/qr-tokens"),
            ("post", "/api/qr-tokens"),
            ("delete", "/api/qr-tokens/expired"),
        ],
    )
    async def test_mutations_require_session(self, client, method, path):
        resp = await getattr(client, method)(path, json={})
        assert resp.status == 401
        assert await resp.json() == {"success": False, "error": "Authentication required"}

    @pytest.mark.parametrize("path", ["/scores", "/qr-codes", "/activities"])
    async def test_protected_pages_redirect_to_login(self, client, path):
        resp = await client.get(path, allow_redirects=False)
        assert resp.status == 303
        assert resp.headers["Location"] == "/login"

    @pytest.mark.parametrize(
        "path", ["/", "/login", "/api/activities", "/api/teams", "/api/scores", "/api/standings"]
    )
    async def test_public_reads(self, client, path):
        resp = await client.get(path)
        assert resp.status == 200


class TestResources:
    async def test_activity_crud(self, auth_client):
        activity = await create(auth_client, "/api/activities", activity_name="  Trivia ")
        assert activity["activity_name"] == "Trivia"

        resp = await auth_client.put(
            f"/api/activities/{activity['id']}", json={"activity_name": "Quiz"}
        )
        assert (await resp.json())["data"]["activity_name"] == "Quiz"

        resp = await auth_client.get(f"/api/activities/{activity['id']}")
        assert (await resp.json())["data"]["activity_name"] == "Quiz"

        resp = await auth_client.delete(f"/api/activities/{activity['id']}")
        assert resp.status == 200

        resp = await auth_client.get(f"/api/activities/{activity['id']}")
        assert resp.status == 404
        assert (await resp.json())["error"] == "Activity not found"

    async def test_duplicate_and_blank_names(self, auth_client):
        await create(auth_client, "/api/teams", team_name="Alpha")

        resp = await auth_client.post("/api/teams", json={"team_name": "Alpha"})
        assert resp.status == 409
        assert (await resp.json())["error"] == "Team name already exists"

        resp = await auth_client.post("/api/teams", json={"team_name": "  "})
        assert resp.status == 400

    async def test_delete_with_scores_is_refused(self, auth_client):
        activity_id, team_id = await seed_pair(auth_client)
        await create(auth_client, "/api/scores", **score_body(activity_id, team_id))

        resp = await auth_client.delete(f"/api/teams/{team_id}")
        assert resp.status == 409
        body = await resp.json()
        assert body["success"] is False
        assert body["score_count"] == 1

        resp = await auth_client.get("/api/scores")
        assert (await resp.json())["count"] == 1

    async def test_invalid_json_and_ids(self, auth_client):
        resp = await auth_client.post(
            "/api/teams", data="not json", headers={"Content-Type": "application/json"}
        )
        assert resp.status == 400

        resp = await auth_client.post("/api/teams", json=["Alpha"])
        assert resp.status == 400

        resp = await auth_client.get("/api/teams/abc")
        assert resp.status == 400

    async def test_team_stats(self, auth_client):
        activity_id, team_id = await seed_pair(auth_client)
        await create(auth_client, "/api/scores", **score_body(activity_id, team_id, 1, 2, 3))

        resp = await auth_client.get("/api/teams?stats=true")
        team = (await resp.json())["data"][0]
        assert team["total_score"] == 6
        assert team["activities_participated"] == 1


class TestScores:
    async def test_score_lifecycle(self, auth_client):
        activity_id, team_id = await seed_pair(auth_client)

        score = await create(auth_client, "/api/scores", **score_body(activity_id, team_id))
        assert score["total_score"] == 24
        assert score["team_name"] == "Alpha"

        resp = await auth_client.post("/api/scores", json=score_body(activity_id, team_id, 6, 6, 6))
        assert resp.status == 409

        resp = await auth_client.put(f"/api/scores/{score['id']}", json={"bribe_score": 1})
        updated = (await resp.json())["data"]
        assert updated["total_score"] == 16

        resp = await auth_client.delete(f"/api/scores/{score['id']}")
        assert resp.status == 200

        resp = await auth_client.delete(f"/api/scores/{score['id']}")
        assert resp.status == 404

    @pytest.mark.parametrize(
        "overrides,message",
        [
            ({"creative_score": 0}, "Creative score must be between 1 and 10"),
            ({"bribe_score": 11}, "Bribe score must be between 1 and 10"),
            ({"participation_score": "seven"}, "Participation score must be a whole number"),
            ({"participation_score": True}, "Participation score must be a whole number"),
            ({"creative_score": None}, "Creative score is required"),
        ],
    )
    async def test_score_validation(self, auth_client, overrides, message):
        activity_id, team_id = await seed_pair(auth_client)
        body = score_body(activity_id, team_id)
        body.update(overrides)

        resp = await auth_client.post("/api/scores", json=body)
        assert resp.status == 400
        assert (await resp.json())["error"] == message

    async def test_score_for_missing_team(self, auth_client):
        activity_id, _ = await seed_pair(auth_client)
        resp = await auth_client.post("/api/scores", json=score_body(activity_id, 999))
        assert resp.status == 404
        assert (await resp.json())["error"] == "Team not found"

    async def test_standings(self, auth_client):
        activity_id, alpha = await seed_pair(auth_client)
        beta = (await create(auth_client, "/api/teams", team_name="Beta"))["id"]
        await create(auth_client, "/api/scores", **score_body(activity_id, alpha, 1, 1, 1))
        await create(auth_client, "/api/scores", **score_body(activity_id, beta, 9, 9, 9))

        resp = await auth_client.get("/api/standings")
        standings = (await resp.json())["data"]
        assert [(s["rank"], s["team_name"], s["total_score"]) for s in standings] == [
            (1, "Beta", 27),
            (2, "Alpha", 3),
        ]

        html = await (await auth_client.get("/")).text()
        assert html.index("Beta") < html.index("Alpha")

    async def test_scores_form(self, auth_client):
        activity_id, team_id = await seed_pair(auth_client)
        form = {"action": "create", "activity_id": str(activity_id), "team_id": str(team_id)}

        resp = await auth_client.post(
            "/scores", data={**form, "creative_score": "5", "participation_score": "5", "bribe_score": "12"}
        )
        assert resp.status == 400
        assert "Bribe score must be between 1 and 10" in await resp.text()

        resp = await auth_client.post(
            "/scores", data={**form, "creative_score": "5", "participation_score": "5", "bribe_score": "5"}
        )
        assert resp.status == 200
        assert "Score submitted successfully" in await resp.text()

        scores = (await (await auth_client.get("/api/scores")).json())["data"]
        assert scores[0]["total_score"] == 15


class TestQRCodes:
    async def test_issue_and_login_with_token(self, auth_client, client_factory):
        resp = await auth_client.post(
            "/api/qr-tokens", json={"expires_in_hours": 2, "description": "Relay"}
        )
        assert resp.status == 201
        issued = (await resp.json())["data"]
        assert issued["login_url"] == f"http://testserver/qr-login?token={issued['token']}"
        assert issued["qr_code_url"] == f"/api/qr-tokens/{issued['token']}.png"

        leader = await client_factory()
        resp = await leader.get(f"/qr-login?token={issued['token']}")
        assert resp.status == 200
        assert resp.headers["Refresh"] == "2;url=/scores"
        assert COOKIE in resp.cookies

        status = await (await leader.get("/api/auth/status")).json()
        assert status["data"]["authenticated"] is True

        tokens = (await (await auth_client.get("/api/qr-tokens")).json())["data"]
        assert tokens[0]["used_count"] == 1
        assert tokens[0]["max_uses"] == 50

    async def test_qr_login_failures(self, client):
        resp = await client.get("/qr-login")
        assert resp.status == 400
        assert "No token provided" in await resp.text()

        resp = await client.get("/qr-login?token=" + "ab" * 32)
        assert resp.status == 401
        assert "Invalid or expired QR code token" in await resp.text()

    async def test_issue_out_of_range(self, auth_client):
        for hours in (0, 169):
            resp = await auth_client.post("/api/qr-tokens", json={"expires_in_hours": hours})
            assert resp.status == 400
            assert "between 1 and 168 hours" in (await resp.json())["error"]

    async def test_png_and_revoke(self, auth_client):
        resp = await auth_client.post("/api/qr-tokens", json={"expires_in_hours": 1})
        token = (await resp.json())["data"]["token"]

        resp = await auth_client.get(f"/api/qr-tokens/{token}.png")
        assert resp.status == 200
        assert resp.content_type == "image/png"
        assert (await resp.read()).startswith(b"\x89PNG")

        resp = await auth_client.delete(f"/api/qr-tokens/{token}")
        assert resp.status == 200

        resp = await auth_client.get(f"/api/qr-tokens/{token}.png")
        assert resp.status == 404

    async def test_cleanup_expired(self, auth_client, clock):
        await auth_client.post("/api/qr-tokens", json={"expires_in_hours": 1})
        clock.advance(1800)
        await auth_client.post("/api/qr-tokens", json={"expires_in_hours": 24})

        # Re-login since the first session has a fixed window
        clock.advance(1801)
        await auth_client.post("/api/auth/login", json={"password": TEST_PASSWORD})

        resp = await auth_client.delete("/api/qr-tokens/expired")
        assert (await resp.json())["data"] == {"removed": 1}

        resp = await auth_client.get("/api/qr-tokens")
        assert (await resp.json())["count"] == 1

    async def test_qr_codes_page(self, auth_client):
        resp = await auth_client.post(
            "/qr-codes", data={"action": "generate", "expires_in_hours": "3", "description": "Gate"}
        )
        assert resp.status == 200
        html = await resp.text()
        assert "QR code generated" in html
        assert "data:image/png;base64," in html


class TestErrorBoundary:
    async def test_storage_failure_is_generic_500(self, aiohttp_client, config, clock, tmp_path):
        broken = ScoreTrackerSystem(
            config=config, db_path=str(tmp_path / "missing" / "scores.db"), clock=clock
        )
        client = await aiohttp_client(broken.create_app())

        resp = await client.get("/api/teams")
        assert resp.status == 500
        assert await resp.json() == {"success": False, "error": "Internal server error"}

        resp = await client.get("/")
        assert resp.status == 500
        assert "Internal server error" in await resp.text()

    async def test_debug_mode_shows_detail(self, aiohttp_client, config, clock, tmp_path):
        config.set("debug", value=True)
        broken = ScoreTrackerSystem(
            config=config, db_path=str(tmp_path / "missing" / "scores.db"), clock=clock
        )
        client = await aiohttp_client(broken.create_app())

        resp = await client.get("/api/teams")
        assert resp.status == 500
        assert "unable to open database file" in (await resp.json())["error"]

    async def test_unknown_route_is_plain_404(self, client):
        resp = await client.get("/api/nothing-here")
        assert resp.status == 404


class TestOversizedIds:
    @pytest.mark.parametrize(
        "path",
        [
            "/api/activities/99999999999999999999",
            "/api/teams/99999999999999999999",
            "/api/scores/-99999999999999999999",
            "/api/scores?activity_id=99999999999999999999",
        ],
    )
    async def test_reads_reject_ids_outside_sqlite_range(self, client, path):
        resp = await client.get(path)
        assert resp.status == 400
        assert (await resp.json())["error"].endswith("is out of range")

    async def test_score_with_huge_activity_id(self, auth_client):
        _, team_id = await seed_pair(auth_client)
        resp = await auth_client.post(
            "/api/scores", json=score_body(99999999999999999999, team_id)
        )
        assert resp.status == 400
        assert (await resp.json())["error"] == "Activity ID is out of range"

    async def test_largest_sqlite_id_is_just_not_found(self, client):
        resp = await client.get(f"/api/teams/{2 ** 63 - 1}")
        assert resp.status == 404

    async def test_score_form_with_huge_team_id(self, auth_client):
        activity_id, _ = await seed_pair(auth_client)
        resp = await auth_client.post(
            "/scores",
            data={
                "action": "create",
                "activity_id": str(activity_id),
                "team_id": "99999999999999999999",
                "creative_score": "5",
                "participation_score": "5",
                "bribe_score": "5",
            },
        )
        assert resp.status == 400
        assert "Team ID is out of range" in await resp.text()


class TestManagementPages:
    async def test_page_lists_activities_and_teams_with_stats(self, auth_client):
        activity_id, team_id = await seed_pair(auth_client)
        await create(auth_client, "/api/scores", **score_body(activity_id, team_id, 2, 3, 4))

        resp = await auth_client.get("/activities")
        assert resp.status == 200
        html = await resp.text()
        assert "Activity Management" in html
        assert 'value="Trivia"' in html
        assert 'value="Alpha"' in html
        assert "9.00" in html

    async def test_create_rename_delete_activity(self, auth_client):
        resp = await auth_client.post(
            "/activities", data={"kind": "activity", "action": "create", "name": " Relay "}
        )
        assert resp.status == 200
        assert "Activity created successfully" in await resp.text()

        activities = (await (await auth_client.get("/api/activities")).json())["data"]
        assert [a["activity_name"] for a in activities] == ["Relay"]
        activity_id = str(activities[0]["id"])

        resp = await auth_client.post(
            "/activities",
            data={"kind": "activity", "action": "rename", "id": activity_id, "name": "Sprint"},
        )
        assert "Activity updated successfully" in await resp.text()

        resp = await auth_client.post(
            "/activities", data={"kind": "activity", "action": "delete", "id": activity_id}
        )
        assert "Activity deleted successfully" in await resp.text()
        assert (await (await auth_client.get("/api/activities")).json())["count"] == 0

    async def test_create_and_rename_team(self, auth_client):
        resp = await auth_client.post(
            "/activities", data={"kind": "team", "action": "create", "name": "Gamma"}
        )
        assert "Team created successfully" in await resp.text()

        teams = (await (await auth_client.get("/api/teams")).json())["data"]
        resp = await auth_client.post(
            "/activities",
            data={"kind": "team", "action": "rename", "id": str(teams[0]["id"]), "name": "Delta"},
        )
        assert "Team updated successfully" in await resp.text()
        teams = (await (await auth_client.get("/api/teams")).json())["data"]
        assert teams[0]["team_name"] == "Delta"

    async def test_delete_with_scores_shows_count(self, auth_client):
        activity_id, team_id = await seed_pair(auth_client)
        await create(auth_client, "/api/scores", **score_body(activity_id, team_id))

        resp = await auth_client.post(
            "/activities", data={"kind": "activity", "action": "delete", "id": str(activity_id)}
        )
        assert resp.status == 409
        assert "1 score(s) recorded" in await resp.text()
        assert (await (await auth_client.get("/api/activities")).json())["count"] == 1

    async def test_duplicate_and_blank_names_stay_on_page(self, auth_client):
        await seed_pair(auth_client)

        resp = await auth_client.post(
            "/activities", data={"kind": "team", "action": "create", "name": "Alpha"}
        )
        assert resp.status == 409
        assert "Team name already exists" in await resp.text()

        resp = await auth_client.post(
            "/activities", data={"kind": "activity", "action": "create", "name": "   "}
        )
        assert resp.status == 400
        assert "Activity name is required" in await resp.text()

    async def test_rename_missing_record(self, auth_client):
        resp = await auth_client.post(
            "/activities", data={"kind": "team", "action": "rename", "id": "999", "name": "X"}
        )
        assert resp.status == 404
        assert "Team not found" in await resp.text()

    async def test_scores_page_quick_add(self, auth_client):
        resp = await auth_client.post("/scores", data={"action": "add_team", "name": "Omega"})
        assert resp.status == 200
        html = await resp.text()
        assert "created successfully" in html
        assert ">Omega</option>" in html

        resp = await auth_client.post("/scores", data={"action": "add_activity", "name": "Relay"})
        assert resp.status == 200
        assert ">Relay</option>" in await resp.text()

        resp = await auth_client.post("/scores", data={"action": "add_team", "name": "Omega"})
        assert resp.status == 409
        assert "Team name already exists" in await resp.text()
