"""
Web route handlers for the score tracker.
"""

import base64
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from aiohttp import web
from jinja2 import Environment, FileSystemLoader, select_autoescape

from .errors import (
    AlreadyExists,
    HasDependents,
    InvalidCredentials,
    InvalidOrExpiredToken,
    NotFound,
    ValidationError,
)

TEMPLATES_PATH = Path(__file__).parent / "templates"

# SQLite stores integers as signed 64-bit values
SQLITE_INT_MIN = -(2 ** 63)
SQLITE_INT_MAX = 2 ** 63 - 1

SCORE_FIELDS = (
    ("creative_score", "Creative score"),
    ("participation_score", "Participation score"),
    ("bribe_score", "Bribe score"),
)


def parse_int(value: Any, field_name: str) -> int:
    """
    Parse a whole number from JSON or form input.

    @param value: Raw value (int or numeric string)
    @param field_name: Human name used in the error message
    @raise ValidationError: If the value is not a whole number or does not fit in SQLite
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a whole number")
    number = None
    if isinstance(value, int):
        number = value
    elif isinstance(value, float) and value.is_integer():
        number = int(value)
    elif isinstance(value, str):
        try:
            number = int(value.strip())
        except ValueError:
            pass

    if number is None:
        raise ValidationError(f"{field_name} must be a whole number")
    if not SQLITE_INT_MIN <= number <= SQLITE_INT_MAX:
        raise ValidationError(f"{field_name} is out of range")
    return number


def validate_component(value: Any, field_name: str) -> int:
    number = parse_int(value, field_name)
    if number < 1 or number > 10:
        raise ValidationError(f"{field_name} must be between 1 and 10")
    return number


def format_timestamp(value: Any) -> str:
    """Render an epoch number or SQLite timestamp for display."""
    if value is None:
        return "Never"
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    try:
        return datetime.fromisoformat(str(value)).strftime("%Y-%m-%d %H:%M")
    except ValueError:
        return str(value)[:19]


class WebHandlers:
    """Handles web routes and responses."""

    def __init__(
        self,
        db_manager: Any,
        config: Any,
        authenticator: Any,
        qr_tokens: Any,
        templates_path: Optional[str] = None,
    ) -> None:
        self.db = db_manager
        self.config = config
        self.auth = authenticator
        self.qr_tokens = qr_tokens

        self.jinja_env = Environment(
            loader=FileSystemLoader(str(templates_path or TEMPLATES_PATH)),
            autoescape=select_autoescape(["html"]),
            auto_reload=False,
            cache_size=50,
        )
        self.jinja_env.filters["timestamp"] = format_timestamp

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def render(
        self,
        request: web.Request,
        template_name: str,
        status: int = 200,
        **context: Any,
    ) -> web.Response:
        session = request.get("session")
        template = self.jinja_env.get_template(template_name)
        html = template.render(
            config=self.config,
            app_name=self.config.get("app_name"),
            authenticated=self.auth.is_authenticated(session),
            remaining_seconds=self.auth.remaining_seconds(session),
            **context,
        )
        return web.Response(text=html, status=status, content_type="text/html")

    def render_error(self, request: web.Request, message: str, status: int) -> web.Response:
        return self.render(request, "error.html", status=status, title="Error", message=message)

    def require_session(self, request: web.Request) -> Any:
        return self.auth.require_auth(request.get("session"))

    def set_session_cookie(self, request: web.Request, response: web.StreamResponse, session: Any) -> None:
        response.set_cookie(
            self.config.get("auth", "session_name"),
            session.session_id,
            max_age=self.auth.session_lifetime,
            path="/",
            httponly=True,
            samesite="Strict",
            secure=request.secure,
        )

    def clear_session_cookie(self, response: web.StreamResponse) -> None:
        response.del_cookie(self.config.get("auth", "session_name"), path="/")

    @staticmethod
    def redirect(location: str) -> web.Response:
        return web.Response(status=303, headers={"Location": location})

    @staticmethod
    async def read_json(request: web.Request) -> Dict[str, Any]:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("Request body must be valid JSON")
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        return body

    @staticmethod
    def match_id(request: web.Request, name: str = "id") -> int:
        return parse_int(request.match_info[name], "ID")

    @staticmethod
    def ok(data: Any = None, status: int = 200, **extra: Any) -> web.Response:
        body: Dict[str, Any] = {"success": True}
        if data is not None:
            body["data"] = data
        body.update(extra)
        return web.json_response(body, status=status)

    def token_payload(self, token: Any) -> Dict[str, Any]:
        return {
            "token": token.token,
            "description": token.description,
            "created_at": token.created_at,
            "expires_at": token.expires_at,
            "last_used_at": token.last_used_at,
            "used_count": token.used_count,
            "max_uses": self.config.qr_max_uses,
            "login_url": self.qr_tokens.login_url(token.token),
        }

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    async def web_index(
        self,
        request: web.Request,
    ) -> web.Response:
        """
        Public standings page.

        @param request: HTTP request object
        @return: HTTP response with rendered standings
        """
        standings = await self.db.get_standings()
        return self.render(request, "index.html", title="Standings", standings=standings)

    async def web_login_form(self, request: web.Request) -> web.Response:
        if self.auth.is_authenticated(request.get("session")):
            return self.redirect("/scores")
        return self.render(request, "login.html", title="Login")

    async def web_login(self, request: web.Request) -> web.Response:
        """
        Password login form submission.

        @param request: HTTP request with a ``password`` form field
        @return: Redirect to the scoring page, or the form again with an error
        """
        form = await request.post()
        try:
            session = self.auth.login(str(form.get("password", "")))
        except InvalidCredentials as e:
            return self.render(request, "login.html", status=e.status, title="Login", error=e.message)

        response = self.redirect("/scores")
        self.set_session_cookie(request, response, session)
        return response

    async def web_logout(self, request: web.Request) -> web.Response:
        self.auth.logout(request.get("session"))
        response = self.redirect("/")
        self.clear_session_cookie(response)
        return response

    async def web_qr_login(self, request: web.Request) -> web.Response:
        """
        Log in by scanning a QR code.

        @param request: HTTP request with a ``token`` query parameter
        @return: Success page that forwards to the scoring page, or an error page
        """
        if self.auth.is_authenticated(request.get("session")):
            return self.redirect("/scores")

        token = request.query.get("token", "")
        if not token:
            return self.render(
                request, "qr_login.html", status=400, title="QR Login", error="No token provided"
            )

        try:
            session = await self.auth.login_with_qr_token(token)
        except InvalidOrExpiredToken as e:
            return self.render(
                request, "qr_login.html", status=e.status, title="QR Login", error=e.message
            )

        await self.qr_tokens.cleanup_expired()

        response = self.render(request, "qr_login.html", title="QR Login", success=True)
        response.headers["Refresh"] = "2;url=/scores"
        self.set_session_cookie(request, response, session)
        return response

    async def web_scores(self, request: web.Request) -> web.Response:
        """Scoring page for logged-in activity leaders."""
        self.require_session(request)
        return await self._render_scores(request)

    async def _render_scores(
        self,
        request: web.Request,
        status: int = 200,
        error: Optional[str] = None,
        message: Optional[str] = None,
    ) -> web.Response:
        activity_filter = request.query.get("activity_id")
        activity_id = parse_int(activity_filter, "Activity ID") if activity_filter else None

        return self.render(
            request,
            "scores.html",
            status=status,
            title="Record Scores",
            activities=await self.db.list_activities(),
            teams=await self.db.list_teams(),
            scores=await self.db.list_scores(activity_id=activity_id),
            selected_activity=activity_id,
            error=error,
            message=message,
        )

    async def web_scores_submit(self, request: web.Request) -> web.Response:
        """
        Score form submission.

        The ``action`` field selects create, update or delete of a score, or
        add_team / add_activity for the quick-add forms. Validation and
        conflict errors are shown on the page instead of leaving it.
        """
        self.require_session(request)
        form = await request.post()
        action = form.get("action", "create")

        try:
            if action == "add_team":
                team = await self.db.create_team(str(form.get("name", "")))
                message = f"Team '{team['team_name']}' created successfully"
            elif action == "add_activity":
                activity = await self.db.create_activity(str(form.get("name", "")))
                message = f"Activity '{activity['activity_name']}' created successfully"
            elif action == "delete":
                await self.db.delete_score(parse_int(form.get("id"), "Score ID"))
                message = "Score deleted successfully"
            else:
                components = [
                    validate_component(form.get(field), label) for field, label in SCORE_FIELDS
                ]
                if action == "update":
                    await self.db.update_score(parse_int(form.get("id"), "Score ID"), *components)
                    message = "Score updated successfully"
                else:
                    await self.db.create_score(
                        parse_int(form.get("activity_id"), "Activity ID"),
                        parse_int(form.get("team_id"), "Team ID"),
                        *components,
                    )
                    message = "Score submitted successfully"
        except (ValidationError, NotFound, AlreadyExists) as e:
            return await self._render_scores(request, status=e.status, error=e.message)

        return await self._render_scores(request, message=message)

    async def web_activities(self, request: web.Request) -> web.Response:
        """Management page for activities and teams."""
        self.require_session(request)
        return await self._render_activities(request)

    async def _render_activities(
        self,
        request: web.Request,
        status: int = 200,
        error: Optional[str] = None,
        message: Optional[str] = None,
    ) -> web.Response:
        return self.render(
            request,
            "activities.html",
            status=status,
            title="Activity Management",
            activities=await self.db.list_activities(stats=True),
            teams=await self.db.list_teams(stats=True),
            error=error,
            message=message,
        )

    async def web_activities_submit(self, request: web.Request) -> web.Response:
        """
        Create, rename or delete an activity or team from the management page.

        @param request: Form with ``kind`` (activity or team), ``action``
                        (create, rename or delete), ``id`` and ``name``
        @return: The management page with a success or error message
        """
        self.require_session(request)
        form = await request.post()
        kind = form.get("kind", "activity")
        action = form.get("action", "create")

        if kind == "team":
            label = "Team"
            create, rename, delete = self.db.create_team, self.db.update_team, self.db.delete_team
        else:
            label = "Activity"
            create, rename, delete = (
                self.db.create_activity,
                self.db.update_activity,
                self.db.delete_activity,
            )

        try:
            if action == "delete":
                await delete(parse_int(form.get("id"), f"{label} ID"))
                message = f"{label} deleted successfully"
            elif action == "rename":
                await rename(parse_int(form.get("id"), f"{label} ID"), str(form.get("name", "")))
                message = f"{label} updated successfully"
            else:
                await create(str(form.get("name", "")))
                message = f"{label} created successfully"
        except HasDependents as e:
            return await self._render_activities(
                request,
                status=e.status,
                error=f"{e.message}: {e.count} score(s) recorded. Delete those scores first.",
            )
        except (ValidationError, NotFound, AlreadyExists) as e:
            return await self._render_activities(request, status=e.status, error=e.message)

        return await self._render_activities(request, message=message)

    async def web_qr_codes(self, request: web.Request) -> web.Response:
        self.require_session(request)
        return await self._render_qr_codes(request)

    async def _render_qr_codes(
        self,
        request: web.Request,
        status: int = 200,
        error: Optional[str] = None,
        message: Optional[str] = None,
        issued: Any = None,
    ) -> web.Response:
        tokens = []
        for token in await self.qr_tokens.list_active():
            entry = self.token_payload(token)
            png = self.qr_tokens.qr_png(entry["login_url"], box_size=4)
            entry["qr_data_url"] = "data:image/png;base64," + base64.b64encode(png).decode()
            tokens.append(entry)

        return self.render(
            request,
            "qr_codes.html",
            status=status,
            title="QR Codes",
            tokens=tokens,
            issued=issued,
            error=error,
            message=message,
            min_hours=self.config.get("qr", "min_hours"),
            max_hours=self.config.get("qr", "max_hours"),
            default_hours=self.config.get("qr", "default_hours"),
        )

    async def web_qr_codes_submit(self, request: web.Request) -> web.Response:
        self.require_session(request)
        form = await request.post()
        action = form.get("action", "generate")

        if action == "cleanup":
            removed = await self.qr_tokens.cleanup_expired()
            return await self._render_qr_codes(request, message=f"Removed {removed} expired QR code(s)")

        if action == "revoke":
            await self.qr_tokens.revoke(str(form.get("token", "")))
            return await self._render_qr_codes(request, message="QR code removed")

        try:
            hours = parse_int(form.get("expires_in_hours", self.config.get("qr", "default_hours")), "Expiration time")
            issued = await self.qr_tokens.issue(hours, str(form.get("description", "")))
        except ValidationError as e:
            return await self._render_qr_codes(request, status=e.status, error=e.message)

        return await self._render_qr_codes(request, message="QR code generated", issued=issued)

    # ------------------------------------------------------------------
    # API: authentication
    # ------------------------------------------------------------------

    async def api_login(self, request: web.Request) -> web.Response:
        body = await self.read_json(request)
        session = self.auth.login(str(body.get("password", "")))

        response = self.ok({"remaining_seconds": self.auth.remaining_seconds(session)})
        self.set_session_cookie(request, response, session)
        return response

    async def api_logout(self, request: web.Request) -> web.Response:
        self.auth.logout(request.get("session"))
        response = self.ok(message="Logged out")
        self.clear_session_cookie(response)
        return response

    async def api_auth_status(self, request: web.Request) -> web.Response:
        session = request.get("session")
        return self.ok(
            {
                "authenticated": self.auth.is_authenticated(session),
                "remaining_seconds": self.auth.remaining_seconds(session),
            }
        )

    # ------------------------------------------------------------------
    # API: activities and teams
    # ------------------------------------------------------------------

    async def api_list_activities(self, request: web.Request) -> web.Response:
        stats = request.query.get("stats") == "true"
        activities = await self.db.list_activities(stats=stats)
        return self.ok(activities, count=len(activities))

    async def api_get_activity(self, request: web.Request) -> web.Response:
        return self.ok(await self.db.get_activity(self.match_id(request)))

    async def api_create_activity(self, request: web.Request) -> web.Response:
        self.require_session(request)
        body = await self.read_json(request)
        activity = await self.db.create_activity(str(body.get("activity_name") or ""))
        return self.ok(activity, status=201, message="Activity created successfully")

    async def api_update_activity(self, request: web.Request) -> web.Response:
        self.require_session(request)
        body = await self.read_json(request)
        activity = await self.db.update_activity(
            self.match_id(request), str(body.get("activity_name") or "")
        )
        return self.ok(activity, message="Activity updated successfully")

    async def api_delete_activity(self, request: web.Request) -> web.Response:
        self.require_session(request)
        await self.db.delete_activity(self.match_id(request))
        return self.ok(message="Activity deleted successfully")

    async def api_list_teams(self, request: web.Request) -> web.Response:
        stats = request.query.get("stats") == "true"
        teams = await self.db.list_teams(stats=stats)
        return self.ok(teams, count=len(teams))

    async def api_get_team(self, request: web.Request) -> web.Response:
        return self.ok(await self.db.get_team(self.match_id(request)))

    async def api_create_team(self, request: web.Request) -> web.Response:
        self.require_session(request)
        body = await self.read_json(request)
        team = await self.db.create_team(str(body.get("team_name") or ""))
        return self.ok(team, status=201, message="Team created successfully")

    async def api_update_team(self, request: web.Request) -> web.Response:
        self.require_session(request)
        body = await self.read_json(request)
        team = await self.db.update_team(self.match_id(request), str(body.get("team_name") or ""))
        return self.ok(team, message="Team updated successfully")

    async def api_delete_team(self, request: web.Request) -> web.Response:
        self.require_session(request)
        await self.db.delete_team(self.match_id(request))
        return self.ok(message="Team deleted successfully")

    # ------------------------------------------------------------------
    # API: scores and standings
    # ------------------------------------------------------------------

    async def api_list_scores(self, request: web.Request) -> web.Response:
        activity_id = request.query.get("activity_id")
        team_id = request.query.get("team_id")
        scores = await self.db.list_scores(
            activity_id=parse_int(activity_id, "Activity ID") if activity_id else None,
            team_id=parse_int(team_id, "Team ID") if team_id else None,
        )
        return self.ok(scores, count=len(scores))

    async def api_get_score(self, request: web.Request) -> web.Response:
        return self.ok(await self.db.get_score(self.match_id(request)))

    async def api_create_score(self, request: web.Request) -> web.Response:
        """
        Submit a new score.

        Body: activity_id, team_id, creative_score, participation_score, bribe_score.
        """
        self.require_session(request)
        body = await self.read_json(request)

        for field in ("activity_id", "team_id") + tuple(f for f, _ in SCORE_FIELDS):
            if body.get(field) is None:
                raise ValidationError(f"{field.replace('_', ' ').capitalize()} is required")

        components = [validate_component(body[field], label) for field, label in SCORE_FIELDS]
        score = await self.db.create_score(
            parse_int(body["activity_id"], "Activity ID"),
            parse_int(body["team_id"], "Team ID"),
            *components,
        )
        return self.ok(score, status=201, message="Score submitted successfully")

    async def api_update_score(self, request: web.Request) -> web.Response:
        self.require_session(request)
        body = await self.read_json(request)

        components = [
            validate_component(body[field], label) if body.get(field) is not None else None
            for field, label in SCORE_FIELDS
        ]
        score = await self.db.update_score(self.match_id(request), *components)
        return self.ok(score, message="Score updated successfully")

    async def api_delete_score(self, request: web.Request) -> web.Response:
        self.require_session(request)
        await self.db.delete_score(self.match_id(request))
        return self.ok(message="Score deleted successfully")

    async def api_standings(self, _: web.Request) -> web.Response:
        standings = await self.db.get_standings()
        return self.ok(standings, count=len(standings))

    # ------------------------------------------------------------------
    # API: QR tokens
    # ------------------------------------------------------------------

    async def api_issue_qr_token(self, request: web.Request) -> web.Response:
        self.require_session(request)
        body = await self.read_json(request)

        hours = parse_int(
            body.get("expires_in_hours", self.config.get("qr", "default_hours")),
            "Expiration time",
        )
        issued = await self.qr_tokens.issue(hours, str(body.get("description") or ""))

        return self.ok(
            {
                "token": issued.token,
                "login_url": issued.login_url,
                "expires_at": issued.expires_at,
                "expires_in_hours": issued.expires_in_hours,
                "description": issued.description,
                "qr_code_url": f"/api/qr-tokens/{issued.token}.png",
            },
            status=201,
        )

    async def api_list_qr_tokens(self, request: web.Request) -> web.Response:
        self.require_session(request)
        tokens = [self.token_payload(token) for token in await self.qr_tokens.list_active()]
        return self.ok(tokens, count=len(tokens))

    async def api_cleanup_qr_tokens(self, request: web.Request) -> web.Response:
        self.require_session(request)
        removed = await self.qr_tokens.cleanup_expired()
        return self.ok({"removed": removed})

    async def api_revoke_qr_token(self, request: web.Request) -> web.Response:
        self.require_session(request)
        if not await self.qr_tokens.revoke(request.match_info["token"]):
            raise NotFound("QR token not found")
        return self.ok(message="QR token removed")

    async def api_qr_token_png(self, request: web.Request) -> web.Response:
        self.require_session(request)
        token = request.match_info["token"]
        if await self.db.get_qr_token(token) is None:
            raise NotFound("QR token not found")

        png = self.qr_tokens.qr_png(self.qr_tokens.login_url(token))
        return web.Response(body=png, content_type="image/png")


