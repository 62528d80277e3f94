"""
Main ScoreTrackerSystem class that wires all components together.
"""

import asyncio
import time
from typing import Callable, Optional

import aiohttp_cors
from aiohttp import web, web_runner

from .auth import InMemorySessionStore, SessionAuthenticator, SessionStore
from .config import TrackerConfig
from .database import DatabaseManager
from .middlewares import error_middleware, session_middleware
from .qr_tokens import QRTokenService
from .web_handlers import WebHandlers


class ScoreTrackerSystem:
    """Score tracker web application with session and QR code login."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        web_port: int = 8081,
        db_path: Optional[str] = None,
        config: Optional[TrackerConfig] = None,
        config_path: str = "tracker_config.json",
        session_store: Optional[SessionStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.host = host
        self.web_port = web_port

        # Load configuration
        self.config = config if config is not None else TrackerConfig(config_path)
        self.db_path = db_path or self.config.get("database", "path")

        # One store handle for the whole process, passed to every component
        self.db = DatabaseManager(
            self.db_path,
            busy_timeout=self.config.get("database", "busy_timeout"),
        )
        self.qr_tokens = QRTokenService(self.db, self.config, clock=clock)
        self.auth = SessionAuthenticator(
            self.config,
            session_store if session_store is not None else InMemorySessionStore(),
            qr_tokens=self.qr_tokens,
            clock=clock,
        )
        self.web_handlers = WebHandlers(self.db, self.config, self.auth, self.qr_tokens)

    async def init_db(self, seed: bool = False) -> None:
        """
        Initialize the database.

        @param seed: Insert the baseline activities and teams as well
        """
        await self.db.init_db(seed=seed)

    def create_app(self) -> web.Application:
        """
        Build the aiohttp application with all routes and middlewares.

        @return: Configured application (not yet running)
        """
        h = self.web_handlers

        app = web.Application(
            middlewares=[
                error_middleware(self.config, h.render_error),
                session_middleware(self.auth),
            ]
        )

        # Setup CORS
        cors = aiohttp_cors.setup(
            app,
            defaults={
                "*": aiohttp_cors.ResourceOptions(
                    allow_credentials=True,
                    expose_headers="*",
                    allow_headers="*",
                    allow_methods="*",
                )
            },
        )

        # Pages
        app.router.add_get("/", h.web_index)
        app.router.add_get("/login", h.web_login_form)
        app.router.add_post("/login", h.web_login)
        app.router.add_get("/logout", h.web_logout)
        app.router.add_post("/logout", h.web_logout)
        app.router.add_get("/qr-login", h.web_qr_login)
        app.router.add_get("/scores", h.web_scores)
        app.router.add_post("/scores", h.web_scores_submit)
        app.router.add_get("/activities", h.web_activities)
        app.router.add_post("/activities", h.web_activities_submit)
        app.router.add_get("/qr-codes", h.web_qr_codes)
        app.router.add_post("/qr-codes", h.web_qr_codes_submit)

        # Authentication API
        app.router.add_post("/api/auth/login", h.api_login)
        app.router.add_post("/api/auth/logout", h.api_logout)
        app.router.add_get("/api/auth/status", h.api_auth_status)

        # Resource API
        app.router.add_get("/api/activities", h.api_list_activities)
        app.router.add_post("/api/activities", h.api_create_activity)
        app.router.add_get("/api/activities/{id}", h.api_get_activity)
        app.router.add_put("/api/activities/{id}", h.api_update_activity)
        app.router.add_delete("/api/activities/{id}", h.api_delete_activity)

        app.router.add_get("/api/teams", h.api_list_teams)
        app.router.add_post("/api/teams", h.api_create_team)
        app.router.add_get("/api/teams/{id}", h.api_get_team)
        app.router.add_put("/api/teams/{id}", h.api_update_team)
        app.router.add_delete("/api/teams/{id}", h.api_delete_team)

        app.router.add_get("/api/scores", h.api_list_scores)
        app.router.add_post("/api/scores", h.api_create_score)
        app.router.add_get("/api/scores/{id}", h.api_get_score)
        app.router.add_put("/api/scores/{id}", h.api_update_score)
        app.router.add_delete("/api/scores/{id}", h.api_delete_score)

        app.router.add_get("/api/standings", h.api_standings)

        # QR token API
        app.router.add_get("/api/qr-tokens", h.api_list_qr_tokens)
        app.router.add_post("/api/qr-tokens", h.api_issue_qr_token)
        app.router.add_delete("/api/qr-tokens/expired", h.api_cleanup_qr_tokens)
        app.router.add_get("/api/qr-tokens/{token:[0-9a-f]+}.png", h.api_qr_token_png)
        app.router.add_delete("/api/qr-tokens/{token:[0-9a-f]+}", h.api_revoke_qr_token)

        # Add CORS to all routes
        for route in list(app.router.routes()):
            cors.add(route)

        return app

    async def start_web_server(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ) -> web_runner.AppRunner:
        """
        Start the web server.

        @param host: Host address to bind the server to (default uses configured host)
        @param port: Port number to use (default uses configured web_port)
        @return: AppRunner instance for the web server
        """
        if host is None:
            host = self.host
        if port is None:
            port = self.web_port

        app_runner = web_runner.AppRunner(self.create_app())
        await app_runner.setup()

        site = web_runner.TCPSite(app_runner, host, port)
        await site.start()

        print(f"Web server running on http://{host}:{port}")
        return app_runner

    async def run(self) -> None:
        """Run the web server until interrupted."""
        web_server_runner = await self.start_web_server()

        print(f"\n{self.config.get('app_name')} Running!")
        print(f"Web Interface: http://{self.host}:{self.web_port}")
        print(f"Database: {self.db_path}")
        print("\nPress Ctrl+C to stop...\n")

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            print("\nShutting down server...")
        finally:
            await web_server_runner.cleanup()

    async def print_summary(self) -> None:
        """
        Print table row counts and the current standings to the console.
        """
        counts = await self.db.verify_schema()
        print("Schema verification successful:")
        for table, count in counts.items():
            print(f"- {table}: {count}")

        standings = await self.db.get_standings()
        if not standings:
            return

        print("\n" + "=" * 50)
        print("STANDINGS")
        print("=" * 50)
        for entry in standings:
            tie_indicator = " (tie)" if entry["is_tied"] else ""
            print(
                f"{entry['rank']:2d}. {entry['team_name']:<20} "
                f"Total: {entry['total_score']:4d}  Avg: {entry['avg_score']:6.2f}"
                f"{tie_indicator}"
            )
