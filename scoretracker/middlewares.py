"""
aiohttp middlewares: session loading and the outermost error boundary.
"""

from typing import Any, Awaitable, Callable

from aiohttp import web

from .errors import StorageUnavailable, TrackerError, Unauthorized

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def is_api_request(request: web.Request) -> bool:
    return request.path.startswith("/api/")


def session_middleware(authenticator: Any) -> Callable:
    """
    Attach the caller's session (or None) to ``request["session"]``.

    The session id travels in a cookie named after ``auth.session_name``.
    """
    cookie_name = authenticator.config.get("auth", "session_name")

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        request["session"] = authenticator.load(request.cookies.get(cookie_name))
        return await handler(request)

    return middleware


def error_middleware(config: Any, render_error: Callable[..., web.Response]) -> Callable:
    """
    Convert failures into responses exactly once, at the edge.

    API routes get ``{"success": false, "error": ...}`` with the error's
    status. Page routes get a redirect to the login page (Unauthorized) or
    the rendered error page. Internal details are only shown in debug mode.
    """

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        api = is_api_request(request)

        try:
            return await handler(request)

        except web.HTTPException:
            raise

        except Unauthorized as e:
            if api:
                return web.json_response(e.to_dict(), status=e.status)
            return web.Response(status=303, headers={"Location": "/login"})

        except StorageUnavailable as e:
            print(f"Storage error on {request.method} {request.path}: {e.__cause__ or e}")
            message = str(e.__cause__ or e) if config.debug else "Internal server error"
            if api:
                return web.json_response(
                    {"success": False, "error": message}, status=e.status
                )
            return render_error(request, message, e.status)

        except TrackerError as e:
            if api:
                return web.json_response(e.to_dict(), status=e.status)
            return render_error(request, e.message, e.status)

        except Exception as e:  # pylint: disable=broad-except
            print(f"Unhandled error on {request.method} {request.path}: {e!r}")
            message = str(e) if config.debug else "Internal server error"
            if api:
                return web.json_response({"success": False, "error": message}, status=500)
            return render_error(request, message, 500)

    return middleware
