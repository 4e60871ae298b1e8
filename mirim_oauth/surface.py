"""Authorization surfaces: where the user approves the login.

An AuthorizationSurface opens the authorization URL somewhere the user
can interact with it (a browser popup, the system browser, an embedded
webview) and returns a SurfaceHandle. The CallbackListener watches the
handle three ways: messages delivered through ``subscribe``, the
surface's own location, and whether it was closed.

BrowserSurface is the implementation for terminal hosts: it opens the
system browser and receives the redirect on an ephemeral localhost HTTP
listener, which delivers the callback URL as a same-origin message.
"""

import asyncio
import html
import logging
import webbrowser
from abc import ABC, abstractmethod
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Callable
from urllib.parse import parse_qs, urlparse

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = {"127.0.0.1", "localhost", "::1"}


class SurfaceError(Exception):
    """The surface could not be opened."""

    pass


@dataclass
class SurfaceMessage:
    """A message posted to the opener by the authorization surface.

    Attributes:
        data: Structured result (mapping), JSON text, or a callback URL
        origin: Origin of the sender, if the host can tell
    """

    data: Any
    origin: str | None = None


MessageListener = Callable[[SurfaceMessage], None]


def origin_of(url: str) -> str:
    """Return scheme://host[:port] for a URL."""
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


class SurfaceHandle(ABC):
    """An opened authorization surface."""

    def __init__(self) -> None:
        self._listeners: list[MessageListener] = []

    @abstractmethod
    def closed(self) -> bool:
        """Whether the surface has been closed (by the user or by close())."""

    @abstractmethod
    def current_location(self) -> str | None:
        """The surface's current URL, or None if it cannot be read."""

    @abstractmethod
    def close(self) -> None:
        """Close the surface if still open."""

    def subscribe(self, listener: MessageListener) -> Callable[[], None]:
        """Register a message listener; returns a function removing it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def post_message(self, message: SurfaceMessage) -> None:
        """Deliver a message to the current listeners."""
        for listener in list(self._listeners):
            listener(message)


class AuthorizationSurface(ABC):
    """Factory for authorization surfaces."""

    @abstractmethod
    async def open(self, url: str) -> SurfaceHandle | None:
        """Open the authorization URL.

        Returns:
            The handle, or None if the surface was blocked

        Raises:
            SurfaceError: If the surface cannot be opened
        """


SUCCESS_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>Login Successful</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            display: flex;
            justify-content: center;
            align-items: center;
            height: 100vh;
            margin: 0;
            background: #f4f6fb;
        }}
        .card {{
            background: white;
            padding: 40px 60px;
            border-radius: 16px;
            text-align: center;
            box-shadow: 0 10px 40px rgba(0,0,0,0.1);
        }}
        h1 {{ color: #1a1a1a; margin: 0 0 8px 0; font-size: 24px; }}
        p {{ color: #666; margin: 0; }}
    </style>
</head>
<body>
    <div class="card">
        <h1>Login Successful</h1>
        <p>You can close this window and return to the application.</p>
    </div>
</body>
</html>"""

ERROR_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>Login Failed</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            display: flex;
            justify-content: center;
            align-items: center;
            height: 100vh;
            margin: 0;
            background: #fbf4f4;
        }}
        .card {{
            background: white;
            padding: 40px 60px;
            border-radius: 16px;
            text-align: center;
            box-shadow: 0 10px 40px rgba(0,0,0,0.1);
            max-width: 400px;
        }}
        h1 {{ color: #1a1a1a; margin: 0 0 8px 0; font-size: 24px; }}
        .error {{
            background: #fee;
            padding: 12px;
            border-radius: 8px;
            color: #c0392b;
            font-family: monospace;
            font-size: 14px;
        }}
    </style>
</head>
<body>
    <div class="card">
        <h1>Login Failed</h1>
        <div class="error">{error}: {description}</div>
    </div>
</body>
</html>"""


class LocalhostRedirectHandle(SurfaceHandle):
    """Handle for a system-browser login.

    The browser tab itself is out of reach: its location cannot be read
    and closing it is not observable, so only the redirect listener
    (and the listener's timeout) can end the wait.
    """

    def __init__(self, redirect_uri: str, path: str):
        super().__init__()
        self.redirect_uri = redirect_uri
        self.path = path
        self._origin = origin_of(redirect_uri)
        self._server: asyncio.Server | None = None
        self._closed = False

    async def start(self, host: str, port: int) -> None:
        self._server = await asyncio.start_server(self._handle_connection, host, port)
        logger.debug(f"Redirect listener started on {host}:{port}{self.path}")

    def closed(self) -> bool:
        return self._closed

    def current_location(self) -> str | None:
        return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._server is not None:
            self._server.close()
            self._server = None
            logger.debug("Redirect listener stopped")

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle one HTTP request from the browser."""
        try:
            request_line = (await reader.readline()).decode("utf-8", errors="replace")
            parts = request_line.strip().split(" ")
            if len(parts) < 2:
                await self._send(writer, HTTPStatus.BAD_REQUEST, "Invalid request")
                return

            method, target = parts[0], parts[1]

            # Drain headers
            while True:
                line = await reader.readline()
                if line in (b"\r\n", b"\n", b""):
                    break

            if method != "GET":
                await self._send(writer, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")
                return

            # Browsers also ask for /favicon.ico and may prefetch
            if urlparse(target).path != self.path:
                await self._send(writer, HTTPStatus.NOT_FOUND, "Not found")
                return

            params = parse_qs(urlparse(target).query)
            if "error" in params:
                page = ERROR_HTML.format(
                    error=html.escape(params["error"][0]),
                    description=html.escape(params.get("error_description", ["No description provided"])[0]),
                )
            else:
                page = SUCCESS_HTML.format()
            await self._send(writer, HTTPStatus.OK, page, content_type="text/html; charset=utf-8")

            self.post_message(
                SurfaceMessage(
                    data={"type": "oauth_callback", "url": f"{self._origin}{target}"},
                    origin=self._origin,
                )
            )

        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.warning(f"Error handling redirect request: {e}")

        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def _send(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        body: str,
        content_type: str = "text/plain",
    ) -> None:
        payload = body.encode("utf-8")
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: {content_type}\r\n"
            f"Content-Length: {len(payload)}\r\n"
            f"X-Content-Type-Options: nosniff\r\n"
            f"X-Frame-Options: DENY\r\n"
            f"Content-Security-Policy: default-src 'none'; style-src 'unsafe-inline'\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8") + payload)
        await writer.drain()


class BrowserSurface(AuthorizationSurface):
    """Opens the system browser and listens for the redirect on localhost.

    The redirect URI must point at a loopback address; its port and path
    decide where the listener binds.
    """

    def __init__(
        self,
        redirect_uri: str,
        opener: Callable[[str], bool] = webbrowser.open,
        on_status: Callable[[str], None] | None = None,
    ):
        self.redirect_uri = redirect_uri
        self.opener = opener
        self.on_status = on_status or (lambda msg: None)

    async def open(self, url: str) -> SurfaceHandle | None:
        parsed = urlparse(self.redirect_uri)
        host = parsed.hostname or ""
        if host not in LOOPBACK_HOSTS:
            raise SurfaceError(
                f"Redirect URI {self.redirect_uri} is not a loopback address; "
                f"the browser redirect cannot be received"
            )

        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        handle = LocalhostRedirectHandle(self.redirect_uri, parsed.path or "/")
        try:
            await handle.start(host, port)
        except OSError as e:
            raise SurfaceError(f"Cannot listen on {host}:{port}: {e}") from e

        self.on_status("Opening browser for login...")
        if not self.opener(url):
            self.on_status(f"Could not open browser. Please open this URL manually:\n{url}")

        return handle
