"""Tests for the authorization callback listener."""

import asyncio
import json
from urllib.parse import parse_qs, urlparse

import pytest

from mirim_oauth.callback import (
    CallbackListener,
    CallbackResult,
    PendingAuthorization,
    build_authorization_url,
    parse_callback_message,
    parse_callback_url,
    validate_callback,
)
from mirim_oauth.errors import (
    AuthorizationError,
    CallbackTimeoutError,
    LoginInProgressError,
    PopupBlockedError,
    StateMismatchError,
    UserCancelledError,
)
from mirim_oauth.pkce import CodeChallengeGenerator, generate_code_challenge
from mirim_oauth.surface import AuthorizationSurface, SurfaceError, SurfaceHandle

from conftest import REDIRECT_URI, SERVER_URL, FakeHandle, FakeSurface, approve


def auth_url(state: str = "N1") -> str:
    return build_authorization_url(SERVER_URL, "client", REDIRECT_URI, "openid", state, "challenge")


def make_listener(surface: AuthorizationSurface, timeout: float = 2) -> CallbackListener:
    return CallbackListener(
        surface,
        REDIRECT_URI,
        timeout=timeout,
        location_poll_interval=0.01,
        closed_poll_interval=0.01,
    )


class TestBuildAuthorizationUrl:
    def test_contains_all_parameters(self) -> None:
        url = build_authorization_url(
            SERVER_URL + "/", "client-1", REDIRECT_URI, "openid profile", "S", "C"
        )
        parsed = urlparse(url)
        params = parse_qs(parsed.query)

        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == f"{SERVER_URL}/api/v1/oauth/authorize"
        assert params == {
            "client_id": ["client-1"],
            "redirect_uri": [REDIRECT_URI],
            "response_type": ["code"],
            "scope": ["openid profile"],
            "state": ["S"],
            "code_challenge": ["C"],
            "code_challenge_method": ["S256"],
        }


class TestPendingAuthorization:
    def test_create_links_verifier_and_challenge(self) -> None:
        pending = PendingAuthorization.create(CodeChallengeGenerator(), timeout=60)
        assert pending.code_challenge == generate_code_challenge(pending.code_verifier)
        assert pending.state
        assert not pending.is_expired()

    def test_expires(self) -> None:
        pending = PendingAuthorization.create(CodeChallengeGenerator(), timeout=-1)
        assert pending.is_expired()


class TestParseCallback:
    def test_parse_url(self) -> None:
        result = parse_callback_url(f"{REDIRECT_URI}?code=abc&state=N1")
        assert result == CallbackResult(code="abc", state="N1")
        assert result.is_success()

    def test_parse_error_url(self) -> None:
        result = parse_callback_url(f"{REDIRECT_URI}?error=access_denied&error_description=User+denied")
        assert result.error == "access_denied"
        assert result.error_description == "User denied"
        assert not result.is_success()

    def test_parse_bare_query(self) -> None:
        assert parse_callback_url("code=abc&state=N1").code == "abc"

    def test_message_mapping(self) -> None:
        result = parse_callback_message({"type": "oauth_callback", "code": "abc", "state": "N1"})
        assert result == CallbackResult(code="abc", state="N1")

    def test_message_mapping_with_url(self) -> None:
        result = parse_callback_message({"type": "oauth_callback", "url": f"{REDIRECT_URI}?code=x&state=y"})
        assert result == CallbackResult(code="x", state="y")

    def test_message_json_text(self) -> None:
        result = parse_callback_message(json.dumps({"type": "oauth_callback", "code": "abc", "state": "N1"}))
        assert result is not None
        assert result.code == "abc"

    def test_message_url_text(self) -> None:
        result = parse_callback_message(f"{REDIRECT_URI}?code=abc&state=N1")
        assert result is not None
        assert result.state == "N1"

    @pytest.mark.parametrize("data", [None, 42, "hello", {"type": "resize"}, "[1]", ["code"]])
    def test_unrelated_messages_ignored(self, data: object) -> None:
        assert parse_callback_message(data) is None


class TestValidateCallback:
    def test_valid(self) -> None:
        result = CallbackResult(code="abc", state="N1")
        assert validate_callback(result, "N1") is result

    def test_error_wins(self) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            validate_callback(CallbackResult(error="access_denied", state="other"), "N1")
        assert exc_info.value.error == "access_denied"

    def test_missing_code(self) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            validate_callback(CallbackResult(state="N1"), "N1")
        assert "Authorization code not received" in str(exc_info.value)

    @pytest.mark.parametrize("state", [None, "", "N2", "N1 "])
    def test_state_mismatch(self, state: str | None) -> None:
        with pytest.raises(StateMismatchError):
            validate_callback(CallbackResult(code="abc", state=state), "N1")


class TestCallbackListener:
    """Tests for CallbackListener.wait()."""

    @pytest.mark.asyncio
    async def test_resolves_from_message(self) -> None:
        surface = FakeSurface(approve("abc"))
        listener = make_listener(surface)

        result = await listener.wait(auth_url("N1"), expected_state="N1")

        assert result.code == "abc"
        assert result.state == "N1"

    @pytest.mark.asyncio
    async def test_settling_tears_down_surface(self) -> None:
        surface = FakeSurface(approve())
        listener = make_listener(surface)

        await listener.wait(auth_url(), expected_state="N1")

        handle = surface.last
        assert handle.is_closed
        assert handle.close_calls == 1
        assert handle.listener_count == 0
        assert not listener.in_progress

    @pytest.mark.asyncio
    async def test_resolves_from_location(self) -> None:
        def redirect(handle: FakeHandle) -> None:
            handle.location = f"{REDIRECT_URI}?code=loc&state={handle.issued_state}"

        listener = make_listener(FakeSurface(redirect))
        result = await listener.wait(auth_url(), expected_state="N1")
        assert result.code == "loc"

    @pytest.mark.asyncio
    async def test_foreign_location_ignored(self) -> None:
        def browse(handle: FakeHandle) -> None:
            handle.location = f"{SERVER_URL}/login"
            asyncio.get_running_loop().call_later(0.05, approve("late"), handle)

        listener = make_listener(FakeSurface(browse))
        result = await listener.wait(auth_url(), expected_state="N1")
        assert result.code == "late"

    @pytest.mark.asyncio
    async def test_user_closed_surface(self) -> None:
        def close(handle: FakeHandle) -> None:
            handle.is_closed = True

        listener = make_listener(FakeSurface(close))
        with pytest.raises(UserCancelledError, match="cancelled by user"):
            await listener.wait(auth_url(), expected_state="N1")
        assert not listener.in_progress

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        surface = FakeSurface()
        listener = make_listener(surface, timeout=0.05)

        with pytest.raises(CallbackTimeoutError, match="Authentication timeout after 0.05 seconds"):
            await listener.wait(auth_url(), expected_state="N1")

        assert surface.last.is_closed
        assert surface.last.listener_count == 0

    @pytest.mark.asyncio
    async def test_blocked_surface(self) -> None:
        listener = make_listener(FakeSurface(blocked=True))
        with pytest.raises(PopupBlockedError):
            await listener.wait(auth_url(), expected_state="N1")
        assert not listener.in_progress

    @pytest.mark.asyncio
    async def test_surface_error_is_blocked(self) -> None:
        class Broken(AuthorizationSurface):
            async def open(self, url: str) -> SurfaceHandle | None:
                raise SurfaceError("no display")

        with pytest.raises(PopupBlockedError, match="no display"):
            await make_listener(Broken()).wait(auth_url(), expected_state="N1")

    @pytest.mark.asyncio
    async def test_server_error_callback(self) -> None:
        def deny(handle: FakeHandle) -> None:
            handle.deliver(
                {
                    "type": "oauth_callback",
                    "error": "access_denied",
                    "error_description": "User denied",
                    "state": handle.issued_state,
                }
            )

        with pytest.raises(AuthorizationError) as exc_info:
            await make_listener(FakeSurface(deny)).wait(auth_url(), expected_state="N1")
        assert exc_info.value.error == "access_denied"
        assert exc_info.value.error_description == "User denied"

    @pytest.mark.asyncio
    async def test_state_mismatch(self) -> None:
        def forged(handle: FakeHandle) -> None:
            handle.deliver({"type": "oauth_callback", "code": "abc", "state": "N2"})

        surface = FakeSurface(forged)
        with pytest.raises(StateMismatchError):
            await make_listener(surface).wait(auth_url("N1"), expected_state="N1")
        assert surface.last.is_closed

    @pytest.mark.asyncio
    async def test_foreign_origin_ignored(self) -> None:
        def script(handle: FakeHandle) -> None:
            handle.deliver(
                {"type": "oauth_callback", "code": "evil", "state": handle.issued_state},
                origin="https://evil.test",
            )
            handle.deliver({"type": "oauth_callback", "code": "good", "state": handle.issued_state})

        result = await make_listener(FakeSurface(script)).wait(auth_url(), expected_state="N1")
        assert result.code == "good"

    @pytest.mark.asyncio
    async def test_unrelated_messages_ignored(self) -> None:
        def script(handle: FakeHandle) -> None:
            handle.deliver({"type": "resize", "height": 400})
            handle.deliver("ready")
            approve("abc")(handle)

        result = await make_listener(FakeSurface(script)).wait(auth_url(), expected_state="N1")
        assert result.code == "abc"

    @pytest.mark.asyncio
    async def test_first_result_wins(self) -> None:
        def script(handle: FakeHandle) -> None:
            approve("first")(handle)
            handle.deliver({"type": "oauth_callback", "code": "second", "state": handle.issued_state})

        result = await make_listener(FakeSurface(script)).wait(auth_url(), expected_state="N1")
        assert result.code == "first"

    @pytest.mark.asyncio
    async def test_concurrent_wait_rejected(self) -> None:
        surface = FakeSurface()
        listener = make_listener(surface)

        first = asyncio.create_task(listener.wait(auth_url(), expected_state="N1"))
        await asyncio.sleep(0)
        assert listener.in_progress

        with pytest.raises(LoginInProgressError):
            await listener.wait(auth_url("N9"), expected_state="N9")
        assert len(surface.handles) == 1

        approve("abc")(surface.last)
        result = await first
        assert result.code == "abc"
        assert not listener.in_progress

    @pytest.mark.asyncio
    async def test_listener_reusable_after_failure(self) -> None:
        surface = FakeSurface()
        listener = make_listener(surface, timeout=0.02)
        with pytest.raises(CallbackTimeoutError):
            await listener.wait(auth_url(), expected_state="N1")

        surface.script = approve("again")
        result = await listener.wait(auth_url("N2"), expected_state="N2")
        assert result.code == "again"
