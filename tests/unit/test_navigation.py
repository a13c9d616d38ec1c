"""Unit tests for pqa.browser.navigation and the page target."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeout

from pqa.browser.navigation import _build_fallback_chain, resilient_goto
from pqa.browser.session import PageTarget, host_matches, host_of
from pqa.exceptions import NavigationError


# ---------------------------------------------------------------------------
# _build_fallback_chain
# ---------------------------------------------------------------------------

class TestBuildFallbackChain:
    """Tests for the internal fallback-chain builder."""

    def test_networkidle_produces_full_chain(self) -> None:
        assert _build_fallback_chain("networkidle") == ["networkidle", "load", "domcontentloaded"]

    def test_load_skips_networkidle(self) -> None:
        assert _build_fallback_chain("load") == ["load", "domcontentloaded"]

    def test_unknown_strategy_prepends_to_chain(self) -> None:
        chain = _build_fallback_chain("commit")
        assert chain[0] == "commit"
        assert "networkidle" in chain


# ---------------------------------------------------------------------------
# resilient_goto
# ---------------------------------------------------------------------------

class TestResilientGoto:
    """Tests for resilient_goto."""

    @pytest.mark.anyio
    async def test_success_on_first_try(self) -> None:
        page = MagicMock()
        sentinel = MagicMock(name="response")
        page.goto = AsyncMock(return_value=sentinel)

        result = await resilient_goto(page, "https://chat.example.com", timeout_ms=5000)

        assert result is sentinel
        page.goto.assert_awaited_once_with("https://chat.example.com", wait_until="networkidle", timeout=5000)

    @pytest.mark.anyio
    async def test_fallback_to_load_on_timeout(self) -> None:
        page = MagicMock()
        sentinel = MagicMock(name="response")
        page.goto = AsyncMock(side_effect=[PlaywrightTimeout("timeout"), sentinel])

        result = await resilient_goto(page, "https://chat.example.com", timeout_ms=5000)

        assert result is sentinel
        assert page.goto.await_count == 2
        page.goto.assert_any_await("https://chat.example.com", wait_until="load", timeout=5000)

    @pytest.mark.anyio
    async def test_all_strategies_time_out(self) -> None:
        page = MagicMock()
        page.goto = AsyncMock(side_effect=PlaywrightTimeout("timeout"))

        with pytest.raises(PlaywrightTimeout):
            await resilient_goto(page, "https://chat.example.com")
        assert page.goto.await_count == 3

    @pytest.mark.anyio
    async def test_dns_failure_is_not_retried(self) -> None:
        page = MagicMock()
        page.goto = AsyncMock(side_effect=PlaywrightError("net::ERR_NAME_NOT_RESOLVED at https://nope.invalid"))

        with pytest.raises(NavigationError, match="name not resolved"):
            await resilient_goto(page, "https://nope.invalid")
        assert page.goto.await_count == 1

    @pytest.mark.anyio
    async def test_other_errors_propagate(self) -> None:
        page = MagicMock()
        page.goto = AsyncMock(side_effect=PlaywrightError("Target closed"))

        with pytest.raises(PlaywrightError, match="Target closed"):
            await resilient_goto(page, "https://chat.example.com")


# ---------------------------------------------------------------------------
# Host matching
# ---------------------------------------------------------------------------

class TestHostMatching:
    def test_host_of(self) -> None:
        assert host_of("https://Chat.Example.com/c/123") == "chat.example.com"
        assert host_of("about:blank") == ""

    def test_subdomains_match(self) -> None:
        assert host_matches("chat.example.com", "example.com")
        assert host_matches("example.com", ".example.com")
        assert not host_matches("badexample.com", "example.com")


# ---------------------------------------------------------------------------
# PageTarget
# ---------------------------------------------------------------------------


def _fake_page(url: str = "https://chat.example.com/c/1") -> MagicMock:
    page = MagicMock()
    page.url = url
    page.is_closed.return_value = False
    handlers: dict[str, list] = {}
    page.on.side_effect = lambda name, handler: handlers.setdefault(name, []).append(handler)
    page.handlers = handlers
    return page


def _fire(page: MagicMock, name: str, arg) -> None:
    for handler in page.handlers.get(name, []):
        handler(arg)


class TestPageTarget:
    """Validation and lifecycle notifications."""

    @pytest.mark.anyio
    async def test_defaults_to_current_host(self) -> None:
        page = _fake_page()
        target = PageTarget(page, target_id="chat-1")
        assert target.allowed_hosts == ["chat.example.com"]
        assert await target.validate()

    @pytest.mark.anyio
    async def test_invalid_when_closed_or_off_host(self) -> None:
        page = _fake_page("https://elsewhere.org/")
        target = PageTarget(page, target_id="chat-1", allowed_hosts=["chat.example.com"])
        assert not await target.validate()

        page.url = "https://chat.example.com/"
        page.is_closed.return_value = True
        assert not await target.validate()

    @pytest.mark.anyio
    async def test_close_notifies_once(self) -> None:
        page = _fake_page()
        target = PageTarget(page, target_id="chat-1")
        reasons: list[str] = []

        async def listener(reason: str) -> None:
            reasons.append(reason)

        target.add_invalidation_listener(listener)
        _fire(page, "close", page)
        _fire(page, "close", page)
        await asyncio.sleep(0)

        assert reasons == ["Target tab was closed"]

    @pytest.mark.anyio
    async def test_navigation_away_invalidates_and_reload_reannounces(self) -> None:
        page = _fake_page()
        target = PageTarget(page, target_id="chat-1")
        reasons: list[str] = []
        reloads: list[int] = []

        async def on_invalid(reason: str) -> None:
            reasons.append(reason)

        async def on_reload() -> None:
            reloads.append(1)

        target.add_invalidation_listener(on_invalid)
        target.add_reload_listener(on_reload)

        frame = page.main_frame
        frame.url = "https://chat.example.com/c/2"
        _fire(page, "framenavigated", frame)
        _fire(page, "load", page)
        await asyncio.sleep(0)
        assert reasons == []
        assert reloads == [1]

        frame.url = "https://elsewhere.org/"
        page.url = frame.url
        _fire(page, "framenavigated", frame)
        _fire(page, "load", page)
        await asyncio.sleep(0)
        assert len(reasons) == 1
        assert "elsewhere.org" in reasons[0]
        assert reloads == [1]

    @pytest.mark.anyio
    async def test_subframe_navigation_ignored(self) -> None:
        page = _fake_page()
        target = PageTarget(page, target_id="chat-1")
        reasons: list[str] = []

        async def on_invalid(reason: str) -> None:
            reasons.append(reason)

        target.add_invalidation_listener(on_invalid)
        iframe = MagicMock()
        iframe.url = "https://ads.example.net/"
        _fire(page, "framenavigated", iframe)
        await asyncio.sleep(0)
        assert reasons == []
