"""Tests for sentinel tokens and the placeholder resolver."""

from __future__ import annotations

import asyncio
import inspect

import pytest
from markupsafe import Markup, escape

from sitebridge.environment.exceptions import (
    AwaitableRejectedError,
    ErrorCode,
    PlaceholderResolutionError,
    original_error,
)
from sitebridge.placeholders import (
    find_tokens,
    make_token,
    resolve_placeholders,
    strip_forged,
    substitute,
)
from sitebridge.render_context import RenderContext


async def after(delay: float, result):
    await asyncio.sleep(delay)
    return result


def plain_fragment(ctx: RenderContext):
    """Fragment function that defers awaitables and stringifies the rest."""

    def fragment(value, raw: bool) -> str:
        if inspect.isawaitable(value):
            return ctx.defer(value, raw=raw)
        return "" if value is None else str(value)

    return fragment


NONCE = "12345678"


class TestTokens:
    def test_token_shape(self) -> None:
        assert make_token(3, NONCE) == "\x02\x1ae3:12345678\x1a\x03"
        assert make_token(12, NONCE, raw=True) == "\x02\x1ar12:12345678\x1a\x03"

    def test_token_survives_html_escaping(self) -> None:
        token = make_token(5, NONCE)
        assert str(escape(token)) == token

    def test_find_tokens_in_order(self) -> None:
        output = f"<p>{make_token(1, NONCE)}</p>{make_token(0, NONCE, raw=True)}"
        assert find_tokens(output) == [(1, False), (0, True)]
        assert find_tokens("<p>{{ 0 }}</p>") == []

    def test_find_tokens_any_case(self) -> None:
        output = make_token(0, NONCE).upper() + make_token(1, NONCE, raw=True).upper()
        assert find_tokens(output) == [(0, False), (1, True)]

    def test_find_tokens_by_nonce(self) -> None:
        output = make_token(0, NONCE) + make_token(1, "87654321")
        assert find_tokens(output, NONCE) == [(0, False)]

    def test_substitute_leaves_unknown_indices(self) -> None:
        output = f"{make_token(0, NONCE)}|{make_token(1, NONCE)}"
        assert substitute(output, {0: "zero"}, NONCE) == f"zero|{make_token(1, NONCE)}"

    def test_substitute_ignores_other_nonces(self) -> None:
        foreign = make_token(0, "87654321")
        assert substitute(foreign, {0: "zero"}, NONCE) == foreign

    def test_contexts_get_distinct_nonces(self) -> None:
        nonces = {RenderContext().nonce for _ in range(20)}
        assert len(nonces) > 1
        assert all(len(n) == 8 and n.isdigit() for n in nonces)


class TestStripForged:
    def test_plain_text_unchanged(self) -> None:
        text = "<p>nothing to see</p>"
        assert strip_forged(text) is text

    def test_forged_token_loses_framing(self) -> None:
        forged = make_token(0, NONCE)
        assert strip_forged(f"a{forged}b") == "ae0:12345678b"
        assert strip_forged("\x02stray\x03") == "stray"

    def test_owned_tokens_kept(self) -> None:
        token = make_token(0, NONCE)
        assert strip_forged(f"a{token}\x02b", (NONCE,)) == f"a{token}b"

    def test_markup_stays_markup(self) -> None:
        result = strip_forged(Markup("<b>\x02x</b>"))
        assert isinstance(result, Markup)
        assert result == Markup("<b>x</b>")


class TestResolve:
    @pytest.mark.asyncio
    async def test_nothing_pending_returns_input(self) -> None:
        ctx = RenderContext()
        output = "<p>unchanged</p>"
        result = await resolve_placeholders(ctx, output, plain_fragment(ctx))
        assert result is output

    @pytest.mark.asyncio
    async def test_index_order_not_settlement_order(self) -> None:
        ctx = RenderContext()
        slow = ctx.defer(after(0.05, "first"))
        fast = ctx.defer(after(0, "second"))
        output = f"<p>{slow}</p><p>{fast}</p>"

        result = await resolve_placeholders(ctx, output, plain_fragment(ctx))

        assert result == "<p>first</p><p>second</p>"
        assert ctx.pending == []

    @pytest.mark.asyncio
    async def test_raw_flag_reaches_fragment(self) -> None:
        ctx = RenderContext()
        seen = []

        def fragment(value, raw):
            seen.append((value, raw))
            return str(value)

        output = ctx.defer(after(0, "a")) + ctx.defer(after(0, "b"), raw=True)
        assert await resolve_placeholders(ctx, output, fragment) == "ab"
        assert seen == [("a", False), ("b", True)]

    @pytest.mark.asyncio
    async def test_nested_awaitables_resolve_in_later_rounds(self) -> None:
        async def outer():
            return after(0, "inner value")

        ctx = RenderContext()
        output = f"[{ctx.defer(outer())}]"
        result = await resolve_placeholders(ctx, output, plain_fragment(ctx))
        assert result == "[inner value]"

    @pytest.mark.asyncio
    async def test_none_resolves_to_empty(self) -> None:
        ctx = RenderContext()
        output = f"<p>{ctx.defer(after(0, None))}</p>"
        assert await resolve_placeholders(ctx, output, plain_fragment(ctx)) == "<p></p>"

    @pytest.mark.asyncio
    async def test_same_awaitable_twice(self) -> None:
        ctx = RenderContext()
        shared = asyncio.ensure_future(after(0, "x"))
        output = ctx.defer(shared) + ctx.defer(shared)
        assert await resolve_placeholders(ctx, output, plain_fragment(ctx)) == "xx"


class TestResolveFailures:
    @pytest.mark.asyncio
    async def test_non_converging_resolution_is_capped(self) -> None:
        async def forever():
            return forever()

        ctx = RenderContext(template_name="loop.jinja")
        output = ctx.defer(forever())

        with pytest.raises(PlaceholderResolutionError) as exc_info:
            await resolve_placeholders(ctx, output, plain_fragment(ctx), max_rounds=3)

        assert exc_info.value.code is ErrorCode.RESOLUTION_DID_NOT_CONVERGE
        assert exc_info.value.rounds == 3
        assert "did not converge" in str(exc_info.value)
        assert ctx.pending == []

    @pytest.mark.asyncio
    async def test_rejection_names_awaitable_and_keeps_original(self) -> None:
        error = ValueError("feed unavailable")

        async def fetch_feed():
            raise error

        ctx = RenderContext(template_name="news.jinja")
        output = ctx.defer(after(0, "ok")) + ctx.defer(fetch_feed())

        with pytest.raises(AwaitableRejectedError) as exc_info:
            await resolve_placeholders(ctx, output, plain_fragment(ctx))

        rejected = exc_info.value
        assert rejected.label == "fetch_feed"
        assert rejected.original is error
        assert rejected.__cause__ is error
        assert original_error(rejected) is error
        assert rejected.template_name == "news.jinja"
        assert "fetch_feed" in str(rejected)

    @pytest.mark.asyncio
    async def test_orphan_tokens_are_reported(self) -> None:
        ctx = RenderContext()
        output = ctx.defer(after(0, "a")) + make_token(99, ctx.nonce)

        with pytest.raises(PlaceholderResolutionError) as exc_info:
            await resolve_placeholders(ctx, output, plain_fragment(ctx))

        assert exc_info.value.code is ErrorCode.ORPHAN_PLACEHOLDER
        assert "99" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_damaged_framing_is_reported(self) -> None:
        ctx = RenderContext()
        token = ctx.defer(after(0, "a"))
        damaged = token.replace("e", "x", 1)

        with pytest.raises(PlaceholderResolutionError) as exc_info:
            await resolve_placeholders(ctx, damaged, plain_fragment(ctx))

        assert exc_info.value.code is ErrorCode.ORPHAN_PLACEHOLDER
        assert "damaged token framing" in str(exc_info.value)


class TestResolveNested:
    @pytest.mark.asyncio
    async def test_enclosing_render_tokens_left_for_parent(self) -> None:
        parent = RenderContext(template_name="page.jinja")
        parent_token = parent.defer(after(0, "outer"))
        child = parent.child_context("card.jinja")
        output = f"{child.defer(after(0, 'inner'))}|{parent_token}"

        result = await resolve_placeholders(child, output, plain_fragment(child))
        assert result == f"inner|{parent_token}"

        result = await resolve_placeholders(parent, result, plain_fragment(parent))
        assert result == "inner|outer"

    def test_child_knows_parent_nonce(self) -> None:
        parent = RenderContext()
        child = parent.child_context()
        assert child.outer_nonces == (parent.nonce,)
        assert child.known_nonces == (parent.nonce, child.nonce)
