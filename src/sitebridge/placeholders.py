"""Sentinel tokens and deferred placeholder resolution.

The template engine builds output synchronously, so an awaitable reaching
the output step cannot be awaited where it stands. The escape hook records
it in the render context and emits a sentinel token instead; once the
synchronous pass is done, ``resolve_placeholders()`` awaits everything
pending and splices the results back in by token index.

Token Format:
    ``\\x02\\x1a`` + kind + index + ``:`` + nonce + ``\\x1a\\x03``

    kind is ``e`` (escaped position) or ``r`` (raw position), matched in
    either case so case-changing filters leave tokens resolvable. The nonce
    is a random run of digits owned by one render context; only that
    context substitutes the token. The framing characters are control
    characters that HTML escaping leaves untouched, so a token survives
    ``markupsafe.escape()`` byte-for-byte.

    Interpolated text passes through ``strip_forged()``: framing that is not
    part of a token of the active render chain is removed, so data cannot
    forge a token while macro and ``{% set %}`` output keeps its tokens.

Resolution Rounds:
    A resolved value may itself be awaitable (or resolve to something the
    escape hook defers again), which queues new placeholders. Resolution
    repeats until nothing is pending, up to ``max_rounds``.

"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
from collections.abc import Callable, Container
from typing import TYPE_CHECKING, Any

from sitebridge.environment.exceptions import (
    AwaitableRejectedError,
    ErrorCode,
    PlaceholderResolutionError,
)

if TYPE_CHECKING:
    from sitebridge.render_context import RenderContext

logger = logging.getLogger(__name__)

TOKEN_OPEN = "\x02\x1a"
TOKEN_CLOSE = "\x1a\x03"

ESCAPED = "e"
RAW = "r"

NONCE_DIGITS = 8

TOKEN_RE = re.compile(r"\x02\x1a([erER])(\d+):(\d+)\x1a\x03")

# A token, or any single framing character outside one
_FORGERY_RE = re.compile(r"\x02\x1a[erER]\d+:(\d+)\x1a\x03|[\x02\x1a\x03]")

_FRAMING = dict.fromkeys(map(ord, "\x02\x1a\x03"))

DEFAULT_MAX_ROUNDS = 32

Fragment = Callable[[Any, bool], str]


def new_nonce() -> str:
    return f"{secrets.randbelow(10**NONCE_DIGITS):0{NONCE_DIGITS}d}"


def make_token(index: int, nonce: str, *, raw: bool = False) -> str:
    """Build the sentinel token for pending value ``index`` of context ``nonce``."""
    return f"{TOKEN_OPEN}{RAW if raw else ESCAPED}{index}:{nonce}{TOKEN_CLOSE}"


def find_tokens(output: str, nonce: str | None = None) -> list[tuple[int, bool]]:
    """Return ``(index, raw)`` for every token in ``output``, in order.

    With ``nonce`` set, only tokens of that render context are returned.
    """
    return [
        (int(m.group(2)), m.group(1).lower() == RAW)
        for m in TOKEN_RE.finditer(output)
        if nonce is None or m.group(3) == nonce
    ]


def has_framing(output: str) -> bool:
    """True if any token framing is left, well-formed or not."""
    return TOKEN_OPEN in output or TOKEN_CLOSE in output


def strip_forged(text: str, nonces: Container[str] = ()) -> str:
    """Remove framing characters that are not part of a token owned by ``nonces``.

    ``Markup`` input stays ``Markup``.
    """
    if not any(ch in text for ch in "\x02\x1a\x03"):
        return text

    def _keep(match: re.Match[str]) -> str:
        nonce = match.group(1)
        if nonce is not None and nonce in nonces:
            return match.group(0)
        return match.group(0).translate(_FRAMING)

    return type(text)(_FORGERY_RE.sub(_keep, text))


def substitute(output: str, fragments: dict[int, str], nonce: str) -> str:
    """Replace tokens of ``nonce`` whose index is in ``fragments``; leave others intact."""

    def _replace(match: re.Match[str]) -> str:
        if match.group(3) != nonce:
            return match.group(0)
        return fragments.get(int(match.group(2)), match.group(0))

    return TOKEN_RE.sub(_replace, output)


def _unresolved(output: str, outer_nonces: Container[str]) -> bool:
    """True if framing remains besides tokens owned by enclosing renders."""
    if outer_nonces:
        output = TOKEN_RE.sub(
            lambda m: "" if m.group(3) in outer_nonces else m.group(0),
            output,
        )
    return has_framing(output)


async def resolve_placeholders(
    ctx: RenderContext,
    output: str,
    fragment: Fragment,
    *,
    max_rounds: int = DEFAULT_MAX_ROUNDS,
) -> str:
    """Await every pending value of ``ctx`` and splice results into ``output``.

    Args:
        ctx: Render context owning the pending list
        output: Rendered text containing sentinel tokens
        fragment: ``fragment(value, raw)`` turns a resolved value into output
            text; it may defer new awaitables into ``ctx``
        max_rounds: Upper bound on resolution rounds

    Returns:
        ``output`` with every token of ``ctx`` replaced. Returned unchanged
        when nothing is pending. Tokens of enclosing renders are left for
        them to resolve.

    Raises:
        AwaitableRejectedError: A pending awaitable raised (first in token order)
        PlaceholderResolutionError: Rounds exceeded, or unresolved tokens or
            damaged framing remain
    """
    if not ctx.pending:
        return output

    rounds = 0
    while ctx.pending:
        if rounds >= max_rounds:
            ctx.discard_pending()
            raise PlaceholderResolutionError(
                "Placeholder resolution did not converge",
                template_name=ctx.template_name,
                rounds=rounds,
            )
        rounds += 1

        batch = ctx.drain()
        logger.debug(
            "Resolving %d placeholder(s) for %s (round %d)",
            len(batch),
            ctx.template_name or "<template>",
            rounds,
        )
        results = await asyncio.gather(
            *(item.awaitable for item in batch),
            return_exceptions=True,
        )

        fragments: dict[int, str] = {}
        for item, result in zip(batch, results, strict=True):
            if isinstance(result, Exception):
                ctx.discard_pending()
                raise AwaitableRejectedError(
                    item.label,
                    result,
                    template_name=ctx.template_name,
                ) from result
            if isinstance(result, BaseException):
                ctx.discard_pending()
                raise result
            fragments[item.index] = fragment(result, item.raw)

        output = substitute(output, fragments, ctx.nonce)

    if _unresolved(output, ctx.outer_nonces):
        orphans = ", ".join(str(index) for index, _ in find_tokens(output, ctx.nonce))
        raise PlaceholderResolutionError(
            f"Unresolved placeholder(s) {orphans or '(damaged token framing)'}",
            template_name=ctx.template_name,
            rounds=rounds,
            code=ErrorCode.ORPHAN_PLACEHOLDER,
        )
    return output
