"""HTML captions and fallback texts for forwarded posts."""

from __future__ import annotations

import html

from feedrank.delivery.models import DeliveryOptions
from feedrank.storage.models import Post

CAPTION_LIMIT = 1024
TEXT_LIMIT = 4096
_EXCERPT_CHARS = 700


def _excerpt(text: str | None, limit: int) -> str:
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[: max(limit - 1, 0)].rstrip() + "…"


def _stats_line(post: Post) -> str:
    return (
        f"👁 {post.view_count:,} | 👍 {post.like_count:,} | 🔄 {post.repost_count:,}"
    )


def _annotation(options: DeliveryOptions) -> str:
    if options.kind != "high_dynamics":
        return ""
    rate = options.growth_rate or 0.0
    line = f"🚀 <b>High dynamics</b>: +{rate:.1f} views/min"
    if options.window_minutes:
        line += f" over {options.window_minutes:.0f} min"
    return line


def build_caption(
    post: Post,
    options: DeliveryOptions,
    limit: int = CAPTION_LIMIT,
    extra_lines: list[str] | None = None,
) -> str:
    """Post excerpt, counters, annotation and links, trimmed to fit `limit`."""
    tail: list[str] = [_stats_line(post)]
    note = _annotation(options)
    if note:
        tail.append(note)
    tail.extend(extra_lines or [])
    if post.original_url:
        tail.append(f'<a href="{html.escape(post.original_url)}">Original post</a>')
    tail_text = "\n".join(tail)

    # escaping can lengthen the excerpt, so shrink until the whole caption fits
    budget = min(_EXCERPT_CHARS, limit - len(tail_text) - 2)
    while budget > 0:
        body = html.escape(_excerpt(post.text, budget))
        caption = f"{body}\n\n{tail_text}" if body else tail_text
        if len(caption) <= limit:
            return caption
        budget -= max(len(caption) - limit, 16)
    return tail_text[:limit]


def photo_links_text(post: Post, photo_urls: list[str], options: DeliveryOptions) -> str:
    links = [
        f'<a href="{html.escape(url)}">Photo {i}</a>' for i, url in enumerate(photo_urls, 1)
    ]
    return build_caption(post, options, TEXT_LIMIT, extra_lines=[" | ".join(links)])


def watch_link_text(
    post: Post, watch_url: str, options: DeliveryOptions, limit: int = TEXT_LIMIT
) -> str:
    link = f'▶️ <a href="{html.escape(watch_url)}">Watch video</a>'
    return build_caption(post, options, limit, extra_lines=[link])
