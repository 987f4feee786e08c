"""Citation normalization, reliability tagging and inline reference placement."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from deep_research.models.payloads import UrlCitation
from deep_research.models.records import Citation, Evidence

_URL_RE = re.compile(r"https?://[^\s)\]>\"']+", re.IGNORECASE)
_HTTP_RE = re.compile(r"^https?://", re.IGNORECASE)
_TRAILING_PUNCT_RE = re.compile(r"[.,;:!?]+$")
_TRACKING_PARAMS = {"utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content"}


def stable_hash(text: str) -> int:
    """32-bit rolling string hash (h * 31 + ch), kept stable across processes."""
    h = 0
    for ch in text:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return h - (1 << 32) if h & 0x80000000 else h


def base36(n: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if n == 0:
        return "0"
    out = []
    while n:
        n, rem = divmod(n, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def citation_id_for(url: str) -> str:
    return f"c_{base36(abs(stable_hash(url)))}"


def is_http_url(value: Any) -> bool:
    return isinstance(value, str) and bool(_HTTP_RE.match(value))


def clean_url(url: str) -> str:
    return _TRAILING_PUNCT_RE.sub("", url.strip())


def canonicalize_url(url: str) -> str:
    """Drop the fragment and utm_* tracking parameters."""
    parsed = urlparse(url.strip())
    query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k.lower() not in _TRACKING_PARAMS]
    return urlunparse(parsed._replace(query=urlencode(query), fragment=""))


def reliability_tags(url: str) -> list[str]:
    host = (urlparse(url).hostname or "").lower()
    if not host:
        return ["unknown"]
    if host.endswith(".gov") or host.endswith(".mil"):
        return ["gov", "primary"]
    if any(d in host for d in ("nature.com", "science.org", "nejm.org", "thelancet.com")):
        return ["peer_reviewed", "primary"]
    if any(d in host for d in ("reuters.com", "apnews.com", "ft.com", "wsj.com", "nytimes.com")):
        return ["press"]
    if "medium.com" in host or "substack.com" in host:
        return ["blog"]
    return ["unknown"]


def extract_urls(text: str) -> list[str]:
    seen: dict[str, None] = {}
    for match in _URL_RE.findall(text or ""):
        seen.setdefault(_TRAILING_PUNCT_RE.sub("", match), None)
    return list(seen)


def normalize_citations(provider: str, text: str, raw_sources: Any, max_items: int = 60) -> list[Citation]:
    """Collect citations from nested url/uri/href keys, then from bare URLs in ``text``."""
    now = datetime.now(timezone.utc).isoformat()
    by_url: dict[str, Citation] = {}

    def visit(node: Any) -> None:
        if isinstance(node, list):
            for item in node:
                visit(item)
            return
        if not isinstance(node, dict):
            return
        url = next((node[k] for k in ("url", "uri", "href") if isinstance(node.get(k), str) and node[k]), None)
        if url and is_http_url(url) and url not in by_url:
            by_url[url] = Citation(
                citation_id=citation_id_for(url),
                url=url,
                title=node.get("title") if isinstance(node.get("title"), str) else None,
                publisher=node.get("publisher") if isinstance(node.get("publisher"), str) else None,
                accessed_at=now,
                reliability_tags=reliability_tags(url),
                provider_metadata={"provider": provider},
            )
        for value in node.values():
            if isinstance(value, (dict, list)):
                visit(value)

    visit(raw_sources)
    for url in extract_urls(text):
        if url not in by_url:
            by_url[url] = Citation(
                citation_id=citation_id_for(url),
                url=url,
                accessed_at=now,
                reliability_tags=reliability_tags(url),
                provider_metadata={"provider": provider},
            )
    return list(by_url.values())[:max_items]


def _evidence_id(index: int, claim: str) -> str:
    return f"ev_{index}_{base36(abs(stable_hash(claim)))}"


def evidence_from_text(text: str, citations: list[Citation]) -> list[Evidence]:
    source_ids = [c.citation_id for c in citations[:2]]
    lines = [line.strip() for line in re.split(r"\n+", text or "")]
    claims = [line for line in lines if len(line) > 80][:10]
    return [
        Evidence(
            evidence_id=_evidence_id(idx, claim),
            claim=claim[:280],
            supporting_snippet=claim[:220],
            source_citation_ids=list(source_ids),
        )
        for idx, claim in enumerate(claims, start=1)
    ]


def evidence_from_json(rows: Any, citations: list[Citation]) -> list[Evidence]:
    source_ids = [c.citation_id for c in citations[:2]]
    out: list[Evidence] = []
    for idx, row in enumerate(rows if isinstance(rows, list) else [], start=1):
        if not isinstance(row, dict):
            continue
        claim = row.get("claim").strip() if isinstance(row.get("claim"), str) else ""
        if not claim:
            continue
        snippet = row.get("supporting_snippet")
        confidence = row.get("confidence")
        out.append(
            Evidence(
                evidence_id=_evidence_id(idx, claim),
                claim=claim,
                supporting_snippet=snippet.strip() if isinstance(snippet, str) else claim[:180],
                source_citation_ids=list(source_ids),
                confidence=confidence if confidence in ("low", "med", "high") else "med",
                notes=row.get("notes") if isinstance(row.get("notes"), str) else None,
            )
        )
    return out


# --- Inline reference placement ---


@dataclass(frozen=True, slots=True)
class NormalizedReference:
    n: int
    url: str
    title: str | None = None


@dataclass(slots=True)
class NormalizedCitations:
    text_with_refs: str
    references: list[NormalizedReference]


def _unique_urls(items: list[tuple[str, str | None]]) -> list[tuple[str, str | None]]:
    seen: set[str] = set()
    out = []
    for url, title in items:
        url = clean_url(url)
        if not is_http_url(url) or url in seen:
            continue
        seen.add(url)
        out.append((url, title))
    return out


def normalize_from_placements(text: str, placements: list[tuple[int, list[tuple[str, str | None]]]]) -> NormalizedCitations:
    """Number references in placement order and insert ``[n](url)`` at each offset."""
    ordered = sorted(
        (
            (max(0, min(len(text), at)), _unique_urls(urls))
            for at, urls in placements
        ),
        key=lambda p: p[0],
    )
    ordered = [p for p in ordered if p[1]]

    ref_by_url: dict[str, NormalizedReference] = {}
    for _, urls in ordered:
        for url, title in urls:
            if url not in ref_by_url:
                ref_by_url[url] = NormalizedReference(n=len(ref_by_url) + 1, url=url, title=title)

    at_map: dict[int, list[str]] = {}
    for at, urls in ordered:
        at_map.setdefault(at, []).extend(f"[{ref_by_url[url].n}]({url})" for url, _ in urls)

    out = text
    for at in sorted(at_map, reverse=True):
        cite = " ".join(dict.fromkeys(at_map[at]))
        needs_space = at > 0 and not out[at - 1].isspace()
        out = f"{out[:at]}{' ' if needs_space else ''}{cite}{out[at:]}"
    return NormalizedCitations(text_with_refs=out, references=list(ref_by_url.values()))


def normalize_openai_citations(text: str, annotations: list[UrlCitation]) -> NormalizedCitations:
    placements = []
    for ann in annotations:
        if ann.type and ann.type != "url_citation":
            continue
        if ann.end_index is None or not is_http_url(ann.url):
            continue
        placements.append((ann.end_index, [(clean_url(ann.url), ann.title)]))
    return normalize_from_placements(text or "", placements)

