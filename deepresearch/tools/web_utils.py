from __future__ import annotations

import json
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


def extract_domain(url: str) -> str:
    """Lowercased host without a leading ``www.``; empty string when unparsable."""
    try:
        host = urlsplit(url).hostname or ""
    except ValueError:
        return ""
    return host.lower().removeprefix("www.")


def normalize_url(url: str) -> str:
    """Canonical form used as the source identity key.

    Lowercases the host, strips ``www.``, drops ``utm_*`` query params and a
    trailing slash. Input that does not parse as an absolute URL is returned
    verbatim.
    """
    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
        port = parts.port
    except ValueError:
        return url
    if not parts.scheme or not host:
        return url

    netloc = host.lower().removeprefix("www.")
    if port:
        netloc = f"{netloc}:{port}"
    query = urlencode(
        [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if not k.startswith("utm_")]
    )
    normalized = urlunsplit((parts.scheme.lower(), netloc, parts.path, query, parts.fragment))
    if normalized.endswith("/"):
        normalized = normalized[:-1]
    return normalized


def extract_json_object(raw_text: str) -> dict[str, Any]:
    """Pull the first JSON object out of model output (fenced or bare)."""
    text = raw_text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise json.JSONDecodeError("object not found", text, 0)
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed
