from __future__ import annotations

import httpx

USER_AGENT = "DeepResearchBot/1.0 (+source-validation)"


async def validate_url(
    url: str,
    timeout_ms: int = 3000,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> bool:
    """HEAD-check a URL, following redirects. True only for a final 2xx."""

    async def _do_request(client: httpx.AsyncClient) -> bool:
        response = await client.head(
            url,
            headers={"User-Agent": USER_AGENT},
            timeout=max(timeout_ms, 1) / 1000.0,
            follow_redirects=True,
        )
        return response.is_success

    try:
        if http_client is None:
            async with httpx.AsyncClient() as client:
                return await _do_request(client)
        return await _do_request(http_client)
    except (httpx.HTTPError, httpx.InvalidURL, ValueError):
        return False
