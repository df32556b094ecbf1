from __future__ import annotations

from collections.abc import Generator

import httpx

from relnotes.core.config import get_settings


def get_http_client() -> Generator[httpx.Client, None, None]:
    # Tests swap this for an httpx.MockTransport client.
    settings = get_settings()
    with httpx.Client(timeout=settings.OAUTH_HTTP_TIMEOUT_SECONDS) as client:
        yield client
