from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from typing import Any
from urllib.parse import urljoin

import requests

from .adapter import extract_next_cursor, extract_page_token, parse_author, parse_cast
from .exceptions import (
    APISchemaError,
    MisconfigurationError,
    NotFoundError,
    RateLimitError,
    UpstreamUnavailableError,
)
from .ratecontrol import BaseRateController, SlidingWindowRateController
from .structures import Author, Cast

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15
BULK_USERS_MAX = 100


class NeynarContext:
    """HTTP session for the Neynar v2 API and the Neynar-hosted hub API."""

    API_URL = "https://api.neynar.com"
    HUB_URL = "https://hub-api.neynar.com"
    HEADERS = {
        "Accept": "application/json",
        "User-Agent": "unreplied/0.1",
    }

    def __init__(
        self,
        api_key: str | None = None,
        *,
        session: requests.Session | None = None,
        rate_controller: BaseRateController | None = None,
        request_timeout: float = DEFAULT_TIMEOUT,
        retries: int = 2,
        api_url: str | None = None,
        hub_url: str | None = None,
    ):
        self.api_key = api_key or None
        if session is None:
            session = requests.Session()
            session.headers.update(self.HEADERS)
        else:
            for k, v in self.HEADERS.items():
                session.headers.setdefault(k, v)
        self.session = session

        self.rate = rate_controller or SlidingWindowRateController()
        self.req_timeout = request_timeout
        self.retries = max(0, retries)
        self.api_url = (api_url or self.API_URL).rstrip("/")
        self.hub_url = (hub_url or self.HUB_URL).rstrip("/")

    @classmethod
    def from_env(cls, **kwargs: Any) -> NeynarContext:
        kwargs.setdefault("api_key", os.environ.get("NEYNAR_API_KEY"))
        kwargs.setdefault("api_url", os.environ.get("NEYNAR_API_URL"))
        kwargs.setdefault("hub_url", os.environ.get("NEYNAR_HUB_URL"))
        return cls(**kwargs)

    def require_api_key(self) -> str:
        if not self.api_key:
            raise MisconfigurationError("API key not configured")
        return self.api_key

    # --- transport ---

    def _handle_response(
        self,
        resp: requests.Response,
        target: str,
        attempt: int,
        retries: int,
    ) -> requests.Response | None:
        """Map status codes to exceptions. Returns response on success, None to retry."""
        code = resp.status_code

        if code == 429:
            resp.close()
            if attempt < retries:
                return None
            raise RateLimitError(f"rate limited: {target}")

        if code in (401, 403):
            resp.close()
            raise MisconfigurationError(f"API key rejected ({code})")

        if code == 404:
            resp.close()
            raise NotFoundError(f"not found: {target}")

        if code >= 500:
            resp.close()
            if attempt < retries:
                return None
            raise UpstreamUnavailableError(f"server error {code}: {target}")

        if code >= 400:
            resp.close()
            raise UpstreamUnavailableError(f"http {code}: {target}")

        return resp

    def request(
        self,
        method: str,
        url: str,
        *,
        bucket: str = "api",
        retries: int | None = None,
        **kwargs: Any,
    ) -> requests.Response:
        """Make an HTTP request with rate control, timeout and retry."""
        base = self.hub_url if bucket == "hub" else self.api_url
        target = url if url.startswith("http") else urljoin(f"{base}/", url.lstrip("/"))
        timeout = kwargs.pop("timeout", self.req_timeout)
        retries = self.retries if retries is None else retries

        headers = dict(kwargs.pop("headers", None) or {})
        if bucket == "hub":
            if self.api_key:
                headers.setdefault("api_key", self.api_key)
        else:
            headers.setdefault("x-api-key", self.require_api_key())

        for attempt in range(retries + 1):
            self.rate.wait_before_request(bucket)

            try:
                resp = self.session.request(method, target, headers=headers, timeout=timeout, **kwargs)
            except requests.RequestException as e:
                if attempt >= retries:
                    raise UpstreamUnavailableError(f"request failed: {target}: {e}") from e
                logger.debug("retrying %s after %s", target, e)
                continue

            self.rate.handle_response(bucket, resp.status_code)

            result = self._handle_response(resp, target, attempt, retries)
            if result is not None:
                return result

        raise UpstreamUnavailableError(f"request failed: {target}")

    def _get_json(self, url: str, **kwargs: Any) -> dict[str, Any]:
        resp = self.request("GET", url, **kwargs)
        try:
            payload = resp.json()
        except ValueError as e:
            raise APISchemaError(f"invalid json from {url}") from e
        finally:
            resp.close()
        if not isinstance(payload, dict):
            raise APISchemaError(f"unexpected payload from {url}")
        return payload

    # --- Neynar v2 ---

    def fetch_casts_for_user(
        self,
        fid: int,
        limit: int,
        cursor: str | None = None,
        include_replies: bool = False,
    ) -> tuple[list[Cast], str | None]:
        params: dict[str, Any] = {
            "fid": fid,
            "limit": limit,
            "include_replies": str(include_replies).lower(),
        }
        if cursor:
            params["cursor"] = cursor
        data = self._get_json("/v2/farcaster/feed/user/casts", params=params)
        casts = data.get("casts")
        if not isinstance(casts, list):
            raise APISchemaError("feed response missing casts")
        return [parse_cast(c) for c in casts if isinstance(c, dict)], extract_next_cursor(data)

    def lookup_cast(self, hash_: str) -> Cast:
        data = self._get_json("/v2/farcaster/cast", params={"identifier": hash_, "type": "hash"})
        cast = data.get("cast")
        if not isinstance(cast, dict):
            raise NotFoundError(f"cast not found: {hash_}")
        return parse_cast(cast)

    def lookup_cast_conversation(self, hash_: str, reply_depth: int = 1, limit: int = 50) -> dict[str, Any]:
        return self._get_json(
            "/v2/farcaster/cast/conversation",
            params={"identifier": hash_, "type": "hash", "reply_depth": reply_depth, "limit": limit},
        )

    def fetch_bulk_users(self, fids: Iterable[int]) -> dict[int, Author]:
        unique = list(dict.fromkeys(f for f in fids if f))
        users: dict[int, Author] = {}
        for i in range(0, len(unique), BULK_USERS_MAX):
            chunk = unique[i:i + BULK_USERS_MAX]
            data = self._get_json("/v2/farcaster/user/bulk", params={"fids": ",".join(map(str, chunk))})
            for raw in data.get("users") or []:
                if isinstance(raw, dict):
                    author = parse_author(raw)
                    if author.fid is not None:
                        users[author.fid] = author
        return users

    # --- hub ---

    def hub_cast_by_id(self, fid: int, hash_: str) -> dict[str, Any]:
        return self._get_json("/v1/castById", bucket="hub", params={"fid": fid, "hash": hash_})

    def hub_casts_by_parent(self, fid: int, hash_: str, page_size: int = 25) -> list[dict[str, Any]]:
        data = self._get_json(
            "/v1/castsByParent", bucket="hub",
            params={"fid": fid, "hash": hash_, "pageSize": page_size},
        )
        return [m for m in data.get("messages") or [] if isinstance(m, dict)]

    def hub_casts_by_fid(
        self,
        fid: int,
        page_size: int = 25,
        page_token: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        params: dict[str, Any] = {"fid": fid, "pageSize": page_size, "reverse": "true"}
        if page_token:
            params["pageToken"] = page_token
        data = self._get_json("/v1/castsByFid", bucket="hub", params=params)
        messages = [m for m in data.get("messages") or [] if isinstance(m, dict)]
        return messages, extract_page_token(data)
