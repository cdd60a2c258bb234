"""
Shared test configuration and fixtures for the Anchor core tests.

Provides a fake clock and sleep, a recording metrics client, a fake Redis
client, and an in-process fake PDS (token endpoint plus the repository XRPC
methods) served by aiohttp's TestServer.
"""

import asyncio
import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
import fakeredis.aioredis
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from dropanchor.app.config import Settings
from dropanchor.app.context import AnchorContext
from dropanchor.app.metrics import MetricsClient
from dropanchor.atproto.store import InMemoryCredentialStore
from dropanchor.model.credentials import Credentials
from dropanchor.model.place import ElementType, Place

TEST_HANDLE = "alice.example"
TEST_PASSWORD = "app-password-x"
TEST_DID = "did:plc:alice0000000000000000000"
START_TIME = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock; tests move time forward explicitly."""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.delays: List[float] = []
        self._clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._clock is not None:
            self._clock.advance(delay)
        await asyncio.sleep(0)


class RecordingMetricsClient(MetricsClient):
    def __init__(self):
        self.increments: Dict[Tuple[str, Tuple], float] = {}
        self.timers: Dict[str, Dict[str, Any]] = {}
        self.gauges: Dict[str, float] = {}
        self.closed = False

    def increment(self, name, value=1, tag_dict=None):
        key = (name, tuple(sorted((tag_dict or {}).items())))
        self.increments[key] = self.increments.get(key, 0) + value

    def gauge(self, name, value, tag_dict=None):
        self.gauges[name] = value

    def timer(self, name, value, tag_dict=None):
        self.timers[name] = {"value": value, "tags": tag_dict or {}}

    async def close(self):
        self.closed = True

    def count(self, name: str) -> float:
        return sum(v for (n, _), v in self.increments.items() if n == name)


def compute_cid(value: Dict[str, Any]) -> str:
    canonical = json.dumps(value, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return "bafyrei" + hashlib.sha256(canonical).hexdigest()[:46]


class FakePds:
    """
    In-process authorization server and PDS.

    The cid of a record is recomputed from its stored value on every read, so
    changing a value behind the client's back (``tamper``) changes its cid the
    way a real repository would.
    """

    def __init__(self):
        self.server: Optional[TestServer] = None
        self.expires_in: Optional[int] = 4 * 60 * 60
        self.include_identity = True

        self.password_calls = 0
        self.refresh_calls = 0
        self.refresh_failures: List[int] = []
        self.refresh_delay = 0.0

        self.access_tokens: Dict[str, str] = {}
        self.refresh_tokens: Dict[str, str] = {}
        self._serial = 0

        self.records: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.create_calls: Dict[str, int] = {}
        self.create_failures: Dict[str, int] = {}
        self.unauthorized_requests = 0
        self.always_unauthorized = False

    @property
    def url(self) -> str:
        assert self.server is not None
        return str(self.server.make_url("")).rstrip("/")

    def app(self) -> web.Application:
        app = web.Application()
        app.add_routes(
            [
                web.post("/oauth/token", self.handle_token),
                web.post("/xrpc/com.atproto.repo.createRecord", self.handle_create),
                web.get("/xrpc/com.atproto.repo.getRecord", self.handle_get),
                web.post("/xrpc/com.atproto.repo.uploadBlob", self.handle_upload),
            ]
        )
        return app

    async def start(self) -> None:
        self.server = TestServer(self.app())
        await self.server.start_server()

    async def close(self) -> None:
        if self.server is not None:
            await self.server.close()

    def _issue(self) -> Dict[str, Any]:
        self._serial += 1
        access_token = f"access-{self._serial}"
        refresh_token = f"refresh-{self._serial}"
        self.access_tokens[access_token] = TEST_DID
        self.refresh_tokens[refresh_token] = TEST_DID
        body: Dict[str, Any] = {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_type": "Bearer",
        }
        if self.expires_in is not None:
            body["expires_in"] = self.expires_in
        if self.include_identity:
            body["sub"] = TEST_DID
            body["handle"] = TEST_HANDLE
            body["pds_url"] = self.url
        return body

    def revoke(self, access_token: str) -> None:
        self.access_tokens.pop(access_token, None)

    def tamper(self, uri: str, value: Dict[str, Any]) -> None:
        repo, collection, rkey = uri.removeprefix("at://").split("/")
        self.records[(repo, collection, rkey)] = value

    def count_records(self, collection: str) -> int:
        return sum(1 for (_, c, _) in self.records if c == collection)

    async def handle_token(self, request: web.Request) -> web.Response:
        form = await request.post()
        grant_type = form.get("grant_type")

        if grant_type == "password":
            self.password_calls += 1
            if form.get("username") != TEST_HANDLE or form.get("password") != TEST_PASSWORD:
                return web.json_response(
                    {"error": "invalid_grant", "error_description": "Invalid identifier or password"},
                    status=401,
                )
            return web.json_response(self._issue())

        if grant_type == "refresh_token":
            self.refresh_calls += 1
            if self.refresh_delay:
                await asyncio.sleep(self.refresh_delay)
            if self.refresh_failures:
                status = self.refresh_failures.pop(0)
                return web.json_response({"error": "temporarily_unavailable"}, status=status)
            refresh_token = form.get("refresh_token")
            if refresh_token not in self.refresh_tokens:
                return web.json_response(
                    {"error": "invalid_grant", "error_description": "Refresh token revoked"},
                    status=400,
                )
            del self.refresh_tokens[refresh_token]
            return web.json_response(self._issue())

        return web.json_response({"error": "unsupported_grant_type"}, status=400)

    def _authorized(self, request: web.Request) -> bool:
        header = request.headers.get("Authorization", "")
        token = header.removeprefix("Bearer ")
        if self.always_unauthorized or token not in self.access_tokens:
            self.unauthorized_requests += 1
            return False
        return True

    def _unauthorized(self) -> web.Response:
        return web.json_response(
            {"error": "InvalidToken", "message": "Token could not be verified"},
            status=401,
        )

    async def handle_create(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return self._unauthorized()

        body = await request.json()
        collection = body["collection"]
        self.create_calls[collection] = self.create_calls.get(collection, 0) + 1

        failure = self.create_failures.get(collection)
        if failure is not None:
            return web.json_response(
                {"error": "InternalServerError", "message": "create failed"}
                if failure >= 500
                else {"error": "InvalidRequest", "message": "Invalid record"},
                status=failure,
            )

        if body["repo"] != TEST_DID:
            return web.json_response(
                {"error": "InvalidRequest", "message": "repo mismatch"}, status=400
            )

        rkey = body.get("rkey") or f"3l{len(self.records):011d}"
        record = body["record"]
        self.records[(body["repo"], collection, rkey)] = record
        return web.json_response(
            {"uri": f"at://{body['repo']}/{collection}/{rkey}", "cid": compute_cid(record)}
        )

    async def handle_get(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return self._unauthorized()

        key = (
            request.query["repo"],
            request.query["collection"],
            request.query["rkey"],
        )
        value = self.records.get(key)
        if value is None:
            return web.json_response(
                {"error": "RecordNotFound", "message": "Could not locate record"},
                status=400,
            )
        return web.json_response(
            {
                "uri": f"at://{key[0]}/{key[1]}/{key[2]}",
                "cid": compute_cid(value),
                "value": value,
            }
        )

    async def handle_upload(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return self._unauthorized()

        data = await request.read()
        return web.json_response(
            {
                "blob": {
                    "$type": "blob",
                    "ref": {"$link": "bafkrei" + hashlib.sha256(data).hexdigest()[:46]},
                    "mimeType": request.headers.get("Content-Type", ""),
                    "size": len(data),
                }
            }
        )


def make_credentials(
    now: datetime = START_TIME,
    lifetime: timedelta = timedelta(hours=4),
    access_token: str = "access-0",
    refresh_token: str = "refresh-0",
    pds_base_url: str = "https://pds.example.com",
) -> Credentials:
    return Credentials(
        access_token=access_token,
        refresh_token=refresh_token,
        handle=TEST_HANDLE,
        did=TEST_DID,
        pds_base_url=pds_base_url,
        expires_at=now + lifetime,
        issued_at=now,
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def metrics():
    return RecordingMetricsClient()


@pytest.fixture
def place():
    return Place(
        name="Klimmuur Centraal",
        latitude=52.3676,
        longitude=4.9041,
        element_type=ElementType.way,
        element_id=123456789,
        tags={
            "leisure": "sports_centre",
            "sport": "climbing",
            "addr:street": "Stationsplein 1",
            "addr:city": "Amsterdam",
            "addr:country": "NL",
            "addr:postcode": "1012 AB",
        },
    )


@pytest_asyncio.fixture
async def fake_redis():
    """Provide fake Redis client for unit tests."""
    redis_client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield redis_client
    await redis_client.flushall()
    await redis_client.aclose()


@pytest_asyncio.fixture
async def fake_pds():
    pds = FakePds()
    await pds.start()
    yield pds
    await pds.close()


@pytest.fixture
def settings(fake_pds):
    return Settings(
        base_url=fake_pds.url,
        session_duration=4 * 60 * 60,
        refresh_threshold=60 * 60,
        max_retry_attempts=3,
        retry_base_delay=2.0,
        max_retry_delay=8.0,
        request_timeout=5.0,
        user_agent="Anchor-Test/1.0",
    )


@pytest_asyncio.fixture
async def http_session():
    session = aiohttp.ClientSession()
    yield session
    await session.close()


@pytest.fixture
def store():
    return InMemoryCredentialStore()


@pytest_asyncio.fixture
async def context(settings, http_session, metrics, store, fake_clock, fake_sleep):
    anchor = AnchorContext(
        settings,
        http_session,
        metrics,
        store,
        clock=fake_clock,
        sleep=fake_sleep,
    )
    yield anchor
    await anchor.close()
