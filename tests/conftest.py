import json
import os
import sys
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "lambda"))
import app  # noqa: E402
from rate_limiter import RateLimiter  # noqa: E402
from roast_generator import RoastGenerator  # noqa: E402
from roast_storage import (  # noqa: E402
    DuplicateDetector,
    PlaylistMetadataStore,
    RoastStore,
    SQLConnection,
)
from spotify_client import PlaylistData, Track  # noqa: E402

FIXED_NOW = 1_790_000_000.0


class FakeRateLimitTable:
    """In-memory stand-in for the DynamoDB rate limit table."""

    def __init__(self, items=None, fail_query=False, fail_put=False, page_size=None):
        self.items = list(items or [])
        self.fail_query = fail_query
        self.fail_put = fail_put
        self.page_size = page_size
        self.query_calls = []
        self.put_calls = []

    def query(self, **kwargs):
        self.query_calls.append(kwargs)
        if self.fail_query:
            raise RuntimeError("dynamodb unavailable")
        condition = kwargs["KeyConditionExpression"].get_expression()
        ip_condition, ts_condition = condition["values"]
        ip_address = ip_condition.get_expression()["values"][1]
        since = ts_condition.get_expression()["values"][1]
        matches = [
            item
            for item in self.items
            if item["ip_address"] == ip_address and item["request_timestamp"] > since
        ]
        start = (kwargs.get("ExclusiveStartKey") or {}).get("offset", 0)
        if self.page_size is None:
            return {"Count": len(matches) - start}
        chunk = matches[start : start + self.page_size]
        response = {"Count": len(chunk)}
        if start + self.page_size < len(matches):
            response["LastEvaluatedKey"] = {"offset": start + self.page_size}
        return response

    def put_item(self, Item):
        self.put_calls.append(Item)
        if self.fail_put:
            raise RuntimeError("dynamodb unavailable")
        self.items.append(Item)

    def seed(self, ip_address, count, now=FIXED_NOW, age_seconds=60):
        for i in range(count):
            self.items.append(
                {
                    "ip_address": ip_address,
                    "request_timestamp": int((now - age_seconds - i) * 1000),
                    "expiration_time": int(now) + 86400,
                }
            )


class FakeBody:
    def __init__(self, payload):
        self._raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode()

    def read(self):
        return self._raw


class FakeBedrockClient:
    def __init__(self, text="Walao this playlist basic gila lah 😂", error=None, payload=None):
        self.text = text
        self.error = error
        self.payload = payload
        self.calls = []

    def invoke_model(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        payload = self.payload
        if payload is None:
            payload = {"content": [{"type": "text", "text": self.text}]}
        return {"body": FakeBody(payload)}


class FakeFetcher:
    def __init__(self, playlists=None, error=None):
        self.playlists = playlists or {}
        self.error = error
        self.calls = []

    def fetch_playlist_data(self, playlist_id):
        self.calls.append(playlist_id)
        if self.error:
            raise self.error
        return self.playlists[playlist_id]


class TickingClock:
    def __init__(self, start=datetime(2026, 1, 1, 8, 0, 0), step=timedelta(minutes=1)):
        self.current = start
        self.step = step

    def __call__(self):
        value = self.current
        self.current = self.current + self.step
        return value


class FakeContext:
    function_name = "roast-playlist"
    function_version = "$LATEST"
    aws_request_id = "req-123"


def make_track(name="Song", artists=("Artist",), popularity=50, explicit=False):
    return Track(
        name=name,
        artists=tuple(artists),
        album="Album",
        release_date="2020-01-01",
        popularity=popularity,
        duration_ms=180000,
        explicit=explicit,
    )


def make_playlist(name="Chill Vibes", tracks=None, owner="Aina", track_count=None):
    tracks = tuple(tracks) if tracks is not None else tuple(
        make_track(f"Song {i}", (f"Artist {i % 4}",), popularity=60 + i) for i in range(12)
    )
    return PlaylistData(
        name=name,
        description="for the commute",
        owner=owner,
        track_count=len(tracks) if track_count is None else track_count,
        tracks=tracks,
    )


@pytest.fixture
def sqlite_engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield engine
    engine.dispose()


@pytest.fixture
def sql_connection(sqlite_engine):
    return SQLConnection(engine_factory=lambda: sqlite_engine, max_attempts=1)


@pytest.fixture
def rate_table():
    return FakeRateLimitTable()


@pytest.fixture
def services(sql_connection, rate_table):
    return app.Services(
        fetcher=FakeFetcher(
            {
                "37i9dQZF1DXcBWIGoYBM5M": make_playlist("Chill Vibes"),
                "5Rrf7mqN8uus2AaQQQNdc1": make_playlist("Chill Vibes", owner="Other"),
                "1A2b3C4d5E6f7G8h9I0jKl": make_playlist("Gym Bangers"),
            }
        ),
        rate_limiter=RateLimiter(
            rate_table, enabled=True, daily_limit=10, clock=lambda: FIXED_NOW
        ),
        duplicate_detector=DuplicateDetector(sql_connection, enabled=True),
        roast_store=RoastStore(sql_connection, enabled=True, clock=TickingClock()),
        metadata_store=PlaylistMetadataStore(sql_connection, enabled=True),
        generator=RoastGenerator(client=FakeBedrockClient()),
        connection=sql_connection,
    )


@pytest.fixture
def body_of():
    def _body_of(response):
        return json.loads(response["body"]) if response["body"] else None

    return _body_of
