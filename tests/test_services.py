import asyncio
import json

import pytest
import requests

from fakes import FakeSessionProvider
from musicapp import config, services
from musicapp.identity import LocalIdentityStore
from musicapp.models import AuthEvent, LocalIdentity
from musicapp.store import RemoteStoreError


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = "" if payload is None else json.dumps(payload)
        self.text = text
        self.content = text.encode()

    def json(self):
        if self._payload is None:
            raise ValueError("no json body")
        return self._payload


class FakeHTTPSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.requests.append(
            {"method": method, "url": url, "params": params, "json": json, "headers": headers, "timeout": timeout}
        )
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(services.time, "sleep", lambda seconds: None)


def _store(responses, token=None):
    http = FakeHTTPSession(responses)
    store = services.SupabaseRestStore(
        "https://demo.supabase.co/",
        "anon",
        token_provider=lambda: token,
        session=http,
    )
    return store, http


def test_filter_params_render_postgrest_operators():
    params = services._filter_params({"user_id": "u1", "playlist_id": [10, 11], "last": None, "tag": ["a", 'b"c']})
    assert params == [
        ("user_id", "eq.u1"),
        ("playlist_id", "in.(10,11)"),
        ("last", "is.null"),
        ("tag", 'in.("a","b\\"c")'),
    ]


def test_select_builds_query_and_uses_anon_key():
    store, http = _store([FakeResponse(payload=[{"file_id": 1}])])

    rows = asyncio.run(
        store.select("songs", filters={"language": "en"}, order_by="views", descending=True, limit=5)
    )

    assert rows == [{"file_id": 1}]
    sent = http.requests[0]
    assert sent["method"] == "GET"
    assert sent["url"] == "https://demo.supabase.co/rest/v1/songs"
    assert sent["params"] == [("select", "*"), ("language", "eq.en"), ("order", "views.desc"), ("limit", "5")]
    assert sent["headers"]["apikey"] == "anon"
    assert sent["headers"]["Authorization"] == "Bearer anon"
    assert sent["timeout"] == config.HTTP_TIMEOUT_SECONDS


def test_requests_carry_the_session_token():
    store, http = _store([FakeResponse(payload=None, text="")], token="user-token")
    asyncio.run(store.rpc("increment_song_views", {"song_file_id": 3}))
    sent = http.requests[0]
    assert sent["url"].endswith("/rest/v1/rpc/increment_song_views")
    assert sent["json"] == {"song_file_id": 3}
    assert sent["headers"]["Authorization"] == "Bearer user-token"


def test_mutations_use_postgrest_conventions():
    store, http = _store(
        [
            FakeResponse(201, payload=[{"id": 7, "name": "Mix"}]),
            FakeResponse(200, payload=[{"id": 7, "name": "Drive"}]),
            FakeResponse(204, text=""),
            FakeResponse(201, text=""),
        ]
    )

    async def scenario():
        inserted = await store.insert("playlists", {"name": "Mix"})
        updated = await store.update("playlists", {"name": "Drive"}, filters={"id": 7})
        await store.delete("playlists", filters={"id": 7})
        await store.upsert("users", {"id": "u1"})
        return inserted, updated

    inserted, updated = asyncio.run(scenario())
    assert inserted == [{"id": 7, "name": "Mix"}]
    assert updated == [{"id": 7, "name": "Drive"}]
    methods = [sent["method"] for sent in http.requests]
    assert methods == ["POST", "PATCH", "DELETE", "POST"]
    assert http.requests[0]["headers"]["Prefer"] == "return=representation"
    assert http.requests[2]["params"] == [("id", "eq.7")]
    assert http.requests[3]["headers"]["Prefer"].startswith("resolution=merge-duplicates")


def test_transient_errors_are_retried():
    store, http = _store(
        [
            FakeResponse(503, payload={"message": "busy"}),
            requests.ConnectionError("reset"),
            FakeResponse(200, payload=[]),
        ]
    )
    assert asyncio.run(store.select("songs")) == []
    assert len(http.requests) == 3


def test_client_errors_raise_without_retry():
    store, http = _store([FakeResponse(400, payload={"message": "bad filter"})])
    with pytest.raises(RemoteStoreError) as excinfo:
        asyncio.run(store.select("songs"))
    assert excinfo.value.status_code == 400
    assert "bad filter" in str(excinfo.value)
    assert len(http.requests) == 1


def test_retries_give_up_after_max_attempts():
    store, http = _store([FakeResponse(500, text="oops")] * config.HTTP_MAX_RETRIES)
    with pytest.raises(RemoteStoreError) as excinfo:
        asyncio.run(store.select("songs"))
    assert excinfo.value.status_code == 500
    assert len(http.requests) == config.HTTP_MAX_RETRIES


def _auth(responses, token="tok"):
    http = FakeHTTPSession(responses)
    return services.SupabaseAuthClient("https://demo.supabase.co", "anon", access_token=token, session=http), http


def test_auth_client_returns_session_for_valid_token():
    client, http = _auth([FakeResponse(payload={"id": "u1", "email": "u1@example.com", "user_metadata": {"name": "Una"}})])
    session = asyncio.run(client.get_session())
    assert session.user.id == "u1"
    assert session.user.display_name == "Una"
    assert http.requests[0]["url"].endswith("/auth/v1/user")
    assert http.requests[0]["headers"]["Authorization"] == "Bearer tok"


def test_auth_client_treats_rejected_token_as_no_session():
    client, _ = _auth([FakeResponse(401, payload={"msg": "invalid JWT"})])
    assert asyncio.run(client.get_session()) is None


def test_auth_client_without_token_skips_network():
    client, http = _auth([], token=None)
    assert asyncio.run(client.get_session()) is None
    assert http.requests == []


def test_set_session_and_sign_out_emit_events():
    client, http = _auth([FakeResponse(payload={"id": "u5"}), FakeResponse(204, text="")], token=None)
    events = []
    subscription = client.on_auth_state_change(lambda event, session: events.append((event, session)))

    async def scenario():
        await client.set_session("fresh")
        await client.sign_out()

    asyncio.run(scenario())
    assert [event for event, _ in events] == [AuthEvent.SIGNED_IN, AuthEvent.SIGNED_OUT]
    assert events[0][1].user.id == "u5"
    assert client.access_token is None
    assert http.requests[1]["url"].endswith("/auth/v1/logout")

    subscription.unsubscribe()
    asyncio.run(client.sign_out())
    assert len(events) == 2


def test_build_live_clients_requires_credentials(monkeypatch):
    monkeypatch.setattr(services.env, "load_env", lambda path=None: {})
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_ANON_KEY", raising=False)
    with pytest.raises(RuntimeError, match="SUPABASE_URL"):
        services.build_live_clients()


def test_wire_clients_connects_resolver_to_orchestrator(tmp_path):
    local_store = LocalIdentityStore(tmp_path / "storage.json")
    local_store.write(LocalIdentity(id="u1"))
    store, _ = _store([])
    clients = services.wire_clients(
        store=store,
        session_provider=FakeSessionProvider(),
        local_store=local_store,
        session_timeout=1.0,
    )

    asyncio.run(clients["resolver"].resolve())

    assert clients["orchestrator"].user_id == "u1"
    assert clients["cache"].user_id == "u1"
    assert clients["orchestrator"].cache is clients["cache"]
