"""Tests for the single-flight session cache."""

import asyncio

import pytest

from loadgate.actors import VirtualActor
from loadgate.errors import IssuanceError
from loadgate.metrics import ISSUANCE_DURATION, ISSUANCE_FAILURES, MetricsRegistry
from loadgate.session import Credential, HttpTokenIssuer, SessionCache, lookup_path


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_misses_issue_once(self):
        calls = []

        async def issue(identity):
            calls.append(identity)
            await asyncio.sleep(0.05)
            return Credential(identity, f"token-{identity}")

        cache = SessionCache(issue)
        results = await asyncio.gather(*(cache.get("alice") for _ in range(50)))

        assert calls == ["alice"]
        assert all(r is results[0] for r in results)
        assert results[0].token == "token-alice"

    @pytest.mark.asyncio
    async def test_distinct_identities_issue_separately(self):
        calls = []

        async def issue(identity):
            calls.append(identity)
            await asyncio.sleep(0.01)
            return f"t{identity}"

        cache = SessionCache(issue)
        results = await asyncio.gather(*(cache.get(i % 3) for i in range(30)))

        assert sorted(calls) == [0, 1, 2]
        assert {r.token for r in results} == {"t0", "t1", "t2"}
        assert len(cache) == 3

    @pytest.mark.asyncio
    async def test_cached_credential_reused(self):
        calls = []

        def issue(identity):
            calls.append(identity)
            return "sync-token"

        cache = SessionCache(issue)
        first = await cache.get("bob")
        second = await cache.get("bob")
        assert first is second
        assert calls == ["bob"]
        assert first.headers() == {"Authorization": "Bearer sync-token"}

    @pytest.mark.asyncio
    async def test_failure_shared_by_waiters_and_not_cached(self):
        calls = []

        async def issue(identity):
            calls.append(identity)
            await asyncio.sleep(0.02)
            if len(calls) == 1:
                raise RuntimeError("auth service down")
            return "recovered"

        metrics = MetricsRegistry()
        cache = SessionCache(issue, metrics)
        results = await asyncio.gather(*(cache.get("carol") for _ in range(10)), return_exceptions=True)

        assert len(calls) == 1
        assert all(isinstance(r, IssuanceError) for r in results)
        assert all(r is results[0] for r in results)
        assert "auth service down" in str(results[0])
        assert "carol" not in cache
        assert metrics.counter(ISSUANCE_FAILURES).value == 1

        credential = await cache.get("carol")
        assert credential.token == "recovered"
        assert len(calls) == 2
        assert metrics.trend(ISSUANCE_DURATION).count == 1

    @pytest.mark.asyncio
    async def test_empty_token_is_an_issuance_error(self):
        cache = SessionCache(lambda identity: "")
        with pytest.raises(IssuanceError):
            await cache.get("dave")

    @pytest.mark.asyncio
    async def test_evict_forces_reissue(self):
        counter = {"n": 0}

        def issue(identity):
            counter["n"] += 1
            return f"token-{counter['n']}"

        cache = SessionCache(issue)
        assert (await cache.get("erin")).token == "token-1"
        assert cache.evict("erin")
        assert not cache.evict("erin")
        assert (await cache.get("erin")).token == "token-2"

    @pytest.mark.asyncio
    async def test_actor_identity_keyed_by_id(self):
        cache = SessionCache(lambda actor: f"token-{actor.id}")
        a = VirtualActor(7, {"role": "HOST"})
        b = VirtualActor(7, {"role": "GUEST"})
        first = await cache.get(a)
        assert await cache.get(b) is first
        assert first.identity == 7


class TestHttpTokenIssuer:
    @pytest.mark.asyncio
    async def test_token_from_body_path(self, make_target, respond):
        target = make_target(lambda request: respond(200, {"data": {"accessToken": "abc"}}))
        issuer = HttpTokenIssuer(target, "/auth/test", json={"userId": "${actor_id}"})

        credential = await issuer(VirtualActor(12))

        assert credential.token == "abc"
        assert credential.identity == 12
        assert target.requests[0].json == {"userId": 12}
        assert target.requests[0].method == "POST"

    @pytest.mark.asyncio
    async def test_token_from_fallback_path(self, make_target, respond):
        target = make_target(lambda request: respond(200, {"accessToken": "flat"}))
        issuer = HttpTokenIssuer(target, "/auth/test")
        assert (await issuer(3)).token == "flat"

    @pytest.mark.asyncio
    async def test_token_from_cookie_with_attribute_templating(self, make_target, respond):
        target = make_target(lambda request: respond(200, None, cookies={"access_token": "from-cookie"}))
        issuer = HttpTokenIssuer(
            target,
            "/auth/reissue",
            cookies={"refreshToken": "${refresh}"},
            token_cookie="access_token",
        )
        credential = await issuer(VirtualActor(1, {"refresh": "r-1"}))
        assert credential.token == "from-cookie"
        assert target.requests[0].cookies == {"refreshToken": "r-1"}

    @pytest.mark.asyncio
    async def test_error_status_raises(self, make_target, respond):
        target = make_target(lambda request: respond(500, {"error": "boom"}))
        issuer = HttpTokenIssuer(target, "/auth/test")
        with pytest.raises(IssuanceError):
            await issuer(1)

    @pytest.mark.asyncio
    async def test_missing_token_raises(self, make_target, respond):
        target = make_target(lambda request: respond(200, {"data": {}}))
        issuer = HttpTokenIssuer(target, "/auth/test")
        with pytest.raises(IssuanceError):
            await issuer(1)

    @pytest.mark.asyncio
    async def test_missing_attribute_raises_issuance_error(self, make_target, respond):
        target = make_target(lambda request: respond(200, {"accessToken": "x"}))
        issuer = HttpTokenIssuer(target, "/auth/${tenant}")
        with pytest.raises(IssuanceError):
            await issuer(VirtualActor(1))
        assert target.requests == []


def test_lookup_path():
    data = {"data": {"items": [{"id": 5}]}}
    assert lookup_path(data, "data.items.0.id") == 5
    assert lookup_path(data, "data.items.3.id") is None
    assert lookup_path(data, "data.missing") is None
    assert lookup_path(None, "data") is None
