import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from airkeeper.api_config import ApiValueResolver, HttpApiResolver, extract_value, resolve_all
from airkeeper.configuration import EndpointConfig, TemplateConfig
from airkeeper.exceptions import ApiResolutionFailed
from airkeeper.retry import RetryPolicy

from conftest import OTHER_TEMPLATE_ID, TEMPLATE_ID, make_job

AIRNODE = "0xa30ca71ba54e83127214d3271aea8f5d6bd4dace"
ENDPOINT_ID = "0x" + "01" * 32


@pytest.fixture
def resolver():
    endpoint = EndpointConfig(
        id=ENDPOINT_ID,
        ois_title="Currency Converter API",
        endpoint_name="convertToUSD",
        url="https://api.example.com/convert",
        path="data.rates.0.value",
        times="1000000",
        params={"to": "USD"},
    )
    templates = {TEMPLATE_ID: TemplateConfig(TEMPLATE_ID, ENDPOINT_ID, "0x", {"from": "ETH"})}
    return HttpApiResolver({ENDPOINT_ID: endpoint}, templates, retry=RetryPolicy(attempts=2, timeout=1, delay=0))


@pytest.mark.parametrize(
    "payload, path, times, expected",
    [
        ({"price": 723.392028}, "price", "1000000", 723392028),
        ({"a": {"b": [1, {"c": "12.9"}]}}, "a.b.1.c", None, 12),
        ({"price": -1.5}, "price", "10", -15),
        ({"price": 0}, "price", "1000000", 0),
        (42, "", None, 42),
    ],
)
def test_extract_value(payload, path, times, expected):
    assert extract_value(payload, path, times) == expected


@pytest.mark.parametrize(
    "payload, path",
    [
        ({"price": None}, "price"),
        ({"price": "abc"}, "price"),
        ({"price": True}, "price"),
        ({"price": {"nested": 1}}, "price"),
        ({}, "price"),
        ({"list": [1]}, "list.3"),
    ],
)
def test_extract_value_failures(payload, path):
    with pytest.raises(ApiResolutionFailed):
        extract_value(payload, path)


@pytest.mark.asyncio
async def test_resolve_merges_parameters_and_scales(resolver):
    payload = {"data": {"rates": [{"value": 1.25}]}}
    with patch.object(resolver, "_fetch", new_callable=AsyncMock, return_value=payload) as mock_fetch:
        assert await resolver.resolve(make_job(AIRNODE)) == 1_250_000
    endpoint, params = mock_fetch.await_args.args
    assert endpoint.id == ENDPOINT_ID
    assert params == {"to": "USD", "from": "ETH"}


@pytest.mark.asyncio
async def test_identical_requests_are_cached(resolver):
    payload = {"data": {"rates": [{"value": 2}]}}
    with patch.object(resolver, "_fetch", new_callable=AsyncMock, return_value=payload) as mock_fetch:
        await resolver.resolve(make_job(AIRNODE))
        await resolver.resolve(make_job(AIRNODE, parameters="0x01"))
    mock_fetch.assert_awaited_once()


@pytest.mark.asyncio
async def test_http_failure_after_retries(resolver):
    with patch.object(resolver, "_fetch", new_callable=AsyncMock, side_effect=ApiResolutionFailed("HTTP 503")) as mock_fetch:
        with pytest.raises(ApiResolutionFailed):
            await resolver.resolve(make_job(AIRNODE))
    assert mock_fetch.await_count == 2


@pytest.mark.asyncio
async def test_unknown_template(resolver):
    with pytest.raises(ApiResolutionFailed):
        await resolver.resolve(make_job(AIRNODE, template_id=OTHER_TEMPLATE_ID))


@pytest.mark.asyncio
async def test_fetch_uses_query_string_for_get(resolver):
    response = MagicMock(status=200)
    response.json = AsyncMock(return_value={"ok": 1})
    request_ctx = MagicMock()
    request_ctx.__aenter__ = AsyncMock(return_value=response)
    request_ctx.__aexit__ = AsyncMock(return_value=False)
    session = MagicMock(closed=False)
    session.request = MagicMock(return_value=request_ctx)
    resolver.session = session

    endpoint = resolver.endpoints[ENDPOINT_ID]
    assert await resolver._fetch(endpoint, {"to": "USD", "amount": 1}) == {"ok": 1}
    method, url = session.request.call_args.args
    assert (method, url) == ("GET", endpoint.url)
    assert session.request.call_args.kwargs["params"] == {"to": "USD", "amount": "1"}


@pytest.mark.asyncio
async def test_fetch_raises_on_http_error(resolver):
    response = MagicMock(status=500)
    request_ctx = MagicMock()
    request_ctx.__aenter__ = AsyncMock(return_value=response)
    request_ctx.__aexit__ = AsyncMock(return_value=False)
    resolver.session = MagicMock(closed=False, request=MagicMock(return_value=request_ctx))

    with pytest.raises(ApiResolutionFailed):
        await resolver._fetch(resolver.endpoints[ENDPOINT_ID], {})


class _Resolver(ApiValueResolver):
    async def resolve(self, job):
        if job.template_id == OTHER_TEMPLATE_ID:
            raise ApiResolutionFailed("down")
        return 7


@pytest.mark.asyncio
async def test_resolve_all_marks_failures_as_none():
    jobs = {
        TEMPLATE_ID: make_job(AIRNODE),
        OTHER_TEMPLATE_ID: make_job(AIRNODE, template_id=OTHER_TEMPLATE_ID),
    }
    assert await resolve_all(_Resolver(), jobs) == {TEMPLATE_ID: 7, OTHER_TEMPLATE_ID: None}


class _HangingResolver(ApiValueResolver):
    async def resolve(self, job):
        if job.template_id == OTHER_TEMPLATE_ID:
            await asyncio.Event().wait()
        return 7


@pytest.mark.asyncio
async def test_resolve_all_bounds_a_hanging_resolver():
    jobs = {
        TEMPLATE_ID: make_job(AIRNODE),
        OTHER_TEMPLATE_ID: make_job(AIRNODE, template_id=OTHER_TEMPLATE_ID),
    }
    retry = RetryPolicy(attempts=2, timeout=0.1, delay=0)

    values = await asyncio.wait_for(resolve_all(_HangingResolver(), jobs, retry=retry), timeout=2)

    assert values == {TEMPLATE_ID: 7, OTHER_TEMPLATE_ID: None}


@pytest.mark.asyncio
async def test_resolve_all_retries_transient_failures():
    calls = []

    class _FlakyResolver(ApiValueResolver):
        async def resolve(self, job):
            calls.append(job.template_id)
            if len(calls) == 1:
                raise ApiResolutionFailed("flaky")
            return 9

    values = await resolve_all(_FlakyResolver(), {TEMPLATE_ID: make_job(AIRNODE)}, retry=RetryPolicy(attempts=2, timeout=1, delay=0))

    assert values == {TEMPLATE_ID: 9}
    assert calls == [TEMPLATE_ID, TEMPLATE_ID]
