# api_config.py
"""
Airkeeper – API values
======================
Resolves the fresh value of a beacon from the HTTP API behind its
template. ``ApiValueResolver`` is the interface the orchestrator consumes;
``HttpApiResolver`` implements it with aiohttp and a short TTL cache.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Tuple

import aiohttp
from cachetools import TTLCache

from airkeeper.configuration import EndpointConfig, TemplateConfig
from airkeeper.exceptions import ApiResolutionFailed, RetryExhausted
from airkeeper.jobs import AnyJob
from airkeeper.loggingconfig import setup_logging
from airkeeper.retry import RetryPolicy

logger = setup_logging("ApiConfig", level=logging.INFO)


class ApiValueResolver(abc.ABC):
    """Returns the fresh integer value of a job's beacon."""

    @abc.abstractmethod
    async def resolve(self, job: AnyJob) -> int:
        """Raise ApiResolutionFailed when no value can be produced."""

    async def close(self) -> None:
        return None


def extract_value(payload: Any, path: str, times: Optional[str] = None) -> int:
    """Walk ``path`` (dot separated, integers index lists) and scale by ``times``."""
    value = payload
    for segment in [s for s in path.split(".") if s] if path else []:
        try:
            if isinstance(value, list):
                value = value[int(segment)]
            else:
                value = value[segment]
        except (KeyError, IndexError, ValueError, TypeError):
            raise ApiResolutionFailed(f"value not found at path '{path}'")

    if value is None:
        raise ApiResolutionFailed(f"value at path '{path}' is null")
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ApiResolutionFailed(f"value at path '{path}' is not numeric: {value!r}")
    try:
        number = Decimal(str(value))
        if times is not None:
            number *= Decimal(str(times))
    except InvalidOperation:
        raise ApiResolutionFailed(f"value at path '{path}' is not numeric: {value!r}")
    if not number.is_finite():
        raise ApiResolutionFailed(f"value at path '{path}' is not finite")
    return int(number)


class HttpApiResolver(ApiValueResolver):
    """
    Calls the endpoint referenced by a job's template.

    Identical requests are served from a TTL cache, so jobs sharing a
    template only hit the API once per cycle.
    """

    def __init__(
        self,
        endpoints: Mapping[str, EndpointConfig],
        templates: Mapping[str, TemplateConfig],
        retry: Optional[RetryPolicy] = None,
        cache_ttl: float = 30,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.endpoints = dict(endpoints)
        self.templates = dict(templates)
        self.retry = retry or RetryPolicy()
        self.session = session
        self.value_cache: TTLCache = TTLCache(maxsize=1000, ttl=cache_ttl)
        self._owns_session = session is None

    async def __aenter__(self) -> "HttpApiResolver":
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self._owns_session = True
        return self.session

    async def close(self) -> None:
        if self.session and self._owns_session and not self.session.closed:
            await self.session.close()
            logger.debug("HttpApiResolver session closed.")

    # ------------------------------------------------------------------ #
    # resolution                                                         #
    # ------------------------------------------------------------------ #

    def _request_for(self, job: AnyJob) -> Tuple[EndpointConfig, Dict[str, Any]]:
        template = self.templates.get(job.template_id)
        if template is None:
            raise ApiResolutionFailed(f"template {job.template_id} is not configured")
        endpoint = self.endpoints.get(template.endpoint_id)
        if endpoint is None:
            raise ApiResolutionFailed(f"endpoint {template.endpoint_id} is not configured")
        params = {**endpoint.params, **template.api_parameters}
        return endpoint, params

    async def resolve(self, job: AnyJob) -> int:
        endpoint, params = self._request_for(job)
        cache_key = (endpoint.method, endpoint.url, json.dumps(params, sort_keys=True, default=str))
        payload = self.value_cache.get(cache_key)
        if payload is None:
            try:
                payload = await self.retry.run(
                    lambda: self._fetch(endpoint, params),
                    description=f"{endpoint.ois_title}/{endpoint.endpoint_name}",
                )
            except RetryExhausted as exc:
                raise ApiResolutionFailed(f"API call failed: {exc.message}") from exc
            self.value_cache[cache_key] = payload

        value = extract_value(payload, endpoint.path, endpoint.times)
        logger.debug("Resolved %s for template %s", value, job.template_id)
        return value

    async def _fetch(self, endpoint: EndpointConfig, params: Dict[str, Any]) -> Any:
        session = self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self.retry.timeout)
        kwargs: Dict[str, Any] = {"headers": endpoint.headers, "timeout": timeout}
        if endpoint.method == "GET":
            kwargs["params"] = {k: str(v) for k, v in params.items()}
        else:
            kwargs["json"] = params

        async with session.request(endpoint.method, endpoint.url, **kwargs) as response:
            if response.status >= 400:
                raise ApiResolutionFailed(f"HTTP {response.status} from {endpoint.url}")
            return await response.json(content_type=None)


async def resolve_all(
    resolver: ApiValueResolver,
    jobs: Mapping[str, AnyJob],
    retry: Optional[RetryPolicy] = None,
) -> Dict[str, Optional[int]]:
    """
    Resolve one value per key in parallel; failed keys map to None.

    Every call is bounded by ``retry`` so a resolver that hangs only costs
    its own key.
    """
    retry = retry or RetryPolicy()
    keys = list(jobs)
    results = await asyncio.gather(
        *(
            retry.run(lambda job=jobs[key]: resolver.resolve(job), description=f"API value for {key}")
            for key in keys
        ),
        return_exceptions=True,
    )
    values: Dict[str, Optional[int]] = {}
    for key, result in zip(keys, results):
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            logger.warning("API value for %s unavailable: %s", key, result)
            values[key] = None
        else:
            values[key] = result
    return values
