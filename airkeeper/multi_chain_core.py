# multi_chain_core.py
"""
Airkeeper – Multi-Chain Core
============================
The update orchestrator. One call to ``run`` is one idempotent cycle:

1. drop jobs that fail validation (id mismatch, wrong airnode, unknown chain),
2. resolve API values in parallel, once per template,
3. hand every chain to a ChainWorker and run all of them concurrently,
4. collect the JobResults into a RunSummary.

A failure on one chain never cancels another chain.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from eth_utils import ValidationError

from airkeeper.abi_registry import ABIRegistry
from airkeeper.api_config import ApiValueResolver, resolve_all
from airkeeper.chain_worker import ChainWorker, Connector, web3_connector
from airkeeper.configuration import ChainConfig, Configuration, EndpointConfig, TemplateConfig
from airkeeper.constants import PROTOCOL_ID_PSP
from airkeeper.exceptions import ConfigurationError, InvalidJobIdentifier
from airkeeper.jobs import AnyJob, compute_endpoint_id, compute_template_id
from airkeeper.loggingconfig import LogContext, setup_logging
from airkeeper.results import JobResult, JobState, RunSummary
from airkeeper.retry import RetryPolicy
from airkeeper.wallet import derive_airnode_wallet, master_seed

logger = setup_logging("MultiChainCore", level=logging.INFO)


class MultiChainCore:
    """Coordinates one update cycle across every configured chain."""

    def __init__(
        self,
        mnemonic: str,
        resolver: ApiValueResolver,
        retry: Optional[RetryPolicy] = None,
        api_retry: Optional[RetryPolicy] = None,
        protocol_id: str = PROTOCOL_ID_PSP,
        dry_run: bool = False,
        endpoints: Optional[Mapping[str, EndpointConfig]] = None,
        templates: Optional[Mapping[str, TemplateConfig]] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        if not mnemonic:
            raise ConfigurationError("AIRNODE_WALLET_MNEMONIC is not set")
        try:
            self.seed = master_seed(mnemonic)
        except (ValidationError, ValueError) as exc:
            raise ConfigurationError(f"invalid airnode mnemonic: {exc}") from exc
        self.airnode_wallet = derive_airnode_wallet(self.seed)
        self.resolver = resolver
        self.retry = retry or RetryPolicy()
        self.api_retry = api_retry or RetryPolicy()
        self.protocol_id = protocol_id
        self.dry_run = dry_run
        self.endpoints = dict(endpoints or {})
        self.templates = dict(templates or {})
        self.connector = connector or web3_connector(ABIRegistry())

    @classmethod
    def from_configuration(
        cls,
        configuration: Configuration,
        resolver: ApiValueResolver,
        connector: Optional[Connector] = None,
    ) -> "MultiChainCore":
        return cls(
            mnemonic=configuration.AIRNODE_WALLET_MNEMONIC,
            resolver=resolver,
            retry=configuration.retry_policy(),
            api_retry=configuration.api_resolution_policy(),
            protocol_id=configuration.PROTOCOL_ID,
            dry_run=configuration.DRY_RUN,
            endpoints=configuration.endpoints,
            templates=configuration.templates,
            connector=connector,
        )

    @property
    def airnode_address(self) -> str:
        return self.airnode_wallet.address

    # ------------------------------------------------------------------ #
    # validation                                                         #
    # ------------------------------------------------------------------ #

    def validate_job(self, job: AnyJob, chain_ids: Iterable[str]) -> Optional[str]:
        """Reason the job must not be processed, or None."""
        try:
            job.verify()
        except InvalidJobIdentifier as exc:
            return exc.message

        if job.airnode_address.lower() != self.airnode_address.lower():
            return f"airnode address {job.airnode_address} does not match the wallet address {self.airnode_address}"

        template = self.templates.get(job.template_id)
        if template is not None:
            expected = compute_template_id(template.endpoint_id, template.parameters)
            if expected.lower() != job.template_id.lower():
                return InvalidJobIdentifier(job.template_id, expected, kind="template").message
            endpoint = self.endpoints.get(template.endpoint_id)
            if endpoint is not None:
                expected = compute_endpoint_id(endpoint.ois_title, endpoint.endpoint_name)
                if expected.lower() != template.endpoint_id.lower():
                    return InvalidJobIdentifier(template.endpoint_id, expected, kind="endpoint").message

        if job.chain_id not in chain_ids:
            return f"chain {job.chain_id} is not configured"
        return None

    def _partition(
        self, jobs: Iterable[AnyJob], chains: List[ChainConfig], context: LogContext
    ) -> Tuple[Dict[str, List[AnyJob]], List[JobResult]]:
        chain_ids = [chain.id for chain in chains]
        accepted: Dict[str, List[AnyJob]] = {chain_id: [] for chain_id in chain_ids}
        dropped: List[JobResult] = []
        for job in jobs:
            reason = self.validate_job(job, chain_ids)
            if reason is not None:
                context.merge(chain_id=job.chain_id, job_id=job.id).bind(logger).warning(
                    "Dropping job: %s", reason
                )
                dropped.append(JobResult(job.id, job.chain_id, JobState.SKIPPED, reason))
                continue
            accepted[job.chain_id].append(job)
        return accepted, dropped

    # ------------------------------------------------------------------ #
    # public interface                                                   #
    # ------------------------------------------------------------------ #

    async def run(self, jobs: Iterable[AnyJob], chains: Iterable[ChainConfig]) -> RunSummary:
        chains = list(chains)
        context = LogContext(coordinator_id=secrets.token_hex(4))
        log = context.bind(logger)
        summary = RunSummary(coordinator_id=context.coordinator_id, started_at=time.time())

        jobs_by_chain, dropped = self._partition(jobs, chains, context)
        summary.results.extend(dropped)

        by_template: Dict[str, AnyJob] = {}
        for chain_jobs in jobs_by_chain.values():
            for job in chain_jobs:
                by_template.setdefault(job.template_id, job)
        api_values = await resolve_all(self.resolver, by_template, retry=self.api_retry)
        log.info("Resolved %d of %d API value(s)", sum(v is not None for v in api_values.values()), len(api_values))

        workers = [
            ChainWorker(
                chain,
                jobs_by_chain[chain.id],
                api_values,
                self.seed,
                self.airnode_wallet,
                self.connector,
                retry=self.retry,
                protocol_id=self.protocol_id,
                dry_run=self.dry_run,
                context=context,
            )
            for chain in chains
            if jobs_by_chain[chain.id]
        ]
        outcomes = await asyncio.gather(*(worker.run() for worker in workers), return_exceptions=True)
        for worker, outcome in zip(workers, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                context.merge(chain_id=worker.chain.id).bind(logger).error(
                    "Chain worker failed: %s", outcome, exc_info=outcome
                )
                summary.results.extend(
                    JobResult(job.id, worker.chain.id, JobState.FAILED, str(outcome)) for job in worker.jobs
                )
            else:
                summary.results.extend(outcome)

        summary.finished_at = time.time()
        log.info(
            "Cycle finished: %d submitted, %d skipped, %d pending, %d failed in %.2fs",
            summary.submitted, summary.skipped, summary.pending, summary.failed, summary.duration,
        )
        return summary
