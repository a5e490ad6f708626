# chain_worker.py
"""
Airkeeper – Chain Worker
========================
Runs one update cycle for a single chain.

Jobs are grouped by the wallet that signs their transactions: the sponsor
wallet for PSP subscriptions, the keeper wallet for RRP keeper jobs. Groups
run concurrently; the jobs of one group run strictly one after another so the
nonces of that wallet are assigned in job order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3

from airkeeper.abi_registry import ABIRegistry
from airkeeper.chain_reader import ChainContext, ChainReader
from airkeeper.configuration import ChainConfig
from airkeeper.constants import AIRNODE_RRP, DAPI_SERVER, PROTOCOL_ID_KEEPER, PROTOCOL_ID_PSP
from airkeeper.contracts import ContractClient, Web3ContractClient
from airkeeper.deviation import evaluate
from airkeeper.exceptions import (
    ChainReadFailed,
    ConfigurationError,
    InvalidThreshold,
    PendingUpdateUnknown,
    SubmissionFailed,
)
from airkeeper.jobs import AnyJob, RrpKeeperJob
from airkeeper.loggingconfig import ContextAdapter, LogContext, setup_logging
from airkeeper.nonce_core import NonceCore
from airkeeper.pending import PendingUpdateDetector
from airkeeper.results import JobResult, JobState
from airkeeper.retry import RetryPolicy
from airkeeper.transaction_core import TransactionCore
from airkeeper.wallet import derive_wallet

logger = setup_logging("ChainWorker", level=logging.INFO)

Connection = Tuple[AsyncWeb3, Dict[str, ContractClient]]
Connector = Callable[[ChainConfig, str], Connection]

ABANDONED_REASON = "abandoned after submission failure"


def web3_connector(registry: ABIRegistry) -> Connector:
    """Default connector: AsyncWeb3 over HTTP plus the two keeper contracts."""

    def connect(chain: ChainConfig, url: str) -> Connection:
        missing = {DAPI_SERVER, AIRNODE_RRP} - set(chain.contracts)
        if missing:
            raise ConfigurationError(f"chain {chain.id}: missing contract address for {', '.join(sorted(missing))}")
        web3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(url))
        contracts: Dict[str, ContractClient] = {
            name: Web3ContractClient(web3, chain.contracts[name], name, registry)
            for name in (DAPI_SERVER, AIRNODE_RRP)
        }
        return web3, contracts

    return connect


class ChainWorker:
    """Processes every job of one chain for one run."""

    def __init__(
        self,
        chain: ChainConfig,
        jobs: List[AnyJob],
        api_values: Mapping[str, Optional[int]],
        seed: bytes,
        airnode_wallet: LocalAccount,
        connector: Connector,
        retry: Optional[RetryPolicy] = None,
        protocol_id: str = PROTOCOL_ID_PSP,
        dry_run: bool = False,
        context: Optional[LogContext] = None,
    ) -> None:
        self.chain = chain
        self.jobs = list(jobs)
        self.api_values = api_values
        self.seed = seed
        self.airnode_wallet = airnode_wallet
        self.connector = connector
        self.retry = retry or RetryPolicy()
        self.protocol_id = protocol_id
        self.dry_run = dry_run
        self.context = (context or LogContext()).merge(chain_id=chain.id)

        self.reader: Optional[ChainReader] = None
        self.chain_context: Optional[ChainContext] = None
        self.transaction_core: Optional[TransactionCore] = None
        self.detector: Optional[PendingUpdateDetector] = None

    # ------------------------------------------------------------------ #
    # life-cycle                                                         #
    # ------------------------------------------------------------------ #

    async def initialize(self) -> None:
        """
        Connect to the first provider that returns a block and a gas target.

        Raises:
            ChainReadFailed: no provider answered.
        """
        last_error: Optional[Exception] = None
        for provider_name, url in self.chain.providers:
            log = self.context.merge(provider_name=provider_name).bind(logger)
            try:
                web3, contracts = self.connector(self.chain, url)
                reader = ChainReader(web3, self.chain, contracts, self.retry)
                chain_context = await reader.read_context()
            except ChainReadFailed as exc:
                log.warning("Provider unavailable: %s", exc.message)
                last_error = exc
                continue

            self.context = self.context.merge(provider_name=provider_name)
            self.reader = reader
            self.chain_context = chain_context
            self.detector = PendingUpdateDetector(reader)
            self.transaction_core = TransactionCore(
                contracts[DAPI_SERVER],
                self.airnode_wallet,
                self.chain.id,
                retry=self.retry,
                dry_run=self.dry_run,
            )
            log.info("Using block %d", chain_context.current_block)
            return

        raise ChainReadFailed(
            f"no provider of chain {self.chain.id} is available: {last_error}"
        )

    async def run(self) -> List[JobResult]:
        log = self.context.bind(logger)
        try:
            await self.initialize()
        except (ChainReadFailed, ConfigurationError) as exc:
            log.error("Chain skipped for this cycle: %s", exc.message)
            return [self._result(job, JobState.FAILED, exc.message) for job in self.jobs]

        groups = self.group_jobs()
        log.info("Processing %d job(s) in %d sponsor wallet group(s)", len(self.jobs), len(groups))

        wallets = list(groups)
        outcomes = await asyncio.gather(
            *(self.process_group(wallet, groups[wallet]) for wallet in wallets),
            return_exceptions=True,
        )

        results: List[JobResult] = []
        for wallet, outcome in zip(wallets, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                wallet_log = self.context.merge(wallet_address=wallet).bind(logger)
                wallet_log.error("Sponsor wallet group failed: %s", outcome, exc_info=outcome)
                results.extend(self._result(job, JobState.FAILED, str(outcome)) for job in groups[wallet][1])
            else:
                results.extend(outcome)
        return results

    def wallet_protocol_id(self, job: AnyJob) -> str:
        return PROTOCOL_ID_KEEPER if isinstance(job, RrpKeeperJob) else self.protocol_id

    def group_jobs(self) -> Dict[str, Tuple[LocalAccount, List[AnyJob]]]:
        """Signing wallet address → (wallet, jobs in configuration order).

        PSP jobs are signed by the sponsor wallet of their sponsor, keeper jobs
        by the keeper wallet of their keeper sponsor.
        """
        groups: Dict[str, Tuple[LocalAccount, List[AnyJob]]] = {}
        wallets: Dict[Tuple[str, str], LocalAccount] = {}
        for job in self.jobs:
            key = (job.wallet_sponsor.lower(), self.wallet_protocol_id(job))
            if key not in wallets:
                wallets[key] = derive_wallet(self.seed, job.wallet_sponsor, key[1])
            wallet = wallets[key]
            groups.setdefault(wallet.address, (wallet, []))[1].append(job)
        return groups

    # ------------------------------------------------------------------ #
    # per wallet group                                                   #
    # ------------------------------------------------------------------ #

    async def process_group(self, wallet_address: str, group: Tuple[LocalAccount, List[AnyJob]]) -> List[JobResult]:
        wallet, jobs = group
        group_context = self.context.merge(sponsor=jobs[0].wallet_sponsor, wallet_address=wallet_address)
        log = group_context.bind(logger)

        nonce_core = NonceCore(self.reader, wallet.address)
        try:
            await nonce_core.initialize(self.chain_context.current_block)
        except ChainReadFailed as exc:
            log.error("Failed to fetch the sponsor wallet nonce: %s", exc.message)
            return [self._result(job, JobState.FAILED, exc.message) for job in jobs]

        results: List[JobResult] = []
        for job in jobs:
            if nonce_core.halted:
                group_context.merge(job_id=job.id).bind(logger).warning("Skipping job: %s", ABANDONED_REASON)
                results.append(self._result(job, JobState.SKIPPED, ABANDONED_REASON))
                continue
            results.append(await self.process_job(job, wallet, nonce_core, group_context.merge(job_id=job.id)))
        return results

    async def process_job(
        self,
        job: AnyJob,
        wallet: LocalAccount,
        nonce_core: NonceCore,
        context: LogContext,
    ) -> JobResult:
        log = context.bind(logger)

        api_value = self.api_values.get(job.template_id)
        if api_value is None:
            log.warning("API value unavailable, skipping update")
            return self._result(job, JobState.SKIPPED, "API value unavailable")
        log.info("Fetched API value %d", api_value)

        try:
            on_chain_value, on_chain_timestamp = await self.reader.read_beacon_value(job.beacon_id)
        except ChainReadFailed as exc:
            log.error("Failed to read the beacon: %s", exc.message)
            return self._result(job, JobState.FAILED, exc.message)
        log.debug("On-chain beacon value %d (timestamp %d)", on_chain_value, on_chain_timestamp)

        try:
            threshold = job.deviation_percentage
            deviation = evaluate(on_chain_value, api_value, threshold)
        except InvalidThreshold as exc:
            log.warning("Invalid deviation threshold: %s", exc.message)
            return self._result(job, JobState.SKIPPED, exc.message)

        if deviation.up_to_date:
            log.info("Beacon is up-to-date, skipping update")
            return self._result(job, JobState.SKIPPED, "up-to-date")
        if deviation.within_threshold:
            log.info(
                "Deviation %s%% is below the %s%% threshold (delta %d), skipping update",
                deviation.deviation_percent, threshold, deviation.delta,
            )
            return self._result(job, JobState.SKIPPED, "deviation below threshold")
        log.info(
            "Deviation %s%% exceeds the %s%% threshold (delta %d)",
            deviation.deviation_percent, threshold, deviation.delta,
        )

        result = await self._check_pending(job, wallet, log)
        if result is not None:
            return result

        nonce = nonce_core.get_next_nonce()
        try:
            submission = await self.transaction_core.submit(
                wallet, nonce, job, api_value, self.chain_context.gas_target, context=context
            )
        except SubmissionFailed as exc:
            nonce_core.halt()
            log.error("Submission failed with nonce %d: %s", nonce, exc.message)
            return self._result(job, JobState.FAILED, exc.message, nonce=nonce)
        return self._result(job, JobState.SUBMITTED, tx_hash=submission.tx_hash, nonce=nonce)

    async def _check_pending(self, job: AnyJob, wallet: LocalAccount, log: ContextAdapter) -> Optional[JobResult]:
        try:
            requested, fulfilled = await self.reader.query_update_events(
                job, wallet.address, self.chain_context.current_block
            )
        except ChainReadFailed as exc:
            log.error("Failed to fetch beacon update events: %s", exc.message)
            return self._result(job, JobState.FAILED, exc.message)

        try:
            pending = await self.detector.is_pending(requested, fulfilled)
        except PendingUpdateUnknown as exc:
            log.error("%s, skipping update", exc.message)
            return self._result(job, JobState.PENDING_UPDATE_DETECTED, exc.message)
        if pending:
            log.warning("Request is awaiting fulfillment, skipping update")
            return self._result(job, JobState.PENDING_UPDATE_DETECTED, "request awaiting fulfillment")
        return None

    def _result(self, job: AnyJob, state: JobState, reason: Optional[str] = None, **kwargs) -> JobResult:
        return JobResult(job_id=job.id, chain_id=self.chain.id, state=state, reason=reason, **kwargs)
