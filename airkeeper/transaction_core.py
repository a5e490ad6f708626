# transaction_core.py
"""
Airkeeper – TransactionCore
===========================
Builds, signs and dispatches beacon update transactions: PSP fulfillments
and RRP update requests.

The airnode wallet signs ``keccak256(subscriptionId, timestamp,
sponsorWallet)`` so the update is bound to one sponsor wallet and one
point in time; the sponsor wallet then sends the fulfillment call with a
nonce handed to it by the caller. The submitter never reads or guesses
nonces itself.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from eth_abi import encode
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from web3 import Web3

from airkeeper.chain_reader import GasTarget
from airkeeper.contracts import ContractClient
from airkeeper.exceptions import RetryExhausted, SubmissionFailed
from airkeeper.constants import REQUEST_RRP_FUNCTION
from airkeeper.jobs import AnyJob, Job, RrpKeeperJob
from airkeeper.loggingconfig import LogContext, setup_logging
from airkeeper.retry import RetryPolicy

logger = setup_logging("TransactionCore", level=logging.INFO)


@dataclass(frozen=True)
class Submission:
    tx_hash: str
    nonce: int
    timestamp: int
    broadcast: bool


class TransactionCore:
    """Nonce-ordered submitter for one chain."""

    def __init__(
        self,
        dapi_server: ContractClient,
        airnode_wallet: LocalAccount,
        chain_id: str,
        retry: Optional[RetryPolicy] = None,
        dry_run: bool = False,
    ) -> None:
        self.dapi_server = dapi_server
        self.airnode_wallet = airnode_wallet
        self.chain_id = int(chain_id)
        self.retry = retry or RetryPolicy()
        self.dry_run = dry_run

    # --------------------------------------------------------------------- #
    # signing                                                               #
    # --------------------------------------------------------------------- #

    def sign_fulfillment(self, subscription_id: str, timestamp: int, wallet_address: str) -> bytes:
        message_hash = Web3.solidity_keccak(
            ["bytes32", "uint256", "address"],
            [subscription_id, timestamp, Web3.to_checksum_address(wallet_address)],
        )
        signed = self.airnode_wallet.sign_message(encode_defunct(primitive=message_hash))
        return bytes(signed.signature)

    def build_request_args(self, job: RrpKeeperJob) -> tuple:
        return (
            Web3.to_checksum_address(job.airnode_address),
            job.template_id,
            Web3.to_checksum_address(job.sponsor),
        )

    def build_fulfillment_args(self, job: Job, wallet_address: str, api_value: int, timestamp: int) -> tuple:
        signature = self.sign_fulfillment(job.id, timestamp, wallet_address)
        return (
            job.id,
            Web3.to_checksum_address(job.airnode_address),
            Web3.to_checksum_address(job.relayer),
            Web3.to_checksum_address(job.sponsor),
            timestamp,
            encode(["int256"], [int(api_value)]),
            signature,
        )

    # --------------------------------------------------------------------- #
    # dispatch                                                              #
    # --------------------------------------------------------------------- #

    async def submit(
        self,
        wallet: LocalAccount,
        nonce: int,
        job: AnyJob,
        api_value: int,
        gas_target: GasTarget,
        timestamp: Optional[int] = None,
        context: Optional[LogContext] = None,
    ) -> Submission:
        """
        Send the update transaction of ``job`` with ``nonce``.

        A PSP job is fulfilled directly with ``api_value`` signed by the airnode
        wallet. A keeper job sends an RRP update request; the airnode fetches
        the value itself when it serves the request.

        Raises:
            SubmissionFailed: signing, encoding or broadcasting failed. The
                nonce is reported back on the exception and stays consumed.
        """
        log = (context or LogContext()).merge(job_id=job.id, wallet_address=wallet.address).bind(logger)
        timestamp = int(time.time()) if timestamp is None else timestamp

        try:
            if isinstance(job, RrpKeeperJob):
                function_name = REQUEST_RRP_FUNCTION
                args = self.build_request_args(job)
            else:
                function_name = self.dapi_server.function_name(job.fulfill_function_id)
                args = self.build_fulfillment_args(job, wallet.address, api_value, timestamp)
        except (ValueError, TypeError) as exc:
            raise SubmissionFailed(f"failed to build {type(job).__name__} call: {exc}", nonce=nonce) from exc

        tx_params: Dict[str, Any] = {
            **gas_target.as_tx_params(),
            "nonce": nonce,
            "chainId": self.chain_id,
        }
        log.debug("Submitting %s with nonce %d", function_name, nonce)
        try:
            tx_hash = await self.retry.run(
                lambda: self.dapi_server.submit_transaction(
                    wallet, function_name, args, tx_params, broadcast=not self.dry_run
                ),
                description=f"{function_name} nonce {nonce}",
            )
        except RetryExhausted as exc:
            raise SubmissionFailed(f"failed to submit transaction: {exc.message}", nonce=nonce) from exc

        if self.dry_run:
            log.info("DRY_RUN: signed %s (nonce %d, tx %s), not broadcast", function_name, nonce, tx_hash)
        else:
            log.info("Submitted %s (nonce %d, tx %s)", function_name, nonce, tx_hash)
        return Submission(tx_hash=tx_hash, nonce=nonce, timestamp=timestamp, broadcast=not self.dry_run)
