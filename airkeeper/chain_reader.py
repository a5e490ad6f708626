# chain_reader.py
"""
Airkeeper – ChainReader
=======================
Everything the pipeline reads from a chain: current block, gas target,
account nonce, beacon value and the update events of the lookback window.
Each read goes through the chain's RetryPolicy; exhaustion is reported as
ChainReadFailed (or GasPriceUnavailable for the gas target).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from web3 import AsyncWeb3, Web3

from airkeeper.configuration import ChainConfig
from airkeeper.constants import AIRNODE_RRP, DAPI_SERVER, FULFILLED_UPDATE_EVENT, REQUESTED_UPDATE_EVENT
from airkeeper.contracts import ContractClient, EventRecord
from airkeeper.exceptions import ChainReadFailed, GasPriceUnavailable, RetryExhausted
from airkeeper.jobs import AnyJob, RrpKeeperJob
from airkeeper.loggingconfig import setup_logging
from airkeeper.retry import RetryPolicy

logger = setup_logging("ChainReader", level=logging.INFO)


@dataclass(frozen=True)
class GasTarget:
    """Fee parameters of one run on one chain."""

    tx_type: str
    gas_limit: int
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    def as_tx_params(self) -> Dict[str, int]:
        if self.tx_type == "legacy":
            return {"gas": self.gas_limit, "gasPrice": self.gas_price}
        return {
            "gas": self.gas_limit,
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
        }


@dataclass(frozen=True)
class ChainContext:
    current_block: int
    gas_target: GasTarget
    block_timestamp: Optional[int] = None


class ChainReader:
    """Retry-wrapped reads against one provider of one chain."""

    def __init__(
        self,
        web3: AsyncWeb3,
        chain: ChainConfig,
        contracts: Dict[str, ContractClient],
        retry: RetryPolicy,
    ) -> None:
        self.web3 = web3
        self.chain = chain
        self.contracts = contracts
        self.retry = retry

    @property
    def dapi_server(self) -> ContractClient:
        return self.contracts[DAPI_SERVER]

    @property
    def airnode_rrp(self) -> ContractClient:
        return self.contracts[AIRNODE_RRP]

    # ------------------------------------------------------------------ #
    # context                                                            #
    # ------------------------------------------------------------------ #

    async def read_context(self) -> ChainContext:
        """Latest block and gas target for this run."""
        try:
            block = await self.retry.run(
                lambda: self.web3.eth.get_block("latest"),
                description=f"chain {self.chain.id} get_block",
            )
        except RetryExhausted as exc:
            raise ChainReadFailed(f"Failed to fetch the block: {exc.message}") from exc

        gas_target = await self.fetch_gas_target(block)
        logger.debug("chain %s: block %s, gas target %s", self.chain.id, block["number"], gas_target)
        return ChainContext(
            current_block=int(block["number"]),
            gas_target=gas_target,
            block_timestamp=block.get("timestamp"),
        )

    async def fetch_gas_target(self, block: Optional[Dict[str, Any]] = None) -> GasTarget:
        options = self.chain.options
        if options.tx_type == "legacy":
            try:
                gas_price = await self.retry.run(
                    lambda: self.web3.eth.gas_price,
                    description=f"chain {self.chain.id} gas_price",
                )
            except RetryExhausted as exc:
                raise GasPriceUnavailable(f"Failed to fetch the gas price: {exc.message}") from exc
            return GasTarget("legacy", options.fulfillment_gas_limit, gas_price=int(gas_price))

        base_fee = (block or {}).get("baseFeePerGas")
        if base_fee is None:
            raise GasPriceUnavailable(f"chain {self.chain.id}: latest block has no baseFeePerGas")
        priority_fee = options.priority_fee_wei
        return GasTarget(
            "eip1559",
            options.fulfillment_gas_limit,
            max_fee_per_gas=int(base_fee) * options.base_fee_multiplier + priority_fee,
            max_priority_fee_per_gas=priority_fee,
        )

    async def read_nonce(self, address: str, block_number: Optional[int] = None) -> int:
        block_id = block_number if block_number is not None else "latest"
        try:
            return int(
                await self.retry.run(
                    lambda: self.web3.eth.get_transaction_count(address, block_id),
                    description=f"chain {self.chain.id} get_transaction_count",
                )
            )
        except RetryExhausted as exc:
            raise ChainReadFailed(f"Failed to fetch the nonce of {address}: {exc.message}") from exc

    # ------------------------------------------------------------------ #
    # contract state                                                     #
    # ------------------------------------------------------------------ #

    async def read_beacon_value(self, beacon_id: str) -> Tuple[int, int]:
        """(value, timestamp) currently stored for ``beacon_id``."""
        try:
            value, timestamp = await self.retry.run(
                lambda: self.dapi_server.call("readDataFeedWithId", beacon_id),
                description=f"readDataFeedWithId {beacon_id}",
            )
        except RetryExhausted as exc:
            raise ChainReadFailed(f"Failed to read beacon {beacon_id}: {exc.message}") from exc
        return int(value), int(timestamp)

    async def query_update_events(
        self,
        job: AnyJob,
        wallet_address: str,
        current_block: int,
    ) -> Tuple[List[EventRecord], List[EventRecord]]:
        """
        Requested and fulfilled beacon update events of the lookback window.

        A keeper job only looks at the requests its own keeper wallet sent for
        the request sponsor. A PSP job looks at every RRP request for the beacon,
        since any of them will update the value it is about to fulfill.
        """
        from_block = max(current_block - self.chain.block_history_limit, 0)
        beacon_id = job.beacon_id

        async def _query(event_name: str, filters: Dict[str, Any]) -> List[EventRecord]:
            try:
                return await self.retry.run(
                    lambda: self.dapi_server.query_events(event_name, filters, from_block, current_block),
                    description=f"{event_name} logs",
                )
            except RetryExhausted as exc:
                raise ChainReadFailed(f"Failed to fetch {event_name} events: {exc.message}") from exc

        if isinstance(job, RrpKeeperJob):
            request_filters = {
                "beaconId": beacon_id,
                "sponsor": Web3.to_checksum_address(job.sponsor),
                "requester": Web3.to_checksum_address(wallet_address),
            }
        else:
            request_filters = {"beaconId": beacon_id}
        requested = await _query(REQUESTED_UPDATE_EVENT, request_filters)
        fulfilled = await _query(FULFILLED_UPDATE_EVENT, {"beaconId": beacon_id})
        return requested, fulfilled

    async def request_is_awaiting_fulfillment(self, request_id: str) -> bool:
        try:
            awaiting = await self.retry.run(
                lambda: self.airnode_rrp.call("requestIsAwaitingFulfillment", request_id),
                description=f"requestIsAwaitingFulfillment {request_id}",
            )
        except RetryExhausted as exc:
            raise ChainReadFailed(
                f"Failed to check whether request {request_id} is awaiting fulfillment: {exc.message}"
            ) from exc
        return bool(awaiting)
