"""
Shared fakes for the keeper tests. Chain and HTTP access is never real:
AsyncWeb3 is replaced by FakeWeb3 and contracts by FakeContractClient.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
from eth_utils import function_signature_to_4byte_selector
from web3 import Web3

from airkeeper.abi_registry import ABIRegistry
from airkeeper.configuration import ChainConfig, ChainOptions
from airkeeper.constants import (
    AIRNODE_RRP,
    DAPI_SERVER,
    FULFILLED_UPDATE_EVENT,
    REQUEST_RRP_FUNCTION,
    REQUESTED_UPDATE_EVENT,
)
from airkeeper.contracts import ContractClient, EventRecord
from airkeeper.jobs import Job, RrpKeeperJob, compute_beacon_id
from airkeeper.retry import RetryPolicy
from airkeeper.wallet import derive_airnode_wallet, master_seed

MNEMONIC = "achieve climb couple wait accident symbol spy blouse reduce foil echo label"

FULFILL_FUNCTION_ID = "0x" + function_signature_to_4byte_selector(
    "fulfillPspBeaconUpdate(bytes32,address,address,address,uint256,bytes,bytes)"
).hex()

SPONSOR_A = "0x2479808b1216e998309a727df8a0a98a1130a162"
SPONSOR_B = "0x61648b2ec3e6b3492e90184ef281c2ba28a675ec"
REQUESTER = "0x1fbb1d2a2c10bd52a4d8d5e0d5d8e8f0b1ad5f30"
DAPI_SERVER_ADDRESS = "0xd6cb2e6e8b1a4c0f5dae8a1c1ba3c5c2d5f1a1b1"
AIRNODE_RRP_ADDRESS = "0xa0ad79d995ddeeb18a14eaef56a549a04e3aa1bd"
TEMPLATE_ID = "0xea30f92923ece1a97af69d450a8418db31be5a26a886540a13c09c739ba8eaaa"
OTHER_TEMPLATE_ID = "0x" + "ab" * 32

FAST_RETRY = RetryPolicy(attempts=2, timeout=0.5, delay=0)


@pytest.fixture(scope="session")
def seed() -> bytes:
    return master_seed(MNEMONIC)


@pytest.fixture(scope="session")
def airnode_wallet(seed):
    return derive_airnode_wallet(seed)


@pytest.fixture(scope="session")
def registry() -> ABIRegistry:
    registry = ABIRegistry()
    registry.initialize()
    return registry


def make_job(airnode_address: str, chain_id: str = "31337", sponsor: str = SPONSOR_A,
             template_id: str = TEMPLATE_ID, deviation: str = "5", parameters: str = "0x") -> Job:
    return Job.build(
        chain_id=chain_id,
        airnode_address=airnode_address,
        template_id=template_id,
        parameters=parameters,
        relayer=airnode_address,
        sponsor=sponsor,
        requester=REQUESTER,
        fulfill_function_id=FULFILL_FUNCTION_ID,
        deviation_percentage=deviation,
    )


def make_keeper_job(airnode_address: str, chain_id: str = "31337", sponsor: str = SPONSOR_A,
                    keeper_sponsor: str = SPONSOR_B, template_id: str = TEMPLATE_ID,
                    deviation: str = "5") -> RrpKeeperJob:
    return RrpKeeperJob.build(
        chain_id=chain_id,
        airnode_address=airnode_address,
        template_id=template_id,
        sponsor=sponsor,
        keeper_sponsor=keeper_sponsor,
        deviation_percentage=deviation,
    )


def make_chain(chain_id: str = "31337", providers=(("local", "http://127.0.0.1:8545"),),
               tx_type: str = "eip1559") -> ChainConfig:
    return ChainConfig(
        id=chain_id,
        providers=tuple(providers),
        contracts={DAPI_SERVER: DAPI_SERVER_ADDRESS, AIRNODE_RRP: AIRNODE_RRP_ADDRESS},
        options=ChainOptions(tx_type=tx_type),
    )


class FakeEth:
    def __init__(self, block_number: int = 1000, base_fee: Optional[int] = 10, nonce: int = 0,
                 gas_price: int = 25, hang: bool = False, fail_block: bool = False):
        self.block_number = block_number
        self.base_fee = base_fee
        self.nonce = nonce
        self._gas_price = gas_price
        self.hang = hang
        self.fail_block = fail_block
        self.nonce_calls: List[tuple] = []

    async def _maybe_hang(self) -> None:
        if self.hang:
            await asyncio.Event().wait()

    async def get_block(self, block_id):
        await self._maybe_hang()
        if self.fail_block:
            raise ConnectionError("provider unreachable")
        block = {"number": self.block_number, "timestamp": 1_650_000_000}
        if self.base_fee is not None:
            block["baseFeePerGas"] = self.base_fee
        return block

    async def get_transaction_count(self, address, block_id="latest"):
        await self._maybe_hang()
        self.nonce_calls.append((address, block_id))
        return self.nonce

    async def _read_gas_price(self):
        await self._maybe_hang()
        return self._gas_price

    @property
    def gas_price(self):
        return self._read_gas_price()


class FakeWeb3:
    def __init__(self, **kwargs):
        self.eth = FakeEth(**kwargs)


class FakeContractClient(ContractClient):
    """In-memory contract: canned call results, events and recorded submissions.

    Event queries honour the indexed argument filters, and an RRP update
    request emits its RequestedRrpBeaconUpdate event like the contract does.
    """

    def __init__(self, abi_type: str, registry: ABIRegistry, address: str = DAPI_SERVER_ADDRESS):
        self.abi_type = abi_type
        self.registry = registry
        self.address = address
        self.call_results: Dict[str, Any] = {}
        self.events: Dict[str, List[EventRecord]] = {}
        self.event_queries: List[tuple] = []
        self.submissions: List[Dict[str, Any]] = []
        self.failing_nonces: set = set()

    async def call(self, function_name, *args):
        result = self.call_results[function_name]
        if isinstance(result, BaseException):
            raise result
        if callable(result):
            return result(*args)
        return result

    async def query_events(self, event_name, argument_filters, from_block, to_block):
        self.event_queries.append((event_name, dict(argument_filters), from_block, to_block))
        return [
            event for event in self.events.get(event_name, [])
            if all(_same(event.args.get(key), value) for key, value in argument_filters.items())
        ]

    def function_name(self, selector):
        name = self.registry.get_function_name(self.abi_type, selector)
        if name is None:
            raise ValueError(f"unknown selector {selector}")
        return name

    def encode_call(self, function_name, args):
        return "0x"

    async def submit_transaction(self, signer, function_name, args, tx_params, broadcast=True):
        nonce = tx_params["nonce"]
        if nonce in self.failing_nonces:
            raise ValueError(f"replacement transaction underpriced (nonce {nonce})")
        self.submissions.append({
            "from": signer.address,
            "function": function_name,
            "args": args,
            "tx_params": tx_params,
            "broadcast": broadcast,
        })
        tx_hash = "0x" + format(nonce, "064x")
        if function_name == REQUEST_RRP_FUNCTION:
            airnode, template_id, sponsor = args
            self.events.setdefault(REQUESTED_UPDATE_EVENT, []).append(
                requested_event(compute_beacon_id(airnode, template_id), sponsor, signer.address,
                                Web3.keccak(text=f"{signer.address}:{nonce}"))
            )
        return tx_hash


def _same(actual, expected) -> bool:
    if isinstance(actual, (bytes, bytearray)):
        actual = Web3.to_hex(actual)
    if isinstance(expected, (bytes, bytearray)):
        expected = Web3.to_hex(expected)
    if isinstance(actual, str) and isinstance(expected, str):
        return actual.lower() == expected.lower()
    return actual == expected


def requested_event(beacon_id: str, sponsor: str, requester: str, request_id) -> EventRecord:
    return EventRecord(REQUESTED_UPDATE_EVENT, {
        "beaconId": beacon_id,
        "sponsor": sponsor,
        "requester": requester,
        "requestId": request_id,
    })


def fulfilled_event(beacon_id: str, request_id) -> EventRecord:
    return EventRecord(FULFILLED_UPDATE_EVENT, {"beaconId": beacon_id, "requestId": request_id})


class FakeChain:
    """One fake provider: web3 + DapiServer + AirnodeRrp."""

    def __init__(self, registry: ABIRegistry, beacon_value: int = 0, **eth_kwargs):
        self.web3 = FakeWeb3(**eth_kwargs)
        self.dapi_server = FakeContractClient(DAPI_SERVER, registry)
        self.airnode_rrp = FakeContractClient(AIRNODE_RRP, registry, AIRNODE_RRP_ADDRESS)
        self.dapi_server.call_results["readDataFeedWithId"] = (beacon_value, 1_650_000_000)
        self.airnode_rrp.call_results["requestIsAwaitingFulfillment"] = True

    @property
    def contracts(self) -> Dict[str, ContractClient]:
        return {DAPI_SERVER: self.dapi_server, AIRNODE_RRP: self.airnode_rrp}


def connector_for(fakes: Dict[str, FakeChain]):
    """Connector resolving provider URLs to fake chains."""

    def connect(chain, url):
        fake = fakes[url]
        return fake.web3, fake.contracts

    return connect
