# contracts.py
"""
Airkeeper – Contracts
=====================
The small capability surface the keeper needs from a deployed contract:
read-only calls, event queries, call encoding and transaction submission.
``Web3ContractClient`` implements it for EVM chains on top of AsyncWeb3.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3

from airkeeper.abi_registry import ABIRegistry


@dataclass(frozen=True)
class EventRecord:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    block_number: Optional[int] = None
    transaction_hash: Optional[str] = None

    @property
    def request_id(self) -> Optional[str]:
        value = self.args.get("requestId")
        if isinstance(value, (bytes, bytearray)):
            return Web3.to_hex(value)
        return value


class ContractClient(abc.ABC):
    """What the pipeline may do with one contract on one chain."""

    address: str

    @abc.abstractmethod
    async def call(self, function_name: str, *args: Any) -> Any:
        """Read-only call, returns the decoded result."""

    @abc.abstractmethod
    async def query_events(
        self,
        event_name: str,
        argument_filters: Dict[str, Any],
        from_block: int,
        to_block: int,
    ) -> List[EventRecord]:
        """Decoded logs of ``event_name`` within ``[from_block, to_block]``."""

    @abc.abstractmethod
    def function_name(self, selector: str) -> str:
        """Resolve a 4-byte selector to a function of this contract."""

    @abc.abstractmethod
    def encode_call(self, function_name: str, args: Sequence[Any]) -> str:
        """ABI-encoded call data."""

    @abc.abstractmethod
    async def submit_transaction(
        self,
        signer: LocalAccount,
        function_name: str,
        args: Sequence[Any],
        tx_params: Dict[str, Any],
        broadcast: bool = True,
    ) -> str:
        """Sign and (optionally) broadcast a transaction, return its hash."""


class Web3ContractClient(ContractClient):
    """ContractClient backed by an AsyncWeb3 contract object."""

    def __init__(self, web3: AsyncWeb3, address: str, abi_type: str, registry: ABIRegistry) -> None:
        self.web3 = web3
        self.address = Web3.to_checksum_address(address)
        self.abi_type = abi_type
        self.registry = registry
        self._contract = web3.eth.contract(address=self.address, abi=registry.get_abi(abi_type))

    async def call(self, function_name: str, *args: Any) -> Any:
        return await self._contract.functions[function_name](*args).call()

    async def query_events(
        self,
        event_name: str,
        argument_filters: Dict[str, Any],
        from_block: int,
        to_block: int,
    ) -> List[EventRecord]:
        logs = await self._contract.events[event_name]().get_logs(
            argument_filters=argument_filters,
            from_block=max(from_block, 0),
            to_block=to_block,
        )
        return [
            EventRecord(
                name=log["event"],
                args=dict(log["args"]),
                block_number=log.get("blockNumber"),
                transaction_hash=Web3.to_hex(log["transactionHash"]) if log.get("transactionHash") else None,
            )
            for log in logs
        ]

    def function_name(self, selector: str) -> str:
        name = self.registry.get_function_name(self.abi_type, selector)
        if name is None:
            raise ValueError(f"no function with selector {selector} in {self.abi_type} ABI")
        return name

    def encode_call(self, function_name: str, args: Sequence[Any]) -> str:
        return self._contract.encode_abi(function_name, args=list(args))

    async def submit_transaction(
        self,
        signer: LocalAccount,
        function_name: str,
        args: Sequence[Any],
        tx_params: Dict[str, Any],
        broadcast: bool = True,
    ) -> str:
        tx = {
            **tx_params,
            "from": signer.address,
            "to": self.address,
            "data": self.encode_call(function_name, args),
            "value": 0,
        }
        signed = signer.sign_transaction(tx)
        if not broadcast:
            return Web3.to_hex(signed.hash)
        tx_hash = await self.web3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)
