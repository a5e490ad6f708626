# jobs.py
"""
Airkeeper – Jobs
================
Beacon update job descriptors and their content-addressed identifiers.

A job id is the keccak256 of the ABI encoding of its own fields, so a job
can be checked for integrity before it is processed: any mutated field
yields a different id and the job is dropped. The deviation threshold is
one of those fields: it travels inside ``conditions`` as
``abi.encode(uint256)`` in units of 1e-16 percent.

Two kinds of job exist:

* ``Job`` is a PSP subscription. The sponsor wallet fulfills it directly
  with a payload signed by the airnode wallet.
* ``RrpKeeperJob`` asks the airnode for an update through RRP. A keeper
  wallet derived from the keeper sponsor sends the request; the request
  sponsor pays for the fulfillment.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError
from eth_utils import is_address, is_hex, to_checksum_address
from web3 import Web3

from airkeeper.constants import DEVIATION_UNITS_PER_PERCENT
from airkeeper.exceptions import ConfigurationError, InvalidJobIdentifier, InvalidThreshold

Percentage = Union[str, Decimal, float, int]


def _hex_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def encode_conditions(deviation_percentage: Percentage) -> str:
    """Conditions bytes carrying ``deviation_percentage``."""
    try:
        units = Decimal(str(deviation_percentage).strip()) * DEVIATION_UNITS_PER_PERCENT
    except InvalidOperation:
        raise ValueError(f"deviation percentage '{deviation_percentage}' is not a number")
    if units < 0 or units != units.to_integral_value():
        raise ValueError(f"deviation percentage '{deviation_percentage}' cannot be encoded")
    return Web3.to_hex(encode(["uint256"], [int(units)]))


def decode_conditions(conditions: str) -> Decimal:
    """Deviation percentage stored in ``conditions``.

    Raises:
        InvalidThreshold: the bytes are not a single ABI-encoded uint256.
    """
    try:
        data = _hex_bytes(conditions)
        if len(data) != 32:
            raise ValueError(f"expected 32 bytes, got {len(data)}")
        (units,) = decode(["uint256"], data)
    except (DecodingError, ValueError) as exc:
        raise InvalidThreshold(f"conditions '{conditions}' do not encode a deviation threshold: {exc}")
    return Decimal(units) / Decimal(DEVIATION_UNITS_PER_PERCENT)


def compute_subscription_id(
    chain_id: Union[int, str],
    airnode_address: str,
    template_id: str,
    parameters: str,
    conditions: str,
    relayer: str,
    sponsor: str,
    requester: str,
    fulfill_function_id: str,
) -> str:
    encoded = encode(
        ["uint256", "address", "bytes32", "bytes", "bytes", "address", "address", "address", "bytes4"],
        [
            int(chain_id),
            to_checksum_address(airnode_address),
            _hex_bytes(template_id),
            _hex_bytes(parameters),
            _hex_bytes(conditions),
            to_checksum_address(relayer),
            to_checksum_address(sponsor),
            to_checksum_address(requester),
            _hex_bytes(fulfill_function_id),
        ],
    )
    return Web3.to_hex(Web3.keccak(encoded))


def compute_keeper_job_id(
    chain_id: Union[int, str],
    airnode_address: str,
    template_id: str,
    conditions: str,
    sponsor: str,
    keeper_sponsor: str,
) -> str:
    encoded = encode(
        ["uint256", "address", "bytes32", "bytes", "address", "address"],
        [
            int(chain_id),
            to_checksum_address(airnode_address),
            _hex_bytes(template_id),
            _hex_bytes(conditions),
            to_checksum_address(sponsor),
            to_checksum_address(keeper_sponsor),
        ],
    )
    return Web3.to_hex(Web3.keccak(encoded))


def compute_endpoint_id(ois_title: str, endpoint_name: str) -> str:
    return Web3.to_hex(Web3.keccak(encode(["string", "string"], [ois_title, endpoint_name])))


def compute_template_id(endpoint_id: str, parameters: str) -> str:
    return Web3.to_hex(Web3.solidity_keccak(["bytes32", "bytes"], [endpoint_id, parameters]))


def compute_beacon_id(airnode_address: str, template_id: str) -> str:
    return Web3.to_hex(
        Web3.solidity_keccak(["address", "bytes32"], [to_checksum_address(airnode_address), template_id])
    )


def _check_fields(job_id: str, job: Any, addresses: tuple, hex_fields: tuple) -> None:
    for name in addresses:
        if not is_address(getattr(job, name)):
            raise ConfigurationError(f"job {job_id}: invalid {name} '{getattr(job, name)}'")
    for name in hex_fields:
        if not is_hex(getattr(job, name)) and getattr(job, name) != "0x":
            raise ConfigurationError(f"job {job_id}: {name} must be hex")


def _conditions_from(job_id: str, data: Dict[str, Any]) -> str:
    if "conditions" in data:
        return data["conditions"]
    if "deviationPercentage" in data:
        try:
            return encode_conditions(data["deviationPercentage"])
        except ValueError as exc:
            raise ConfigurationError(f"job {job_id}: {exc}")
    raise ConfigurationError(f"job {job_id} is missing field 'conditions'")


class _BeaconJob:
    """Behaviour shared by both job kinds."""

    id: str
    airnode_address: str
    template_id: str
    conditions: str
    kind = "job"

    @property
    def beacon_id(self) -> str:
        return compute_beacon_id(self.airnode_address, self.template_id)

    @property
    def deviation_percentage(self) -> Decimal:
        return decode_conditions(self.conditions)

    def expected_id(self) -> str:
        raise NotImplementedError

    def verify(self) -> None:
        """Raise InvalidJobIdentifier unless ``id`` matches the fields."""
        try:
            expected = self.expected_id()
        except (EncodingError, ValueError, TypeError) as exc:
            raise InvalidJobIdentifier(self.id, f"<unencodable: {exc}>", kind=self.kind)
        if expected.lower() != self.id.lower():
            raise InvalidJobIdentifier(self.id, expected, kind=self.kind)


@dataclass(frozen=True)
class Job(_BeaconJob):
    """One PSP beacon update subscription."""

    kind = "subscription"

    id: str
    chain_id: str
    airnode_address: str
    template_id: str
    parameters: str
    conditions: str
    relayer: str
    sponsor: str
    requester: str
    fulfill_function_id: str

    @property
    def wallet_sponsor(self) -> str:
        return self.sponsor

    def expected_id(self) -> str:
        return compute_subscription_id(
            self.chain_id,
            self.airnode_address,
            self.template_id,
            self.parameters,
            self.conditions,
            self.relayer,
            self.sponsor,
            self.requester,
            self.fulfill_function_id,
        )

    @classmethod
    def from_dict(cls, job_id: str, data: Dict[str, Any]) -> "Job":
        try:
            job = cls(
                id=job_id,
                chain_id=str(data["chainId"]),
                airnode_address=data["airnodeAddress"],
                template_id=data["templateId"],
                parameters=data.get("parameters", "0x"),
                conditions=_conditions_from(job_id, data),
                relayer=data["relayer"],
                sponsor=data["sponsor"],
                requester=data["requester"],
                fulfill_function_id=data["fulfillFunctionId"],
            )
        except KeyError as exc:
            raise ConfigurationError(f"subscription {job_id} is missing field {exc}")

        _check_fields(
            job_id, job,
            ("airnode_address", "relayer", "sponsor", "requester"),
            ("template_id", "parameters", "conditions", "fulfill_function_id"),
        )
        return job

    @classmethod
    def build(
        cls,
        *,
        chain_id: Union[int, str],
        airnode_address: str,
        template_id: str,
        relayer: str,
        sponsor: str,
        requester: str,
        fulfill_function_id: str,
        deviation_percentage: Optional[Percentage] = None,
        parameters: str = "0x",
        conditions: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> "Job":
        """Create a job whose id is computed from the given fields."""
        if conditions is None:
            conditions = encode_conditions(deviation_percentage)
        job_id = job_id or compute_subscription_id(
            chain_id, airnode_address, template_id, parameters, conditions,
            relayer, sponsor, requester, fulfill_function_id,
        )
        return cls(
            id=job_id,
            chain_id=str(chain_id),
            airnode_address=airnode_address,
            template_id=template_id,
            parameters=parameters,
            conditions=conditions,
            relayer=relayer,
            sponsor=sponsor,
            requester=requester,
            fulfill_function_id=fulfill_function_id,
        )


@dataclass(frozen=True)
class RrpKeeperJob(_BeaconJob):
    """Keeps a beacon fresh by requesting RRP updates from the airnode.

    ``sponsor`` sponsors the RRP request and has to allow the keeper wallet
    to request beacon updates; the keeper wallet itself is derived from
    ``keeper_sponsor``.
    """

    kind = "keeper job"

    id: str
    chain_id: str
    airnode_address: str
    template_id: str
    conditions: str
    sponsor: str
    keeper_sponsor: str

    @property
    def wallet_sponsor(self) -> str:
        return self.keeper_sponsor

    def expected_id(self) -> str:
        return compute_keeper_job_id(
            self.chain_id,
            self.airnode_address,
            self.template_id,
            self.conditions,
            self.sponsor,
            self.keeper_sponsor,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RrpKeeperJob":
        """Parse one keeper job. Without an ``id`` entry the id is computed."""
        label = data.get("id") or data.get("templateId", "<unnamed>")
        try:
            fields = dict(
                chain_id=str(data["chainId"]),
                airnode_address=data["airnodeAddress"],
                template_id=data["templateId"],
                conditions=_conditions_from(label, data),
                sponsor=data["sponsor"],
                keeper_sponsor=data["keeperSponsor"],
            )
        except KeyError as exc:
            raise ConfigurationError(f"keeper job {label} is missing field {exc}")

        _check_fields(label, cls(id="0x", **fields), ("airnode_address", "sponsor", "keeper_sponsor"),
                      ("template_id", "conditions"))
        return cls.build(job_id=data.get("id"), **fields)

    @classmethod
    def build(
        cls,
        *,
        chain_id: Union[int, str],
        airnode_address: str,
        template_id: str,
        sponsor: str,
        keeper_sponsor: str,
        deviation_percentage: Optional[Percentage] = None,
        conditions: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> "RrpKeeperJob":
        if conditions is None:
            conditions = encode_conditions(deviation_percentage)
        job_id = job_id or compute_keeper_job_id(
            chain_id, airnode_address, template_id, conditions, sponsor, keeper_sponsor,
        )
        return cls(
            id=job_id,
            chain_id=str(chain_id),
            airnode_address=airnode_address,
            template_id=template_id,
            conditions=conditions,
            sponsor=sponsor,
            keeper_sponsor=keeper_sponsor,
        )


AnyJob = Union[Job, RrpKeeperJob]
