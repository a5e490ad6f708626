# wallet.py
"""
Airkeeper – Wallet
==================
Deterministic sponsor wallet derivation.

HD wallets let a single mnemonic hold one account per sponsor. A 160-bit
sponsor address is split into six 31-bit chunks (least significant chunk
first) and each chunk becomes a non-hardened child index:

    m/44'/60'/0'/<protocolId>/<bits 0-30>/<bits 31-61>/.../<bits 155-185>

The protocol id keeps the wallets of different protocols apart, so the
same sponsor gets an independent wallet per protocol. Wallets are never
persisted; they are recomputed whenever a run needs them.
"""

from __future__ import annotations

from typing import List

from eth_account import Account
from eth_account.hdaccount import key_from_seed, seed_from_mnemonic
from eth_account.signers.local import LocalAccount
from eth_utils import is_address, to_checksum_address

from airkeeper.constants import (
    MASTER_WALLET_PATH,
    PATH_SEGMENT_BITS,
    PATH_SEGMENT_COUNT,
    PROTOCOL_ID_PSP,
    SPONSOR_WALLET_ROOT,
)
from airkeeper.exceptions import InvalidAddress

_SEGMENT_MASK = (1 << PATH_SEGMENT_BITS) - 1


def master_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """BIP-39 seed of the airnode mnemonic."""
    return seed_from_mnemonic(mnemonic, passphrase)


def path_segments(address: str) -> List[int]:
    """Split an address into six 31-bit child indices, low bits first."""
    if not isinstance(address, str) or not is_address(address):
        raise InvalidAddress(f"invalid address '{address}'")
    value = int(to_checksum_address(address), 16)
    return [(value >> (PATH_SEGMENT_BITS * i)) & _SEGMENT_MASK for i in range(PATH_SEGMENT_COUNT)]


def reassemble_address(segments: List[int]) -> str:
    value = 0
    for i, segment in enumerate(segments):
        value |= segment << (PATH_SEGMENT_BITS * i)
    return to_checksum_address(value.to_bytes(20, "big"))


def _validate_protocol_id(protocol_id: str) -> str:
    protocol_id = str(protocol_id)
    if not protocol_id.isdigit() or int(protocol_id) > _SEGMENT_MASK:
        raise ValueError(f"protocol id '{protocol_id}' must be a decimal child index below 2^31")
    return protocol_id


def derive_wallet_path(sponsor_address: str, protocol_id: str = PROTOCOL_ID_PSP) -> str:
    """Relative derivation path ``protocolId/seg0/.../seg5``."""
    segments = path_segments(sponsor_address)
    return "/".join([_validate_protocol_id(protocol_id), *map(str, segments)])


def derive_wallet(seed: bytes, sponsor_address: str, protocol_id: str = PROTOCOL_ID_PSP) -> LocalAccount:
    """Derive the signing wallet of ``sponsor_address`` from the master seed."""
    path = f"{SPONSOR_WALLET_ROOT}/{derive_wallet_path(sponsor_address, protocol_id)}"
    return Account.from_key(key_from_seed(seed, path))


def derive_sponsor_wallet(mnemonic: str, sponsor_address: str, protocol_id: str = PROTOCOL_ID_PSP) -> LocalAccount:
    return derive_wallet(master_seed(mnemonic), sponsor_address, protocol_id)


def derive_airnode_wallet(seed: bytes) -> LocalAccount:
    """The master wallet that signs fulfillment payloads."""
    return Account.from_key(key_from_seed(seed, MASTER_WALLET_PATH))


def shorten_address(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}"
