# abi_registry.py
"""
Airkeeper – ABIRegistry
=======================
Loads and validates the contract ABI JSON files shipped in ``airkeeper/abi/``
and maps 4-byte selectors back to function names.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from eth_utils import function_signature_to_4byte_selector

from airkeeper.constants import AIRNODE_RRP, DAPI_SERVER
from airkeeper.loggingconfig import setup_logging

logger = setup_logging("ABIRegistry", level=logging.INFO)

ABI_DIR: Path = Path(__file__).parent / "abi"

_REQUIRED: Dict[str, set[str]] = {
    DAPI_SERVER: {"readDataFeedWithId", "fulfillPspBeaconUpdate", "requestRrpBeaconUpdate"},
    AIRNODE_RRP: {"requestIsAwaitingFulfillment"},
}

_ABI_FILES: Dict[str, str] = {
    DAPI_SERVER: "dapi_server_abi.json",
    AIRNODE_RRP: "airnode_rrp_abi.json",
}


class ABIRegistry:
    """
    Loads ABI JSON files from a directory once.
    Instances share nothing; build one per process and pass it around.
    """

    def __init__(self, abi_dir: Optional[Path] = None) -> None:
        self.abi_dir = Path(abi_dir) if abi_dir else ABI_DIR
        self._abis: Dict[str, List[Dict[str, Any]]] = {}
        self._sig_map: Dict[str, Dict[str, str]] = {}
        self._selector_map: Dict[str, Dict[str, str]] = {}
        self._initialized = False

    def initialize(self) -> None:
        if self._initialized:
            return
        for abi_type, fname in _ABI_FILES.items():
            self._load_single(abi_type, self.abi_dir / fname)
        self._initialized = True
        logger.debug("ABIRegistry initialised (loaded %d ABIs)", len(self._abis))

    def get_abi(self, abi_type: str) -> List[Dict[str, Any]]:
        self.initialize()
        try:
            return self._abis[abi_type]
        except KeyError:
            raise KeyError(f"unknown ABI '{abi_type}'") from None

    def get_function_signature(self, abi_type: str, func_name: str) -> Optional[str]:
        self.initialize()
        return self._sig_map.get(abi_type, {}).get(func_name)

    def get_function_name(self, abi_type: str, selector: str) -> Optional[str]:
        """Function name for a ``0x``-prefixed 4-byte selector, or None."""
        self.initialize()
        return self._selector_map.get(abi_type, {}).get(selector.lower().removeprefix("0x"))

    # ------------------------------------------------------------------ #
    # internals                                                          #
    # ------------------------------------------------------------------ #

    def _load_single(self, abi_type: str, file_path: Path) -> None:
        try:
            abi_json = json.loads(file_path.read_text())
        except FileNotFoundError:
            raise RuntimeError(f"ABI file missing: {file_path}") from None
        except json.JSONDecodeError as exc:
            raise RuntimeError(f"Invalid ABI {abi_type}: {exc}") from exc

        self._validate_schema(abi_json, abi_type)
        sig_map, sel_map = self._extract_maps(abi_json)
        self._abis[abi_type] = abi_json
        self._sig_map[abi_type] = sig_map
        self._selector_map[abi_type] = sel_map
        logger.debug("Loaded ABI %-10s (%2d funcs)", abi_type, len(sig_map))

    @staticmethod
    def _validate_schema(abi: Any, abi_type: str) -> None:
        if not isinstance(abi, list):
            raise RuntimeError(f"Invalid ABI {abi_type}: not a JSON array")

        names = {e.get("name") for e in abi if e.get("type") == "function"}
        missing = _REQUIRED.get(abi_type, set()) - names
        if missing:
            raise RuntimeError(f"Invalid ABI {abi_type}: missing functions {', '.join(sorted(missing))}")

    @staticmethod
    def _extract_maps(abi: List[Dict[str, Any]]) -> Tuple[Dict[str, str], Dict[str, str]]:
        sigs: Dict[str, str] = {}
        sels: Dict[str, str] = {}
        for entry in abi:
            if entry.get("type") != "function":
                continue
            name = entry["name"]
            types = ",".join(arg.get("type", "") for arg in entry.get("inputs", []))
            sig = f"{name}({types})"
            sel = function_signature_to_4byte_selector(sig).hex()
            sigs[name] = sig
            sels[sel] = name
        return sigs, sels
