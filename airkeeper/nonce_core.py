# nonce_core.py
"""
Airkeeper – NonceCore
=====================
Per-run nonce counter of one sponsor wallet on one chain.

The counter is seeded once from the chain's transaction count and then
handed out locally. A nonce is consumed as soon as it is handed out,
whether or not the transaction it was meant for ever lands. Only the
sequential loop that owns the wallet touches the counter, so no lock is
needed.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from airkeeper.chain_reader import ChainReader
from airkeeper.loggingconfig import setup_logging

logger = setup_logging("NonceCore", level=logging.INFO)


class NonceCore:
    """Monotonic nonce source for one wallet within one run."""

    def __init__(self, reader: ChainReader, address: str) -> None:
        self.reader = reader
        self.address = address
        self.next_nonce: Optional[int] = None
        self.assigned: List[int] = []
        self.halted: bool = False
        self._initialized: bool = False

    async def initialize(self, block_number: Optional[int] = None) -> int:
        """Seed the counter from the chain. Raises ChainReadFailed."""
        if not self._initialized:
            self.next_nonce = await self.reader.read_nonce(self.address, block_number)
            self._initialized = True
            logger.debug("Initial nonce of %s set to %d", self.address, self.next_nonce)
        return self.next_nonce

    def get_next_nonce(self) -> int:
        """Hand out the next nonce and mark it consumed."""
        if not self._initialized or self.next_nonce is None:
            raise RuntimeError("NonceCore used before initialize()")
        if self.halted:
            raise RuntimeError(f"nonce assignment for {self.address} is halted for this run")
        nonce = self.next_nonce
        self.next_nonce += 1
        self.assigned.append(nonce)
        return nonce

    def halt(self) -> None:
        """Stop handing out nonces for the rest of the run."""
        self.halted = True
        logger.debug("Nonce assignment halted for %s after %s", self.address, self.assigned)
