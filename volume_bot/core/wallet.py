from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

import base58
from solders.keypair import Keypair  # type: ignore
from solders.pubkey import Pubkey  # type: ignore

from volume_bot.exceptions import WalletException

logger = logging.getLogger("volume_bot.wallet")


@dataclass(frozen=True)
class WalletHandle:
    """Opaque wallet reference handed to the trade executor."""
    wallet_id: str
    address: str
    keypair: Optional[Keypair] = field(default=None, compare=False, repr=False)

    @property
    def can_sign(self) -> bool:
        return self.keypair is not None

    @property
    def short(self) -> str:
        return f"{self.address[:4]}..{self.address[-4:]}"


class WalletPool:
    """Registry of the wallets a user may trade from.

    Wallets are registered either from a base58 secret key (live trading) or
    as watch-only addresses (paper mode). Sessions and monitors only ever see
    ``WalletHandle`` objects resolved from ids.
    """

    def __init__(self) -> None:
        self._wallets: dict[str, WalletHandle] = {}

    def add_secret(self, secret: str, wallet_id: str | None = None) -> WalletHandle:
        """Register a signing wallet from a base58 or JSON-array secret key."""
        try:
            if secret.strip().startswith("["):
                key_bytes = bytes(json.loads(secret))
            else:
                key_bytes = base58.b58decode(secret.strip())
            keypair = Keypair.from_bytes(key_bytes)
        except ValueError as e:
            raise WalletException("Invalid secret key", wallet_id=wallet_id) from e
        address = str(keypair.pubkey())
        handle = WalletHandle(wallet_id=wallet_id or address, address=address, keypair=keypair)
        self._register(handle)
        return handle

    def add_address(self, address: str, wallet_id: str | None = None) -> WalletHandle:
        try:
            Pubkey.from_string(address)
        except ValueError as e:
            raise WalletException("Invalid wallet address", address=address) from e
        handle = WalletHandle(wallet_id=wallet_id or address, address=address)
        self._register(handle)
        return handle

    def generate(self, count: int, prefix: str = "wallet") -> list[WalletHandle]:
        """Create fresh keypairs, used by paper sessions."""
        handles = []
        for i in range(count):
            keypair = Keypair()
            handle = WalletHandle(wallet_id=f"{prefix}-{i + 1}", address=str(keypair.pubkey()), keypair=keypair)
            self._register(handle)
            handles.append(handle)
        return handles

    def _register(self, handle: WalletHandle) -> None:
        if handle.wallet_id in self._wallets:
            logger.debug("Replacing wallet %s", handle.wallet_id)
        self._wallets[handle.wallet_id] = handle
        logger.info("Wallet registered: %s (%s)%s", handle.wallet_id, handle.short, "" if handle.can_sign else " watch-only")

    def get(self, wallet_id: str) -> WalletHandle | None:
        return self._wallets.get(wallet_id)

    def resolve(self, wallet_ids: Iterable[str]) -> list[WalletHandle]:
        handles = []
        for wallet_id in wallet_ids:
            handle = self._wallets.get(wallet_id)
            if handle is None:
                raise WalletException("Unknown wallet", wallet_id=wallet_id)
            handles.append(handle)
        return handles

    def ids(self) -> list[str]:
        return list(self._wallets)

    def __len__(self) -> int:
        return len(self._wallets)
