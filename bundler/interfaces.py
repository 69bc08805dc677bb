"""Protocols for the collaborators the bundler core depends on."""

from typing import Any, Awaitable, Callable, Protocol, Union

from .models import SignerRef, TokenLaunchParams


class LedgerProvider(Protocol):
    """Protocol for the ledger RPC provider."""
    async def get_fee_data(self) -> dict: ...  # gasPrice, maxPriorityFeePerGas, maxFeePerGas
    async def get_balance(self, address: str) -> int: ...
    async def get_transaction_count(self, address: str, block_tag: str = "pending") -> int: ...
    async def get_code(self, address: str) -> bytes: ...
    async def get_block_number(self) -> int: ...
    async def submit(self, signed_tx: Any) -> dict: ...  # {"hash": ...}
    async def await_receipt(self, tx_hash: str) -> dict: ...  # status, blockNumber, gasUsed, gasPrice


class SignerProvider(Protocol):
    """Protocol for wallet signing. The core never holds key material."""
    async def sign(self, signer: SignerRef, raw_tx: dict) -> Any: ...


class ProtectionService(Protocol):
    """Protocol for the MEV-protection transform (possibly identity)."""
    async def protect(self, raw_tx: dict) -> dict: ...


class TargetResolver(Protocol):
    """Protocol for launch-platform contract bindings."""
    def launch_target(self) -> str: ...
    def encode_launch(self, params: TokenLaunchParams) -> str: ...
    def predict_token_address(self, params: TokenLaunchParams, salt: str) -> str: ...
    def encode_buy(self, token_address: str, amount: int) -> str: ...


ConfigLookup = Callable[[str, Any], Any]

EventHandler = Callable[[Any], Union[None, Awaitable[None]]]
