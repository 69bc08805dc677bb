"""Addressing - Content-addressed token prediction and launch calldata."""

from typing import Union
import logging

from eth_abi import encode as abi_encode
from eth_utils import (
    encode_hex,
    function_signature_to_4byte_selector,
    keccak,
    to_bytes,
    to_checksum_address,
)

from .models import TokenLaunchParams

logger = logging.getLogger(__name__)


# ABI types of TokenLaunchParams.canonical()
LAUNCH_PARAM_TYPES = [
    "string",   # name
    "string",   # symbol
    "uint256",  # total_supply
    "string",   # description
    "string",   # image
    "string",   # website
    "string",   # twitter
    "string",   # telegram
    "string",   # category
    "uint256",  # liquidity
]

DEFAULT_LAUNCH_SIGNATURE = f"createToken({','.join(LAUNCH_PARAM_TYPES)})"
DEFAULT_BUY_SIGNATURE = "buy(address,uint256)"


def _as_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, bytes):
        return value
    return to_bytes(hexstr=value)


def encode_params(params: TokenLaunchParams) -> bytes:
    """ABI-encode the canonicalized launch parameters."""
    return abi_encode(LAUNCH_PARAM_TYPES, list(params.canonical()))


def create2_address(deployer: str, salt: Union[str, bytes], init_code: Union[str, bytes]) -> str:
    """
    Address of a contract deployed by `deployer` with CREATE2.

    Raises:
        ValueError: if the salt is not 32 bytes
    """
    salt_bytes = _as_bytes(salt)
    if len(salt_bytes) != 32:
        raise ValueError(f"Salt must be 32 bytes, got {len(salt_bytes)}")

    digest = keccak(b"\xff" + _as_bytes(deployer) + salt_bytes + keccak(_as_bytes(init_code)))
    return to_checksum_address(encode_hex(digest[12:]))


def derive_salt(params: TokenLaunchParams) -> str:
    """
    Deterministic 32-byte salt for a launch.

    Identical parameters always produce the same salt.
    """
    return encode_hex(keccak(encode_params(params)))


class Create2TargetResolver:
    """
    Launch-platform bindings for a CREATE2-style token factory.

    The token address is predicted as
    keccak256(0xff ++ factory ++ salt ++ keccak256(init_code ++ params))[12:],
    so buy transactions can be built before the launch is mined.

    Usage:
        resolver = Create2TargetResolver(factory_address, init_code)
        token = resolver.predict_token_address(params, derive_salt(params))
    """

    def __init__(
        self,
        factory_address: str,
        init_code: Union[str, bytes] = b"",
        launch_signature: str = DEFAULT_LAUNCH_SIGNATURE,
        buy_signature: str = DEFAULT_BUY_SIGNATURE,
    ):
        """
        Args:
            factory_address: Token factory contract address
            init_code: Factory init code prefix (bytes or hex)
            launch_signature: Solidity signature of the launch function
            buy_signature: Solidity signature of the buy function
        """
        self.factory_address = to_checksum_address(factory_address)
        self.init_code = _as_bytes(init_code)
        self.launch_signature = launch_signature
        self.buy_signature = buy_signature

    def launch_target(self) -> str:
        return self.factory_address

    def predict_token_address(self, params: TokenLaunchParams, salt: str) -> str:
        """
        Predict the address the factory deploys the token at.

        Args:
            params: Launch parameters
            salt: 32-byte salt (hex)

        Returns:
            Checksummed token address
        """
        address = create2_address(
            self.factory_address, salt, self.init_code + encode_params(params)
        )

        logger.debug(f"Predicted token address {address} for {params.symbol}")
        return address

    def encode_launch(self, params: TokenLaunchParams) -> str:
        """Calldata for the factory launch call."""
        selector = function_signature_to_4byte_selector(self.launch_signature)
        return encode_hex(selector + encode_params(params))

    def encode_buy(self, token_address: str, amount: int) -> str:
        """Calldata for a buy of `amount` wei of `token_address`."""
        selector = function_signature_to_4byte_selector(self.buy_signature)
        args = abi_encode(["address", "uint256"], [to_checksum_address(token_address), int(amount)])
        return encode_hex(selector + args)
