"""Tests for token address prediction and launch calldata."""

import pytest
from eth_abi import decode as abi_decode
from eth_utils import encode_hex, function_signature_to_4byte_selector, is_checksum_address

from bundler.addressing import (
    DEFAULT_BUY_SIGNATURE,
    DEFAULT_LAUNCH_SIGNATURE,
    Create2TargetResolver,
    create2_address,
    derive_salt,
)
from bundler.models import TokenLaunchParams


FACTORY = "0x5c952063c7fc8610ffdb798152d69f0b9550762b"
ZERO_SALT = "0x" + "00" * 32


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def params():
    return TokenLaunchParams(
        name="Test Token",
        symbol="TEST",
        total_supply=1_000_000_000 * 10**18,
        liquidity=10**18,
        description="A test token",
        website="https://example.org",
    )


@pytest.fixture
def resolver():
    return Create2TargetResolver(FACTORY, init_code="0x6080")


# ============================================================================
# Unit Tests - CREATE2
# ============================================================================

class TestCreate2Address:
    """Tests against the EIP-1014 reference vectors."""

    @pytest.mark.parametrize("deployer,salt,init_code,expected", [
        (
            "0x0000000000000000000000000000000000000000",
            ZERO_SALT,
            "0x00",
            "0x4D1A2e2bB4F88F0250f26Ffff098B0b30B26BF38",
        ),
        (
            "0xdeadbeef00000000000000000000000000000000",
            ZERO_SALT,
            "0x00",
            "0xB928f69Bb1D91Cd65274e3c79d8986362984fDA3",
        ),
        (
            "0x00000000000000000000000000000000deadbeef",
            "0x00000000000000000000000000000000000000000000000000000000cafebabe",
            "0xdeadbeef",
            "0x60f3f640a8508fC6a86d45DF051962668E1e8AC7",
        ),
        (
            "0x0000000000000000000000000000000000000000",
            ZERO_SALT,
            "0x",
            "0xE33C0C7F7df4809055C3ebA6c09CFe4BaF1BD9e0",
        ),
    ])
    def test_reference_vectors(self, deployer, salt, init_code, expected):
        assert create2_address(deployer, salt, init_code) == expected

    def test_short_salt_rejected(self):
        with pytest.raises(ValueError):
            create2_address(FACTORY, "0x01", "0x00")


class TestDeriveSalt:
    """Tests for content-addressed salts."""

    def test_deterministic(self, params):
        assert derive_salt(params) == derive_salt(TokenLaunchParams(**vars(params)))

    def test_is_32_bytes(self, params):
        salt = derive_salt(params)

        assert salt.startswith("0x")
        assert len(salt) == 66

    def test_changes_with_params(self, params):
        other = TokenLaunchParams(**{**vars(params), "symbol": "OTHER"})

        assert derive_salt(params) != derive_salt(other)

    def test_ignores_explicit_salt_field(self, params):
        salted = TokenLaunchParams(**{**vars(params), "salt": ZERO_SALT})

        assert derive_salt(params) == derive_salt(salted)


# ============================================================================
# Unit Tests - Create2TargetResolver
# ============================================================================

class TestCreate2TargetResolver:
    """Tests for launch platform bindings."""

    def test_launch_target_is_checksummed(self, resolver):
        target = resolver.launch_target()

        assert is_checksum_address(target)
        assert target.lower() == FACTORY

    def test_prediction_is_stable(self, resolver, params):
        salt = derive_salt(params)

        first = resolver.predict_token_address(params, salt)
        second = resolver.predict_token_address(params, salt)

        assert first == second
        assert is_checksum_address(first)

    def test_prediction_depends_on_salt(self, resolver, params):
        assert resolver.predict_token_address(params, ZERO_SALT) != resolver.predict_token_address(
            params, derive_salt(params)
        )

    def test_prediction_depends_on_init_code(self, params):
        salt = derive_salt(params)
        a = Create2TargetResolver(FACTORY, init_code="0x6080")
        b = Create2TargetResolver(FACTORY, init_code="0x6081")

        assert a.predict_token_address(params, salt) != b.predict_token_address(params, salt)

    def test_encode_launch_selector(self, resolver, params):
        calldata = resolver.encode_launch(params)
        selector = encode_hex(function_signature_to_4byte_selector(DEFAULT_LAUNCH_SIGNATURE))

        assert calldata.startswith(selector)

    def test_encode_buy(self, resolver):
        token = "0x00000000000000000000000000000000000000aa"

        calldata = resolver.encode_buy(token, 10**16)

        selector = encode_hex(function_signature_to_4byte_selector(DEFAULT_BUY_SIGNATURE))
        assert calldata.startswith(selector)
        decoded = abi_decode(["address", "uint256"], bytes.fromhex(calldata[10:]))
        assert decoded == (token, 10**16)
