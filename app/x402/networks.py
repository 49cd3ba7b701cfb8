# app/x402/networks.py
"""
Supported settlement networks, their address families and USDC assets.

Two address families are known:
- evm: account-based chains, addresses are 0x-prefixed 20-byte hex
- solana: ledger-based chain, addresses are base58-encoded 32-byte keys
"""
import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Dict, Optional, Union

from solders.pubkey import Pubkey

from app.x402.errors import ConfigurationError

logger = logging.getLogger(__name__)

# USDC has 6 decimals, so $1.00 = 1,000,000 smallest units
USDC_DECIMALS = 6

EVM_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


class AddressFamily(str, Enum):
    EVM = "evm"
    SOLANA = "solana"


@dataclass(frozen=True)
class NetworkInfo:
    """Static facts about a settlement network."""
    name: str
    family: AddressFamily
    usdc_asset: str
    # EIP-712 domain of the USDC contract, needed by EVM signers
    usdc_name: Optional[str] = None
    usdc_version: Optional[str] = None


NETWORKS: Dict[str, NetworkInfo] = {
    info.name: info
    for info in (
        NetworkInfo("base", AddressFamily.EVM, "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", "USD Coin", "2"),
        NetworkInfo("base-sepolia", AddressFamily.EVM, "0x036CbD53842c5426634e7929541eC2318f3dCF7e", "USDC", "2"),
        NetworkInfo("avalanche", AddressFamily.EVM, "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E", "USD Coin", "2"),
        NetworkInfo("avalanche-fuji", AddressFamily.EVM, "0x5425890298aed601595a70AB815c96711a31Bc65", "USD Coin", "2"),
        NetworkInfo("polygon", AddressFamily.EVM, "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359", "USD Coin", "2"),
        NetworkInfo("polygon-amoy", AddressFamily.EVM, "0x41E94Eb019C0762f9Bfcf9Fb1E58725BfB0e7582", "USDC", "2"),
        NetworkInfo("solana", AddressFamily.SOLANA, "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"),
        NetworkInfo("solana-devnet", AddressFamily.SOLANA, "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"),
    )
}


def get_network(network: str) -> NetworkInfo:
    """
    Look up a network by identifier.

    Raises:
        ConfigurationError: if the network is not supported.
    """
    try:
        return NETWORKS[network]
    except KeyError:
        raise ConfigurationError(
            f"Unsupported network '{network}'. Supported: {', '.join(sorted(NETWORKS))}"
        ) from None


def is_valid_evm_address(address: str) -> bool:
    return bool(EVM_ADDRESS_PATTERN.match(address or ""))


def is_valid_solana_address(address: str) -> bool:
    """A Solana address is a base58 string decoding to exactly 32 bytes."""
    if not address:
        return False
    try:
        Pubkey.from_string(address)
    except ValueError:
        return False
    return True


def is_valid_address(network: str, address: str) -> bool:
    """Check that ``address`` belongs to the address family of ``network``."""
    family = get_network(network).family
    if family is AddressFamily.EVM:
        return is_valid_evm_address(address)
    return is_valid_solana_address(address)


def canonical_address(network: str, address: str) -> str:
    """
    Normalize an address for comparisons.

    EVM hex is case-insensitive (checksum casing is cosmetic); base58 is not.
    """
    info = NETWORKS.get(network)
    if info is not None and info.family is AddressFamily.EVM:
        return address.lower()
    return address


def parse_price(price: Union[str, int, float, Decimal], decimals: int = USDC_DECIMALS) -> int:
    """
    Convert a USD price such as ``"$0.001"`` into the asset's smallest unit.

    Args:
        price: Dollar amount, with or without a leading "$"
        decimals: Number of decimals of the settlement asset

    Returns:
        Integer amount in smallest units (``"$0.001"`` -> 1000 for USDC)

    Raises:
        ConfigurationError: if the price is not a positive amount expressible
            in whole smallest units.
    """
    raw = str(price).strip().replace(",", "")
    if raw.startswith("$"):
        raw = raw[1:]
    try:
        amount = Decimal(raw)
    except InvalidOperation:
        raise ConfigurationError(f"Invalid price format: {price!r}") from None
    if not amount.is_finite():
        raise ConfigurationError(f"Invalid price format: {price!r}")

    units = amount.scaleb(decimals)
    if units != units.to_integral_value():
        raise ConfigurationError(
            f"Price {price!r} is finer than the asset's smallest unit (10^-{decimals})"
        )
    units_int = int(units)
    if units_int <= 0:
        raise ConfigurationError(f"Price must be greater than zero: {price!r}")
    return units_int


def usdc_extra(network: str) -> Optional[Dict[str, str]]:
    """Token metadata that EVM clients need to build the EIP-712 signature."""
    info = get_network(network)
    if info.family is AddressFamily.EVM and info.usdc_name:
        return {"name": info.usdc_name, "version": info.usdc_version}
    return None
