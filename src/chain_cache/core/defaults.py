from __future__ import annotations

# Blocks to wait before an event is treated as final, keyed by chain id.
CHAIN_CONFIRMATIONS: dict[int, int] = {
    1: 12,  # Ethereum mainnet
    11155111: 12,  # Sepolia
    137: 128,  # Polygon
    80001: 128,  # Mumbai
    42161: 1,  # Arbitrum One
    421613: 1,  # Arbitrum Goerli
    10: 1,  # Optimism
    11155420: 1,  # Optimism Sepolia
    31337: 1,  # Hardhat / localhost
}

FALLBACK_CONFIRMATIONS = 12


def default_confirmations(chain_id: int | None) -> int:
    if chain_id is None:
        return FALLBACK_CONFIRMATIONS
    return CHAIN_CONFIRMATIONS.get(int(chain_id), FALLBACK_CONFIRMATIONS)
