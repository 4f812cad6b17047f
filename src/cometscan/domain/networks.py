from __future__ import annotations
from dataclasses import dataclass
from .models import ContractRef
from .value_types import Address, ZERO_ADDRESS

@dataclass(slots=True, frozen=True)
class Network:
    key: str
    chain_id: int
    name: str
    explorer_url: str
    contracts: tuple[ContractRef, ...]

    def tracked(self) -> list[ContractRef]:
        """Contracts worth indexing: placeholder zero addresses are skipped."""
        return [c for c in self.contracts if c.address != ZERO_ADDRESS]

    def market(self, name: str) -> ContractRef:
        for c in self.contracts:
            if c.name == name:
                return c
        raise KeyError(f"{self.key} has no contract named {name!r}")

def _c(name: str, address: str, kind: str = "market", deploy_block: int = 0,
       symbol: str | None = None, token: str | None = None, decimals: int | None = None) -> ContractRef:
    return ContractRef(
        name=name, address=Address(address.lower()), kind=kind,  # type: ignore[arg-type]
        deploy_block=deploy_block, base_token_symbol=symbol,
        base_token_address=Address(token.lower()) if token else None,
        base_token_decimals=decimals,
    )

SEPOLIA = Network(
    key="SEPOLIA", chain_id=11155111, name="Ethereum Sepolia",
    explorer_url="https://sepolia.etherscan.io",
    contracts=(
        _c("cWETHv3", "0x2943ac1216979aD8dB76D9147F64E61adc126e96", deploy_block=4_500_000,
           symbol="WETH", token="0x7b79995e5f793A07Bc00c21412e50Ecae098E7f9", decimals=18),
        _c("cUSDCv3", ZERO_ADDRESS, symbol="USDC", decimals=6),
        _c("rewards", ZERO_ADDRESS, kind="rewards"),
    ),
)

ETHEREUM_MAINNET = Network(
    key="ETHEREUM_MAINNET", chain_id=1, name="Ethereum Mainnet",
    explorer_url="https://etherscan.io",
    contracts=(
        _c("cUSDCv3", "0xc3d688B66703497DAA19211EEdff47f25384cdc3", deploy_block=15_331_586,
           symbol="USDC", token="0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", decimals=6),
        _c("cWETHv3", "0xA17581A9E3356d9A858b789D68B4d866e593aE94", deploy_block=18_040_181,
           symbol="WETH", token="0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2", decimals=18),
        _c("cUSDTv3", "0x3Afdc9BCA9213A35503b077a6072F3D0d5AB0840", deploy_block=19_297_761,
           symbol="USDT", token="0xdAC17F958D2ee523a2206206994597C13D831ec7", decimals=6),
        # CometRewards shipped alongside cUSDCv3
        _c("rewards", "0x1B0e765F6224C21223AeA2af16c1C46E38885a40", kind="rewards", deploy_block=15_331_586),
    ),
)

NETWORKS: dict[str, Network] = {n.key: n for n in (SEPOLIA, ETHEREUM_MAINNET)}

def get_network(key: str) -> Network:
    try:
        return NETWORKS[key.upper()]
    except KeyError:
        raise KeyError(f"unknown network {key!r}; expected one of {sorted(NETWORKS)}") from None
