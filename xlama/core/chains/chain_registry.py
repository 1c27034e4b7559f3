from __future__ import annotations

from typing import Dict, List, Optional

from xlama.core.structures.structures import Chain, ChainFamily
from xlama.logging.logger import get_logger

log = get_logger(__name__)


def _evm(chain_index: str, name: str, short_name: str, native_symbol: str, native_name: str, rpc_url: str,
         explorer_url: str, is_primary: bool = False) -> Chain:
    return Chain(
        chain_index=chain_index,
        chain_id=int(chain_index),
        name=name,
        short_name=short_name,
        native_symbol=native_symbol,
        native_name=native_name,
        native_decimals=18,
        family=ChainFamily.EVM,
        rpc_urls=(rpc_url,),
        explorer_url=explorer_url,
        is_primary=is_primary,
    )


def _non_evm(chain_index: str, name: str, family: ChainFamily, native_symbol: str, native_name: str,
             native_decimals: int, rpc_url: str, explorer_url: str) -> Chain:
    return Chain(
        chain_index=chain_index,
        chain_id=None,
        name=name,
        short_name=name,
        native_symbol=native_symbol,
        native_name=native_name,
        native_decimals=native_decimals,
        family=family,
        rpc_urls=(rpc_url,),
        explorer_url=explorer_url,
    )


SUPPORTED_CHAINS: List[Chain] = [
    _evm("196", "X Layer", "X Layer", "OKB", "OKB", "https://rpc.xlayer.tech",
         "https://www.okx.com/web3/explorer/xlayer", is_primary=True),
    _evm("1", "Ethereum", "ETH", "ETH", "Ether", "https://eth.llamarpc.com", "https://etherscan.io"),
    _evm("8453", "Base", "Base", "ETH", "Ether", "https://mainnet.base.org", "https://basescan.org"),
    _evm("137", "Polygon", "Polygon", "MATIC", "MATIC", "https://polygon-rpc.com", "https://polygonscan.com"),
    _evm("42161", "Arbitrum One", "Arbitrum", "ETH", "Ether", "https://arb1.arbitrum.io/rpc", "https://arbiscan.io"),
    _evm("10", "Optimism", "OP", "ETH", "Ether", "https://mainnet.optimism.io", "https://optimistic.etherscan.io"),
    _evm("56", "BNB Smart Chain", "BSC", "BNB", "BNB", "https://bsc-dataseed.binance.org", "https://bscscan.com"),
    _evm("43114", "Avalanche C-Chain", "Avalanche", "AVAX", "Avalanche", "https://api.avax.network/ext/bc/C/rpc",
         "https://snowtrace.io"),
    _evm("324", "zkSync Era", "zkSync", "ETH", "Ether", "https://mainnet.era.zksync.io", "https://explorer.zksync.io"),
    _evm("59144", "Linea", "Linea", "ETH", "Ether", "https://rpc.linea.build", "https://lineascan.build"),
    _evm("250", "Fantom Opera", "Fantom", "FTM", "Fantom", "https://rpc.ftm.tools", "https://ftmscan.com"),
    _evm("25", "Cronos", "Cronos", "CRO", "Cronos", "https://evm.cronos.org", "https://cronoscan.com"),
    _evm("5000", "Mantle", "Mantle", "MNT", "Mantle", "https://rpc.mantle.xyz", "https://explorer.mantle.xyz"),
    _evm("534352", "Scroll", "Scroll", "ETH", "Ether", "https://rpc.scroll.io", "https://scrollscan.com"),
    _evm("81457", "Blast", "Blast", "ETH", "Ether", "https://rpc.blast.io", "https://blastscan.io"),
    _evm("169", "Manta Pacific", "Manta", "ETH", "Ether", "https://pacific-rpc.manta.network/http",
         "https://pacific-explorer.manta.network"),
    _evm("1088", "Metis", "Metis", "METIS", "Metis", "https://andromeda.metis.io/?owner=1088",
         "https://andromeda-explorer.metis.io"),
    _evm("1101", "Polygon zkEVM", "zkEVM", "ETH", "Ether", "https://zkevm-rpc.com", "https://zkevm.polygonscan.com"),
    _evm("146", "Sonic", "Sonic", "S", "Sonic", "https://rpc.soniclabs.com", "https://sonicscan.org"),
    _evm("100", "Gnosis", "Gnosis", "xDAI", "xDAI", "https://rpc.gnosischain.com", "https://gnosisscan.io"),
    _evm("42220", "Celo", "Celo", "CELO", "Celo", "https://forno.celo.org", "https://celoscan.io"),
    _non_evm("501", "Solana", ChainFamily.SOLANA, "SOL", "Solana", 9, "https://api.mainnet-beta.solana.com",
             "https://explorer.solana.com"),
    _non_evm("195", "Tron", ChainFamily.TRON, "TRX", "Tron", 6, "https://api.trongrid.io", "https://tronscan.org"),
    _non_evm("784", "Sui", ChainFamily.SUI, "SUI", "Sui", 9, "https://fullnode.mainnet.sui.io", "https://suiscan.xyz"),
    _non_evm("607", "TON", ChainFamily.TON, "TON", "Toncoin", 9, "https://toncenter.com/api/v2", "https://tonscan.org"),
]

_CHAINS_BY_INDEX: Dict[str, Chain] = {chain.chain_index: chain for chain in SUPPORTED_CHAINS}
_CHAINS_BY_ID: Dict[int, Chain] = {chain.chain_id: chain for chain in SUPPORTED_CHAINS if chain.chain_id is not None}


def get_chain_by_index(chain_index: str) -> Optional[Chain]:
    chain = _CHAINS_BY_INDEX.get(str(chain_index).strip())
    if chain is None:
        log.debug("[CHAINS][RESOLVE] Unknown chain index '%s'", chain_index)
    return chain


def get_chain_by_chain_id(chain_id: int) -> Optional[Chain]:
    return _CHAINS_BY_ID.get(int(chain_id))


def get_primary_chain() -> Chain:
    for chain in SUPPORTED_CHAINS:
        if chain.is_primary:
            return chain
    return SUPPORTED_CHAINS[0]


def get_evm_chains() -> List[Chain]:
    return [chain for chain in SUPPORTED_CHAINS if chain.is_evm]


def get_non_evm_chains() -> List[Chain]:
    return [chain for chain in SUPPORTED_CHAINS if not chain.is_evm]


def chain_family_for_index(chain_index: str) -> ChainFamily:
    """Family of a chain index; unknown indices are treated as EVM, like numeric chain ids."""
    chain = _CHAINS_BY_INDEX.get(str(chain_index).strip())
    return chain.family if chain is not None else ChainFamily.EVM
