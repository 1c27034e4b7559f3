from typing import Dict

from xlama.configuration.config import settings

BASE_URL: str = settings.DEFILLAMA_BASE_URL.rstrip("/")
CURRENT_PRICES_ENDPOINT: str = f"{BASE_URL}/prices/current"
HISTORICAL_PRICES_ENDPOINT: str = f"{BASE_URL}/prices/historical"
HTTP_TIMEOUT_SECONDS: float = 12.0
COINGECKO_PREFIX: str = "coingecko:"

# Lowercase ticker -> CoinGecko id, network-suffixed variants included
TICKER_TO_COINGECKO_ID: Dict[str, str] = {
    # Majors
    "btc": "bitcoin",
    "eth": "ethereum",
    "sol": "solana",
    "xrp": "ripple",
    "ada": "cardano",
    "doge": "dogecoin",
    "dot": "polkadot",
    "matic": "polygon",
    "ltc": "litecoin",
    "link": "chainlink",
    "atom": "cosmos",
    "xlm": "stellar",
    "trx": "tron",
    "xmr": "monero",
    "etc": "ethereum-classic",
    "bch": "bitcoin-cash",
    "eos": "eos",
    "xtz": "tezos",
    "algo": "algorand",
    "vet": "vechain",
    "fil": "filecoin",
    "theta": "theta-token",
    "hbar": "hedera-hashgraph",
    "icp": "internet-computer",
    "near": "near",
    "ftm": "fantom",
    "flow": "flow",
    "egld": "elrond-erd-2",
    "xec": "ecash",
    "neo": "neo",
    "zec": "zcash",
    "dash": "dash",
    "waves": "waves",
    "kava": "kava",
    "ksm": "kusama",
    "zil": "zilliqa",
    "enj": "enjincoin",
    "bat": "basic-attention-token",
    "qtum": "qtum",
    "ont": "ontology",
    "icx": "icon",
    "dcr": "decred",
    "sc": "siacoin",
    "zen": "horizen",
    "rvn": "ravencoin",
    "dgb": "digibyte",
    "okb": "okb",
    # Network variants
    "avaxc": "avalanche-2",
    "avax": "avalanche-2",
    "bnbmainnet": "binancecoin",
    "bnb": "binancecoin",
    "bnbbsc": "binancecoin",
    "maticmainnet": "polygon",
    "maticpolygon": "polygon",
    # Stablecoins
    "usdterc20": "tether",
    "usdttrc20": "tether",
    "usdtbsc": "tether",
    "usdtsol": "tether",
    "usdtpolygon": "tether",
    "usdt": "tether",
    "usdcerc20": "usd-coin",
    "usdcsol": "usd-coin",
    "usdcpolygon": "usd-coin",
    "usdc": "usd-coin",
    "dai": "dai",
    "busd": "binance-usd",
    "tusd": "true-usd",
    "usdp": "paxos-standard",
    "frax": "frax",
    # DeFi and layer 2
    "uni": "uniswap",
    "aave": "aave",
    "mkr": "maker",
    "snx": "havven",
    "comp": "compound-governance-token",
    "crv": "curve-dao-token",
    "sushi": "sushi",
    "yfi": "yearn-finance",
    "ldo": "lido-dao",
    "arb": "arbitrum",
    "op": "optimism",
    "apt": "aptos",
    "sui": "sui",
    "sei": "sei-network",
    "inj": "injective-protocol",
    "ton": "the-open-network",
    # Meme
    "shib": "shiba-inu",
    "pepe": "pepe",
    "floki": "floki",
    "bonk": "bonk",
    "wif": "dogwifcoin",
    # Gaming
    "sand": "the-sandbox",
    "mana": "decentraland",
    "axs": "axie-infinity",
    "gala": "gala",
    "imx": "immutable-x",
    "ape": "apecoin",
    # AI and data
    "rndr": "render-token",
    "grt": "the-graph",
    "ocean": "ocean-protocol",
    "fet": "fetch-ai",
    "agix": "singularitynet",
    # Infrastructure
    "qnt": "quant-network",
    "stx": "blockstack",
    "rune": "thorchain",
    "rose": "oasis-network",
    "mina": "mina-protocol",
    "kas": "kaspa",
}
