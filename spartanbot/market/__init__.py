"""Market and chain inputs for the spot rental strategy."""
from .chain import ChainState, RpcChainSource, StaticChainSource, build_chain_source
from .gateway import MarketCredentials, MarketDataGateway, MarketSnapshot

__all__ = [
    "ChainState",
    "RpcChainSource",
    "StaticChainSource",
    "build_chain_source",
    "MarketCredentials",
    "MarketDataGateway",
    "MarketSnapshot",
]
