"""
Chain state inputs for the profitability computation.

The strategy never reads ambient chain state; it is handed a ChainState built
by one of these sources.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import aiohttp

from ..errors import ConfigurationError, MarketDataError

logger = logging.getLogger("spartan.chain")

MH = 1_000_000


@dataclass(frozen=True)
class ChainState:
    difficulty: float                 # current network difficulty
    target_difficulty: float          # difficulty the rented share is sized against
    current_owned_hashrate: float = 0.0   # H/s already pointed at our pool
    target_block_time: float = 40.0   # seconds


class StaticChainSource:
    """Chain state from configuration, for dry runs and tests."""

    def __init__(self, config: Optional[dict] = None,
                 owned_hashrate_mh: Optional[Callable[[], float]] = None):
        cfg = config or {}
        self.difficulty = float(cfg.get('difficulty', 0))
        self.target_difficulty = float(cfg.get('target_difficulty', self.difficulty))
        self.target_block_time = float(cfg.get('target_block_time', 40))
        self._owned_hashrate_mh = owned_hashrate_mh

    async def get_state(self) -> ChainState:
        owned = self._owned_hashrate_mh() * MH if self._owned_hashrate_mh else 0.0
        return ChainState(
            difficulty=self.difficulty,
            target_difficulty=self.target_difficulty,
            current_owned_hashrate=owned,
            target_block_time=self.target_block_time,
        )


class RpcChainSource:
    """Reads difficulty from a full node over JSON-RPC (``getdifficulty``).

    The node only exposes the current difficulty, so it is also used as the
    target difficulty unless ``target_difficulty`` is pinned in config.
    """

    def __init__(self, config: dict, owned_hashrate_mh: Optional[Callable[[], float]] = None):
        self.url = config.get('rpc_url')
        if not self.url:
            raise ConfigurationError("chain.rpc_url is required for the rpc chain source")
        self.user = config.get('rpc_user', '')
        self.password = config.get('rpc_password', '')
        self.target_block_time = float(config.get('target_block_time', 40))
        self.pinned_target = config.get('target_difficulty')
        self._owned_hashrate_mh = owned_hashrate_mh
        self._request_id = 0

    async def _call(self, method: str, *params):
        self._request_id += 1
        body = {"jsonrpc": "1.0", "id": self._request_id, "method": method, "params": list(params)}
        auth = aiohttp.BasicAuth(self.user, self.password) if self.user else None
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10)) as session:
                async with session.post(self.url, json=body, auth=auth) as resp:
                    if resp.status != 200:
                        text = await resp.text()
                        raise MarketDataError(f"Chain RPC {method} {resp.status}: {text[:200]}")
                    data = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise MarketDataError(f"Chain RPC {method} failed: {e}") from e
        if data.get("error"):
            raise MarketDataError(f"Chain RPC {method} error: {data['error']}")
        return data.get("result")

    async def get_state(self) -> ChainState:
        difficulty = float(await self._call("getdifficulty"))
        target = float(self.pinned_target) if self.pinned_target is not None else difficulty
        owned = self._owned_hashrate_mh() * MH if self._owned_hashrate_mh else 0.0
        logger.debug(f"Chain difficulty={difficulty} target={target} owned={owned:.0f} H/s")
        return ChainState(
            difficulty=difficulty,
            target_difficulty=target,
            current_owned_hashrate=owned,
            target_block_time=self.target_block_time,
        )


def build_chain_source(config: Optional[dict] = None,
                       owned_hashrate_mh: Optional[Callable[[], float]] = None):
    cfg = config or {}
    source = cfg.get('source', 'static')
    if source == 'rpc':
        return RpcChainSource(cfg, owned_hashrate_mh)
    if source == 'static':
        return StaticChainSource(cfg, owned_hashrate_mh)
    raise ConfigurationError(f"Unknown chain source: {source!r}")
