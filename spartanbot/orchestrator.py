"""
SpartanBot Orchestrator: wires the registry, market gateway, chain source and
spot strategy together and runs them.

Usage:
    python -m spartanbot [--config path/to/spartanbot.yaml] [--memory] run [--once]
    python -m spartanbot add-provider --type MiningRigRentals --api-key K --api-secret S
    python -m spartanbot list-providers
    python -m spartanbot remove-provider UID
    python -m spartanbot rent HASHRATE_MH DURATION_SECONDS [--yes]
"""
import argparse
import asyncio
import logging
import signal as sig
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

from .bot import SpartanBot
from .errors import SpartanBotError, describe
from .events import EventBus
from .market.chain import build_chain_source
from .market.gateway import MarketCredentials, MarketDataGateway
from .providers.base import RentalPlan
from .strategies.spot_rental import ProfitabilityResult, SpotRentalStrategy

logger = logging.getLogger("spartan.orchestrator")

DEFAULT_CONFIG_PATH = "spartanbot/config/spartanbot.yaml"


class SpartanOrchestrator:
    """Owns one SpartanBot and its spot strategy for the lifetime of the process."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_PATH, memory: Optional[bool] = None):
        self.config = self._load_config(config_path)
        self._setup_logging()

        bot_settings = dict(self.config.get('bot') or {})
        if memory is not None:
            bot_settings['memory'] = memory

        self.event_bus = EventBus()
        self.bot = SpartanBot(bot_settings, event_bus=self.event_bus)
        self.gateway = MarketDataGateway(MarketCredentials.from_env(), self.config.get('market') or {})
        self.chain_source = build_chain_source(
            self.config.get('chain') or {}, owned_hashrate_mh=self.bot.get_active_hashrate,
        )
        self.strategy = SpotRentalStrategy(
            self.gateway, self.chain_source, sink=self.event_bus,
            config=self.config.get('strategy') or {},
        )
        self._loaded = False

    def _load_config(self, path: str) -> dict:
        config_file = Path(path)
        if not config_file.exists():
            # Look relative to this file
            config_file = Path(__file__).parent / "config" / "spartanbot.yaml"
        if config_file.exists():
            with open(config_file) as f:
                return yaml.safe_load(f) or {}
        logger.warning(f"Config not found at {path}, using defaults")
        return {}

    def _setup_logging(self):
        log_cfg = self.config.get('logging') or {}
        log_level = str(log_cfg.get('level', 'INFO')).upper()
        log_file = log_cfg.get('file', 'logs/spartanbot.log')

        spartan_logger = logging.getLogger("spartan")
        spartan_logger.setLevel(getattr(logging, log_level, logging.INFO))

        if not spartan_logger.handlers:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            fh = logging.FileHandler(log_path)
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(logging.Formatter(
                '%(asctime)s | %(name)-20s | %(levelname)-5s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S',
            ))
            spartan_logger.addHandler(fh)

            ch = logging.StreamHandler()
            ch.setLevel(getattr(logging, log_level, logging.INFO))
            ch.setFormatter(logging.Formatter(
                '%(asctime)s | %(name)-20s | %(levelname)-5s | %(message)s',
                datefmt='%H:%M:%S',
            ))
            spartan_logger.addHandler(ch)

    async def load(self):
        if not self._loaded:
            await self.bot.load()
            self._loaded = True

    async def run_once(self) -> ProfitabilityResult:
        """One profitability check; a triggered rental completes before returning."""
        await self.load()
        return await self.strategy.check_profitability()

    async def start(self):
        """Restore state and run the spot strategy until stopped."""
        await self.load()

        logger.info("=" * 60)
        logger.info("  SPARTANBOT | spot hashrate rental")
        logger.info(f"  Providers: {len(self.bot.get_rental_providers())} | "
                    f"Storage: {'memory' if self.bot.memory else 'disk'}")
        logger.info("=" * 60)

        task = self.strategy.start()
        try:
            await asyncio.gather(task, return_exceptions=True)
        except asyncio.CancelledError:
            logger.info("Orchestrator shutting down...")
        finally:
            await self.stop()

    async def stop(self):
        await self.strategy.stop()
        await self.bot.close()
        stats = self.strategy.get_stats()
        logger.info(
            f"SpartanBot stopped: {stats['checks']} checks, {stats['triggers']} triggers, "
            f"{stats['errors']} errors, {len(self.bot.get_rentals())} rentals"
        )


def _confirm_on_terminal(plan: RentalPlan) -> bool:
    answer = input(
        f"Rent {plan.hashrate:.2f} MH/s for {plan.duration}s on {plan.provider_type} "
        f"({plan.provider_uid}) for {plan.price} BTC? (y/n): "
    )
    return answer.strip().lower() == 'y'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="spartanbot", description="Profitability-driven hashrate rental")
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH, help='Config file path')
    parser.add_argument('--memory', action='store_true', default=None,
                        help='Run in memory only (no snapshot read/write)')
    sub = parser.add_subparsers(dest='command')

    run = sub.add_parser('run', help='Run the spot rental loop (default)')
    run.add_argument('--once', action='store_true', help='Single profitability check')

    add = sub.add_parser('add-provider', help='Set up a rental provider')
    add.add_argument('--type', required=True)
    add.add_argument('--api-key', required=True)
    add.add_argument('--api-secret', required=True)
    add.add_argument('--name', default='')
    add.add_argument('--profile-id', default=None)

    sub.add_parser('list-providers', help='List configured rental providers')

    remove = sub.add_parser('remove-provider', help='Delete a rental provider by uid')
    remove.add_argument('uid')

    rent = sub.add_parser('rent', help='Manual rental')
    rent.add_argument('hashrate', type=float, help='MH/s')
    rent.add_argument('duration', type=int, help='seconds')
    rent.add_argument('--yes', action='store_true', help='Skip confirmation')
    return parser


async def _run_command(orchestrator: SpartanOrchestrator, args) -> int:
    bot = orchestrator.bot
    command = args.command or 'run'

    if command == 'run':
        if args.once:
            try:
                result = await orchestrator.run_once()
            except SpartanBotError as e:
                logger.error(describe(e))
                return 1
            finally:
                await orchestrator.stop()
            print(f"profitable={result.is_profitable} amount={result.amount:.0f} H/s "
                  f"return={result.expected_return:.4f} cost={result.cost:.4f}")
            return 0
        loop = asyncio.get_running_loop()
        for s in (sig.SIGINT, sig.SIGTERM):
            loop.add_signal_handler(s, orchestrator.strategy.request_stop)
        await orchestrator.start()
        return 0

    await orchestrator.load()
    try:
        if command == 'add-provider':
            settings = {"type": args.type, "api_key": args.api_key, "api_secret": args.api_secret,
                        "name": args.name}
            if args.profile_id:
                settings["profile_id"] = args.profile_id
            result = await bot.setup_rental_provider(settings)
            print(result.message + (f" (uid {result.uid})" if result.success else ""))
            return 0 if result.success else 1
        if command == 'list-providers':
            for provider in bot.get_rental_providers():
                print(f"{provider.get_uid()}  {provider.get_type()}  {provider.name}")
            return 0
        if command == 'remove-provider':
            print(bot.delete_rental_provider(args.uid).message)
            return 0
        if command == 'rent':
            confirm = None if args.yes else _confirm_on_terminal
            receipt = await bot.manual_rental(args.hashrate, args.duration, confirm)
            print(f"Rented {receipt.hashrate:.2f} MH/s on {receipt.provider_uid} "
                  f"for {receipt.cost} BTC: {', '.join(receipt.rental_ids)}")
            return 0
    except SpartanBotError as e:
        logger.error(describe(e))
        return 1
    finally:
        await bot.close()
    return 2


async def main(argv=None) -> int:
    """Entry point for ``python -m spartanbot``."""
    load_dotenv()
    args = build_parser().parse_args(argv)
    orchestrator = SpartanOrchestrator(config_path=args.config, memory=args.memory)
    return await _run_command(orchestrator, args)


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
