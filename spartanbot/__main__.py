"""Allow running as: python -m spartanbot"""
import asyncio

from spartanbot.orchestrator import main


def cli():
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
