"""Entry point for the data wallet service.

Usage::

    python -m datawallet serve   # run poller, workers, sweep and API
    python -m datawallet check   # test mail source, content store and ledger
"""

from __future__ import annotations

import asyncio
import sys


async def _check() -> int:
    from .config import ServiceConfig
    from .logging import setup_logging
    from .service import DataWalletService

    config = ServiceConfig()
    setup_logging(json=config.log_json, level=config.log_level)
    service = DataWalletService(config)
    await service.start()
    try:
        results = await service.check_connections()
    finally:
        await service.stop()
    return 0 if all(results.values()) else 1


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in ("serve", "check"):
        print("Usage: python -m datawallet <serve|check>", file=sys.stderr)
        sys.exit(1)

    if sys.argv[1] == "serve":
        from .config import ServiceConfig
        from .service import DataWalletService

        service = DataWalletService(ServiceConfig())
        asyncio.run(service.run())
    else:
        sys.exit(asyncio.run(_check()))


if __name__ == "__main__":
    main()
