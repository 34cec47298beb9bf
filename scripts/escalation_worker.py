from __future__ import annotations

import asyncio

from willguard.core.logging import configure_logging
from willguard.services.scheduler import run_scheduler_loop


async def _main() -> None:
    # Standalone scan loop for deployments without the arq worker.
    configure_logging()
    await run_scheduler_loop()


if __name__ == "__main__":
    asyncio.run(_main())
