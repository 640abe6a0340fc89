"""Process entrypoint: run the app under uvicorn and kill running jobs on SIGINT/SIGTERM."""

import asyncio
import logging
import os
from typing import Optional

import uvicorn

logger = logging.getLogger("clipper.server")


class ClipperServer(uvicorn.Server):
    def __init__(self, config: uvicorn.Config, registry=None) -> None:
        super().__init__(config)
        self.registry = registry
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    async def serve(self, sockets=None) -> None:
        self.loop = asyncio.get_running_loop()
        await super().serve(sockets=sockets)

    def _cancel_jobs(self) -> None:
        registry = self.registry
        if registry is None:
            from .main import REGISTRY as registry

        registry.cancel_all()

    def handle_exit(self, sig, frame) -> None:
        # uvicorn waits for open requests before lifespan shutdown; jobs must die first.
        # The handler may interrupt a frame holding the registry lock, so defer to the loop.
        logger.info("Signal %s received, cancelling active jobs...", sig)
        loop = self.loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._cancel_jobs)
        super().handle_exit(sig, frame)


def main() -> None:
    config = uvicorn.Config(
        "clipper.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "5000")),
    )
    ClipperServer(config).run()


if __name__ == "__main__":
    main()
