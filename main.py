"""storyloom launcher. Runs the task scheduler, optionally with the admin API and admin MCP server."""

import argparse
import asyncio
import logging
import os
import signal
from contextlib import AsyncExitStack
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")


async def serve(args: argparse.Namespace) -> None:
    from storyloom.app import build_services, open_platforms
    from storyloom.config import load_config

    config = load_config(args.config)
    if args.data_dir:
        config = config.model_copy(update={"data_dir": args.data_dir})
    async with AsyncExitStack() as stack:
        platforms = await open_platforms(config, stack)
        services = build_services(config, platforms=platforms)
        await _run(args, config, services)


async def _run(args, config, services) -> None:
    from storyloom import mcp_server
    from storyloom.api import create_app

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    jobs = [services.scheduler.run(stop)]
    if args.admin:
        import uvicorn

        app = create_app(services.storage, services.tracker)
        server = uvicorn.Server(uvicorn.Config(
            app, host=config.admin.host, port=config.admin.port, log_level=args.log_level.lower(),
        ))

        async def admin() -> None:
            # uvicorn handles SIGINT itself while serving; either side stopping stops both
            serving = asyncio.create_task(server.serve())
            stopping = asyncio.create_task(stop.wait())
            await asyncio.wait({serving, stopping}, return_when=asyncio.FIRST_COMPLETED)
            stop.set()
            server.should_exit = True
            await serving
            stopping.cancel()

        jobs.append(admin())

    if args.mcp:
        mcp_server.configure(services.storage, services.tracker)

        async def mcp_admin() -> None:
            serving = asyncio.create_task(mcp_server.mcp.run_stdio_async())
            stopping = asyncio.create_task(stop.wait())
            await asyncio.wait({serving, stopping}, return_when=asyncio.FIRST_COMPLETED)
            serving.cancel()
            stopping.cancel()
            await asyncio.gather(serving, stopping, return_exceptions=True)

        jobs.append(mcp_admin())

    await asyncio.gather(*jobs)


def main():
    parser = argparse.ArgumentParser(description="storyloom narrative scheduler")
    parser.add_argument("--config", type=Path, default=Path("storyloom.json"),
                        help="Config file (default: ./storyloom.json)")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (overrides config)")
    parser.add_argument("--admin", action="store_true",
                        help="Also serve the admin HTTP API")
    parser.add_argument("--mcp", action="store_true",
                        help="Also serve the admin MCP tools on stdin/stdout")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(serve(args))


if __name__ == "__main__":
    main()
