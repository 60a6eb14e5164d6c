import argparse
import asyncio
import logging
import signal
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text

from nodewatch import __version__ as NODEWATCH_VERSION
from nodewatch.config import NodeConfig
from nodewatch.models import ErrorSignal, LifecycleChanged, Update
from nodewatch.services.lifecycle import LifecycleController
from nodewatch.services.logs import LogBuffer
from nodewatch.services.process import GethProcess
from nodewatch.state import ClientState

logger = logging.getLogger(__name__)
geth_logger = logging.getLogger("nodewatch.geth")

STATE_STYLES = {
    "connected": "bold green",
    "started": "green",
    "starting": "yellow",
    "connecting": "yellow",
    "disconnected": "red",
    "stopping": "yellow",
    "stopped": "dim",
}


class NodeMonitor:
    """Console front end: mirrors controller updates into ClientState and prints them."""

    def __init__(self, config: NodeConfig, console: Optional[Console] = None) -> None:
        self.config = config
        self.console = console or Console()
        self.state = ClientState()
        self.logs = LogBuffer()
        self.node = GethProcess(config)
        self.controller = LifecycleController(self.node, self.dispatch)
        self.node.on("log", self._on_log)

    def dispatch(self, update: Update) -> None:
        self.state.apply(update)
        if isinstance(update, ErrorSignal):
            self.console.print(Text(f"error ({update.source}): {update.error}", style="bold red"))
            return
        style = STATE_STYLES.get(self.state.state.value, "")
        if isinstance(update, LifecycleChanged):
            style = f"{style} reverse".strip()
        self.console.print(Text(self.state.summary(), style=style))

    def _on_log(self, line: str) -> None:
        self.logs.append(line)
        geth_logger.debug(line)

    async def run(self) -> int:
        stop_event = asyncio.Event()
        loop = asyncio.get_event_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                pass
        if not await self.controller.start(self.config):
            logger.error("Could not start %s", self.config.binary)
            return 1
        self.node.on("stopped", stop_event.set)
        await stop_event.wait()
        self.node.remove_listener("stopped", stop_event.set)
        await self.controller.stop()
        for line in self.logs.tail_lines(10):
            self.console.print(Text(line, style="dim"))
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nodewatch", description="Run and watch a geth node.")
    parser.add_argument("--conf", help="path to node.conf")
    parser.add_argument("--network", help="main, sepolia, holesky or dev")
    parser.add_argument("--syncmode", help="snap or full")
    parser.add_argument("--datadir", help="geth data directory")
    parser.add_argument("--geth", help="path to the geth binary")
    parser.add_argument("-v", "--verbose", action="store_true", help="show debug logs and geth output")
    parser.add_argument("--version", action="version", version=f"nodewatch {NODEWATCH_VERSION}")
    return parser


def config_from_args(args: argparse.Namespace) -> NodeConfig:
    config = NodeConfig.load(args.conf)
    if args.network:
        config.network = args.network
    if args.syncmode:
        config.sync_mode = args.syncmode
    if args.datadir:
        config.data_dir = args.datadir
    if args.geth:
        config.binary = args.geth
    return config


def run(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )
    monitor = NodeMonitor(config_from_args(args))
    return asyncio.run(monitor.run())
