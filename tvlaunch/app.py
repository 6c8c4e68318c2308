"""tvlaunch entry: validate config, set up logging, run the power-on detector."""
from __future__ import annotations
import asyncio, logging, sys
import contextlib
import signal
from typing import Callable, Optional, Sequence

from .config import Config
from .errors import BindError, ConfigError
from .orchestrator.app import main as orchestrator_main

LOG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)-5s %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

def setup_logging(cfg: Config) -> logging.Logger:
    """Configure the root handler from cfg and return the package logger."""
    logging.basicConfig(level=cfg.log_level, format=LOG_FORMAT, datefmt=LOG_DATEFMT, stream=sys.stdout, force=True)
    # httpx logs every request at INFO; one per trigger is noise next to ours.
    logging.getLogger("httpx").setLevel(max(logging.WARNING, logging.getLogger().level))
    return logging.getLogger("tvlaunch")

def _loop_factory() -> Optional[Callable[[], asyncio.AbstractEventLoop]]:
    if sys.platform == "win32":
        # The wake listener needs add_reader(), which the proactor loop lacks.
        return asyncio.SelectorEventLoop
    try:
        import uvloop as _uvloop  # type: ignore
    except ImportError:
        return None
    return _uvloop.new_event_loop

async def run(cfg: Config) -> None:
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(Exception):
            asyncio.get_running_loop().add_signal_handler(sig, stop.set)
    await orchestrator_main(cfg, stop)

def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        cfg = Config.load(argv)
    except ConfigError as exc:
        print(f"tvlaunch: error: {exc}", file=sys.stderr)
        return 2

    log = setup_logging(cfg)
    try:
        with asyncio.Runner(loop_factory=_loop_factory()) as runner:
            runner.run(run(cfg))
    except BindError as exc:
        log.error("cannot listen for wake datagrams: %s", exc)
        return 1
    except ConfigError as exc:
        log.error("%s", exc)
        return 2
    except KeyboardInterrupt:
        pass
    return 0

def cli() -> None:
    sys.exit(main())

if __name__ == "__main__":
    cli()
