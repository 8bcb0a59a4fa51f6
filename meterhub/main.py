import os
import sys
import signal
import argparse
import asyncio
import logging
from pathlib import Path

from meterhub.app import MeterHubApp
from meterhub.config import HubConfig
from meterhub.config_manager import ConfigurationManager
from meterhub.errors import ConfigurationError, ExitCode
from meterhub.probe import probe_meter

log = logging.getLogger(__name__)


def _resolve_config_path(cli_path: str | None) -> Path:
    """
    Resolve config path with the following precedence:
    1) CLI: --config /path/to/config.yaml
    2) ENV: METERHUB_CONFIG=/path/to/config.yaml
    3) Default: <project_root>/config.yaml  (parent of the 'meterhub' package dir)
    """
    if cli_path:
        return Path(cli_path).expanduser().resolve()

    env = os.getenv("METERHUB_CONFIG")
    if env:
        return Path(env).expanduser().resolve()

    return Path(__file__).resolve().parents[1] / "config.yaml"


def load_config(path: str | Path) -> tuple[HubConfig, ConfigurationManager]:
    config_manager = ConfigurationManager(str(Path(path).expanduser().resolve()))
    cfg = config_manager.load_config()
    log.info(f"Configuration loaded - {len(cfg.devices.nodes)} nodes, gateway {cfg.gateway.host}:{cfg.gateway.port}")
    return cfg, config_manager


async def amain(cfg_path: str | Path | None) -> int:
    try:
        cfg, config_manager = load_config(_resolve_config_path(str(cfg_path) if cfg_path else None))
        app = MeterHubApp(cfg, config_manager)
    except ConfigurationError as e:
        log.error(f"Startup failed: {e}")
        return int(e.exit_code)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, app.stop)
        except NotImplementedError:
            # Windows event loop
            pass

    try:
        return await app.run()
    except Exception as e:
        log.error(f"Fatal error in application: {e}", exc_info=True)
        return int(ExitCode.STARTUP_FAILURE)


async def aprobe(cfg_path: str | Path | None, address: int) -> int:
    cfg, _ = load_config(_resolve_config_path(str(cfg_path) if cfg_path else None))
    password = None
    for node in cfg.devices.nodes:
        if node.addr == address:
            password = node.password_bytes()
            break
    result = await probe_meter(cfg.gateway, address, password) if password else await probe_meter(cfg.gateway, address)
    print(result.summary())
    return int(ExitCode.OK) if result.reachable else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Polling agent for SET-4TM / Mercury meters behind a TCP gateway")
    parser.add_argument(
        "--config",
        help="Path to config.yaml (overrides METERHUB_CONFIG and default).",
        required=False,
    )
    parser.add_argument(
        "--probe",
        metavar="ADDR",
        type=int,
        help="Identify the meter at this address (serial number, coefficients, variant) and exit.",
    )
    args = parser.parse_args()

    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    try:
        if args.probe is not None:
            code = asyncio.run(aprobe(args.config, args.probe))
        else:
            code = asyncio.run(amain(args.config))
    except ConfigurationError as e:
        log.error(f"Startup failed: {e}")
        code = int(e.exit_code)
    except KeyboardInterrupt:
        log.info("Application interrupted by user")
        code = int(ExitCode.OK)
    sys.exit(code)


if __name__ == "__main__":
    main()
