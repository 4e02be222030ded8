"""
Command line entry point.

    device-dna --target PC001 --username admin --tenant-id contoso.onmicrosoft.com \
        --client-id ... --certificate app.pem --skip group_policy

Every option can also come from DEVICEDNA_* environment variables.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from ._types import PHASE_IDENTITY
from .collector import DeviceCollector
from .config import CollectorConfig, VALID_SKIP_CATEGORIES, load_config
from .exceptions import AuthenticationError, ConfigurationError, IdentityUnresolvedError
from .graph.gateway import RequestGateway
from .graph.session import GraphSession
from .issues import CollectionContext
from .probes.executor import ProbeTarget, create_runner
from .report import JsonReportWriter
from .utils import setup_logging

logger = logging.getLogger(__name__)


# Application permissions the Intune track reads with
REQUIRED_SCOPES = (
    "Device.Read.All",
    "DeviceManagementManagedDevices.Read.All",
    "DeviceManagementConfiguration.Read.All",
    "DeviceManagementApps.Read.All",
    "GroupMember.Read.All",
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="device-dna",
        description="Collect the management posture of a Windows device",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    target = parser.add_argument_group("target")
    target.add_argument("--device-name", help="Device display name (default: target hostname)")
    target.add_argument("--target", dest="target_host", help="Machine to probe (default: localhost)")
    target.add_argument("--port", dest="winrm_port", type=int, help="WinRM port")
    target.add_argument("--username", dest="winrm_username", help="WinRM username")
    target.add_argument("--password", dest="winrm_password", help="WinRM password")
    target.add_argument("--ssl", dest="winrm_use_ssl", action="store_true", default=None, help="Use WinRM over HTTPS")
    target.add_argument("--transport", dest="winrm_transport", help="WinRM transport (default: ntlm)")

    graph = parser.add_argument_group("microsoft graph")
    graph.add_argument("--tenant-id", help="Entra tenant id or domain")
    graph.add_argument("--client-id", help="App registration client id")
    graph.add_argument("--client-secret", help="App client secret")
    graph.add_argument("--certificate", dest="certificate_path", type=Path, help="PEM with key and certificate")
    graph.add_argument("--access-token", help="Pre-acquired Graph bearer token")

    run = parser.add_argument_group("run")
    run.add_argument("--output-dir", type=Path, help="Report directory (default: ./output)")
    run.add_argument(
        "--skip",
        action="append",
        metavar="CATEGORY",
        help=f"Skip a collection category ({', '.join(sorted(VALID_SKIP_CATEGORIES))}); "
             "repeat or comma-separate",
    )
    run.add_argument("--probe-timeout", type=int, help="Override every probe's timeout (seconds)")
    run.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> CollectorConfig:
    """
    Merge command line options over environment settings.

    Raises:
        ConfigurationError: If the combined settings are invalid
    """
    overrides = {k: v for k, v in vars(args).items() if k != "skip"}
    if args.skip:
        overrides["skip_categories"] = ",".join(args.skip)
    return load_config(**overrides)


async def connect_graph(config: CollectorConfig, context: CollectionContext) -> Optional[RequestGateway]:
    """
    Connect to Microsoft Graph for the remote track.

    Authentication failures are recorded and disable the remote track;
    local collection still runs.
    """
    if not config.remote_enabled:
        if "intune" not in config.skip:
            logger.info("No Graph credentials configured; Intune collection disabled")
        return None

    session = GraphSession.from_config(config)
    try:
        await session.connect()
    except (AuthenticationError, ConfigurationError) as e:
        context.ledger.error(PHASE_IDENTITY, f"Microsoft Graph sign-in failed: {e}")
        return None

    missing = [scope for scope in REQUIRED_SCOPES if session.scopes and not session.has_scope(scope)]
    if missing:
        context.ledger.warning(
            PHASE_IDENTITY,
            f"Token lacks permissions {', '.join(missing)}; some Intune sections may be empty",
        )

    return RequestGateway.from_config(session, config)


async def run_collection(config: CollectorConfig, renderer: Optional[JsonReportWriter] = None) -> Path:
    """
    Collect one device and write its report.

    Returns:
        Path of the written report

    Raises:
        IdentityUnresolvedError: Device identity could not be established
    """
    context = CollectionContext(skip=config.skip)
    runner = create_runner(ProbeTarget.from_config(config), timeout=config.probe_timeout)
    gateway = None

    try:
        gateway = await connect_graph(config, context)
        collector = DeviceCollector(config, context=context, runner=runner, gateway=gateway)
        report = await collector.run()
    finally:
        await runner.close()
        if gateway is not None:
            await gateway.close()
            await gateway.session.disconnect()

    return (renderer or JsonReportWriter()).render(report, config.output_dir)


def main(argv: Optional[List[str]] = None) -> int:
    """Console entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = config_from_args(args)
    except ConfigurationError as e:
        print(f"device-dna: {e}", file=sys.stderr)
        return 2

    setup_logging(config.log_level)

    try:
        path = asyncio.run(run_collection(config))
    except IdentityUnresolvedError as e:
        logger.error(f"Collection aborted: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130

    print(path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
