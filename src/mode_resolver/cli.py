"""
Command-line interface for the mode resolver.

This module provides the main CLI entry point with commands for:
- resolve: Simulate a launch and print the resolved mode
- push: Feed a push payload or registration token into the stored state
- state: Inspect or reset the persisted state
- config: Configuration management
- self-test: Validate configuration and endpoint connectivity
"""

import argparse
import asyncio
import json
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from . import __version__
from .attribution_client import AttributionClient
from .attribution_collector import AttributionCollector
from .audit_logger import AuditLogger
from .config import (
    AttributionConfig,
    DeviceConfig,
    LoggingConfig,
    PersistenceConfig,
    RemoteConfigConfig,
    SystemConfig,
    TimingConfig,
)
from .config_client import RemoteConfigClient
from .enums import Mode
from .events import ConnectivityChanged, PermissionAnswered, PermissionSkipped
from .exceptions import ConfigurationError, TamperingError, PersistenceError
from .models import ModeTransition
from .orchestrator import ModeOrchestrator
from .push import extract_url
from .scheduler import Scheduler
from .self_test import run_self_test
from .state_store import StateStore

DEFAULT_HOME = Path.home() / ".mode_resolver"
DEFAULT_HMAC_SECRET = "default-secret-change-me"
ENV_PREFIX = "MODE_RESOLVER_"


def create_default_config(
    simulation_mode: bool = False,
    state_file: Optional[Path] = None,
    hmac_secret: str = DEFAULT_HMAC_SECRET,
) -> SystemConfig:
    """
    Create a default system configuration.

    Args:
        simulation_mode: Enable simulation mode (no real network requests)
        state_file: Path to state file for persistence
        hmac_secret: Secret for HMAC protection

    Returns:
        SystemConfig with default settings
    """
    if state_file is None:
        state_file = DEFAULT_HOME / "state.json"

    return SystemConfig(
        attribution=AttributionConfig(),
        remote_config=RemoteConfigConfig(),
        device=DeviceConfig(),
        persistence=PersistenceConfig(
            state_file_path=state_file,
            hmac_secret=hmac_secret,
        ),
        timing=TimingConfig(),
        logging=LoggingConfig(
            level="info",
            output_format="text",
        ),
        simulation_mode=simulation_mode,
        startup_self_test=False,
    )


def load_config_from_file(config_path: Path) -> Optional[SystemConfig]:
    """
    Load configuration from a JSON file.

    Args:
        config_path: Path to the configuration file

    Returns:
        SystemConfig, or None if the file does not exist

    Raises:
        ConfigurationError: If the file is not a valid configuration
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(
            code="unreadable_config",
            message=f"Could not read configuration: {e}",
            details={"path": str(config_path)},
        )

    try:
        defaults = create_default_config()

        attribution_data = data.get("attribution", {})
        attribution = AttributionConfig(
            app_id=attribution_data.get("app_id", ""),
            dev_key=attribution_data.get("dev_key", ""),
            base_url=attribution_data.get("base_url", defaults.attribution.base_url),
            timeout_seconds=float(attribution_data.get("timeout_seconds", 10.0)),
        )

        remote_data = data.get("remote_config", {})
        remote_config = RemoteConfigConfig(
            endpoint=remote_data.get("endpoint", defaults.remote_config.endpoint),
            timeout_seconds=float(remote_data.get("timeout_seconds", 10.0)),
        )

        device_data = data.get("device", {})
        device = DeviceConfig(
            platform=device_data.get("platform", defaults.device.platform),
            bundle_id=device_data.get("bundle_id", defaults.device.bundle_id),
            firebase_project_id=device_data.get("firebase_project_id"),
            language=device_data.get("language", defaults.device.language),
            tracking_id=device_data.get("tracking_id"),
        )

        timing_data = data.get("timing", {})
        timing_defaults = TimingConfig()
        timing = TimingConfig(
            deep_link_wait_seconds=float(timing_data.get(
                "deep_link_wait_seconds", timing_defaults.deep_link_wait_seconds)),
            date_gate_delay_seconds=float(timing_data.get(
                "date_gate_delay_seconds", timing_defaults.date_gate_delay_seconds)),
            temp_url_delay_seconds=float(timing_data.get(
                "temp_url_delay_seconds", timing_defaults.temp_url_delay_seconds)),
            attribution_combine_seconds=float(timing_data.get(
                "attribution_combine_seconds", timing_defaults.attribution_combine_seconds)),
            permission_cooldown_seconds=float(timing_data.get(
                "permission_cooldown_seconds", timing_defaults.permission_cooldown_seconds)),
            connectivity_interval_seconds=float(timing_data.get(
                "connectivity_interval_seconds", timing_defaults.connectivity_interval_seconds)),
            cutoff=timing_data.get("cutoff", timing_defaults.cutoff),
        )

        persistence_data = data.get("persistence", {})
        state_file_path = persistence_data.get("state_file_path")
        persistence = PersistenceConfig(
            state_file_path=Path(state_file_path) if state_file_path else defaults.persistence.state_file_path,
            hmac_secret=persistence_data.get("hmac_secret", DEFAULT_HMAC_SECRET),
        )

        logging_data = data.get("logging", {})
        logging_config = LoggingConfig(
            level=logging_data.get("level", "info"),
            audit_mode=logging_data.get("audit_mode", False),
            audit_signing_key=logging_data.get("audit_signing_key"),
            output_format=logging_data.get("output_format", "text"),
        )

        return SystemConfig(
            attribution=attribution,
            remote_config=remote_config,
            device=device,
            persistence=persistence,
            timing=timing,
            logging=logging_config,
            connectivity_probe_url=data.get("connectivity_probe_url"),
            simulation_mode=data.get("simulation_mode", False),
            startup_self_test=data.get("startup_self_test", False),
        )
    except (AttributeError, TypeError, ValueError) as e:
        raise ConfigurationError(
            code="invalid_config",
            message=f"Invalid configuration: {e}",
            details={"path": str(config_path)},
        )


def save_config_to_file(config: SystemConfig, config_path: Path) -> bool:
    """
    Save configuration to a JSON file.

    Returns:
        True if successful, False otherwise
    """
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "attribution": {
                "app_id": config.attribution.app_id,
                "dev_key": config.attribution.dev_key,
                "base_url": config.attribution.base_url,
                "timeout_seconds": config.attribution.timeout_seconds,
            },
            "remote_config": {
                "endpoint": config.remote_config.endpoint,
                "timeout_seconds": config.remote_config.timeout_seconds,
            },
            "device": {
                "platform": config.device.platform,
                "bundle_id": config.device.bundle_id,
                "firebase_project_id": config.device.firebase_project_id,
                "language": config.device.language,
                "tracking_id": config.device.tracking_id,
            },
            "timing": {
                "deep_link_wait_seconds": config.timing.deep_link_wait_seconds,
                "date_gate_delay_seconds": config.timing.date_gate_delay_seconds,
                "temp_url_delay_seconds": config.timing.temp_url_delay_seconds,
                "attribution_combine_seconds": config.timing.attribution_combine_seconds,
                "permission_cooldown_seconds": config.timing.permission_cooldown_seconds,
                "connectivity_interval_seconds": config.timing.connectivity_interval_seconds,
                "cutoff": config.timing.cutoff,
            },
            "persistence": {
                "state_file_path": str(config.persistence.state_file_path),
                "hmac_secret": config.persistence.hmac_secret,
            },
            "logging": {
                "level": config.logging.level,
                "audit_mode": config.logging.audit_mode,
                "audit_signing_key": config.logging.audit_signing_key,
                "output_format": config.logging.output_format,
            },
            "connectivity_probe_url": config.connectivity_probe_url,
            "simulation_mode": config.simulation_mode,
            "startup_self_test": config.startup_self_test,
        }

        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

        return True

    except (OSError, TypeError) as e:
        print(f"Error saving config: {e}", file=sys.stderr)
        return False


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config_from_env(
    config: SystemConfig,
    environ: Optional[Mapping[str, str]] = None,
    dotenv_path: Optional[Path] = None,
) -> SystemConfig:
    """
    Overlay ``MODE_RESOLVER_*`` environment variables onto a configuration.

    When ``environ`` is omitted, a ``.env`` file is loaded first (without
    overriding variables that are already set) and ``os.environ`` is read.
    """
    if environ is None:
        load_dotenv(dotenv_path=dotenv_path, override=False)
        environ = os.environ

    def get(name: str) -> Optional[str]:
        value = environ.get(ENV_PREFIX + name)
        return value if value else None

    attribution = config.attribution
    if get("APP_ID"):
        attribution = replace(attribution, app_id=get("APP_ID"))
    if get("DEV_KEY"):
        attribution = replace(attribution, dev_key=get("DEV_KEY"))
    if get("ATTRIBUTION_BASE_URL"):
        attribution = replace(attribution, base_url=get("ATTRIBUTION_BASE_URL"))

    remote_config = config.remote_config
    if get("CONFIG_ENDPOINT"):
        remote_config = replace(remote_config, endpoint=get("CONFIG_ENDPOINT"))

    device = config.device
    if get("FIREBASE_PROJECT_ID"):
        device = replace(device, firebase_project_id=get("FIREBASE_PROJECT_ID"))
    if get("LANGUAGE"):
        device = replace(device, language=get("LANGUAGE"))
    if get("TRACKING_ID"):
        device = replace(device, tracking_id=get("TRACKING_ID"))

    persistence = config.persistence
    if get("STATE_FILE"):
        persistence = replace(persistence, state_file_path=Path(get("STATE_FILE")))
    if get("HMAC_SECRET"):
        persistence = replace(persistence, hmac_secret=get("HMAC_SECRET"))

    timing = config.timing
    if get("CUTOFF"):
        timing = replace(timing, cutoff=get("CUTOFF"))

    logging_config = config.logging
    if get("LOG_LEVEL"):
        logging_config = replace(logging_config, level=get("LOG_LEVEL"))
    if get("LOG_FORMAT"):
        logging_config = replace(logging_config, output_format=get("LOG_FORMAT"))

    return replace(
        config,
        attribution=attribution,
        remote_config=remote_config,
        device=device,
        persistence=persistence,
        timing=timing,
        logging=logging_config,
        connectivity_probe_url=get("PROBE_URL") or config.connectivity_probe_url,
        simulation_mode=_env_flag(get("SIMULATION")) if get("SIMULATION") else config.simulation_mode,
    )


def _open_store(config: SystemConfig, logger: Optional[AuditLogger] = None) -> StateStore:
    store = StateStore(
        file_path=config.persistence.state_file_path,
        hmac_secret=config.persistence.hmac_secret,
        logger=logger,
    )
    store.load_or_default()
    return store


async def resolve_mode(
    config: SystemConfig,
    conversion_data: Optional[dict],
    deep_link: Optional[dict] = None,
    online: bool = True,
    permission: Optional[str] = None,
    timeout: float = 30.0,
    logger: Optional[AuditLogger] = None,
) -> Optional[ModeTransition]:
    """
    Simulate one launch and return the transition the app would show.

    Args:
        config: System configuration
        conversion_data: Conversion payload, or None to simulate an SDK failure
        deep_link: Optional deep-link payload
        online: Initial connectivity
        permission: Answer to a permission prompt ('grant', 'deny', 'skip')
        timeout: Seconds to wait for a resolution

    Raises:
        asyncio.TimeoutError: If no mode is resolved in time
    """
    store = _open_store(config, logger)

    async with AttributionClient(
        config.attribution,
        simulation_mode=config.simulation_mode,
        logger=logger,
    ) as attribution_client, RemoteConfigClient(
        config.remote_config,
        simulation_mode=config.simulation_mode,
        logger=logger,
    ) as config_client:
        async with ModeOrchestrator(
            config=config,
            store=store,
            attribution_client=attribution_client,
            config_client=config_client,
            logger=logger,
        ) as orchestrator:
            collector_scheduler = Scheduler()
            collector = AttributionCollector(
                orchestrator.submit,
                store,
                collector_scheduler,
                combine_seconds=config.timing.attribution_combine_seconds,
                logger=logger,
            )
            orchestrator.submit(ConnectivityChanged(online))
            if deep_link is not None:
                collector.on_deep_link(deep_link)
            if conversion_data is None:
                collector.on_conversion_failure("no conversion data")
            else:
                collector.on_conversion_data(conversion_data)

            try:
                transition = await orchestrator.wait_for_resolution(timeout)
                if transition is not None and transition.permission_prompt and permission:
                    if permission == "skip":
                        orchestrator.submit(PermissionSkipped())
                    else:
                        orchestrator.submit(PermissionAnswered(granted=permission == "grant"))
                    transition = await orchestrator.wait_for(
                        lambda o: not o.awaiting_permission and o.mode != Mode.SETUP,
                        timeout,
                    )
            finally:
                collector_scheduler.cancel_all()
            return transition


def _read_json_argument(value: Optional[str]) -> Optional[dict]:
    """Accept inline JSON or ``@path`` to a JSON file."""
    if value is None:
        return None
    if value.startswith("@"):
        with open(value[1:], "r", encoding="utf-8") as f:
            data = json.load(f)
    else:
        data = json.loads(value)
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data


def _load_config(args: argparse.Namespace) -> Optional[SystemConfig]:
    config = None
    if getattr(args, "config", None):
        try:
            config = load_config_from_file(Path(args.config))
        except ConfigurationError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return None
        if config is None:
            print(f"Error: Could not load config from {args.config}", file=sys.stderr)
            return None

    if config is None:
        config = create_default_config()

    config = load_config_from_env(config)
    if getattr(args, "dry_run", False):
        config = replace(config, simulation_mode=True)
    return config


def _make_logger(config: SystemConfig, verbose: bool) -> Optional[AuditLogger]:
    if not verbose and not config.logging.audit_mode:
        return None
    logger = AuditLogger.from_config(config.logging, output_stream=sys.stderr)
    return logger


def cmd_resolve(args: argparse.Namespace) -> int:
    """Handle the 'resolve' command."""
    config = _load_config(args)
    if config is None:
        return 1

    try:
        conversion_data = _read_json_argument(args.attribution)
        deep_link = _read_json_argument(args.deep_link)
    except (OSError, ValueError) as e:
        print(f"Error: Invalid JSON argument: {e}", file=sys.stderr)
        return 1

    if config.startup_self_test:
        result = asyncio.run(run_self_test(config, print_output=args.verbose))
        if not result.success:
            print("Self-test failed", file=sys.stderr)
            return 1

    if config.simulation_mode:
        print("Simulation mode: no network requests will be made")

    logger = _make_logger(config, args.verbose)
    try:
        transition = asyncio.run(resolve_mode(
            config=config,
            conversion_data=conversion_data,
            deep_link=deep_link,
            online=not args.offline,
            permission=args.permission,
            timeout=args.timeout,
            logger=logger,
        ))
    except asyncio.TimeoutError:
        print(f"Error: No mode resolved within {args.timeout}s", file=sys.stderr)
        return 1

    if transition is None:
        print("Error: No transition was published", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps({
            "mode": transition.mode.value,
            "destination_url": transition.destination_url,
            "reason": transition.reason,
            "permission_prompt": transition.permission_prompt,
            "epoch": transition.epoch,
            "timestamp": transition.timestamp,
        }, indent=2))
    else:
        print(f"Mode: {transition.mode.value}")
        if transition.destination_url:
            print(f"  Destination: {transition.destination_url}")
        print(f"  Reason: {transition.reason}")
        if transition.permission_prompt:
            print("  Permission prompt pending")
    return 0


def cmd_push(args: argparse.Namespace) -> int:
    """Handle the 'push' command."""
    config = _load_config(args)
    if config is None:
        return 1

    store = _open_store(config)

    if args.token:
        store.push_token = args.token
        print("Push token stored")

    if args.payload:
        try:
            payload = _read_json_argument(args.payload)
        except (OSError, ValueError) as e:
            print(f"Error: Invalid JSON payload: {e}", file=sys.stderr)
            return 1
        url = extract_url(payload)
        if url is None:
            print("Payload carries no URL", file=sys.stderr)
            return 1
        store.pending_temp_url = url
        print(f"Pending URL stored: {url}")

    return 0


def cmd_state(args: argparse.Namespace) -> int:
    """Handle the 'state' command."""
    config = _load_config(args)
    if config is None:
        return 1

    store = StateStore(
        file_path=config.persistence.state_file_path,
        hmac_secret=config.persistence.hmac_secret,
    )

    if args.action == "reset":
        store.reset()
        print(f"State reset at: {config.persistence.state_file_path}")
        return 0

    try:
        stored = store.load()
    except TamperingError as e:
        print(f"Error: State file failed integrity check: {e.message}", file=sys.stderr)
        return 1
    except PersistenceError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    if stored is None:
        print(f"No state found at: {config.persistence.state_file_path}")
        return 0

    print(json.dumps({
        "version": stored.version,
        "last_updated": stored.last_updated,
        "state": stored.state.to_dict(),
    }, indent=2))
    return 0


def cmd_self_test(args: argparse.Namespace) -> int:
    """Handle the 'self-test' command."""
    config = _load_config(args)
    if config is None:
        return 1

    result = asyncio.run(run_self_test(config=config, print_output=True))
    return 0 if result.success else 1


def cmd_config(args: argparse.Namespace) -> int:
    """Handle the 'config' command."""
    config_path = Path(args.path) if args.path else DEFAULT_HOME / "config.json"

    if args.action == "init":
        if config_path.exists() and not args.force:
            print(f"Configuration already exists at: {config_path}")
            print("Use --force to overwrite.")
            return 1

        config = create_default_config()
        if save_config_to_file(config, config_path):
            print(f"Configuration created at: {config_path}")
            return 0
        return 1

    try:
        config = load_config_from_file(config_path)
    except ConfigurationError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    if config is None:
        print(f"No configuration found at: {config_path}")
        print("Use 'config init' to create a default configuration.")
        return 1

    if args.action == "show":
        print(f"Configuration from: {config_path}")
        print(f"  Attribution app id: {config.attribution.app_id or '(not set)'}")
        print(f"  Config endpoint: {config.remote_config.endpoint}")
        print(f"  Platform: {config.device.platform}")
        print(f"  Cutoff: {config.timing.cutoff}")
        print(f"  Simulation mode: {config.simulation_mode}")
        print(f"  State file: {config.persistence.state_file_path}")
        print(f"  Log level: {config.logging.level}")
        print(f"  Audit mode: {config.logging.audit_mode}")
        return 0

    print(f"Configuration at {config_path} is valid.")
    return 0


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="mode-resolver",
        description="Launch mode resolution engine",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # 'resolve' command
    resolve_parser = subparsers.add_parser(
        "resolve",
        help="Simulate a launch and print the resolved mode",
    )
    resolve_parser.add_argument(
        "--attribution", "-a",
        help="Conversion data as JSON or @file (omit to simulate an SDK failure)",
    )
    resolve_parser.add_argument(
        "--deep-link", "-d",
        help="Deep-link data as JSON or @file",
    )
    resolve_parser.add_argument(
        "--offline",
        action="store_true",
        help="Start without network connectivity",
    )
    resolve_parser.add_argument(
        "--permission",
        choices=["grant", "deny", "skip"],
        help="Answer to give if a permission prompt is raised",
    )
    resolve_parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="Seconds to wait for a resolution (default: 30)",
    )
    resolve_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Simulation mode - no real network requests",
    )
    resolve_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the transition as JSON",
    )
    resolve_parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose output",
    )
    _add_common_arguments(resolve_parser)
    resolve_parser.set_defaults(func=cmd_resolve)

    # 'push' command
    push_parser = subparsers.add_parser(
        "push",
        help="Store a pushed URL or push registration token",
    )
    push_parser.add_argument(
        "--payload", "-p",
        help="Push payload as JSON or @file",
    )
    push_parser.add_argument(
        "--token", "-t",
        help="Push registration token",
    )
    _add_common_arguments(push_parser)
    push_parser.set_defaults(func=cmd_push)

    # 'state' command
    state_parser = subparsers.add_parser(
        "state",
        help="Inspect or reset persisted state",
    )
    state_parser.add_argument(
        "action",
        choices=["show", "reset"],
        help="State action",
    )
    _add_common_arguments(state_parser)
    state_parser.set_defaults(func=cmd_state)

    # 'config' command
    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
    )
    config_parser.add_argument(
        "action",
        choices=["show", "init", "validate"],
        help="Configuration action",
    )
    config_parser.add_argument(
        "--path", "-p",
        help="Path to configuration file",
    )
    config_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Force overwrite existing configuration",
    )
    config_parser.set_defaults(func=cmd_config)

    # 'self-test' command
    self_test_parser = subparsers.add_parser(
        "self-test",
        help="Validate configuration and endpoint connectivity",
    )
    _add_common_arguments(self_test_parser)
    self_test_parser.set_defaults(func=cmd_self_test)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
