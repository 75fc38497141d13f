#!/usr/bin/env python3
"""
Dictator CLI

Command-line interface for the staged migration dictator.

Usage:
    dictator <command> [subcommand] [options]

Commands:
    plan        Inspect the system dictator plan
    config      Configuration management
    deployment  Deployment document validation
    simulate    Run the sequencer against the in-memory system

Exit codes:
    0   migration terminal / command succeeded
    1   usage or configuration error
    2   invariant violation
    3   timeout or cancellation
    4   transport failure
    5   remote operation reverted

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from typing import Any, Dict, List, Optional

import yaml

from dictator import __version__

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INVARIANT = 2
EXIT_TIMEOUT = 3
EXIT_TRANSPORT = 4
EXIT_REVERTED = 5


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TABLE = "table"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code and optional output to print first."""
    def __init__(self, message: str, exit_code: int = EXIT_ERROR, payload: Any = None):
        super().__init__(message)
        self.exit_code = exit_code
        self.payload = payload


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    elif fmt == OutputFormat.TABLE:
        return _format_table(data)
    else:
        return str(data)


def _format_table(data: Any) -> str:
    """Format data as ASCII table."""
    if isinstance(data, dict) and isinstance(data.get("steps"), list):
        data = [
            {k: v for k, v in step.items() if k != "prerequisites"}
            for step in data["steps"]
        ]
    if isinstance(data, list) and data and isinstance(data[0], dict):
        headers = list(data[0].keys())
        rows = [[str(row.get(h, ""))[:60] for h in headers] for row in data]
        widths = [max(len(h), max(len(r[i]) for r in rows)) for i, h in enumerate(headers)]

        lines = []
        lines.append(" | ".join(h.ljust(widths[i]) for i, h in enumerate(headers)))
        lines.append("-+-".join("-" * w for w in widths))
        for row in rows:
            lines.append(" | ".join(c.ljust(widths[i]) for i, c in enumerate(row)))
        return "\n".join(lines)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def exit_code_for(error: BaseException) -> int:
    """Map a fatal sequencer error to a process exit code."""
    from dictator.resilience import TimeoutError, TransportError
    from dictator.resources import OperationReverted
    from dictator.verification import InvariantViolation

    if isinstance(error, InvariantViolation):
        return EXIT_INVARIANT
    if isinstance(error, TimeoutError):
        return EXIT_TIMEOUT
    if isinstance(error, TransportError):
        return EXIT_TRANSPORT
    if isinstance(error, OperationReverted):
        return EXIT_REVERTED
    return EXIT_ERROR


class DictatorCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="dictator",
            description="Staged migration dictator CLI",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"dictator {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "table", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress non-essential output",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="Configuration YAML file",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all command groups."""
        self._register_plan_commands()
        self._register_config_commands()
        self._register_deployment_commands()
        self._register_simulate_command()

    def _register_plan_commands(self) -> None:
        plan = self.subparsers.add_parser("plan", help="Inspect the system dictator plan")
        plan_sub = plan.add_subparsers(dest="subcommand")

        show = plan_sub.add_parser("show", help="Show the ordered step table")
        show.add_argument("--deployment", "-d", help="Deployment YAML file")

    def _register_config_commands(self) -> None:
        """Register config subcommands."""
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        # config get
        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., polling.timeout_seconds)")

        # config show
        config_sub.add_parser("show", help="Show all configuration")

        # config validate
        config_sub.add_parser("validate", help="Validate configuration")

        # config schema
        config_sub.add_parser("schema", help="Export configuration schema")

    def _register_deployment_commands(self) -> None:
        deployment = self.subparsers.add_parser("deployment", help="Deployment documents")
        deployment_sub = deployment.add_subparsers(dest="subcommand")

        validate = deployment_sub.add_parser("validate", help="Validate a deployment YAML file")
        validate.add_argument("file", help="Deployment YAML file")

    def _register_simulate_command(self) -> None:
        simulate = self.subparsers.add_parser(
            "simulate", help="Run the sequencer against the in-memory system",
        )
        simulate.add_argument("--deployment", "-d", help="Deployment YAML file")
        simulate.add_argument(
            "--non-live", action="store_true",
            help="Run as a non-controller; a simulated operator acts out-of-band",
        )
        simulate.add_argument(
            "--start-step", type=int, default=1,
            help="Execute earlier steps before the run starts (default: 1)",
        )
        simulate.add_argument(
            "--poll-interval", type=float, default=0.05,
            help="Seconds between polls (default: 0.05)",
        )
        simulate.add_argument("--timeout", type=float, help="Seconds before a single wait gives up")
        simulate.add_argument("--log-level", choices=["debug", "info", "warning", "error"])

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return EXIT_OK

        fmt = OutputFormat(parsed.format)
        try:
            self._load_config(parsed)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return EXIT_OK

        except CLIError as e:
            if e.payload is not None:
                print(format_output(e.payload, fmt))
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except Exception as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return EXIT_ERROR

    def _load_config(self, args: argparse.Namespace) -> None:
        from dictator.config import ConfigError, get_config_manager

        manager = get_config_manager()
        try:
            if args.config:
                manager.load_from_file(args.config)
            else:
                manager.load_defaults()
        except ConfigError as e:
            raise CLIError(str(e)) from e

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}".rstrip())

        return handler(args)

    # Plan handlers
    def _handle_plan_show(self, args: argparse.Namespace) -> Any:
        from dictator.plans import describe_plan

        simulator = self._simulator(args, non_live=False)
        return describe_plan(simulator.plan(), simulator.dead_names)

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        from dictator.config import ConfigError, get_config_manager
        try:
            value = get_config_manager().get(args.path)
        except ConfigError as e:
            raise CLIError(str(e)) from e
        if hasattr(value, "__dataclass_fields__"):
            raise CLIError(f"{args.path} is a section; use 'config show'")
        return {"path": args.path, "value": value}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        from dictator.config import get_config_manager
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        from dictator.config import get_config_manager
        errors = get_config_manager().validate()
        result = {"valid": len(errors) == 0, "errors": errors}
        if errors:
            raise CLIError("Configuration is invalid", payload=result)
        return result

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        from dictator.config import get_config_manager
        return get_config_manager().export_schema()

    # Deployment handlers
    def _handle_deployment_validate(self, args: argparse.Namespace) -> Any:
        from dictator.config import ConfigError, ValidationError, load_deployment

        try:
            deployment = load_deployment(args.file)
        except ValidationError as e:
            errors = [line.strip() for line in str(e).splitlines()[1:]]
            raise CLIError(str(e), payload={"valid": False, "file": args.file, "errors": errors}) from e
        except ConfigError as e:
            raise CLIError(str(e)) from e

        return {
            "valid": True,
            "file": args.file,
            "network": deployment.network,
            "live": deployment.deployer.lower() == deployment.controller.lower(),
            "addresses": deployment.addresses.by_name(),
        }

    # Simulation
    def _simulator(self, args: argparse.Namespace, non_live: bool) -> Any:
        from dictator.config import ConfigError, get_config, load_deployment
        from dictator.simulator import SystemSimulator, derive_address

        deployment_file = getattr(args, "deployment", None)
        if deployment_file:
            try:
                deployment = load_deployment(deployment_file)
            except ConfigError as e:
                raise CLIError(str(e)) from e
            deployment.apply_to(get_config())
            deployer = deployment.deployer
            controller = deployment.controller
            final_owner = deployment.final_system_owner
            addresses = deployment.addresses
            dead_names = deployment.dead_address_names
        else:
            authority = get_config().authority
            deployer = authority.deployer.get() or derive_address("deployer")
            controller = authority.controller.get() or deployer
            final_owner = authority.final_system_owner.get() or derive_address("final-system-owner")
            addresses = None
            dead_names = None

        if non_live and controller.lower() == deployer.lower():
            controller = derive_address("controller")

        options: Dict[str, Any] = {"addresses": addresses}
        if dead_names is not None:
            options["dead_names"] = dead_names
        return SystemSimulator(deployer, controller, final_owner, **options)

    def _handle_simulate(self, args: argparse.Namespace) -> Any:
        from dictator.config import get_config
        from dictator.observability import OperatorChannel, configure_logging
        from dictator.plans import SYSTEM_STEPS
        from dictator.sequencer import MigrationHalted, MigrationStepSequencer
        from dictator.simulator import BackgroundOperator

        if not 1 <= args.start_step <= SYSTEM_STEPS + 1:
            raise CLIError(f"--start-step must be between 1 and {SYSTEM_STEPS + 1}")

        config = get_config()
        simulator = self._simulator(args, non_live=args.non_live)
        configure_logging(
            args.log_level or ("error" if args.quiet else config.observability.log_level.get()),
            stream=sys.stderr,
            fmt=config.observability.log_format.get(),
        )

        simulator.fast_forward(args.start_step)

        overrides: Dict[str, Any] = {"poll_interval_seconds": args.poll_interval}
        if args.timeout:
            overrides["timeout_seconds"] = args.timeout
        poller = config.build_poller(**overrides)

        resources = simulator.resources(retry=config.build_read_retry())
        channel = OperatorChannel()
        sequencer = MigrationStepSequencer(
            simulator.plan(resources),
            resources,
            simulator.authority(),
            poller,
            channel=channel,
        )

        operator = None
        if not sequencer.authority.is_live:
            operator = BackgroundOperator(simulator.external_operator(), interval_seconds=args.poll_interval)
            operator.start()
        try:
            report = sequencer.run()
        except MigrationHalted as e:
            raise CLIError(str(e), exit_code_for(e.cause), payload=e.report.to_dict()) from e
        finally:
            if operator is not None:
                operator.stop()

        return report.to_dict()


def main() -> int:
    """CLI entry point."""
    cli = DictatorCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
