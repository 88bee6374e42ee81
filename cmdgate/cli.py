"""
cmdgate CLI

Command-line interface for checking and running commands through cmdgate.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from .core.config import Config, SecurityLevel, SecurityMode
from .core.exceptions import CmdGateError
from .core.service import SecurityService
from .executor import ConsentRequest, ExecutionResult
from .observability import configure_from, setup_logging
from .policy import PolicyAction, PolicyEngine

CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "mode": {"enum": [m.value for m in SecurityMode]},
        "enabled": {"type": "boolean"},
        "workspace": {"type": "string"},
        "verify_tools": {"type": "boolean"},
        "trusted_callers": {"type": "array", "items": {"type": "string"}},
        "categories": {
            "type": "object",
            "additionalProperties": {"type": "array", "items": {"type": "string"}},
        },
        "validation": {"type": "object"},
        "rate_limit": {"type": "object"},
        "trust": {"type": "object"},
        "error_handling": {"type": "object"},
        "execution": {
            "type": "object",
            "properties": {
                "security_level": {"enum": [lvl.value for lvl in SecurityLevel]},
            },
        },
        "assertions": {"type": "object"},
        "audit": {"type": "object"},
        "logging": {"type": "object"},
    },
    "additionalProperties": False,
}


def load_config(args: argparse.Namespace) -> Config:
    """Load configuration from file or defaults, then env and CLI overrides."""
    config = Config.from_file(args.config) if args.config else Config()
    config.apply_env()
    if args.mode:
        config.mode = SecurityMode(args.mode)
    if getattr(args, "workspace", None):
        config.workspace = args.workspace
    if getattr(args, "level", None):
        config.execution.security_level = SecurityLevel(args.level)
    if getattr(args, "log_level", None):
        config.logging.level = args.log_level
    if getattr(args, "json_logs", False):
        config.logging.json_format = True
    return config


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="cmdgate",
        description="cmdgate - command execution security gateway",
    )

    parser.add_argument(
        "-c", "--config",
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in SecurityMode],
        help="Override enforcement mode",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (overrides the config file)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit structured JSON logs",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    check_parser = subparsers.add_parser("check", help="Show the policy decision for a command")
    check_parser.add_argument(
        "--full",
        action="store_true",
        help="Run the full admission pipeline instead of the category policy",
    )
    check_parser.add_argument("cmd", help="Command name")
    check_parser.add_argument("cmd_args", nargs=argparse.REMAINDER, help="Command arguments")

    exec_parser = subparsers.add_parser("exec", help="Execute a command in the workspace")
    exec_parser.add_argument("--workspace", help="Workspace root")
    exec_parser.add_argument(
        "--level",
        choices=[lvl.value for lvl in SecurityLevel],
        help="Executor security level",
    )
    exec_parser.add_argument(
        "-y", "--yes",
        action="store_true",
        help="Grant consent for this exact command line",
    )
    exec_parser.add_argument("cmd", help="Command name")
    exec_parser.add_argument("cmd_args", nargs=argparse.REMAINDER, help="Command arguments")

    verify_parser = subparsers.add_parser("verify-tool", help="Verify a trusted executable")
    verify_parser.add_argument("path", help="Path to executable")

    subparsers.add_parser("status", help="Show security status")

    validate_parser = subparsers.add_parser("validate-config", help="Validate a config file")
    validate_parser.add_argument("file", help="Configuration YAML file")

    return parser


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _service(config: Config) -> SecurityService:
    # Env overrides and logging were applied by main
    return SecurityService(config, environ={}, configure_logging=False)


async def cmd_check(args: argparse.Namespace, config: Config) -> int:
    """Print the policy decision for a command; non-zero on BLOCK."""
    engine = PolicyEngine(config)

    if args.full:
        decision = await engine.validate_command_execution(
            args.cmd, args.cmd_args, {"client_id": "cli"}
        )
    else:
        decision = engine.check_command_policy(args.cmd, args.cmd_args)

    _print_json(decision.to_dict())
    return 1 if decision.action in (PolicyAction.BLOCK, PolicyAction.ERROR) else 0


async def cmd_exec(args: argparse.Namespace, config: Config) -> int:
    """Execute a command through the full pipeline."""
    logger = logging.getLogger(__name__)

    service = _service(config)
    await service.start()

    try:
        if args.yes:
            service.executor.grant_consent(args.cmd, args.cmd_args)

        result = await service.executor.execute(args.cmd, args.cmd_args, {"client_id": "cli"})
        if isinstance(result, ExecutionResult):
            print(result.output, end="" if result.output.endswith("\n") else "\n")
            return 0

        _print_json(result.to_dict())
        if isinstance(result, ConsentRequest):
            print("Re-run with --yes to grant consent.", file=sys.stderr)
            return 2
        return 1

    except CmdGateError as e:
        logger.error(f"Execution failed: {e}")
        print(json.dumps(e.to_dict(), indent=2, default=str), file=sys.stderr)
        return 1

    finally:
        await service.stop()


async def cmd_verify_tool(args: argparse.Namespace, config: Config) -> int:
    """Verify an executable against the trusted tool registry."""
    service = _service(config)
    verifier = service.engine.verifier
    await verifier.load()

    result = await verifier.verify_tool(args.path)
    _print_json(result.to_dict())
    return 0 if result.trusted else 1


def cmd_status(args: argparse.Namespace, config: Config) -> int:
    """Print security status."""
    service = _service(config)
    _print_json(service.get_security_status())
    return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
    """Validate a configuration file against the schema and semantic checks."""
    import jsonschema
    import yaml

    try:
        with open(args.file) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        print(f"Config: INVALID - {e}")
        return 1

    try:
        jsonschema.validate(data, CONFIG_SCHEMA)
    except jsonschema.ValidationError as e:
        print(f"Config: INVALID - {e.message}")
        return 1

    try:
        errors = Config.from_dict(data).validate()
    except (TypeError, ValueError) as e:
        errors = [str(e)]

    if errors:
        for error in errors:
            print(f"Config: INVALID - {error}")
        return 1

    print("Config: VALID")
    return 0


async def async_main(args: argparse.Namespace, config: Config) -> int:
    """Async main entry point."""
    if args.command == "check":
        return await cmd_check(args, config)
    elif args.command == "exec":
        return await cmd_exec(args, config)
    elif args.command == "verify-tool":
        return await cmd_verify_tool(args, config)
    elif args.command == "status":
        return cmd_status(args, config)

    print("No command specified. Use --help for usage.")
    return 1


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level or "WARNING", json_format=args.json_logs)

    if args.command == "validate-config":
        return cmd_validate_config(args)

    try:
        config = load_config(args)
    except (OSError, ValueError, TypeError) as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        return 1

    # An invalid config is reported by the command itself
    if not config.validate():
        configure_from(config.logging)

    try:
        return asyncio.run(async_main(args, config))
    except CmdGateError as e:
        print(json.dumps(e.to_dict(), indent=2, default=str), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
