"""
cmdgate - Command Catalog

Single authoritative table of known commands. Each entry carries both the
policy category used by the engine and the executor group, allowed flags
and consent rules used by the secure executor.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..core.config import SecurityLevel

logger = logging.getLogger(__name__)


class CommandCategory(Enum):
    """Policy categories, declared in precedence order."""
    NEVER_ALLOW = "NEVER_ALLOW"
    ALWAYS_ALLOW = "ALWAYS_ALLOW"
    VALIDATE_REQUIRED = "VALIDATE_REQUIRED"
    REQUIRE_CONSENT = "REQUIRE_CONSENT"
    TRUSTED_TOOL = "TRUSTED_TOOL"


CATEGORY_PRECEDENCE: Tuple[CommandCategory, ...] = tuple(CommandCategory)


class CommandGroup(Enum):
    """Executor command groups enabled per security level."""
    FILESYSTEM = "FILESYSTEM"
    UTILITIES = "UTILITIES"
    FILE_MUTATION = "FILE_MUTATION"
    VCS = "VCS"
    PACKAGE_MANAGERS = "PACKAGE_MANAGERS"
    RUNTIMES = "RUNTIMES"
    TESTING = "TESTING"
    LINTING = "LINTING"
    BUILD_TOOLS = "BUILD_TOOLS"
    CONTAINERS = "CONTAINERS"
    RUST = "RUST"
    NETWORK = "NETWORK"
    PRIVILEGED = "PRIVILEGED"
    INTERNAL = "INTERNAL"


LEVEL_GROUPS: Dict[SecurityLevel, FrozenSet[CommandGroup]] = {
    SecurityLevel.STRICT: frozenset({CommandGroup.FILESYSTEM}),
    SecurityLevel.BALANCED: frozenset({
        CommandGroup.FILESYSTEM,
        CommandGroup.UTILITIES,
        CommandGroup.FILE_MUTATION,
        CommandGroup.VCS,
    }),
    SecurityLevel.PERMISSIVE: frozenset(CommandGroup),
}


@dataclass(frozen=True)
class CommandSpec:
    """
    Catalog entry for a single command.

    ``allowed_flags`` is checked against every argument starting with ``-``;
    when ``check_all_args`` is set, positional arguments (subcommands) are
    checked too. An empty ``allowed_flags`` with ``check_all_args`` unset
    means the command takes no flags at all.
    """
    name: str
    group: CommandGroup
    category: Optional[CommandCategory] = None
    allowed_flags: FrozenSet[str] = frozenset()
    value_flags: FrozenSet[str] = frozenset()
    pattern_positional: bool = False
    check_all_args: bool = False
    always_consent: bool = False
    consent_subcommands: FrozenSet[str] = frozenset()
    min_args: int = 0
    description: str = ""

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "group": self.group.value,
            "category": self.category.value if self.category else None,
            "allowed_flags": sorted(self.allowed_flags),
            "value_flags": sorted(self.value_flags),
            "pattern_positional": self.pattern_positional,
            "check_all_args": self.check_all_args,
            "always_consent": self.always_consent,
            "consent_subcommands": sorted(self.consent_subcommands),
            "min_args": self.min_args,
        }


def _spec(
    name: str,
    group: CommandGroup,
    category: Optional[CommandCategory] = None,
    flags: Sequence[str] = (),
    value_flags: Sequence[str] = (),
    consent: Sequence[str] = (),
    **kwargs,
) -> CommandSpec:
    return CommandSpec(
        name=name,
        group=group,
        category=category,
        allowed_flags=frozenset(flags),
        value_flags=frozenset(value_flags),
        consent_subcommands=frozenset(consent),
        **kwargs,
    )


_FS = CommandGroup.FILESYSTEM
_UT = CommandGroup.UTILITIES
_PM = CommandGroup.PACKAGE_MANAGERS

_ALWAYS = CommandCategory.ALWAYS_ALLOW
_VALIDATE = CommandCategory.VALIDATE_REQUIRED
_CONSENT = CommandCategory.REQUIRE_CONSENT
_NEVER = CommandCategory.NEVER_ALLOW

_PACKAGE_FLAGS = (
    "install", "run", "test", "build", "start", "lint", "audit",
    "list", "outdated", "update", "upgrade", "--version",
)

_TRUSTED_TOOLS = (
    "check_code_practices",
    "format_code",
    "check_safety_rules",
    "scan_security_vulnerabilities",
    "check_production_readiness",
    "check_accessibility",
    "check_graphql_schema",
    "check_graphql_query",
    "check_redux_patterns",
)


def _load_default_commands() -> List[CommandSpec]:
    """Build the built-in command table."""
    commands = [
        # Filesystem inspection
        _spec(
            "grep", _FS, _VALIDATE,
            flags=["-r", "-i", "-n", "--include", "--exclude", "-l", "-c",
                   "-v", "-E", "-F", "-o", "-A", "-B", "-C"],
            value_flags=["--include", "--exclude", "-A", "-B", "-C"],
            pattern_positional=True,
            min_args=1,
        ),
        _spec(
            "find", _FS, _VALIDATE,
            flags=["-name", "-type", "-maxdepth", "-mtime", "-size", "-newer"],
            value_flags=["-name", "-type", "-maxdepth", "-mtime", "-size"],
            min_args=1,
        ),
        _spec("ls", _FS, _VALIDATE,
              flags=["-la", "-lh", "-R", "-t", "-S", "-1", "-l", "-a"]),
        _spec("cat", _FS, _VALIDATE, flags=["-n"]),
        _spec("head", _FS, _VALIDATE, flags=["-n"], value_flags=["-n"]),
        _spec("tail", _FS, _VALIDATE, flags=["-n", "-f"], value_flags=["-n"]),
        _spec("wc", _FS, _VALIDATE, flags=["-l", "-w", "-c"]),
        _spec("sort", _FS, _VALIDATE, flags=["-r", "-n", "-k"], value_flags=["-k"]),
        _spec("uniq", _FS, _VALIDATE, flags=["-c"]),
        _spec("cut", _FS, _VALIDATE, flags=["-d", "-f", "-c"],
              value_flags=["-d", "-f", "-c"]),
        _spec("diff", _FS, _VALIDATE, flags=["-u", "-r", "-q"]),

        # Utilities
        _spec("echo", _UT, _ALWAYS),
        _spec("printf", _UT, _ALWAYS),
        _spec("true", _UT, _ALWAYS),
        _spec("false", _UT, _ALWAYS),
        _spec("pwd", _UT),
        _spec("which", _UT),
        _spec("whoami", _UT),
        _spec("date", _UT),
        _spec("du", _UT, flags=["-sh", "-h"]),
        _spec("df", _UT, flags=["-h"]),

        # File mutation, always consent-gated in the executor
        _spec("rm", CommandGroup.FILE_MUTATION, _CONSENT,
              flags=["-r", "-f", "-rf", "-i"], always_consent=True),
        _spec("rmdir", CommandGroup.FILE_MUTATION, flags=["-p"], always_consent=True),
        _spec("del", CommandGroup.FILE_MUTATION, always_consent=True),
        _spec("mkdir", CommandGroup.FILE_MUTATION, flags=["-p"]),
        _spec("touch", CommandGroup.FILE_MUTATION),
        _spec("cp", CommandGroup.FILE_MUTATION, flags=["-r", "-n"]),
        _spec("mv", CommandGroup.FILE_MUTATION, flags=["-n"]),

        # Version control
        _spec(
            "git", CommandGroup.VCS, _CONSENT,
            flags=["status", "log", "diff", "branch", "show", "--version",
                   "add", "commit", "push", "-m", "--oneline", "-n"],
            value_flags=["-m", "-n"],
            check_all_args=True,
            consent=["push", "commit"],
        ),

        # Package managers and runtimes
        _spec("npm", _PM, _CONSENT, flags=_PACKAGE_FLAGS, consent=["install"]),
        _spec("yarn", _PM, _CONSENT, flags=_PACKAGE_FLAGS, consent=["install"]),
        _spec("pnpm", _PM, flags=_PACKAGE_FLAGS, consent=["install"]),
        _spec("bun", _PM, _CONSENT,
              flags=_PACKAGE_FLAGS + ("-v", "-e", "-p"), consent=["install"]),
        _spec("deno", _PM,
              flags=["run", "test", "lint", "fmt", "cache", "info", "--version"]),
        _spec("node", CommandGroup.RUNTIMES, flags=["--version", "-v", "-e", "-p"]),
        _spec("python", CommandGroup.RUNTIMES, flags=["--version", "-V", "-c"]),
        _spec("python3", CommandGroup.RUNTIMES, flags=["--version", "-V", "-c"]),

        # Testing and linting
        _spec("jest", CommandGroup.TESTING,
              flags=["--version", "--config", "--passWithNoTests"],
              value_flags=["--config"]),
        _spec("vitest", CommandGroup.TESTING,
              flags=["--version", "--config", "--run"], value_flags=["--config"]),
        _spec("mocha", CommandGroup.TESTING, flags=["--version", "--config"],
              value_flags=["--config"]),
        _spec("pytest", CommandGroup.TESTING, flags=["--version", "-q", "-x", "-k"],
              value_flags=["-k"]),
        _spec("eslint", CommandGroup.LINTING,
              flags=["--version", "--fix", "--config", "--ext"],
              value_flags=["--config", "--ext"]),
        _spec("prettier", CommandGroup.LINTING,
              flags=["--version", "--write", "--check", "--config"],
              value_flags=["--config"]),
        _spec("tsc", CommandGroup.LINTING, _CONSENT,
              flags=["--version", "--noEmit", "--project"],
              value_flags=["--project"]),
        _spec("ruff", CommandGroup.LINTING, flags=["--version", "check", "format"]),
        _spec("black", CommandGroup.LINTING, flags=["--version", "--check"]),
        _spec("flake8", CommandGroup.LINTING, flags=["--version"]),

        # Build tools
        _spec("webpack", CommandGroup.BUILD_TOOLS, _CONSENT,
              flags=["--version", "--config"], value_flags=["--config"]),
        _spec("vite", CommandGroup.BUILD_TOOLS, flags=["--version", "build", "dev"]),
        _spec("rollup", CommandGroup.BUILD_TOOLS, flags=["--version", "--config"],
              value_flags=["--config"]),
        _spec("esbuild", CommandGroup.BUILD_TOOLS, flags=["--version", "--bundle"]),
        _spec("make", CommandGroup.BUILD_TOOLS, _CONSENT, flags=["-j", "-n"]),
        _spec("cmake", CommandGroup.BUILD_TOOLS, _CONSENT, flags=["--version", "--build"]),

        # Containers and toolchains
        _spec(
            "docker", CommandGroup.CONTAINERS, _CONSENT,
            flags=["--version", "ps", "images", "build", "logs", "pull",
                   "-a", "--all", "-q", "--quiet", "--tail", "-t"],
            value_flags=["--tail", "-t"],
            check_all_args=True,
        ),
        _spec("rustc", CommandGroup.RUST, flags=["--version", "-V"]),
        _spec(
            "cargo", CommandGroup.RUST,
            flags=["--version", "-V", "build", "check", "test", "run", "clean",
                   "doc", "fmt", "clippy", "tree", "--release", "--workspace"],
            check_all_args=True,
        ),

        # Network fetchers
        _spec("curl", CommandGroup.NETWORK, _CONSENT, always_consent=True),
        _spec("wget", CommandGroup.NETWORK, _CONSENT, always_consent=True),
    ]

    for name in ("sudo", "su", "chmod", "chown", "ssh", "scp", "nc", "telnet",
                 "dd", "fdisk", "mkfs", "mount", "umount"):
        commands.append(_spec(name, CommandGroup.PRIVILEGED, _NEVER))

    for name in _TRUSTED_TOOLS:
        commands.append(_spec(
            name,
            CommandGroup.INTERNAL,
            CommandCategory.TRUSTED_TOOL,
            description="Internal analysis tool",
        ))

    return commands


class CommandCatalog:
    """
    Registry of known commands.

    Category membership is resolved in precedence order, so a command that
    is assigned to several categories through overrides takes the strongest
    one (NEVER_ALLOW wins over everything).
    """

    def __init__(
        self,
        commands: Optional[Iterable[CommandSpec]] = None,
        category_overrides: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        self._commands: Dict[str, CommandSpec] = {}
        for spec in commands if commands is not None else _load_default_commands():
            self._commands[spec.name] = spec

        self._category_sets: Dict[CommandCategory, FrozenSet[str]] = {}
        for category in CATEGORY_PRECEDENCE:
            members = {
                spec.name for spec in self._commands.values()
                if spec.category == category
            }
            if category_overrides:
                members.update(category_overrides.get(category.value, ()))
            self._category_sets[category] = frozenset(members)

        logger.debug(f"Command catalog loaded with {len(self._commands)} commands")

    def __contains__(self, name: str) -> bool:
        return name in self._commands

    def __len__(self) -> int:
        return len(self._commands)

    def lookup(self, name: str) -> Optional[CommandSpec]:
        """Get catalog entry by command name."""
        return self._commands.get(name)

    def category_of(self, name: str) -> Optional[CommandCategory]:
        """Resolve the policy category of a command by precedence."""
        for category in CATEGORY_PRECEDENCE:
            if name in self._category_sets[category]:
                return category
        return None

    def members(self, category: CommandCategory) -> FrozenSet[str]:
        """Get all command names in a policy category."""
        return self._category_sets[category]

    def groups_for_level(self, level: SecurityLevel) -> FrozenSet[CommandGroup]:
        """Get the executor groups enabled for a security level."""
        return LEVEL_GROUPS[level]

    def commands_for_level(self, level: SecurityLevel) -> Dict[str, CommandSpec]:
        """Get the commands the executor accepts at a security level."""
        groups = self.groups_for_level(level)
        return {
            name: spec for name, spec in self._commands.items()
            if spec.group in groups
        }

    def is_sensitive_operation(self, command: str, args: Sequence[str]) -> bool:
        """Check whether an invocation always needs explicit consent."""
        spec = self._commands.get(command)
        if spec is None:
            return False
        if spec.always_consent:
            return True
        return bool(args) and args[0] in spec.consent_subcommands

    def describe(self, name: str) -> Dict[str, object]:
        """Describe a command's policy and executor treatment."""
        spec = self._commands.get(name)
        category = self.category_of(name)
        return {
            "name": name,
            "known": spec is not None,
            "category": category.value if category else None,
            "group": spec.group.value if spec else None,
        }


__all__ = [
    "CommandCategory",
    "CommandGroup",
    "CommandSpec",
    "CommandCatalog",
    "CATEGORY_PRECEDENCE",
    "LEVEL_GROUPS",
]
