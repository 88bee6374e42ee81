"""
cmdgate - Pattern Sets

Named, versioned regular-expression sets used for injection detection,
dangerous-command scanning and secret redaction. Each set is compiled once
at import time and is immutable afterwards.
"""

import re
from dataclasses import dataclass
from typing import Iterator, List, Optional, Pattern, Sequence, Tuple

REDACTION_MARKER = "[REDACTED]"


@dataclass(frozen=True)
class NamedPattern:
    """A compiled regular expression with a stable name."""
    name: str
    regex: Pattern

    @property
    def source(self) -> str:
        return self.regex.pattern


class PatternSet:
    """
    Ordered, immutable collection of named patterns.

    Iteration order is the declaration order, so ``search`` always reports
    the first declared pattern that matches.
    """

    def __init__(
        self,
        name: str,
        version: str,
        patterns: Sequence[Tuple[str, str]],
        flags: int = 0,
    ):
        self.name = name
        self.version = version
        self._patterns: Tuple[NamedPattern, ...] = tuple(
            NamedPattern(pattern_name, re.compile(source, flags))
            for pattern_name, source in patterns
        )

    def __iter__(self) -> Iterator[NamedPattern]:
        return iter(self._patterns)

    def __len__(self) -> int:
        return len(self._patterns)

    def __repr__(self) -> str:
        return f"PatternSet({self.name!r}, version={self.version!r}, size={len(self)})"

    @property
    def names(self) -> List[str]:
        return [p.name for p in self._patterns]

    def search(self, text: str) -> Optional[NamedPattern]:
        """Return the first pattern that matches ``text``, if any."""
        for pattern in self._patterns:
            if pattern.regex.search(text):
                return pattern
        return None

    def matches(self, text: str) -> List[NamedPattern]:
        """Return every pattern that matches ``text``."""
        return [p for p in self._patterns if p.regex.search(text)]

    def redact(self, text: str, marker: str = REDACTION_MARKER) -> str:
        """Replace every match of every pattern with ``marker``."""
        for pattern in self._patterns:
            text = pattern.regex.sub(marker, text)
        return text


INJECTION_PATTERNS = PatternSet(
    "injection",
    "1.0.0",
    [
        ("shell_metacharacters", r"""[;&|`$(){}\[\]<>'"\\]"""),
        ("command_substitution", r"\$\([^)]*\)"),
        ("backtick_substitution", r"`[^`]*`"),
        ("redirection", r"[<>]+"),
        ("null_byte", r"\x00"),
        ("control_characters", r"[\x00-\x1f\x7f-\x9f]"),
        ("ansi_escape", r"\x1b\[[0-9;]*[a-zA-Z]"),
    ],
)

TRAVERSAL_PATTERNS = PatternSet(
    "path_traversal",
    "1.0.0",
    [
        ("parent_directory", r"\.\."),
        ("current_directory_segment", r"/\./"),
        ("windows_current_directory", r"\\\.\\"),
        ("home_expansion", r"~/"),
        ("variable_expansion", r"\$[A-Z_]+"),
        ("percent_encoding", r"%[0-9a-fA-F]{2}"),
    ],
)

DANGEROUS_COMMAND_PATTERNS = PatternSet(
    "dangerous_commands",
    "1.0.0",
    [
        ("recursive_root_delete", r"rm\s+-rf\s*/"),
        ("privilege_escalation", r"sudo\s+"),
        ("curl_pipe_shell", r"curl\s+.*\|\s*sh"),
        ("wget_pipe_shell", r"wget\s+.*\|\s*sh"),
        ("eval_call", r"eval\s*\("),
        ("exec_call", r"exec\s*\("),
        ("system_call", r"system\s*\("),
        ("backtick_substitution", r"`[^`]*`"),
        ("command_substitution", r"\$\([^)]*\)"),
        ("chained_delete", r";\s*(rm|del|format)"),
        ("and_chained_delete", r"&&\s*(rm|del|format)"),
        ("piped_delete", r"\|\s*(rm|del|format)"),
    ],
)

SENSITIVE_OUTPUT_PATTERNS = PatternSet(
    "sensitive_output",
    "1.0.0",
    [
        ("api_key", r"""api[_-]?key[_-]?[=:]\s*['"]?([a-zA-Z0-9]{20,})['"]?"""),
        ("access_token", r"""access[_-]?token[_-]?[=:]\s*['"]?([a-zA-Z0-9]{20,})['"]?"""),
        ("secret_key", r"""secret[_-]?key[_-]?[=:]\s*['"]?([a-zA-Z0-9]{20,})['"]?"""),
        ("password", r"""password[_-]?[=:]\s*['"]?([^'"\s]{6,})['"]?"""),
        ("passwd", r"""passwd[_-]?[=:]\s*['"]?([^'"\s]{6,})['"]?"""),
        ("mongodb_url", r"mongodb://[^\s]+"),
        ("postgres_url", r"postgres://[^\s]+"),
        ("mysql_url", r"mysql://[^\s]+"),
        # Private keys and JWTs run before the email rule so a key body
        # is never split by a partial match.
        ("private_key", r"-----BEGIN [A-Z ]+-----[\s\S]*?-----END [A-Z ]+-----"),
        ("jwt", r"eyJ[A-Za-z0-9\-_=]+\.[A-Za-z0-9\-_=]+\.?[A-Za-z0-9\-_.+/=]*"),
        ("email", r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),
        ("card_number", r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"),
        ("us_ssn", r"\b\d{3}-\d{2}-\d{4}\b"),
        ("aws_access_key", r"AKIA[0-9A-Z]{16}"),
        ("github_token", r"gh[pou]_[a-zA-Z0-9]{36}"),
        ("macos_home", r"/Users/[^\s/]+"),
        ("linux_home", r"/home/[^\s/]+"),
        ("windows_home", r"C:\\Users\\[^\s\\]+"),
    ],
    flags=re.IGNORECASE,
)

SECRET_MESSAGE_PATTERNS = PatternSet(
    "secret_messages",
    "1.0.0",
    [
        ("password", r"password[=:]\s*[^\s]+"),
        ("token", r"token[=:]\s*[^\s]+"),
        ("key", r"key[=:]\s*[^\s]+"),
        ("secret", r"secret[=:]\s*[^\s]+"),
        ("api_key", r"api[_-]?key[=:]\s*[^\s]+"),
    ],
    flags=re.IGNORECASE,
)


def redact_output(text: str, workspace_root: Optional[str] = None) -> str:
    """
    Redact sensitive substrings from captured command output.

    The workspace root is rewritten to ``.`` first so that listings keep
    relative paths, then every sensitive pattern is replaced.

    Args:
        text: Raw output
        workspace_root: Absolute workspace path to relativize

    Returns:
        Redacted output
    """
    if workspace_root:
        text = text.replace(str(workspace_root), ".")
    return SENSITIVE_OUTPUT_PATTERNS.redact(text)


def redact_message(text: str) -> str:
    """Redact credential-like assignments from an error message."""
    return SECRET_MESSAGE_PATTERNS.redact(text)


__all__ = [
    "REDACTION_MARKER",
    "NamedPattern",
    "PatternSet",
    "INJECTION_PATTERNS",
    "TRAVERSAL_PATTERNS",
    "DANGEROUS_COMMAND_PATTERNS",
    "SENSITIVE_OUTPUT_PATTERNS",
    "SECRET_MESSAGE_PATTERNS",
    "redact_output",
    "redact_message",
]
