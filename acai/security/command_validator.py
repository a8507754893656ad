"""Allow-list validation of shell command lines.

This is a defense-in-depth gate, not a shell parser: dangerous constructs are
detected by scanning the raw command text, and the program name must match an
explicit allow-list literally. Every tool that runs shell commands goes through
this module so the pattern table exists exactly once.
"""

from __future__ import annotations

import os
import re
import shlex
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import structlog

from acai.config.settings import PipePolicy
from acai.security.path_guard import PathGuard

logger = structlog.get_logger()

DANGEROUS_PATTERNS_MESSAGE = (
    "Pipes, redirects, command substitution, chaining, and newlines are disabled for security."
)

# Scanned against the raw command line; quotes are not stripped.
_SUBSTITUTION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"`"),
    re.compile(r"\$\("),
)
_REDIRECT_PATTERN = re.compile(r">>|<<|>|<")
_CHAINING_PATTERN = re.compile(r";|&&|\|\||&")
_NEWLINE_PATTERN = re.compile(r"[\r\n]")
_PIPE_PATTERN = re.compile(r"\|")

# Everything except a lone pipe. `||` is caught by _CHAINING_PATTERN.
_ALWAYS_DENIED: tuple[re.Pattern[str], ...] = (
    *_SUBSTITUTION_PATTERNS,
    _REDIRECT_PATTERN,
    _CHAINING_PATTERN,
    _NEWLINE_PATTERN,
)

_MUTATING_BINARIES = frozenset({
    "rm", "mv", "cp", "mkdir", "rmdir", "touch", "chmod", "chown", "ln",
    "truncate", "dd", "tee",
})
_GIT_MUTATING = frozenset({
    "add", "am", "apply", "branch", "checkout", "switch", "cherry-pick", "clean",
    "commit", "merge", "mv", "pull", "push", "rebase", "reset", "revert", "rm",
    "stash", "tag", "worktree", "submodule", "config",
})
_NPM_MUTATING = frozenset({
    "install", "uninstall", "update", "ci", "publish", "link", "dedupe", "prune",
    "rebuild", "add", "i",
})
_ACTION_WORDS = frozenset({"create", "update", "upgrade", "install"})
_SEGMENT_SPLIT = re.compile(r"\s*(?:&&|\|\||;|\|)\s*")


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    reason: str = ""

    @classmethod
    def valid(cls) -> ValidationResult:
        return cls(ok=True)

    @classmethod
    def invalid(cls, reason: str) -> ValidationResult:
        return cls(ok=False, reason=reason)


def program_name(command: str) -> str:
    """Leading token of a command line: everything before the first space."""
    return command.strip().split(" ", 1)[0]


class CommandValidator:
    """Classifies a command line as allowed or denied.

    pipe_policy is fixed at construction. With PipePolicy.forbid any `|` is
    rejected; with PipePolicy.validate_stages each pipeline stage must itself
    pass the allow-list.
    """

    def __init__(
        self,
        allowed_programs: Iterable[str],
        *,
        pipe_policy: PipePolicy = PipePolicy.forbid,
    ) -> None:
        self._allowed = tuple(allowed_programs)
        self._allowed_set = frozenset(self._allowed)
        self._pipe_policy = pipe_policy

    @property
    def allowed_programs(self) -> tuple[str, ...]:
        return self._allowed

    @property
    def pipe_policy(self) -> PipePolicy:
        return self._pipe_policy

    def validate(self, command: str) -> ValidationResult:
        if not command.strip():
            return ValidationResult.invalid("Command cannot be empty")

        if self._has_dangerous_patterns(command):
            logger.info("command_rejected", reason="dangerous_pattern", command=command[:200])
            return ValidationResult.invalid(DANGEROUS_PATTERNS_MESSAGE)

        if self._pipe_policy == PipePolicy.validate_stages:
            stages = command.split("|")
        else:
            stages = [command]

        for stage in stages:
            stage = stage.strip()
            if not stage:
                return ValidationResult.invalid("Command cannot be empty")
            program = program_name(stage)
            if program not in self._allowed_set:
                logger.info("command_rejected", reason="not_allowed", program=program)
                return ValidationResult.invalid(
                    f"'{program}' is not in the allow-list. "
                    f"Allowed commands: {', '.join(self._allowed)}"
                )

        return ValidationResult.valid()

    def _has_dangerous_patterns(self, command: str) -> bool:
        if any(p.search(command) for p in _ALWAYS_DENIED):
            return True
        if self._pipe_policy == PipePolicy.forbid:
            return _PIPE_PATTERN.search(command) is not None
        return False


def _looks_like_path(token: str) -> bool:
    if token.startswith("-") or "://" in token:
        return False
    return "/" in token or token.startswith((".", "~"))


def split_arguments(command: str) -> list[str] | None:
    """Quote-aware tokenization. Returns None when quoting is unbalanced."""
    try:
        return shlex.split(command, posix=True)
    except ValueError:
        return None


def validate_paths(command: str, guard: PathGuard, cwd: Path) -> ValidationResult:
    """Check that every path-like argument resolves inside the allowed roots.

    Runs after allow-list validation. The program name itself is skipped, as are
    option flags, URLs and commit-message values.
    """
    tokens = split_arguments(command)
    if tokens is None:
        return ValidationResult.invalid("Unable to parse command arguments: unbalanced quotes")

    for i, token in enumerate(tokens[1:], start=1):
        if not token or not _looks_like_path(token):
            continue
        if tokens[i - 1] in ("-m", "--message"):
            continue
        resolution = guard.resolve(token, cwd, allow_missing_parents=True)
        if not resolution.ok:
            resolved = os.path.normpath(os.path.join(cwd, os.path.expanduser(token)))
            return ValidationResult.invalid(
                f"Path '{token}' resolves outside the project directory "
                f"({resolved}). "
                f"All paths must be within {guard.describe_roots()}"
            )
    return ValidationResult.valid()


def is_mutating_command(command: str) -> bool:
    """Heuristic: could this command change files or repository state?"""
    command = command.strip()
    if ">" in command:
        return True

    for segment in _SEGMENT_SPLIT.split(command):
        tokens = split_arguments(segment) or segment.split()
        if not tokens:
            continue
        program = Path(tokens[0]).name
        args = tokens[1:]
        if program in _MUTATING_BINARIES:
            return True
        if program == "git" and args and args[0] in _GIT_MUTATING:
            return True
        if program in ("npm", "pnpm", "yarn") and args and args[0] in _NPM_MUTATING:
            return True
        if program == "sed" and any(a == "-i" or a.startswith("-i") for a in args):
            return True
        if any(a in _ACTION_WORDS for a in args):
            return True
    return False
