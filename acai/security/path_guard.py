"""Path containment for every path-bearing tool argument.

A requested path is accepted only when both its lexical form and its real
form (symlinks resolved) fall under one of the allowed roots. Results are
returned as PathResolution values; nothing here raises for a denied path.
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

import structlog

logger = structlog.get_logger()


class AccessError(StrEnum):
    outside_allowed_roots = "outside_allowed_roots"
    symlink_escape = "symlink_escape"
    parent_missing = "parent_missing"


@dataclass(frozen=True)
class PathResolution:
    """Outcome of PathGuard.resolve: a contained path or an access error."""

    path: Path | None
    error: AccessError | None = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None


def is_within(path: str | os.PathLike[str], roots: Iterable[str | os.PathLike[str]]) -> bool:
    """True when path equals or descends from any root (pure string comparison)."""
    target = os.path.normpath(os.fspath(path))
    for root in roots:
        base = os.path.normpath(os.fspath(root))
        try:
            if os.path.commonpath([target, base]) == base:
                return True
        except ValueError:
            # Different drives on Windows, or mixed absolute/relative.
            continue
    return False


def _absolute(requested: str, working_dir: Path) -> str:
    expanded = os.path.expanduser(requested)
    if not os.path.isabs(expanded):
        expanded = os.path.join(os.fspath(working_dir), expanded)
    return os.path.normpath(expanded)


class PathGuard:
    """Resolves user-supplied paths against a fixed set of allowed roots."""

    def __init__(self, allowed_roots: Iterable[str | os.PathLike[str]]) -> None:
        lexical: list[str] = []
        real: list[str] = []
        for root in allowed_roots:
            abs_root = os.path.normpath(os.path.abspath(os.path.expanduser(os.fspath(root))))
            lexical.append(abs_root)
            real.append(os.path.realpath(abs_root))
        if not lexical:
            raise ValueError("PathGuard needs at least one allowed root")
        self._lexical_roots = tuple(dict.fromkeys(lexical))
        self._real_roots = tuple(dict.fromkeys(real))

    @property
    def roots(self) -> tuple[str, ...]:
        return self._lexical_roots

    def describe_roots(self) -> str:
        return ", ".join(self._lexical_roots)

    def resolve(
        self,
        requested: str,
        working_dir: Path,
        *,
        allow_missing_parents: bool = False,
    ) -> PathResolution:
        """Resolve requested against working_dir and check containment.

        Existing paths are checked by real path. For a path that does not exist
        yet, the parent's real path is checked; with allow_missing_parents the
        nearest existing ancestor is checked instead of failing.
        """
        absolute = _absolute(requested, working_dir)

        if not (
            is_within(absolute, self._lexical_roots)
            or is_within(absolute, self._real_roots)
        ):
            return self._deny(
                requested,
                AccessError.outside_allowed_roots,
                f"{absolute} is not within any of {self.describe_roots()}",
            )

        if os.path.lexists(absolute):
            real = os.path.realpath(absolute)
            if not is_within(real, self._real_roots):
                return self._deny(
                    requested,
                    AccessError.symlink_escape,
                    f"{absolute} resolves to {real}, outside {self.describe_roots()}",
                )
            return PathResolution(path=Path(real))

        parent, name = os.path.split(absolute)
        missing = [name]
        while not os.path.isdir(parent):
            if not allow_missing_parents:
                return self._deny(
                    requested,
                    AccessError.parent_missing,
                    f"parent directory {parent} does not exist",
                )
            head, tail = os.path.split(parent)
            if head == parent:
                return self._deny(
                    requested,
                    AccessError.parent_missing,
                    f"no existing ancestor for {absolute}",
                )
            missing.insert(0, tail)
            parent = head

        real_parent = os.path.realpath(parent)
        if not is_within(real_parent, self._real_roots):
            return self._deny(
                requested,
                AccessError.symlink_escape,
                f"{parent} resolves to {real_parent}, outside {self.describe_roots()}",
            )
        return PathResolution(path=Path(real_parent, *missing))

    def _deny(self, requested: str, error: AccessError, detail: str) -> PathResolution:
        logger.info("path_access_denied", requested=requested, error=error.value, detail=detail)
        return PathResolution(path=None, error=error, detail=detail)
