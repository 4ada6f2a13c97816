# permissions.py
"""
Capability scopes.

Grants are mappings of scope -> level ("read" / "write" / "none"), declared
at pipeline level and optionally narrowed per job. Steps request scopes as
"<level>:<scope>" strings, e.g. "write:id-token". A write grant implies read.
"""
from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional, Tuple

from .errors import DefinitionError

LEVELS = {"none": 0, "read": 1, "write": 2}


def parse_scope(requirement: str) -> Tuple[str, str]:
    """'write:id-token' -> ('id-token', 'write')"""
    level, sep, scope = requirement.partition(":")
    if not sep or level not in LEVELS or not scope:
        raise DefinitionError(
            f"Invalid scope {requirement!r}: expected '<level>:<scope>' with level in {sorted(LEVELS)}"
        )
    return scope, level


def validate_grant(grant: Mapping[str, str]) -> None:
    for scope, level in grant.items():
        if level not in LEVELS:
            raise DefinitionError(f"Invalid access level {level!r} for scope {scope!r}")


def effective_grant(
    pipeline_grant: Mapping[str, str],
    job_grant: Optional[Mapping[str, str]],
) -> Dict[str, str]:
    """
    Narrow the pipeline grant by the job grant.

    A job can only lower a level, never raise it above the pipeline's.
    """
    if job_grant is None:
        return dict(pipeline_grant)

    out: Dict[str, str] = {}
    for scope, level in job_grant.items():
        ceiling = pipeline_grant.get(scope, "none")
        out[scope] = level if LEVELS[level] <= LEVELS[ceiling] else ceiling
    return out


def missing_scope(grant: Mapping[str, str], requirements: Iterable[str]) -> Optional[str]:
    """Return the first requirement not satisfied by `grant`, else None."""
    for req in requirements:
        scope, level = parse_scope(req)
        if LEVELS[grant.get(scope, "none")] < LEVELS[level]:
            return req
    return None


def format_grant(grant: Mapping[str, str]) -> str:
    return ",".join(f"{level}:{scope}" for scope, level in sorted(grant.items()) if level != "none")
