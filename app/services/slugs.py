from __future__ import annotations

import re

PROJECT_ID_PREFIX = "wizbi"

_WHITESPACE = re.compile(r"\s+")
_DISALLOWED = re.compile(r"[^a-z0-9-]")


def slugify(value: str) -> str:
    """Lower-case, whitespace runs to '-', drop anything outside [a-z0-9-]."""

    return _DISALLOWED.sub("", _WHITESPACE.sub("-", value.strip().lower()))


def project_id_for(org_name: str, short_name: str) -> str:
    return f"{PROJECT_ID_PREFIX}-{slugify(org_name)}-{slugify(short_name)}"
