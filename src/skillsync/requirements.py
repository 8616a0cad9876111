"""
Parser for the unlocked requirements file.

One requirement per line:

    code-review>=1.2,<2.0
    git+https://github.com/acme/skills.git@main#name=helper&path=skills/helper
    ./local/my-agent
    https://example.com/artifacts/planner.zip

Lines starting with ``#`` and blank lines are ignored. Turning requirements
into a lock file is a separate generation step; this module only reads them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Union
from urllib.parse import parse_qs

from .errors import ParseError, ValidationError
from .versions import split_specifier

_NAME_RE = re.compile(r"^([A-Za-z0-9][A-Za-z0-9._/-]*)\s*(.*)$")
_SPEC_START = ("==", ">=", "<=", "!=", "~=", ">", "<")


@dataclass(frozen=True)
class RegistryRequirement:
    name: str
    specifier: str | None = None


@dataclass(frozen=True)
class GitRequirement:
    url: str
    ref: str
    name: str | None = None
    path: str | None = None


@dataclass(frozen=True)
class PathRequirement:
    path: str


@dataclass(frozen=True)
class HttpRequirement:
    url: str


Requirement = Union[RegistryRequirement, GitRequirement, PathRequirement, HttpRequirement]


def _parse_git(line: str, lineno: int) -> GitRequirement:
    body = line[len("git+") :]
    fragment = ""
    if "#" in body:
        body, fragment = body.split("#", 1)
    # The ref separator is the last "@" after the host part, so scp-style
    # "git@github.com:..." user info is not mistaken for a ref.
    scheme_end = body.find("://")
    search_from = scheme_end + 3 if scheme_end >= 0 else 0
    host_end = body.find("/", search_from)
    at_idx = body.rfind("@")
    if at_idx <= max(host_end, search_from) or at_idx == len(body) - 1:
        raise ParseError(f"line {lineno}: git requirement needs '@<ref>': {line!r}")
    url, ref = body[:at_idx], body[at_idx + 1 :]

    params = parse_qs(fragment, keep_blank_values=False)
    unknown = set(params) - {"name", "path"}
    if unknown:
        raise ParseError(f"line {lineno}: unknown git requirement options: {', '.join(sorted(unknown))}")
    name = params.get("name", [None])[0]
    path = params.get("path", [None])[0]
    return GitRequirement(url=url, ref=ref, name=name, path=path)


def _is_path_like(line: str) -> bool:
    return line.startswith(("./", "../", "/", "~")) or (line.endswith(".zip") and "://" not in line)


def parse_requirement_line(line: str, lineno: int = 1) -> Requirement | None:
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None

    if stripped.startswith("git+"):
        return _parse_git(stripped, lineno)
    if stripped.startswith(("http://", "https://")):
        return HttpRequirement(url=stripped)
    if _is_path_like(stripped):
        return PathRequirement(path=stripped)

    m = _NAME_RE.match(stripped)
    if not m:
        raise ParseError(f"line {lineno}: cannot parse requirement {stripped!r}")
    name, rest = m.group(1), m.group(2).strip()
    if not rest:
        return RegistryRequirement(name=name)
    if not rest.startswith(_SPEC_START):
        raise ParseError(f"line {lineno}: invalid version specifier {rest!r}")
    try:
        split_specifier(rest)
    except ValidationError as e:
        raise ParseError(f"line {lineno}: {e}") from e
    return RegistryRequirement(name=name, specifier=rest)


def parse_requirements(text: str) -> list[Requirement]:
    out: list[Requirement] = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        req = parse_requirement_line(line, lineno)
        if req is not None:
            out.append(req)
    return out


def load_requirements(path: str | Path) -> list[Requirement]:
    p = Path(path).expanduser()
    try:
        text = p.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(f"Requirements file is not valid UTF-8: {p}") from e
    except OSError as e:
        raise ParseError(f"Cannot read requirements file {p}: {e.strerror or e}") from e
    return parse_requirements(text)
