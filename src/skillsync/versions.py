from __future__ import annotations

import re

from .errors import ValidationError


def _split_version(version: str) -> tuple[tuple[int, ...], tuple[str, ...] | None]:
    if not isinstance(version, str):
        raise ValueError("version must be str")
    raw = version.strip()
    if raw.startswith(("v", "V")):
        raw = raw[1:]
    if not raw:
        raise ValueError("empty version")
    raw = raw.split("+", 1)[0]  # ignore build metadata
    if "-" in raw:
        main_s, pre_s = raw.split("-", 1)
        pre_parts = tuple(p for p in pre_s.split(".") if p != "")
    else:
        main_s = raw
        pre_parts = None
    main_parts = main_s.split(".")
    if any(not p.isdigit() for p in main_parts):
        raise ValueError(f"Unsupported version format: {version!r}")
    nums = [int(p) for p in main_parts]
    while len(nums) < 3:
        nums.append(0)
    return tuple(nums), pre_parts


def is_valid_version(version: str) -> bool:
    try:
        _split_version(version)
    except ValueError:
        return False
    return True


def compare_versions(a: str, b: str) -> int:
    try:
        ma, pa = _split_version(a)
        mb, pb = _split_version(b)
    except ValueError:
        if a < b:
            return -1
        if a > b:
            return 1
        return 0
    if ma < mb:
        return -1
    if ma > mb:
        return 1

    if pa is None and pb is None:
        return 0
    if pa is None:
        return 1
    if pb is None:
        return -1

    for i in range(max(len(pa), len(pb))):
        if i >= len(pa):
            return -1
        if i >= len(pb):
            return 1
        x = pa[i]
        y = pb[i]
        x_num = x.isdigit()
        y_num = y.isdigit()
        if x_num and y_num:
            xi = int(x)
            yi = int(y)
            if xi < yi:
                return -1
            if xi > yi:
                return 1
            continue
        if x_num and not y_num:
            return -1
        if not x_num and y_num:
            return 1
        if x < y:
            return -1
        if x > y:
            return 1
    return 0


def _expand_compatible(spec: str) -> list[str]:
    base = spec[2:].strip()
    given = base.split("+", 1)[0].split("-", 1)[0].split(".")
    if len(given) < 2:
        raise ValueError(f"~= needs at least two version components: {spec!r}")
    nums = list(_split_version(base)[0][: len(given)])
    upper = nums[:-1]
    upper[-1] += 1
    return [f">={base}", "<" + ".".join(str(n) for n in upper)]


def _expand_caret(spec: str) -> list[str]:
    base = spec[1:].strip()
    major, minor, patch = _split_version(base)[0][:3]
    lower = f">={major}.{minor}.{patch}"
    if major > 0:
        upper = f"<{major + 1}.0.0"
    elif minor > 0:
        upper = f"<0.{minor + 1}.0"
    else:
        upper = f"<0.0.{patch + 1}"
    return [lower, upper]


def _expand_tilde(spec: str) -> list[str]:
    base = spec[1:].strip()
    major, minor, patch = _split_version(base)[0][:3]
    lower = f">={major}.{minor}.{patch}"
    upper = f"<{major}.{minor + 1}.0"
    return [lower, upper]


_COMPARATOR_RE = re.compile(r"^(>=|<=|!=|==|>|<|=)?\s*([0-9A-Za-z][0-9A-Za-z.\-+]*)$")


def split_specifier(specifier: str) -> list[str]:
    s = specifier.strip()
    if not s:
        return ["*"]
    # "~= 1.2" and ">= 1.0" are written with spaces in the wild; glue them back.
    s = re.sub(r"(~=|>=|<=|!=|==|>|<|\^|~)\s+", r"\1", s)
    tokens = [t for t in s.replace(",", " ").split() if t]
    if not tokens:
        return ["*"]
    out: list[str] = []
    for token in tokens:
        try:
            if token.startswith("~="):
                out.extend(_expand_compatible(token))
                continue
            if token.startswith("^"):
                out.extend(_expand_caret(token))
                continue
            if token.startswith("~"):
                out.extend(_expand_tilde(token))
                continue
        except ValueError as e:
            raise ValidationError(f"Invalid version requirement: {token!r}") from e
        if token.lower() not in ("*", "latest") and not _COMPARATOR_RE.match(token):
            raise ValidationError(f"Invalid version requirement: {token!r}")
        out.append(token)
    return out


def version_satisfies(version: str, specifier: str) -> bool:
    for token in split_specifier(specifier):
        t = token.strip().lower()
        if t in ("latest", "*"):
            continue

        m = _COMPARATOR_RE.match(token.strip())
        if not m:
            return False

        op = m.group(1) or "="
        rhs = m.group(2)
        cmp = compare_versions(version, rhs)

        if op in ("=", "=="):
            if cmp != 0:
                return False
            continue
        if op == "!=":
            if cmp == 0:
                return False
            continue
        if op == ">":
            if cmp <= 0:
                return False
            continue
        if op == ">=":
            if cmp < 0:
                return False
            continue
        if op == "<":
            if cmp >= 0:
                return False
            continue
        if op == "<=":
            if cmp > 0:
                return False
            continue
        return False
    return True
