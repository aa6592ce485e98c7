# arbor/semver.py
"""
npm flavoured semantic versions and ranges on top of semantic_version.

Features:
- parse(): loose version parsing (``v1.2.3``, ``=1.2.3``) into
  semantic_version.Version, build metadata dropped the way npm formats versions
- ranges handled by semantic_version.NpmSpec (``||``, hyphen ranges,
  x-ranges, caret, tilde, prerelease gating)
- intersects() for override key matching, simplify_range() for audit output
"""

from __future__ import annotations
import re
import functools
from typing import Any, Iterable, List, Optional, Set, Tuple

from semantic_version import NpmSpec, Version

_OP_GAP_RE = re.compile(r"(<=|>=|<|>|=|\^|~)\s+")
_V_PREFIX_RE = re.compile(r"(^|[\s<>=^~])[vV](?=\d)")
_VERSION_TOKEN_RE = re.compile(r"(\d+)(?:\.(\d+|[xX*]))?(?:\.(\d+|[xX*]))?(?:-([0-9A-Za-z.\-]+))?")

# -----------------------
# Versions
# -----------------------
def parse(v: Any, loose: bool = True) -> Optional[Version]:
    """Parse ``1.2.3`` / ``1.2.3-beta.1+build``. Returns None when unparseable."""
    if isinstance(v, Version):
        return v
    if not isinstance(v, str):
        return None
    s = v.strip()
    if loose:
        s = s.lstrip("=v").strip()
    try:
        sv = Version(s)
    except ValueError:
        return None
    return sv.truncate("prerelease") if sv.build else sv


def valid(v: Any) -> Optional[str]:
    sv = parse(v)
    return str(sv) if sv else None


def compare(a: Any, b: Any) -> int:
    pa, pb = parse(a), parse(b)
    if pa is None or pb is None:
        raise ValueError(f"invalid version: {a if pa is None else b}")
    if pa == pb:
        return 0
    return -1 if pa < pb else 1


def gt(a, b) -> bool:
    return compare(a, b) > 0


def gte(a, b) -> bool:
    return compare(a, b) >= 0


def lt(a, b) -> bool:
    return compare(a, b) < 0


def lte(a, b) -> bool:
    return compare(a, b) <= 0


def eq(a, b) -> bool:
    return compare(a, b) == 0


def major(v) -> int:
    sv = parse(v)
    if sv is None:
        raise ValueError(f"invalid version: {v}")
    return sv.major


def sort_versions(versions: Iterable[str]) -> List[str]:
    parsed = [(parse(v), v) for v in versions]
    return [v for sv, v in sorted((p for p in parsed if p[0] is not None), key=lambda p: p[0])]

# -----------------------
# Ranges
# -----------------------
def _normalize_range(text: str) -> str:
    # NpmSpec wants one space between comparators and none after an operator
    s = " ".join(text.replace("~>", "~").split())
    s = _OP_GAP_RE.sub(r"\1", s)
    s = _V_PREFIX_RE.sub(r"\1", s)
    return " || ".join(part.strip() or "*" for part in s.split("||")) if s else "*"


@functools.lru_cache(maxsize=4096)
def _spec(text: str) -> NpmSpec:
    return NpmSpec(_normalize_range(text))


def valid_range(text: Any) -> bool:
    if not isinstance(text, str):
        return False
    try:
        _spec(text)
    except ValueError:
        return False
    return True


def satisfies(version: Any, range_text: str, include_prerelease: bool = False) -> bool:
    """
    npm satisfies(). With include_prerelease a prerelease also matches when
    its release triple does (``1.3.0-beta.1`` against ``^1.0.0``).
    """
    sv = parse(version)
    if sv is None or not isinstance(range_text, str):
        return False
    try:
        spec = _spec(range_text)
    except ValueError:
        return False
    if spec.match(sv):
        return True
    return bool(include_prerelease and sv.prerelease and spec.match(sv.truncate("patch")))


def max_satisfying(versions: Iterable[str], range_text: str) -> Optional[str]:
    try:
        spec = _spec(range_text)
    except ValueError:
        return None
    parsed = {}
    for v in versions:
        sv = parse(v)
        if sv is not None:
            parsed.setdefault(sv, v)
    best = spec.select(parsed)
    return parsed[best] if best is not None else None


def _witnesses(text: str) -> Set[Version]:
    """Versions at and right after every bound a range names."""
    out: Set[Version] = {Version("0.0.0")}
    for m in _VERSION_TOKEN_RE.finditer(text):
        M = int(m.group(1))
        mi = int(m.group(2)) if m.group(2) and m.group(2).isdigit() else 0
        p = int(m.group(3)) if m.group(3) and m.group(3).isdigit() else 0
        triples: List[Tuple[int, int, int]] = [(M, mi, p), (M, mi, p + 1), (M, mi + 1, 0), (M + 1, 0, 0)]
        if p:
            triples.append((M, mi, p - 1))
        if mi:
            triples.append((M, mi - 1, 0))
        if M:
            triples.append((M - 1, 0, 0))
        out.update(Version(f"{a}.{b}.{c}") for a, b, c in triples)
        if m.group(4):
            pre = parse(f"{M}.{mi}.{p}-{m.group(4)}")
            if pre is not None:
                out.add(pre)
    return out


def intersects(range_a: str, range_b: str) -> bool:
    """True when some version could satisfy both ranges."""
    try:
        sa, sb = _spec(range_a), _spec(range_b)
    except ValueError:
        return False
    for candidate in _witnesses(range_a) | _witnesses(range_b):
        if sa.match(candidate) and sb.match(candidate):
            return True
    return False


def satisfies_outside(range_text: str, excluded: Iterable[str]) -> bool:
    """True when some version satisfies range_text but none of the excluded ranges."""
    excluded = list(excluded)
    try:
        spec = _spec(range_text)
    except ValueError:
        return False
    candidates = _witnesses(range_text)
    for rng in excluded:
        candidates |= _witnesses(rng)
    for candidate in candidates:
        if spec.match(candidate) and not any(satisfies(candidate, rng, include_prerelease=True) for rng in excluded):
            return True
    return False


def simplify_range(versions: Iterable[str], all_versions: Iterable[str]) -> str:
    """Collapse a subset of known versions into contiguous runs joined by ``||``."""
    ordered = sort_versions(set(all_versions))
    wanted = set(versions)
    if not ordered or not wanted:
        return "<0.0.0-0"
    runs: List[Tuple[str, str]] = []
    first: Optional[str] = None
    prev: Optional[str] = None
    for v in ordered:
        if v in wanted:
            if first is None:
                first = v
            prev = v
        elif first is not None:
            runs.append((first, prev))
            first = prev = None
    if first is not None:
        runs.append((first, prev))
    lo, hi = ordered[0], ordered[-1]
    parts = []
    for a, b in runs:
        if a == lo and b == hi:
            return "*"
        if a == b:
            parts.append(a)
        elif a == lo:
            parts.append(f"<={b}")
        elif b == hi:
            parts.append(f">={a}")
        else:
            parts.append(f"{a} - {b}")
    return " || ".join(parts)
