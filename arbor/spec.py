# arbor/spec.py
"""
Dependency specifier parsing and validity checks.

Features:
- parse_spec(name, raw, where): classify a specifier as range, version, tag,
  alias, directory, file, git or remote
- parse_arg("name@spec"): split user supplied add requests (scoped names ok)
- dep_valid(child, spec, accept, requestor): does a node satisfy a specifier
"""

from __future__ import annotations
import os
import re
import posixpath
from dataclasses import dataclass
from typing import Any, Optional

from arbor import semver

REGISTRY_TYPES = ("range", "version", "tag")
TARBALL_EXTENSIONS = (".tgz", ".tar.gz", ".tar")

_GIT_PREFIX_RE = re.compile(r"^(git\+[a-z]+://|git://|github:|gitlab:|bitbucket:|gist:)")
_GIT_SHORTHAND_RE = re.compile(r"^[A-Za-z0-9_.\-]+/[A-Za-z0-9_.\-]+(#.*)?$")
_SCP_RE = re.compile(r"^git@[^:]+:")
_NAME_RE = re.compile(r"^(@[a-z0-9\-~][a-z0-9\-._~]*/)?[a-z0-9\-~._][a-z0-9\-._~]*$", re.IGNORECASE)


@dataclass
class Spec:
    name: Optional[str]
    raw_spec: str
    type: str
    fetch_spec: Optional[str] = None
    sub_spec: Optional["Spec"] = None
    git_committish: Optional[str] = None
    git_range: Optional[str] = None

    @property
    def registry(self) -> bool:
        return self.type in REGISTRY_TYPES or (self.type == "alias" and self.sub_spec is not None)

    @property
    def raw(self) -> str:
        return f"{self.name}@{self.raw_spec}" if self.name else self.raw_spec

    def __str__(self):
        return self.raw


def valid_package_name(name: str) -> bool:
    return bool(name) and bool(_NAME_RE.match(name)) and len(name) <= 214


def _resolve_path(path: str, where: Optional[str]) -> str:
    path = os.path.expanduser(path)
    if where and not os.path.isabs(path):
        path = os.path.join(where, path)
    return posixpath.normpath(path.replace(os.sep, "/"))


def normalize_git_url(url: Optional[str]) -> str:
    """Reduce every spelling of a hosted repository to ``host/user/repo``."""
    if not url:
        return ""
    u = url.split("#", 1)[0]
    u = re.sub(r"^git\+", "", u)
    for short, host in (("github:", "github.com/"), ("gitlab:", "gitlab.com/"), ("bitbucket:", "bitbucket.org/")):
        if u.startswith(short):
            u = host + u[len(short):]
    scp = bool(_SCP_RE.match(u))
    u = re.sub(r"^[a-z]+://", "", u)
    u = re.sub(r"^[^@/]+@", "", u)
    if scp:
        u = u.replace(":", "/", 1)
    if _GIT_SHORTHAND_RE.match(u) and "." not in u.split("/", 1)[0]:
        u = "github.com/" + u
    if u.endswith(".git"):
        u = u[:-4]
    return u.rstrip("/").lower()


def parse_spec(name: Optional[str], raw: Optional[str], where: Optional[str] = None) -> Spec:
    raw = (raw or "").strip()
    if raw == "":
        raw = "*"

    if raw.startswith("npm:"):
        sub = parse_arg(raw[4:], where)
        if sub.name is None or not sub.registry:
            raise ValueError(f"aliases must point at registry packages: {raw}")
        return Spec(name, raw, "alias", sub.fetch_spec, sub_spec=sub)

    if raw.startswith("file:") or raw.startswith(("./", "../", "/", "~/")) or raw in (".", ".."):
        path = raw[5:] if raw.startswith("file:") else raw
        # file:///abs and file://abs spellings
        path = re.sub(r"^//+", "/", path)
        fetch = _resolve_path(path, where)
        kind = "file" if fetch.lower().endswith(TARBALL_EXTENSIONS) else "directory"
        return Spec(name, raw, kind, fetch)

    if _GIT_PREFIX_RE.match(raw) or _SCP_RE.match(raw) or (_GIT_SHORTHAND_RE.match(raw) and not raw.startswith("@")):
        url, _, committish = raw.partition("#")
        spec = Spec(name, raw, "git", url, git_committish=committish or None)
        if committish.startswith("semver:"):
            spec.git_range = committish[len("semver:"):]
            spec.git_committish = None
        return spec

    if re.match(r"^https?://", raw):
        return Spec(name, raw, "remote", raw)

    sv = semver.parse(raw)
    if sv is not None:
        return Spec(name, raw, "version", str(sv))
    if semver.valid_range(raw):
        return Spec(name, raw, "range", raw)
    return Spec(name, raw, "tag", raw)


def parse_arg(arg: str, where: Optional[str] = None) -> Spec:
    """Parse ``name@spec``, ``@scope/name@spec``, bare names or bare specifiers."""
    arg = arg.strip()
    if arg.startswith("@"):
        at = arg.find("@", 1)
    elif re.match(r"^(file:|\.|/|~|git|https?:|github:)", arg) or _GIT_SHORTHAND_RE.match(arg):
        return parse_spec(None, arg, where)
    else:
        at = arg.find("@")
    if at == -1:
        name, raw = arg, "*"
    else:
        name, raw = arg[:at], arg[at + 1:]
    return parse_spec(name, raw, where)

# -----------------------
# Validity of a node for a specifier
# -----------------------
def _root_path(node: Any) -> Optional[str]:
    root = getattr(node, "root", None)
    return getattr(root, "realpath", None) if root is not None else None


def _resolved_path(child: Any) -> Optional[str]:
    resolved = child.resolved
    if not resolved or not resolved.startswith("file:"):
        return None
    return _resolve_path(resolved[5:], _root_path(child))


def dep_valid(child: Any, spec: Spec, accept: Optional[str] = None, requestor: Any = None) -> bool:
    if spec.type == "alias":
        sub = spec.sub_spec
        return child.package_name == sub.name and dep_valid(child, sub, accept, requestor)

    if spec.type in ("range", "version"):
        if spec.type == "range" and spec.fetch_spec.strip() in ("*", "x", "X"):
            return True
        if not child.version:
            return False
        if semver.satisfies(child.version, spec.fetch_spec):
            return True
        return bool(accept) and semver.satisfies(child.version, accept)

    if spec.type == "tag":
        return child.is_registry_dependency

    if spec.type == "directory":
        return bool(child.is_link) and posixpath.normpath(child.realpath) == spec.fetch_spec

    if spec.type == "file":
        return _resolved_path(child) == spec.fetch_spec

    if spec.type == "remote":
        return child.resolved == spec.fetch_spec

    if spec.type == "git":
        if not child.resolved or normalize_git_url(child.resolved) != normalize_git_url(spec.fetch_spec):
            return False
        if spec.git_range:
            return bool(child.version) and semver.satisfies(child.version, spec.git_range)
        if spec.git_committish:
            _, _, sha = child.resolved.partition("#")
            return sha.startswith(spec.git_committish) or spec.git_committish == sha
        return True

    return False
