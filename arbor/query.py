# arbor/query.py
"""
query.py - CSS-like selectors over a tree's inventory

Features:
- compound selectors: ``*``, ``#name`` / ``#name@version``, dependency type
  classes (``.prod .dev .optional .peer .peerOptional .workspace .bundled``,
  true when some edge into the node has that type), attributes on package.json
  fields (``[name]``, ``[key=value]``, ``^= $= *=``) and pseudo classes
- pseudo classes: ``:root :scope :empty :link :extraneous :invalid :deduped
  :overridden :private`` plus ``:not(...) :is(...) :has(...) :semver(range)``
- combinators follow dependency edges, not folders: ``a > b`` (b is a direct
  dependency of a), ``a b`` (any transitive dependency), ``a ~ b`` (b shares
  a dependent with a); selector lists are joined with ``,``
- ``#name`` stops at a dot so ``#a.prod`` reads as name plus class; use
  ``[name=lodash.merge]`` for dotted names

Results are unique nodes ordered by location.
"""

from __future__ import annotations
import re
import functools
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from arbor import semver
from arbor.errors import QuerySyntaxError
from arbor.logging import get_logger

logger = get_logger("query")

Predicate = Callable[[Any, "_Context"], bool]
Compound = Tuple[Predicate, ...]
Selector = Tuple[Tuple[Optional[str], Compound], ...]

_COMBINATORS = (">", "~")
_NAME_RE = re.compile(r"(?:@[\w\-]+/)?[\w\-]+")
_VERSION_RE = re.compile(r"[\w.\-+^~*<>=|]+")
_IDENT_RE = re.compile(r"[A-Za-z][\w\-]*")
_ATTR_RE = re.compile(r"""\[\s*([\w.\-]+)\s*(?:([\^$*]?=)\s*("[^"]*"|'[^']*'|[^\]\s]*)\s*)?\]""")

_DEP_CLASSES: Dict[str, Callable[[Any], bool]] = {
    "prod": lambda e: e.prod,
    "dev": lambda e: e.dev,
    "optional": lambda e: e.optional,
    "peer": lambda e: e.peer,
    "peerOptional": lambda e: e.type == "peerOptional",
    "workspace": lambda e: e.workspace,
    "bundled": lambda e: e.bundled,
}

# -----------------------
# graph helpers
# -----------------------
def _deps(node: Any) -> List[Any]:
    src = node.target if node.is_link and node.target is not None else node
    return [e.to for _, e in sorted(src.edges_out.items()) if e.to is not None]


def _transitive(node: Any) -> Dict[Any, None]:
    out: Dict[Any, None] = {}
    queue = _deps(node)
    while queue:
        dep = queue.pop(0)
        if dep in out:
            continue
        out[dep] = None
        queue.extend(_deps(dep))
    return out


def _siblings(node: Any) -> Dict[Any, None]:
    out: Dict[Any, None] = {}
    for edge in node.edges_in:
        if edge.from_node is None:
            continue
        for dep in _deps(edge.from_node):
            if dep is not node:
                out[dep] = None
    return out


class _Context:
    def __init__(self, scope: Any, nodes: List[Any]):
        self.scope = scope
        self.nodes = nodes
        self._lists: Dict[int, Dict[Any, None]] = {}

    def selected(self, selectors: Tuple[Selector, ...]) -> Dict[Any, None]:
        key = id(selectors)
        if key not in self._lists:
            self._lists[key] = _select(selectors, self)
        return self._lists[key]


def _matches(node: Any, compound: Compound, ctx: _Context) -> bool:
    return all(pred(node, ctx) for pred in compound)


def _combine(nodes: Iterable[Any], comb: str) -> Dict[Any, None]:
    out: Dict[Any, None] = {}
    for node in nodes:
        if comb == ">":
            out.update(dict.fromkeys(_deps(node)))
        elif comb == "~":
            out.update(_siblings(node))
        else:
            out.update(_transitive(node))
    return out


def _select(selectors: Tuple[Selector, ...], ctx: _Context) -> Dict[Any, None]:
    found: Dict[Any, None] = {}
    for steps in selectors:
        _, first = steps[0]
        current = [n for n in ctx.nodes if _matches(n, first, ctx)]
        for comb, compound in steps[1:]:
            current = [n for n in _combine(current, comb) if _matches(n, compound, ctx)]
        found.update(dict.fromkeys(current))
    return found

# -----------------------
# predicates
# -----------------------
def _any(node: Any, ctx: _Context) -> bool:
    return True


def _scope(node: Any, ctx: _Context) -> bool:
    return node is ctx.scope


_PSEUDOS: Dict[str, Predicate] = {
    "root": lambda n, ctx: n.is_root,
    "scope": _scope,
    "empty": lambda n, ctx: not _deps(n),
    "link": lambda n, ctx: n.is_link,
    "extraneous": lambda n, ctx: n.extraneous,
    "invalid": lambda n, ctx: any(e.invalid for e in n.edges_in),
    "deduped": lambda n, ctx: len(n.edges_in) > 1,
    "overridden": lambda n, ctx: any(e.spec != e.raw_spec for e in n.edges_in),
    "private": lambda n, ctx: bool(n.package.get("private")),
}


def _name_is(name: str, version: Optional[str]) -> Predicate:
    def pred(node: Any, ctx: _Context) -> bool:
        if node.name != name and node.package_name != name:
            return False
        return version is None or semver.satisfies(node.version, version)
    return pred


def _dep_class(test: Callable[[Any], bool]) -> Predicate:
    def pred(node: Any, ctx: _Context) -> bool:
        return any(test(e) for e in node.edges_in)
    return pred


def _attribute(key: str, op: Optional[str], value: Optional[str]) -> Predicate:
    def pred(node: Any, ctx: _Context) -> bool:
        if key not in node.package:
            return False
        if op is None:
            return True
        actual = node.package[key]
        if not isinstance(actual, (str, int, float, bool)):
            return False
        text = str(actual).lower() if isinstance(actual, bool) else str(actual)
        if op == "=":
            return text == value
        if op == "^=":
            return text.startswith(value)
        if op == "$=":
            return text.endswith(value)
        return value in text
    return pred

# -----------------------
# parser
# -----------------------
class _Parser:
    def __init__(self, text: str, relative: bool = False):
        self.text = text
        self.pos = 0
        self.relative = relative

    def fail(self, message: str):
        raise QuerySyntaxError(f"{message} at position {self.pos} in {self.text!r}", query=self.text, position=self.pos)

    def peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def skip_ws(self) -> bool:
        start = self.pos
        while self.peek().isspace():
            self.pos += 1
        return self.pos > start

    def parse(self) -> Tuple[Selector, ...]:
        selectors = [self.parse_selector()]
        while self.peek() == ",":
            self.pos += 1
            selectors.append(self.parse_selector())
        if self.pos < len(self.text):
            self.fail(f"unexpected {self.peek()!r}")
        return tuple(selectors)

    def parse_selector(self) -> Selector:
        steps: List[Tuple[Optional[str], Compound]] = []
        self.skip_ws()
        comb: Optional[str] = None
        if self.peek() in _COMBINATORS:
            if not self.relative:
                self.fail("selector starts with a combinator")
            steps.append((None, (_scope,)))
            comb = self.peek()
            self.pos += 1
        elif self.relative:
            steps.append((None, (_scope,)))
            comb = " "
        while True:
            self.skip_ws()
            compound = self.parse_compound()
            if not compound:
                self.fail("expected a selector")
            steps.append((comb, compound))
            spaced = self.skip_ws()
            ch = self.peek()
            if ch in ("", ","):
                return tuple(steps)
            if ch in _COMBINATORS:
                comb = ch
                self.pos += 1
            elif spaced:
                comb = " "
            else:
                self.fail(f"unexpected {ch!r}")

    def parse_compound(self) -> Compound:
        parts: List[Predicate] = []
        while True:
            ch = self.peek()
            if ch == "*":
                self.pos += 1
                parts.append(_any)
            elif ch == "#":
                self.pos += 1
                name = self.read(_NAME_RE, "package name")
                version = None
                if self.peek() == "@":
                    self.pos += 1
                    version = self.read(_VERSION_RE, "version")
                parts.append(_name_is(name, version))
            elif ch == ".":
                self.pos += 1
                cls = self.read(_IDENT_RE, "dependency type")
                if cls not in _DEP_CLASSES:
                    self.fail(f"unknown dependency type .{cls}")
                parts.append(_dep_class(_DEP_CLASSES[cls]))
            elif ch == ":":
                self.pos += 1
                parts.append(self.parse_pseudo())
            elif ch == "[":
                m = _ATTR_RE.match(self.text, self.pos)
                if m is None:
                    self.fail("malformed attribute selector")
                self.pos = m.end()
                value = m.group(3)
                if value and value[0] in "\"'":
                    value = value[1:-1]
                parts.append(_attribute(m.group(1), m.group(2), value))
            else:
                return tuple(parts)

    def read(self, pattern: "re.Pattern[str]", what: str) -> str:
        m = pattern.match(self.text, self.pos)
        if m is None:
            self.fail(f"expected a {what}")
        self.pos = m.end()
        return m.group(0)

    def read_argument(self) -> str:
        if self.peek() != "(":
            self.fail("expected '('")
        depth, start, quote = 0, self.pos + 1, None
        while self.pos < len(self.text):
            ch = self.text[self.pos]
            if quote:
                if ch == quote:
                    quote = None
            elif ch in "\"'":
                quote = ch
            elif ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth == 0:
                    self.pos += 1
                    return self.text[start:self.pos - 1]
            self.pos += 1
        self.fail("unbalanced parentheses")

    def parse_pseudo(self) -> Predicate:
        name = self.read(_IDENT_RE, "pseudo class")
        if name in _PSEUDOS:
            return _PSEUDOS[name]
        if name in ("not", "is", "has"):
            inner = _Parser(self.read_argument(), relative=(name == "has")).parse()
            if name == "has":
                return lambda n, ctx: bool(_select(inner, _Context(n, ctx.nodes)))
            if name == "is":
                return lambda n, ctx: n in ctx.selected(inner)
            return lambda n, ctx: n not in ctx.selected(inner)
        if name == "semver":
            rng = self.read_argument().strip().strip("\"'")
            if not semver.valid_range(rng):
                self.fail(f"invalid range {rng!r}")
            return lambda n, ctx: bool(n.version) and semver.satisfies(n.version, rng)
        self.fail(f"unknown pseudo class :{name}")


@functools.lru_cache(maxsize=256)
def parse_query(query: str) -> Tuple[Selector, ...]:
    if not isinstance(query, str) or not query.strip():
        raise QuerySyntaxError("empty query", query=query)
    return _Parser(query).parse()


def query_selector_all(node: Any, query: str) -> List[Any]:
    """Every node in node's tree matching query; ``:scope`` is node itself."""
    selectors = parse_query(query)
    ctx = _Context(node, sorted(node.root.inventory, key=lambda n: n.location))
    found = _select(selectors, ctx)
    logger.debug("query %r matched %d nodes", query, len(found))
    return sorted(found, key=lambda n: n.location)
