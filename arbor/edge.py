# arbor/edge.py
"""
Edge: a declared dependency from one node to a name and specifier.

The edge's target is whatever the source node resolves the name to at the
time of the last reload(); its error is recomputed on every access so it
can never go stale.
"""

from __future__ import annotations
from typing import Any, Dict, Optional, Set

from arbor.errors import OverrideConflictError
from arbor.spec import Spec, parse_spec, dep_valid

TYPES = ("prod", "dev", "optional", "peer", "peerOptional", "workspace")

# error codes, in precedence order
DETACHED = "DETACHED"
MISSING = "MISSING"
PEER_LOCAL = "PEER LOCAL"
INVALID = "INVALID"


class Edge:
    def __init__(self, from_node: Any, type: str, name: str, spec: str, accept: Optional[str] = None, overrides: Any = None):
        if type not in TYPES:
            raise TypeError(f"invalid edge type {type!r}, expected one of {TYPES}")
        if not isinstance(name, str) or not name:
            raise TypeError("edge name must be a non-empty string")
        if from_node is None:
            raise TypeError("edge must be created from a node")
        self._from = from_node
        self._type = type
        self._name = name
        self._spec = spec if isinstance(spec, str) else "*"
        self._accept = accept
        self.overrides = overrides
        self._to: Any = None
        from_node.add_edge_out(self)
        self.reload(hard=True)

    # -----------------------
    # identity
    # -----------------------
    @property
    def name(self) -> str:
        return self._name

    @property
    def type(self) -> str:
        return self._type

    @property
    def from_node(self) -> Any:
        return self._from

    @property
    def to(self) -> Any:
        return self._to

    @property
    def raw_spec(self) -> str:
        return self._spec

    @property
    def accept(self) -> Optional[str]:
        return self._accept

    @property
    def spec(self) -> str:
        """The specifier after overrides are applied."""
        rule = self.overrides
        if rule is not None and rule.value and rule.value != "*" and rule.name == self._name:
            if rule.value.startswith("$"):
                return self._reference(rule.value[1:])
            return rule.value
        return self._spec

    def _reference(self, ref: str) -> str:
        pkg = self._from.root.package if self._from is not None else {}
        for field in ("devDependencies", "optionalDependencies", "dependencies", "peerDependencies"):
            found = (pkg.get(field) or {}).get(ref)
            if found:
                return found
        raise OverrideConflictError(f"Unable to resolve reference ${ref}", name=self._name)

    # -----------------------
    # type flags
    # -----------------------
    @property
    def prod(self) -> bool:
        return self._type == "prod"

    @property
    def dev(self) -> bool:
        return self._type == "dev"

    @property
    def optional(self) -> bool:
        return self._type in ("optional", "peerOptional")

    @property
    def peer(self) -> bool:
        return self._type in ("peer", "peerOptional")

    @property
    def workspace(self) -> bool:
        return self._type == "workspace"

    @property
    def bundled(self) -> bool:
        """The source package ships this dependency inside its own tarball."""
        return self._from is not None and self._name in self._from.bundle_dependencies

    # -----------------------
    # validity
    # -----------------------
    def parsed_spec(self) -> Spec:
        where = self._from.realpath if self._from is not None else None
        return parse_spec(self._name, self.spec, where)

    def satisfied_by(self, node: Any) -> bool:
        if node is None or node.name != self._name:
            return False
        try:
            spec = self.parsed_spec()
        except ValueError:
            return False
        return dep_valid(node, spec, self._accept, self._from)

    @property
    def error(self) -> Optional[str]:
        if self._from is None:
            return DETACHED
        if self._to is None:
            return None if self.optional else MISSING
        if self.peer and self._from is self._to.parent and not self._from.is_top:
            return PEER_LOCAL
        if not self.satisfied_by(self._to):
            return INVALID
        return None

    @property
    def valid(self) -> bool:
        return self.error is None

    @property
    def invalid(self) -> bool:
        return self.error == INVALID

    @property
    def missing(self) -> bool:
        return self.error == MISSING

    @property
    def peer_local(self) -> bool:
        return self.error == PEER_LOCAL

    # -----------------------
    # structure
    # -----------------------
    def reload(self, hard: bool = False) -> None:
        """Re-resolve the target from the source node's current position."""
        if self._from is None:
            return
        if self._from.overrides is not None:
            self.overrides = self._from.overrides.get_edge_rule(self._name, self._spec)
        elif hard:
            self.overrides = None
        new_to = self._from.lookup(self._name)
        if new_to is not self._to:
            if self._to is not None:
                self._to._remove_edge_in(self)
            self._to = new_to
            if new_to is not None:
                new_to._add_edge_in(self)

    def detach(self) -> None:
        if self._to is not None:
            self._to._remove_edge_in(self)
        if self._from is not None and self._from.edges_out.get(self._name) is self:
            del self._from.edges_out[self._name]
        self._to = None
        self._from = None

    def explain(self, seen: Optional[Set[int]] = None) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self._type, "name": self._name, "spec": self.spec}
        if self.spec != self._spec:
            out["rawSpec"] = self._spec
            out["overridden"] = True
        if self.bundled:
            out["bundled"] = True
        if self.error:
            out["error"] = self.error
        if self._from is not None:
            out["from"] = self._from.explain(seen)
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self._type,
            "name": self._name,
            "spec": self.spec,
            "from": self._from.location if self._from is not None else None,
            "to": self._to.location if self._to is not None else None,
            "error": self.error,
        }

    def __repr__(self):
        src = self._from.location if self._from is not None else "<detached>"
        dst = self._to.location if self._to is not None else None
        return f"<Edge {self._type} {src or '<root>'} -> {self._name}@{self.spec} to={dst!r} error={self.error}>"
