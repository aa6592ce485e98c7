# arbor/__init__.py
"""Dependency graph manager for npm-style package trees."""

from arbor.arborist import Arborist
from arbor.audit import AuditReport, FileAdvisoryFeed, LocalAdvisoryFeed
from arbor.build_ideal import IdealTreeBuilder, build_ideal_tree
from arbor.diff import Diff
from arbor.edge import Edge
from arbor.errors import ArborError
from arbor.load_actual import load_actual
from arbor.node import Link, Node, relocate
from arbor.overrides import OverrideSet
from arbor.reify import Reifier
from arbor.registry import DirectoryRegistry, LocalRegistry
from arbor.shrinkwrap import Shrinkwrap

__version__ = "1.0.0"
