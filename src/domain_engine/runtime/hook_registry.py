"""Hook discovery from a project ``hooks/`` directory.

Each hook file carries a declaration header naming its hook point and
defines a callable named ``hook``::

    # domain-engine:hook Employee.pre_create

    async def hook(inp, raw, tx, context):
        '''Normalize e-mail addresses before insert.'''
        return inp.with_data(email=inp.data.email.lower())

Junction hooks name the relation as well::

    # domain-engine:hook Employee.projects.after_add

    def hook(result, context):
        ...

Entity hook points are the field names of ``EntityHooks`` (``pre_create``,
``post_update``, ``after_find_many``...); junction hook points are those of
``JunctionHooks`` (``pre_add``, ``after_remove``...). Declaring two hooks for
the same point is a configuration error.
"""

from __future__ import annotations

import importlib.util
import logging
import re
import sys
from collections.abc import Callable
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from domain_engine.runtime.hooks import EntityHooks, HookSet, JunctionHooks

logger = logging.getLogger(__name__)

# Declaration header pattern
_HOOK_RE = re.compile(r"#\s*domain-engine:hook\s+(\S+)")

_ENTITY_POINTS = frozenset(f.name for f in fields(EntityHooks))
_JUNCTION_POINTS = frozenset(f.name for f in fields(JunctionHooks))


class HookConfigError(ValueError):
    """Raised when hook declarations are malformed or collide."""


@dataclass
class HookDescriptor:
    """Metadata about a discovered hook."""

    entity: str
    relation: str | None  # set for junction hooks
    hook_point: str
    source_path: Path
    function: Callable[..., Any]

    @property
    def target(self) -> str:
        parts = [self.entity, self.relation, self.hook_point]
        return ".".join(p for p in parts if p)


def parse_target(declared: str) -> tuple[str, str | None, str]:
    """
    Split ``Entity.point`` or ``Entity.relation.point``.

    Raises:
        HookConfigError: If the declaration names no valid hook point
    """
    parts = declared.split(".")
    if len(parts) == 2 and parts[1] in _ENTITY_POINTS:
        return parts[0], None, parts[1]
    if len(parts) == 3 and parts[2] in _JUNCTION_POINTS:
        return parts[0], parts[1], parts[2]
    raise HookConfigError(
        f"Invalid hook declaration '{declared}' (expected Entity.<{'|'.join(sorted(_ENTITY_POINTS))}> "
        f"or Entity.relation.<{'|'.join(sorted(_JUNCTION_POINTS))}>)"
    )


def discover_hooks(hooks_dir: Path) -> list[HookDescriptor]:
    """Scan a hooks directory for hook files with declaration headers.

    Args:
        hooks_dir: Path to the project's ``hooks/`` directory.

    Returns:
        List of discovered hook descriptors.

    Raises:
        HookConfigError: If a header is invalid or its module has no ``hook``
    """
    descriptors: list[HookDescriptor] = []

    if not hooks_dir.is_dir():
        return descriptors

    for py_file in sorted(hooks_dir.rglob("*.py")):
        if py_file.name.startswith("_"):
            continue

        content = py_file.read_text(encoding="utf-8")
        hook_match = _HOOK_RE.search(content)
        if not hook_match:
            continue

        entity, relation, hook_point = parse_target(hook_match.group(1).strip())

        func = _load_hook_function(py_file)
        if func is None:
            raise HookConfigError(f"No callable 'hook' function found in {py_file}")

        descriptors.append(
            HookDescriptor(
                entity=entity,
                relation=relation,
                hook_point=hook_point,
                source_path=py_file,
                function=func,
            )
        )

    return descriptors


def _load_hook_function(py_file: Path) -> Callable[..., Any] | None:
    """Load a Python file and extract the ``hook`` function."""
    module_name = f"domain_engine_hooks.{py_file.stem}"
    spec = importlib.util.spec_from_file_location(module_name, py_file)
    if spec is None or spec.loader is None:
        return None

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module

    try:
        spec.loader.exec_module(module)
    except Exception as e:
        del sys.modules[module_name]
        raise HookConfigError(f"Failed to load hook module {py_file}: {e}") from e

    func: Callable[..., Any] | None = getattr(module, "hook", None)
    if func is None or not callable(func):
        del sys.modules[module_name]
        return None

    return func


def build_hook_set(hooks_dir: Path, base: HookSet | None = None) -> HookSet:
    """Discover hooks and build a frozen hook set.

    Args:
        hooks_dir: Path to the project's ``hooks/`` directory.
        base: Hooks registered in code, extended by the discovered ones.

    Returns:
        Populated HookSet.

    Raises:
        HookConfigError: If two hooks target the same point
    """
    entity_points: dict[str, dict[str, Callable[..., Any]]] = {}
    junction_points: dict[tuple[str, str], dict[str, Callable[..., Any]]] = {}

    if base is not None:
        for name, hooks in base.entities.items():
            entity_points[name] = {
                f.name: getattr(hooks, f.name)
                for f in fields(hooks)
                if getattr(hooks, f.name) is not None
            }
        for key, jhooks in base.junctions.items():
            junction_points[key] = {
                f.name: getattr(jhooks, f.name)
                for f in fields(jhooks)
                if getattr(jhooks, f.name) is not None
            }

    for descriptor in discover_hooks(hooks_dir):
        if descriptor.relation is None:
            slot = entity_points.setdefault(descriptor.entity, {})
        else:
            slot = junction_points.setdefault((descriptor.entity, descriptor.relation), {})
        if descriptor.hook_point in slot:
            raise HookConfigError(
                f"Hook {descriptor.target} declared twice (again in {descriptor.source_path})"
            )
        slot[descriptor.hook_point] = descriptor.function
        logger.info("Registered hook %s from %s", descriptor.target, descriptor.source_path)

    return HookSet.build(
        entities={name: EntityHooks(**points) for name, points in entity_points.items()},
        junctions={key: JunctionHooks(**points) for key, points in junction_points.items()},
    )
