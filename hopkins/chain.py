from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Tuple

from hopkins.models import ChainLink, LoadStatus, Task

MAX_CHAIN_DEPTH = 32

module_logger = logging.getLogger(__name__)


def resolve_chains(
    tasks: Dict[str, Task],
    status: LoadStatus,
    logger: Optional[logging.Logger] = None,
) -> Dict[str, Task]:
    """Return a new catalog where every task's ``chain`` holds derived successors.

    Derived tasks copy the successor's definition with the link's options, the
    link's nested chain and no schedule of their own. Missing successors are
    recorded in ``status`` without stopping the rest of the pass.
    """
    log = logger or module_logger
    resolved: Dict[str, Task] = {}
    for name, task in tasks.items():
        chain = _resolve_links(task, task.links, tasks, status, log, depth=1)
        resolved[name] = replace(task, chain=chain)
    return resolved


def _resolve_links(
    parent: Task,
    links: Sequence[ChainLink],
    tasks: Dict[str, Task],
    status: LoadStatus,
    log: logging.Logger,
    depth: int,
) -> Tuple[Task, ...]:
    if not links:
        return ()
    if depth > MAX_CHAIN_DEPTH:
        message = f"chain for {parent.name} exceeds maximum depth {MAX_CHAIN_DEPTH}"
        log.error(message)
        status.fail(message)
        return ()

    chain: List[Task] = []
    for link in links:
        base = tasks.get(link.task)
        if base is None:
            message = f"chained task {link.task} for {parent.name} not found"
            log.error(message)
            status.fail(message)
            continue
        derived = replace(base, options=dict(link.options), links=link.chain, schedule=None, chain=())
        derived = replace(
            derived,
            chain=_resolve_links(derived, link.chain, tasks, status, log, depth + 1),
        )
        chain.append(derived)
    return tuple(chain)


def walk_chain(task: Task) -> List[Task]:
    """Flatten a resolved chain depth-first, excluding ``task`` itself."""
    out: List[Task] = []
    for successor in task.chain:
        out.append(successor)
        out.extend(walk_chain(successor))
    return out
