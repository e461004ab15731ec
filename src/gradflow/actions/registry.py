# actions/registry.py
from __future__ import annotations

from types import ModuleType
from typing import Dict

from . import container, git_checkout, script

ACTIONS: Dict[str, ModuleType] = {m.USES: m for m in (script, container, git_checkout)}


def get_action(uses: str) -> ModuleType:
    try:
        return ACTIONS[uses]
    except KeyError:
        raise ValueError(f"Unknown action {uses!r}. Known: {sorted(ACTIONS)}") from None
