"""Key/value state store.

State is grouped by scope. Two scopes matter to a narrative run:

    execution-{id}   values produced by acts of one execution, keyed
                     "{act_name}.{field}" (response, rows, row_count, result...)
    actor-{name}     long-lived values belonging to an actor

Keys are unique within a scope; a later write overwrites. `{{act.field}}`
templates read from the execution scope; `{state:key}` references read the
execution scope first and fall back to the actor scope.
"""

from __future__ import annotations

import logging
from typing import Any

from storyloom.errors import UnresolvedReferenceError
from storyloom.models import StateEntry, actor_scope, execution_scope

logger = logging.getLogger(__name__)


class StateStore:
    def __init__(self, storage) -> None:
        self._storage = storage

    def get(self, scope: str, key: str, default: Any = None) -> Any:
        return self._storage.get_scope(scope).get(key, default)

    def set(self, scope: str, key: str, value: Any) -> None:
        self.set_many(scope, {key: value})

    def set_many(self, scope: str, values: dict[str, Any]) -> None:
        entries = self._storage.get_scope(scope)
        entries.update(values)
        self._storage.put_scope(scope, entries)
        logger.debug("state scope=%s keys=%s", scope, sorted(values))

    def entries(self, scope: str) -> list[StateEntry]:
        return [
            StateEntry(scope=scope, key=k, value=v)
            for k, v in self._storage.get_scope(scope).items()
        ]

    def clear(self, scope: str) -> None:
        self._storage.delete_scope(scope)

    # ------------------------------------------------------------------
    # Narrative helpers
    # ------------------------------------------------------------------

    def record_act(self, execution_id: str, act_name: str, fields: dict[str, Any]) -> None:
        """Store act output fields as "{act_name}.{field}" in the execution scope."""
        self.set_many(
            execution_scope(execution_id),
            {f"{act_name}.{k}": v for k, v in fields.items()},
        )

    def template_context(self, execution_id: str) -> dict[str, dict[str, Any]]:
        """Nested {act: {field: value}} view of an execution scope."""
        ctx: dict[str, dict[str, Any]] = {}
        for key, value in self._storage.get_scope(execution_scope(execution_id)).items():
            act, sep, field = key.partition(".")
            if not sep:
                continue
            ctx.setdefault(act, {})[field] = value
        return ctx

    def lookup(self, execution_id: str, actor_name: str, key: str) -> Any:
        for scope in (execution_scope(execution_id), actor_scope(actor_name)):
            entries = self._storage.get_scope(scope)
            if key in entries:
                return entries[key]
        raise UnresolvedReferenceError(
            f"state:{key}", f"no value in execution or actor {actor_name!r} scope"
        )
