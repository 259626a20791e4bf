from __future__ import annotations

from decimal import Decimal
from numbers import Number
from typing import Any, Collection, Dict, Mapping, Optional

from quarry.config import MergeRule
from quarry.types import MergeStrategy


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def replace(existing: Any, incoming: Any) -> Any:
    return incoming


def preserve(existing: Any, incoming: Any) -> Any:
    return incoming if existing is None else existing


def append(existing: Any, incoming: Any) -> Any:
    if isinstance(existing, str) and isinstance(incoming, str):
        return existing + incoming
    return incoming


def numeric(existing: Any, incoming: Any) -> Any:
    if not (_is_number(existing) and _is_number(incoming)):
        return incoming
    if isinstance(existing, Decimal) != isinstance(incoming, Decimal):
        return Decimal(str(existing)) + Decimal(str(incoming))
    return existing + incoming


STRATEGIES = {
    MergeStrategy.REPLACE: replace,
    MergeStrategy.PRESERVE: preserve,
    MergeStrategy.APPEND: append,
    MergeStrategy.NUMERIC: numeric,
}


class MergeResolver:
    """
    Decides, column by column, how an existing row and an incoming row combine
    when an upsert hits a conflict.

    ``strategy`` is a single rule for every column or a mapping of column name to
    rule; columns missing from the mapping fall back to ``replace``. A rule is a
    ``MergeStrategy`` (or its string value) or a ``(existing, incoming) -> value``
    callable. Both sides arrive in stored form: the existing value as read from the
    table, the incoming one after its setter, transform and coercion.
    """

    def __init__(self, strategy: Any = MergeStrategy.REPLACE):
        self.strategy = strategy

    def rule_for(self, column: str) -> MergeRule:
        if isinstance(self.strategy, Mapping):
            return self.strategy.get(column, MergeStrategy.REPLACE)
        return self.strategy

    @staticmethod
    def function_for(rule: MergeRule):
        if callable(rule):
            return rule
        try:
            return STRATEGIES[MergeStrategy(rule)]
        except ValueError:
            raise ValueError(f"Unknown merge strategy: {rule!r}") from None

    def merge(
        self,
        existing: Mapping[str, Any],
        incoming: Mapping[str, Any],
        skip: Optional[Collection[str]] = None,
    ) -> Dict[str, Any]:
        """
        Return the assignments to write for a matched row.

        Only incoming columns are considered; columns in ``skip`` (conflict target,
        primary key, creation timestamp) keep their stored value and are left out.
        """
        skip = set(skip or ())
        merged: Dict[str, Any] = {}
        for column, value in incoming.items():
            if column in skip:
                continue
            merge_fn = self.function_for(self.rule_for(column))
            merged[column] = merge_fn(existing.get(column), value)
        return merged
