"""Base repository class for storage repositories."""

import logging
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, TypeAlias

from sqlalchemy import Table, and_, true
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.elements import ColumnElement

if TYPE_CHECKING:
    from sqlalchemy.engine import CursorResult
    from sqlalchemy.sql import Delete, Insert, Select, Update

from attachment_service.storage.context import DatabaseContext

# A where clause is either a column -> value mapping (all equality), or a list
# mixing such mappings with (column, operator, value) tuples. All entries are
# combined with AND.
WhereCondition: TypeAlias = Mapping[str, Any] | tuple[str, str, Any]
WhereClause: TypeAlias = Mapping[str, Any] | Sequence[WhereCondition]

SUPPORTED_OPERATORS = frozenset(
    {"=", ">", ">=", "<", "<=", "<>", "LIKE", "ILIKE", "IN"}
)


def _comparison(
    table: Table,
    column_name: str,
    op: str,
    value: Any,  # noqa: ANN401
) -> ColumnElement[bool]:
    if column_name not in table.c:
        raise ValueError(f"Unknown column {column_name!r} for table {table.name}")
    column = table.c[column_name]
    op = op.upper()
    if op == "=":
        return column.is_(None) if value is None else column == value
    if op == ">":
        return column > value
    if op == ">=":
        return column >= value
    if op == "<":
        return column < value
    if op == "<=":
        return column <= value
    if op == "<>":
        return column.is_not(None) if value is None else column != value
    if op == "LIKE":
        return column.like(value)
    if op == "ILIKE":
        return column.ilike(value)
    if op == "IN":
        return column.in_(list(value))
    raise ValueError(
        f"Unsupported operator {op!r}; expected one of {sorted(SUPPORTED_OPERATORS)}"
    )


def build_where(table: Table, where: WhereClause) -> ColumnElement[bool]:
    """Translate a where clause into a SQLAlchemy boolean expression.

    Args:
        table: The table whose columns the clause refers to
        where: A column -> value mapping, or a list of mappings and
            ``(column, operator, value)`` tuples

    Returns:
        The AND of all conditions

    Raises:
        ValueError: On unknown columns or unsupported operators
    """
    conditions: list[WhereCondition] = (
        [where] if isinstance(where, Mapping) else list(where)
    )
    clauses: list[ColumnElement[bool]] = []
    for condition in conditions:
        if isinstance(condition, Mapping):
            clauses.extend(
                _comparison(table, column_name, "=", value)
                for column_name, value in condition.items()
            )
        else:
            column_name, op, value = condition
            clauses.append(_comparison(table, column_name, op, value))
    return and_(true(), *clauses)


class BaseRepository:
    """Base class for all storage repositories."""

    def __init__(self, db_context: DatabaseContext) -> None:
        """Initialize repository with database context.

        Args:
            db_context: The database context for operations
        """
        self._db = db_context
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def _execute_with_logging(
        self,
        operation_name: str,
        query: "Select | Insert | Update | Delete",
        params: dict[str, object] | None = None,
    ) -> "CursorResult[object]":
        """Execute query with consistent error logging.

        Args:
            operation_name: Name of the operation for logging
            query: SQLAlchemy query to execute
            params: Optional query parameters

        Raises:
            SQLAlchemyError: Re-raises database errors after logging
        """
        try:
            return await self._db.execute_with_retry(query, params)
        except SQLAlchemyError as e:
            self._logger.error(
                f"Database error in {operation_name}: {e}", exc_info=True
            )
            raise
