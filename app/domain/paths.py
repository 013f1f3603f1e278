from __future__ import annotations

from sqlalchemy import or_
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import col

from app.domain.models import OrganizationUnit

PATH_SEPARATOR = "."


def child_path(parent_path: str | None, ordinal: int) -> str:
    if not parent_path:
        return str(ordinal)
    return f"{parent_path}{PATH_SEPARATOR}{ordinal}"


def last_ordinal(path: str) -> int:
    return int(path.rsplit(PATH_SEPARATOR, 1)[-1])


def path_depth(path: str) -> int:
    return path.count(PATH_SEPARATOR)


def ancestor_paths(path: str) -> list[str]:
    """Every prefix of ``path``, root first, including ``path`` itself."""
    parts = path.split(PATH_SEPARATOR)
    return [PATH_SEPARATOR.join(parts[: index + 1]) for index in range(len(parts))]


def is_within(path: str, root_path: str) -> bool:
    return path == root_path or path.startswith(f"{root_path}{PATH_SEPARATOR}")


def rebase_path(path: str, old_prefix: str, new_prefix: str) -> str:
    if path == old_prefix:
        return new_prefix
    return f"{new_prefix}{path[len(old_prefix):]}"


def subtree_clause(root_path: str) -> ColumnElement[bool]:
    path_column = col(OrganizationUnit.path)
    return or_(path_column == root_path, path_column.like(f"{root_path}{PATH_SEPARATOR}%"))
