from __future__ import annotations


class HierarchyError(Exception):
    pass


class NotFoundError(HierarchyError):
    pass


class ValidationError(HierarchyError):
    pass


class ConflictError(HierarchyError):
    pass


class PermissionDenied(HierarchyError):
    pass
