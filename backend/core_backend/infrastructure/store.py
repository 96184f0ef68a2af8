"""
OrderStore - the persistence surface the Groupeat services talk to.

A thin async layer over the Django ORM. Parent documents (offices, users,
restaurants) own child rows (memberships, notifications, orders) through
reverse relations, so "push to array" and "update array elements" become
inserts and filtered updates on those relations.

Only single-row writes are atomic. Every method converts DatabaseError into
StorageError so callers deal with a single failure type.
"""
from functools import wraps
from typing import Any, Dict, Iterable, List, Optional, Union
import logging

from django.db import DatabaseError
from django.db.models import Q, Sum

from core_backend.exceptions import StorageError

logger = logging.getLogger(__name__)

Filters = Optional[Union[Dict[str, Any], Q]]


def storage_operation(func):
    """Translate database failures raised by an async store method into StorageError."""

    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except DatabaseError as e:
            raise StorageError(
                f"Storage operation '{func.__name__}' failed.",
                {"operation": func.__name__, "error": str(e)},
            ) from e

    return wrapper


class OrderStore:
    """
    Async document-style access to the Groupeat models.

    Usage:
        store = OrderStore()
        orders = await store.find(GroupOrder, {"restaurant": restaurant}, order_by=["-date_added"])
    """

    def _queryset(self, source, filters: Filters = None, order_by=None, select_related=None):
        qs = source._default_manager.all() if hasattr(source, "_default_manager") else source.all()

        if isinstance(filters, Q):
            qs = qs.filter(filters)
        elif filters:
            qs = qs.filter(**filters)

        if select_related:
            qs = qs.select_related(*select_related)

        if order_by:
            qs = qs.order_by(*order_by)

        return qs

    @storage_operation
    async def find(
        self,
        model,
        filters: Filters = None,
        fields: Optional[Iterable[str]] = None,
        order_by: Optional[Iterable[str]] = None,
        select_related: Optional[Iterable[str]] = None,
    ) -> List[Any]:
        """Return matching rows as model instances, or dicts when fields are projected."""
        qs = self._queryset(model, filters, order_by, select_related)

        if fields:
            qs = qs.values(*fields)

        return [row async for row in qs]

    @storage_operation
    async def first(self, model, filters: Filters = None, order_by=None, select_related=None):
        qs = self._queryset(model, filters, order_by, select_related)
        return await qs.afirst()

    @storage_operation
    async def aggregate(
        self,
        model,
        filters: Filters = None,
        fields: Optional[Iterable[str]] = None,
        order_by: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
        skip: int = 0,
        group_by: Optional[Iterable[str]] = None,
        sums: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Run an aggregation-style query and return plain dicts.

        Joins are expressed as ``__`` lookups inside fields, filters and
        group_by. ``sums`` maps output names to the field summed per group;
        without group_by the sums cover the whole matching set.

        Args:
            model: model class to query
            filters: lookup dict or Q object
            fields: projected fields (ignored when grouping)
            order_by: sort keys, may reference summed names
            limit / skip: slice applied after sorting
            group_by: fields to group on
            sums: {"output_name": "field"} totals
        """
        qs = self._queryset(model, filters)
        sums = sums or {}

        if group_by:
            qs = qs.values(*group_by).annotate(**{name: Sum(field) for name, field in sums.items()})
        elif sums:
            totals = await qs.aaggregate(**{name: Sum(field) for name, field in sums.items()})
            return [totals]
        elif fields:
            qs = qs.values(*fields)
        else:
            qs = qs.values()

        if order_by:
            qs = qs.order_by(*order_by)

        if limit is not None:
            qs = qs[skip:skip + limit]
        elif skip:
            qs = qs[skip:]

        return [row async for row in qs]

    @storage_operation
    async def insert(self, model, **fields):
        return await model._default_manager.acreate(**fields)

    @storage_operation
    async def update_matching(self, model, filters: Filters, **fields) -> int:
        qs = self._queryset(model, filters)
        return await qs.aupdate(**fields)

    @storage_operation
    async def push_to_array(self, parent, relation: str, **fields):
        """Attach a new child row to parent through its reverse relation."""
        return await getattr(parent, relation).acreate(**fields)

    @storage_operation
    async def update_array_elements_matching(
        self, parent, relation: str, conditions: Filters, **fields
    ) -> int:
        """Update the parent's child rows that match the conditions."""
        qs = self._queryset(getattr(parent, relation), conditions)
        return await qs.aupdate(**fields)

    @storage_operation
    async def exists(self, model, filters: Filters) -> bool:
        return await self._queryset(model, filters).aexists()

    @storage_operation
    async def save(self, instance, update_fields: Optional[Iterable[str]] = None):
        """Persist a loaded instance, optionally limited to some fields."""
        await instance.asave(update_fields=update_fields)
        return instance

    @storage_operation
    async def refresh(self, instance, fields: Optional[Iterable[str]] = None):
        await instance.arefresh_from_db(fields=fields)
        return instance


order_store = OrderStore()
