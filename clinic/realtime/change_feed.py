"""
Row-level change feed built on Django model signals.

One listener watches one table.  ``pre_save`` captures the row as stored
before the change, ``post_save``/``post_delete`` capture the row after it,
and the notification is only delivered once the surrounding transaction
commits.  Within one table notifications therefore arrive in commit order;
across tables there is no ordering.

``QuerySet.update()`` and ``QuerySet.delete()`` bypass model signals and
are not observed.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

from django.apps import apps
from django.db import transaction
from django.db.models.signals import post_delete, post_save, pre_save

from clinic.realtime.events import NORMALIZERS, ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)

_BEFORE_ATTR = '_change_feed_before'


def row_image(instance) -> dict:
    """Column values of ``instance`` keyed by attname (``doctor_id``, ``record_id``...)."""
    return {f.attname: getattr(instance, f.attname) for f in instance._meta.concrete_fields}


def model_for_table(table: str):
    for model in apps.get_models():
        if model._meta.db_table == table:
            return model
    return None


class ChangeFeedListener:
    def __init__(self, normalizers: Optional[dict] = None):
        self._normalizers = normalizers or NORMALIZERS
        self._model = None
        self._table: Optional[str] = None
        self._normalize = None
        self._on_change: Optional[Callable[[ChangeEvent], None]] = None

    @property
    def active(self) -> bool:
        return self._model is not None

    @property
    def table(self) -> Optional[str]:
        return self._table

    def start(self, table: str, on_change: Callable[[ChangeEvent], None]) -> bool:
        """Subscribe to committed changes on ``table``.

        Returns False, after logging, when the subscription cannot be set
        up; the process keeps running without it.
        """
        if self.active:
            logger.warning('Change feed for %s already started', self._table)
            return True
        try:
            model = model_for_table(table)
            if model is None:
                raise LookupError(f'no model is mapped to table {table!r}')
            normalize = self._normalizers.get(table)
            if normalize is None:
                raise LookupError(f'no normalizer registered for table {table!r}')
            pre_save.connect(self._on_pre_save, sender=model, dispatch_uid=self._uid('pre_save'), weak=False)
            post_save.connect(self._on_post_save, sender=model, dispatch_uid=self._uid('post_save'), weak=False)
            post_delete.connect(self._on_post_delete, sender=model, dispatch_uid=self._uid('post_delete'), weak=False)
        except Exception:
            logger.exception('Failed to subscribe to change feed for table %s', table)
            return False
        self._model = model
        self._table = table
        self._normalize = normalize
        self._on_change = on_change
        logger.info('Change feed active for %s', table)
        return True

    def stop(self) -> None:
        if self._model is None:
            return
        pre_save.disconnect(sender=self._model, dispatch_uid=self._uid('pre_save'))
        post_save.disconnect(sender=self._model, dispatch_uid=self._uid('post_save'))
        post_delete.disconnect(sender=self._model, dispatch_uid=self._uid('post_delete'))
        logger.info('Change feed stopped for %s', self._table)
        self._model = None
        self._on_change = None

    def _uid(self, signal_name: str) -> str:
        return f'change-feed:{id(self)}:{signal_name}'

    # -- signal receivers ---------------------------------------------------

    def _on_pre_save(self, sender, instance, raw=False, using=None, **kwargs):
        before = None
        if instance.pk is not None and not instance._state.adding:
            before = sender._base_manager.using(using).filter(pk=instance.pk).values().first()
        setattr(instance, _BEFORE_ATTR, before)

    def _on_post_save(self, sender, instance, created, raw=False, using=None, **kwargs):
        before = getattr(instance, _BEFORE_ATTR, None)
        kind = ChangeKind.INSERT if created or before is None else ChangeKind.UPDATE
        after = row_image(instance)
        transaction.on_commit(lambda: self._deliver(kind, None if kind is ChangeKind.INSERT else before, after), using=using)

    def _on_post_delete(self, sender, instance, using=None, **kwargs):
        before = row_image(instance)
        transaction.on_commit(lambda: self._deliver(ChangeKind.DELETE, before, None), using=using)

    def _deliver(self, kind: ChangeKind, before: Optional[dict], after: Optional[dict]) -> None:
        on_change = self._on_change
        if on_change is None:
            return
        try:
            event = self._normalize(kind, before, after)
            logger.info('Received %s change on %s: %s', kind.value, self._table, event.subject_id)
            on_change(event)
        except Exception:
            logger.exception('Change handler failed for %s on %s', kind.value, self._table)
