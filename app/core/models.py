"""
Abstract model building blocks.

    TimestampedModel  created_at / updated_at, newest-first ordering
    UUIDKeyedModel    UUID primary key, generated in Python
    MetadataModel     JSON metadata column with a get_meta() accessor

Compose them ahead of TimestampedModel:

    class Transaction(UUIDKeyedModel, MetadataModel, TimestampedModel):
        ...

Queryset .update() skips auto_now; code that writes with conditional
updates has to set updated_at itself.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from django.db import models

if TYPE_CHECKING:
    from typing import Any


class TimestampedModel(models.Model):
    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="When the row was inserted",
    )
    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="When the row last changed",
    )

    class Meta:
        abstract = True
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{type(self).__name__}({self.pk})"


class UUIDKeyedModel(models.Model):
    """
    UUID primary key.

    The key exists before the INSERT, so it can be handed to the payment
    gateway as a reference before the row is written.
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Primary key, assigned before insert",
    )

    class Meta:
        abstract = True


class MetadataModel(models.Model):
    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Free-form context such as the payer approval URL",
    )

    class Meta:
        abstract = True

    def get_meta(self, key: str, default: Any = None) -> Any:
        return (self.metadata or {}).get(key, default)
