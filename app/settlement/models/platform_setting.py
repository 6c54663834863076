"""
PlatformSetting: operator-editable overrides for fees and escrow timing.

Reads go through the Django cache for CACHE_TTL seconds. Every write path
(save, delete, queryset update/delete, bulk writes) drops the cached copy,
so a change is seen by the next orchestrator built.
"""

from __future__ import annotations

import logging

from django.core.cache import cache
from django.db import models

from core.models import TimestampedModel

logger = logging.getLogger(__name__)

CACHE_TTL = 300
CACHE_KEY = "settlement:platform_settings"


def invalidate_platform_settings() -> None:
    cache.delete(CACHE_KEY)


class PlatformSettingQuerySet(models.QuerySet):
    """Bulk writes that skip save() still drop the cached settings."""

    def update(self, **kwargs) -> int:
        updated = super().update(**kwargs)
        invalidate_platform_settings()
        return updated

    def delete(self) -> tuple[int, dict[str, int]]:
        result = super().delete()
        invalidate_platform_settings()
        return result

    def bulk_create(self, objs, *args, **kwargs):
        created = super().bulk_create(objs, *args, **kwargs)
        invalidate_platform_settings()
        return created

    def bulk_update(self, objs, fields, *args, **kwargs) -> int:
        updated = super().bulk_update(objs, fields, *args, **kwargs)
        invalidate_platform_settings()
        return updated


class PlatformSetting(TimestampedModel):
    """
    Key/value setting.

    Known keys:
        platform_fee_percent
        client_fee_percent
        provider_fee_percent
        escrow_review_window_hours
    """

    key = models.CharField(max_length=64, unique=True)
    value = models.CharField(max_length=255)
    description = models.CharField(max_length=255, blank=True, default="")

    objects = PlatformSettingQuerySet.as_manager()

    class Meta:
        ordering = ["key"]
        verbose_name = "Platform Setting"
        verbose_name_plural = "Platform Settings"

    def __str__(self) -> str:
        return f"{self.key}={self.value}"

    def save(self, *args, **kwargs):
        super().save(*args, **kwargs)
        invalidate_platform_settings()

    def delete(self, *args, **kwargs):
        result = super().delete(*args, **kwargs)
        invalidate_platform_settings()
        return result

    @classmethod
    def as_dict(cls) -> dict[str, str]:
        """All settings as {key: value}, cached."""
        values = cache.get(CACHE_KEY)
        if values is None:
            values = dict(cls.objects.values_list("key", "value"))
            cache.set(CACHE_KEY, values, timeout=CACHE_TTL)
            logger.debug("Loaded platform settings", extra={"count": len(values)})
        return values
