"""Events emitted by the scanner and queue worker."""
from __future__ import annotations

import logging

from celery.utils.dispatch import Signal

from ..core.reporting import get_purger

logger = logging.getLogger(__name__)

#: Sent by the scanner for every changed image.
file_discovered = Signal(name="file_discovered")

optimization_postponed = Signal(name="optimization_postponed")

optimization_stopped = Signal(name="optimization_stopped")

#: Sent once a run finished and at least one image was replaced.
optimization_complete = Signal(name="optimization_complete")


@optimization_complete.connect
def purge_caches(sender=None, stats=None, **kwargs):
    logger.info("Image optimization run complete (%s); purging caches", stats)
    get_purger().purge()
